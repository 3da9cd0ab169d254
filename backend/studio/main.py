"""FastAPI application entrypoint."""
from fastapi import Depends, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from studio.api import rest_status, rest_youtube, ws_relay
from studio.core.config import settings
from studio.core.errors import (
    InvalidReference,
    ResolutionFailure,
    StudioError,
    UpstreamProxyFailure,
)
from studio.core.logging import setup_logging
from studio.relay.encoder import EncoderLauncher

# Setup logging
setup_logging()

ERROR_STATUS = {
    InvalidReference: 400,
    ResolutionFailure: 500,
    UpstreamProxyFailure: 502,
}

# Create FastAPI app
app = FastAPI(
    title="Radio Studio Backend",
    description="WebSocket to RTMP relay and YouTube audio resolver for the web radio studio",
    version="0.1.0"
)

# Resolver responses must be readable from the studio page and audio elements
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when using "*" origins
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)

# Include routers
app.include_router(rest_status.router)
app.include_router(rest_youtube.router)


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    """Per-request errors become {"error": message} with a mapped status code."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        500
    )
    return JSONResponse(status_code=status_code, content={"error": exc.message})


# WebSocket endpoint (stock clients connect to the server root)
@app.websocket("/")
@app.websocket("/ws/relay")
async def websocket_endpoint(
    websocket: WebSocket,
    launcher: EncoderLauncher = Depends(ws_relay.get_encoder_launcher)
):
    """WebSocket endpoint for the RTMP relay."""
    # ws_relay.websocket_relay_endpoint already calls websocket.accept()
    await ws_relay.websocket_relay_endpoint(websocket, launcher)


@app.on_event("startup")
async def startup_event():
    """Log the effective relay configuration."""
    from studio.core.logging import logger
    
    logger.info(f"Starting Radio Studio Backend on {settings.host}:{settings.port}")
    if settings.final_rtmp_url:
        logger.info(f"Destino RTMP configurado em: {settings.final_rtmp_url}")
    else:
        logger.warning("ATENÇÃO: Destino RTMP não configurado. Defina RTMP_URL ou RTMP_HOST + RTMP_KEY antes de iniciar.")
    logger.info(f"Audio egress: AAC {settings.audio_bitrate} @ {settings.audio_sample_rate} Hz x{settings.audio_channels}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    from studio.core.logging import logger
    logger.info("Shutting down Radio Studio Backend")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "studio.main:app",
        host=settings.host,
        port=settings.port,
        reload=False
    )
