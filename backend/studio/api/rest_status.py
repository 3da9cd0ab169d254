"""REST endpoints for health and status."""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from studio.core.config import settings
from studio.relay.supervisor import broadcast_supervisor

router = APIRouter()


def rtmp_status_label() -> str:
    """Operator-facing label for the RTMP destination."""
    return "✓ Configurado" if settings.final_rtmp_url else "✗ Não configurado"


@router.get("/health", response_class=PlainTextResponse)
async def health_check():
    """Liveness probe."""
    return "ok"


@router.get("/status")
async def relay_status():
    """
    Relay status.
    
    Returns:
        RTMP configuration state and the number of connected relay clients
    """
    return {
        "ok": True,
        "rtmpUrl": rtmp_status_label(),
        "rtmpConfigured": bool(settings.final_rtmp_url),
        "connections": broadcast_supervisor.connection_count,
        "broadcasting": broadcast_supervisor.is_broadcasting,
    }
