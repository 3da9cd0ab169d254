"""WebSocket endpoint relaying MediaRecorder audio to RTMP through ffmpeg."""
import uuid
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from studio.api.rest_status import rtmp_status_label
from studio.core.logging import logger
from studio.relay.encoder import EncoderLauncher, launch_encoder
from studio.relay.session import CLOSE_INTERNAL_ERROR, RelaySession
from studio.relay.supervisor import broadcast_supervisor

SUBPROTOCOL = "audio-stream"


def get_encoder_launcher() -> EncoderLauncher:
    return launch_encoder


class WebSocketSink:
    """Sends session frames to one WebSocket, tolerating a peer that already left."""
    
    def __init__(self, websocket: WebSocket, stream_id: str):
        self.websocket = websocket
        self.stream_id = stream_id
    
    async def send(self, message: dict) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Could not send to {self.stream_id}: {e}")
    
    async def close(self, code: int, reason: str) -> None:
        if (self.websocket.application_state != WebSocketState.CONNECTED
                or self.websocket.client_state != WebSocketState.CONNECTED):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Could not close {self.stream_id}: {e}")


async def websocket_relay_endpoint(websocket: WebSocket, launcher: EncoderLauncher) -> None:
    """
    WebSocket endpoint handler for the relay.
    
    Text frames are JSON control messages (start/stop); binary frames are
    encoded audio chunks forwarded to this connection's ffmpeg.
    """
    requested = websocket.scope.get("subprotocols") or []
    await websocket.accept(subprotocol=SUBPROTOCOL if SUBPROTOCOL in requested else None)
    
    stream_id = f"relay-{uuid.uuid4().hex[:8]}"
    client = websocket.client
    logger.info(f"Painel conectado de {client.host if client else 'desconhecido'} ({stream_id}). Aguardando dados...")
    
    sink = WebSocketSink(websocket, stream_id)
    session = RelaySession(stream_id, sink, launcher=launcher)
    await broadcast_supervisor.register(session)
    
    try:
        await sink.send({"type": "status", "message": "connected", "rtmpUrl": rtmp_status_label()})
        
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                await session.handle_chunk(message["bytes"])
            elif message.get("text") is not None:
                await session.handle_text(message["text"])
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Erro na conexão com painel {stream_id}: {e}")
        await sink.send({"type": "error", "message": f"Erro interno no relay: {e}"})
        await sink.close(CLOSE_INTERNAL_ERROR, "internal error")
    finally:
        logger.info(f"Painel desconectado ({stream_id}). Encerrando FFmpeg.")
        await session.close()
        await broadcast_supervisor.unregister(session)
        await sink.close(1000, "bye")
