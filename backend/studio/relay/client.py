#!/usr/bin/env python3
"""
Broadcast client for the relay.

Encodes the mixer's master stream with ffmpeg and pushes the container
chunks to the relay WebSocket: a `start` frame, binary chunks, then `stop`.
"""
import argparse
import asyncio
import json
import time
from typing import Awaitable, Callable, List, Optional
import websockets
from studio.core.config import Settings, settings
from studio.core.errors import DeviceUnavailable, EncoderStartFailure
from studio.core.logging import logger, setup_logging
from studio.mixer.models import ChannelId
from studio.mixer.runtime import MasterStream

DEFAULT_MIME_TYPE = "audio/webm;codecs=opus"

# mime type prefix -> ffmpeg muxer
CONTAINERS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
}

CaptureLauncher = Callable[[List[str]], Awaitable[asyncio.subprocess.Process]]


def muxer_for(mime_type: str) -> str:
    """Pick the ffmpeg muxer for a capture container, defaulting to webm."""
    base = mime_type.split(";", 1)[0].strip().lower()
    return CONTAINERS.get(base, "webm")


def build_capture_args(mime_type: str, sample_rate: int, channels: int, config: Optional[Settings] = None) -> List[str]:
    """
    ffmpeg arguments turning raw float32 PCM on stdin into an opus container on stdout.
    """
    config = config or settings
    return [
        config.ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-f", "f32le",
        "-ar", str(sample_rate),
        "-ac", str(channels),
        "-i", "pipe:0",
        "-c:a", "libopus",
        "-b:a", config.audio_bitrate,
        "-flush_packets", "1",
        "-f", muxer_for(mime_type),
        "pipe:1",
    ]


async def launch_capture_encoder(args: List[str]) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise EncoderStartFailure(f"Não foi possível iniciar o ffmpeg: {e}") from e


class BroadcastClient:
    """
    Streams one broadcast session from a MasterStream to the relay.
    
    Frames from the relay are tracked: `ack` marks the session acknowledged,
    `error` is kept in `last_error` and logged.
    """
    
    def __init__(
        self,
        master_stream: MasterStream,
        mime_type: str = DEFAULT_MIME_TYPE,
        url: Optional[str] = None,
        config: Optional[Settings] = None,
        connect=None,
        launcher: Optional[CaptureLauncher] = None
    ):
        self.master_stream = master_stream
        self.mime_type = mime_type
        self.config = config or settings
        self.url = url or self.config.relay_ws_url
        self.bytes_sent = 0
        self.chunks_sent = 0
        self.acknowledged = False
        self.last_error: Optional[str] = None
        self.messages: List[dict] = []
        self.streaming = asyncio.Event()  # set once the start frame is out
        self._connect = connect or websockets.connect
        self._launcher = launcher or launch_capture_encoder
    
    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Broadcast until `stop_event` is set or the relay goes away.
        
        Raises:
            EncoderStartFailure: If the capture encoder cannot start
        """
        args = build_capture_args(
            self.mime_type,
            self.master_stream.sample_rate,
            self.master_stream.channels,
            self.config,
        )
        encoder = await self._launcher(args)
        subscription = self.master_stream.subscribe()
        logger.info(f"Broadcasting {self.mime_type} to {self.url}")
        
        try:
            async with self._connect(self.url, subprotocols=["audio-stream"]) as ws:
                await ws.send(json.dumps({"type": "start", "mimeType": self.mime_type}))
                self.streaming.set()
                
                feed_task = asyncio.create_task(self._feed(subscription, encoder))
                upload_task = asyncio.create_task(self._upload(encoder, ws))
                receive_task = asyncio.create_task(self._receive(ws))
                stop_task = asyncio.create_task(stop_event.wait())
                
                await asyncio.wait(
                    {stop_task, upload_task, receive_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                
                feed_task.cancel()
                await asyncio.gather(feed_task, return_exceptions=True)
                if encoder.stdin is not None and not encoder.stdin.is_closing():
                    encoder.stdin.close()
                
                if not receive_task.done():
                    # Drain what the encoder still holds, then end the session
                    try:
                        await asyncio.wait_for(upload_task, timeout=5)
                    except asyncio.TimeoutError:
                        logger.warning("Capture encoder did not finish in time")
                    try:
                        await ws.send(json.dumps({"type": "stop"}))
                    except websockets.exceptions.ConnectionClosed:
                        pass
                
                for task in (upload_task, receive_task, stop_task):
                    task.cancel()
                await asyncio.gather(upload_task, receive_task, stop_task, return_exceptions=True)
        finally:
            subscription.close()
            try:
                await asyncio.wait_for(encoder.wait(), timeout=2)
            except asyncio.TimeoutError:
                encoder.kill()
                await encoder.wait()
            logger.info(f"Broadcast ended: {self.chunks_sent} chunks, {self.bytes_sent} bytes sent")
    
    async def _feed(self, subscription, encoder) -> None:
        async for block in subscription:
            encoder.stdin.write(block.astype("<f4").tobytes())
            await encoder.stdin.drain()
    
    async def _upload(self, encoder, ws) -> None:
        interval = self.config.relay_chunk_interval_ms / 1000.0
        buffer = bytearray()
        last_flush = time.monotonic()
        while True:
            data = await encoder.stdout.read(65536)
            if not data:
                break
            buffer.extend(data)
            if time.monotonic() - last_flush >= interval:
                await self._send_chunk(ws, bytes(buffer))
                buffer.clear()
                last_flush = time.monotonic()
        if buffer:
            await self._send_chunk(ws, bytes(buffer))
    
    async def _send_chunk(self, ws, chunk: bytes) -> None:
        await ws.send(chunk)
        self.chunks_sent += 1
        self.bytes_sent += len(chunk)
    
    async def _receive(self, ws) -> None:
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    continue
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid frame from relay: {message[:80]!r}")
                    continue
                self._handle_frame(payload)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Relay connection closed: {e}")
    
    def _handle_frame(self, payload: dict) -> None:
        self.messages.append(payload)
        message_type = payload.get("type")
        message = payload.get("message")
        if message_type == "ack":
            self.acknowledged = True
            logger.info(f"Relay acknowledged: {message}")
        elif message_type == "error":
            self.last_error = message
            logger.error(f"Relay error: {message}")
        elif message_type == "ffmpeg-output":
            logger.debug(f"[relay] {message}")
        else:
            logger.info(f"Relay {message_type}: {message}")


async def run_broadcast(
    client: BroadcastClient,
    stop_event: asyncio.Event,
    on_streaming: Optional[Callable[[], Awaitable[None]]] = None
) -> None:
    """
    Run `client` and start the program only once it is on the air.
    
    Args:
        client: Broadcast client to run
        stop_event: Ends the broadcast when set
        on_streaming: Coroutine function starting playback; skipped if the
            session ends before streaming starts
    """
    run_task = asyncio.create_task(client.run(stop_event))
    ready_task = asyncio.create_task(client.streaming.wait())
    await asyncio.wait({run_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)
    ready_task.cancel()
    
    if client.streaming.is_set() and on_streaming is not None and not run_task.done():
        try:
            await on_streaming()
        except Exception:
            stop_event.set()
            await asyncio.gather(run_task, return_exceptions=True)
            raise
    await run_task


async def main(args: argparse.Namespace) -> None:
    """Mix the microphone and main library (optionally under Auto DJ) and broadcast it."""
    from studio.autodj.scheduler import AutoDjScheduler, Track
    from studio.mixer.graph import MixGraph
    
    print("=" * 70)
    print("Studio Broadcast Client")
    print("=" * 70)
    print(f"Relay: {args.url}")
    print(f"Container: {args.mime_type}")
    print(f"Auto DJ: {'on' if args.autodj else 'off'} ({len(args.track)} track(s), {len(args.bed)} bed(s))")
    print("=" * 70)
    print("Press Ctrl+C to stop\n")
    
    graph = MixGraph()
    await graph.ensure_runtime()
    if not args.no_microphone:
        try:
            await graph.connect_microphone()
        except DeviceUnavailable as e:
            print(f"Microphone unavailable, continuing without it: {e.message}")
    
    scheduler = None
    if args.autodj:
        scheduler = AutoDjScheduler(
            graph,
            main_library=[Track(url, url) for url in args.track],
            background_library=[Track(url, url) for url in args.bed],
        )
        scheduler.attach()
    
    async def start_program() -> None:
        if scheduler is not None:
            await scheduler.on_toggle(True)
        elif args.track:
            await graph.play(ChannelId.MAIN, args.track[0])
    
    client = BroadcastClient(graph.capture_master_stream(), mime_type=args.mime_type, url=args.url)
    stop_event = asyncio.Event()
    try:
        await run_broadcast(client, stop_event, start_program)
    finally:
        if scheduler is not None:
            await scheduler.shutdown()
        await graph.close()
        if client.last_error:
            print(f"\nRelay error: {client.last_error}")
        print(f"\nSummary: {client.chunks_sent} chunks, {client.bytes_sent} bytes sent")


if __name__ == "__main__":
    setup_logging()
    parser = argparse.ArgumentParser(description="Broadcast the studio mix to the relay")
    parser.add_argument("--url", default=settings.relay_ws_url)
    parser.add_argument("--mime-type", default=DEFAULT_MIME_TYPE)
    parser.add_argument("--track", action="append", default=[], help="Main channel URL (repeatable)")
    parser.add_argument("--bed", action="append", default=[], help="Background bed URL (repeatable)")
    parser.add_argument("--autodj", action="store_true", help="Let Auto DJ sequence the tracks")
    parser.add_argument("--no-microphone", action="store_true")
    try:
        asyncio.run(main(parser.parse_args()))
    except KeyboardInterrupt:
        print("\n\nExiting...")
