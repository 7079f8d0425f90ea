"""
Client process entrypoint.

Resolves configuration, initialises logging, acquires local capture once, and
runs the signalling link next to the local status API until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole

from .api.server import create_app
from .config import ClientConfig, ConfigError, load_config
from .coordinator import NegotiationCoordinator
from .errors import DeviceError
from .rtc.media import MediaSource
from .signaling.link import SignalingLink
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


class RemoteMediaSink:
    """
    Pulls remote tracks so they do not back up; rendering belongs to the UI.

    Each track gets its own blackhole, released once the track ends.
    """

    def __init__(self) -> None:
        self._blackholes: Dict[MediaStreamTrack, MediaBlackhole] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._blackholes)

    def __call__(self, track: MediaStreamTrack) -> None:
        LOG.info("Remote %s track attached", track.kind)
        blackhole = MediaBlackhole()
        blackhole.addTrack(track)
        self._blackholes[track] = blackhole

        @track.on("ended")
        async def _on_ended() -> None:
            await self._release(track)

        task = asyncio.get_running_loop().create_task(blackhole.start())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _release(self, track: MediaStreamTrack) -> None:
        blackhole = self._blackholes.pop(track, None)
        if blackhole is not None:
            LOG.debug("Remote %s track ended", track.kind)
            await blackhole.stop()

    async def stop(self) -> None:
        for track in list(self._blackholes):
            await self._release(track)


def build_client(
    config: ClientConfig,
    *,
    on_remote_track: Optional[Callable[[Any], None]] = None,
) -> tuple[SignalingLink, NegotiationCoordinator, Optional[MediaSource]]:
    media: Optional[MediaSource] = None
    if config.media.capture_audio or config.media.capture_video:
        media = MediaSource(config.media)

    link = SignalingLink(
        config.signaling.url,
        socketio_path=config.signaling.socketio_path,
        reconnect_attempts=config.signaling.reconnect_attempts,
        reconnect_delay=config.signaling.reconnect_delay,
        reconnect_delay_max=config.signaling.reconnect_delay_max,
        handshake_timeout=config.signaling.handshake_timeout,
    )
    coordinator = NegotiationCoordinator(
        link,
        media,
        transport_config=config.transport,
        negotiation_timeout=config.negotiation_timeout,
        on_remote_track=on_remote_track,
    )
    link.bind(coordinator)
    return link, coordinator, media


async def serve(config: ClientConfig) -> None:
    """
    Run the signalling link and the status API inside one asyncio loop.
    """

    import uvicorn

    sink = RemoteMediaSink()
    link, coordinator, media = build_client(config, on_remote_track=sink)
    if media is not None:
        try:
            await asyncio.to_thread(media.acquire)
        except DeviceError:
            LOG.warning("Continuing without local media")

    server: Optional[uvicorn.Server] = None
    if config.status_api.enabled:
        app = create_app(coordinator, media=media, link=link)
        server_config = uvicorn.Config(
            app=app,
            host=config.status_api.host,
            port=config.status_api.port,
            log_config=None,
            log_level="info",
            reload=False,
        )
        server = uvicorn.Server(config=server_config)

    stop_event = asyncio.Event()

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down client...", signum)
        if server is not None:
            server.should_exit = True
        stop_event.set()

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    link_task = asyncio.create_task(link.run())
    server_task = asyncio.create_task(server.serve()) if server is not None else None
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({link_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if link_task.done() and not stop_event.is_set():
            LOG.error("Signalling link gave up; shutting down")
            if server is not None:
                server.should_exit = True
    finally:
        await link.stop()
        await coordinator.close()
        for task in (link_task, stop_task):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if server_task is not None:
            await server_task
        if media is not None:
            media.close()
        await sink.stop()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="duochat two-party video chat client")
    parser.add_argument("--profile", default="default", help="client profile to load")
    parser.add_argument("--config", type=Path, default=None, help="profiles YAML file")
    parser.add_argument("--signaling-url", default=None, help="relay URL (overrides the profile)")
    parser.add_argument("--host", default=None, help="bind host for the status API")
    parser.add_argument("--port", type=int, default=None, help="bind port for the status API")
    parser.add_argument("--no-status-api", action="store_true", help="do not start the status API")
    parser.add_argument("--no-video", action="store_true", help="do not capture video")
    parser.add_argument("--no-audio", action="store_true", help="do not capture audio")
    parser.add_argument("--log-level", default="INFO", help="logging level")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> ClientConfig:
    config = load_config(args.profile, args.config)
    if args.signaling_url:
        config.signaling.url = args.signaling_url
    if args.host:
        config.status_api.host = args.host
    if args.port is not None:
        config.status_api.port = args.port
    if args.no_status_api:
        config.status_api.enabled = False
    if args.no_video:
        config.media.capture_video = False
    if args.no_audio:
        config.media.capture_audio = False
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
        config = resolve_config(args)
    except (ConfigError, ValueError) as exc:
        raise SystemExit(f"duochat: {exc}") from exc

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Client interrupted by user.")


if __name__ == "__main__":
    run()
