"""
mjpeg_relay Main Application
============================

Command line entry point.

Modes:
    relay  - read a remote MJPEG camera and re-serve it
             (MJPEGStreamReader -> FrameBuffer -> MJPEGFrameServer)
    serve  - stream a local webcam
             (WebcamSource -> StreamingOrchestrator -> MJPEGFrameServer)

Usage:
    mjpeg-relay relay --url http://camera.local:8080/video --port 8081
    mjpeg-relay serve --device 0 --port 0 --single-frame
    mjpeg-relay --config config.yaml --log-level DEBUG relay

Both modes run until SIGINT/SIGTERM and shut down gracefully.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from mjpeg_relay import __version__
from mjpeg_relay.config import Settings, load_config, setup_logging
from mjpeg_relay.orchestrator import StreamingOrchestrator
from mjpeg_relay.server import MJPEGFrameServer, ServerBindError
from mjpeg_relay.sources import WebcamSource
from mjpeg_relay.stream import FrameBuffer, MJPEGStreamReader


logger = logging.getLogger(__name__)


# =============================================================================
# Argument Parsing
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mjpeg-relay",
        description="Read and serve MJPEG streams over HTTP",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--log-level", default=None, help="Override logging level")

    subparsers = parser.add_subparsers(dest="mode", required=True)

    relay = subparsers.add_parser("relay", help="Re-serve a remote MJPEG camera")
    relay.add_argument("--url", default=None, help="Camera stream URL")
    relay.add_argument("--login", default=None, help="Camera login")
    relay.add_argument("--password", default=None, help="Camera password")

    serve = subparsers.add_parser("serve", help="Serve a local webcam")
    serve.add_argument("--device", type=int, default=None, help="Camera device index")
    serve.add_argument("--quality", type=int, default=None, help="JPEG quality (1-100)")

    for sub in (relay, serve):
        sub.add_argument("--host", default=None, help="Bind host")
        sub.add_argument("--port", type=int, default=None, help="Bind port (0 = first free)")
        sub.add_argument(
            "--single-frame",
            action="store_true",
            default=None,
            help="Send a single image for each request",
        )

    return parser


def apply_cli_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Apply command line options on top of file and environment settings."""
    if args.log_level:
        settings.logging.level = args.log_level

    if getattr(args, "url", None):
        settings.reader.url = args.url
    if getattr(args, "login", None):
        settings.reader.login = args.login
    if getattr(args, "password", None):
        settings.reader.password = args.password

    if getattr(args, "device", None) is not None:
        settings.capture.device_index = args.device
    if getattr(args, "quality", None) is not None:
        settings.capture.jpeg_quality = args.quality

    if args.host:
        settings.server.host = args.host
    if args.port is not None:
        settings.server.port = args.port
    if args.single_frame:
        settings.server.single_frame = True

    # Re-run validation on the combined result
    return Settings.model_validate(settings.model_dump())


# =============================================================================
# Runners
# =============================================================================

async def wait_for_shutdown() -> None:
    """Block until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows
            pass
    await stop.wait()
    logger.info("Received shutdown signal, stopping...")


async def run_relay(settings: Settings) -> None:
    """Relay mode: remote camera -> frame buffer -> frame server."""
    buffer = FrameBuffer()
    reader = MJPEGStreamReader.from_config(settings.reader, sink=buffer.put)
    server = MJPEGFrameServer.from_config(settings.server, buffer=buffer)

    reader.connection_failed.subscribe(
        lambda: logger.warning(f"Camera connection failed: {reader.url}")
    )

    port = await server.start()
    logger.info(f"Relaying {settings.reader.url} on http://{settings.server.host}:{port}/")
    reader.start()

    try:
        await wait_for_shutdown()
    finally:
        await reader.stop()
        await buffer.clear()
        await server.stop()
        logger.info(f"Reader metrics: {reader.metrics.to_dict()}")
        logger.info(f"Server metrics: {server.metrics.to_dict()}")


async def run_serve(settings: Settings) -> None:
    """Serve mode: local webcam -> orchestrator -> frame server."""
    source = WebcamSource.from_config(settings.capture)
    server = MJPEGFrameServer.from_config(settings.server)
    orchestrator = StreamingOrchestrator(
        source,
        server,
        poll_interval=settings.capture.poll_interval,
    )

    port = await orchestrator.start_server()
    logger.info(f"Serving camera {settings.capture.device_index} on http://{settings.server.host}:{port}/")

    try:
        await wait_for_shutdown()
    finally:
        await orchestrator.shutdown()
        logger.info(f"Server metrics: {server.metrics.to_dict()}")


# =============================================================================
# Main Entry Point
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = apply_cli_overrides(load_config(args.config), args)
    setup_logging(settings)
    logger.info(f"Starting {settings.app.name} {settings.app.version} ({args.mode} mode)")

    runner = run_relay if args.mode == "relay" else run_serve
    try:
        asyncio.run(runner(settings))
    except ServerBindError as e:
        logger.error(f"Frame server could not start: {e}")
        return 1
    except KeyboardInterrupt:
        pass

    logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
