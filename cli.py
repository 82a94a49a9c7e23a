import argparse
import asyncio
import os
import sys

from logging_config import setup_logging, get_logger
from constants import (
    DEFAULT_FPS, DEFAULT_RESOLUTION, DEFAULT_SIGNALING_PORT, FPS_OPTIONS, PORT_FILE, REGISTRY_SCHEME, REGISTRY_URL,
    RESOLUTIONS, SIGNALING_HOST,
)
from errors import CaptureUnavailable, DiscoveryExhausted

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="roomcast", description="Peer-to-peer screen streaming")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    parser.add_argument("--log-file", default=os.getenv("LOG_FILE", None))
    sub = parser.add_subparsers(dest="command", required=True)

    server = sub.add_parser("server", help="run the signaling server and room registry")
    server.add_argument("--host", default=SIGNALING_HOST)
    server.add_argument("--port", type=int, default=DEFAULT_SIGNALING_PORT)
    server.add_argument("--port-file", default=PORT_FILE)

    host = sub.add_parser("host", help="stream this screen to viewers")
    host.add_argument("--resolution", choices=sorted(RESOLUTIONS), default=DEFAULT_RESOLUTION)
    host.add_argument("--fps", type=int, choices=FPS_OPTIONS, default=DEFAULT_FPS)
    host.add_argument("--no-audio", action="store_true")
    host.add_argument("--display", default=None, help="ffmpeg capture source override")
    host.add_argument("--registry-url", default=REGISTRY_URL)
    host.add_argument("--no-register", action="store_true")

    view = sub.add_parser("view", help="join a room and receive its stream")
    view.add_argument("room_code")
    view.add_argument("--registry-url", default=REGISTRY_URL)
    view.add_argument("--scheme", default=REGISTRY_SCHEME, choices=("http", "https"))
    view.add_argument("--no-lookup", action="store_true")
    return parser


async def run_host(args) -> int:
    from session.capture import open_screen_capture
    from session.host import HostSession
    from session.registry_client import RegistryClient

    try:
        capture = open_screen_capture(args.resolution, args.fps, audio=not args.no_audio, display=args.display)
    except CaptureUnavailable as e:
        logger.error(f"Cannot start stream: {e}")
        return 1

    registry = None if args.no_register else RegistryClient(args.registry_url)
    host = HostSession(capture, registry=registry)
    try:
        room_code = await host.start()
    except DiscoveryExhausted as e:
        logger.error(str(e))
        return 1

    print(f"Share this room code: {room_code}", flush=True)
    try:
        await asyncio.Event().wait()
    finally:
        await host.stop()
    return 0


async def run_viewer(args) -> int:
    from aiortc.contrib.media import MediaBlackhole
    from session.registry_client import RegistryClient
    from session.viewer import ViewerSession, ViewerState

    registry = None if args.no_lookup else RegistryClient(args.registry_url)
    viewer = ViewerSession(args.room_code, registry=registry, scheme=args.scheme)
    # Rendering is the shell's job; consume frames so the tracks keep flowing
    sink = MediaBlackhole()
    finished = asyncio.Event()

    viewer.on_track(sink.addTrack)
    viewer.on_error(lambda error: print(f"Error: {error}", file=sys.stderr, flush=True))

    def on_state(state):
        if state == ViewerState.CONNECTED:
            asyncio.ensure_future(sink.start())
            print("Streaming", flush=True)
        elif state in (ViewerState.FAILED, ViewerState.CLOSED):
            finished.set()

    viewer.on_state_change(on_state)
    try:
        await viewer.join()
    except DiscoveryExhausted as e:
        logger.error(str(e))
        return 1
    try:
        await finished.wait()
    finally:
        await viewer.leave()
        await sink.stop()
    return 0 if viewer.error is None else 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level=args.log_level, log_file=args.log_file)

    if args.command == "server":
        from entrypoint import run_server
        run_server(args.host, args.port, args.port_file)
        return 0

    runner = run_host if args.command == "host" else run_viewer
    try:
        return asyncio.run(runner(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
