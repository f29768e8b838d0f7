"""Command line entry points.

    caption-relay serve        run the local broadcast server
    caption-relay transcribe   capture the microphone and publish captions
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from caption_relay.config import ServerSettings, SessionConfig
from caption_relay.constants import APP_NAME, AUTO_LANGUAGE, LANGUAGE_CODES, VERSION
from caption_relay.errors import ConfigurationError, RelayError
from caption_relay.log import setup_logging

logger = logging.getLogger(__name__)


def serve(args) -> int:
    """Run the broadcast server under uvicorn."""
    import uvicorn

    from caption_relay.server import create_app

    try:
        settings = ServerSettings.from_env()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings.log_level)
    logger.info("Starting caption relay %s on %s:%d", VERSION, settings.host, settings.port)
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
    return 0


def _print_devices() -> None:
    from caption_relay.capture.microphone import list_input_devices

    for device in list_input_devices():
        marker = "*" if device["default"] else " "
        print(f"{marker} {device['id']:>3}  {device['name']} ({device['sample_rate']} Hz)")


def _device_id(raw):
    if raw is None:
        return None
    return int(raw) if raw.isdigit() else raw


def printing_publisher(publish, stream=None):
    """Wrap ``publish`` so every caption is also echoed to the terminal."""

    async def echo(text: str) -> None:
        print(text, file=stream or sys.stdout, flush=True)
        await publish(text)

    return echo


async def transcribe(args) -> int:
    """Stream the microphone upstream and publish captions until Ctrl+C."""
    from caption_relay.capture.microphone import MicrophoneSource
    from caption_relay.client import LocalBroadcastClient
    from caption_relay.orchestrator import SessionOrchestrator, Status
    from caption_relay.upstream.gladia import GladiaNegotiator
    from caption_relay.upstream.websocket import WebSocketTransport

    try:
        config = SessionConfig(
            api_key=args.api_key or os.environ.get("GLADIA_API_KEY", ""),
            language=args.language,
            translate_to=args.translate_to or "",
            silence_threshold=args.silence,
            max_duration=args.max_duration,
            vocabulary=args.vocabulary or "",
            device_id=_device_id(args.device),
        )
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    negotiator = GladiaNegotiator()
    publisher = LocalBroadcastClient(args.server_url)
    orchestrator = SessionOrchestrator(
        negotiator,
        WebSocketTransport(),
        MicrophoneSource(),
        printing_publisher(publisher),
    )

    loop = asyncio.get_running_loop()
    done = asyncio.Event()

    def on_change(snapshot):
        if snapshot.status in (Status.ERROR, Status.IDLE):
            done.set()

    orchestrator.add_listener(on_change)

    try:
        loop.add_signal_handler(signal.SIGINT, done.set)
    except NotImplementedError:
        pass

    exit_code = 0
    try:
        await orchestrator.start(config)
        print("Live. Press Ctrl+C to stop.", file=sys.stderr)
        done.clear()
        await done.wait()
        if orchestrator.status == Status.ERROR:
            print(f"Error: {orchestrator.error_message}", file=sys.stderr)
            exit_code = 1
    except RelayError as exc:
        print(f"Error: {orchestrator.error_message or exc}", file=sys.stderr)
        exit_code = 1
    finally:
        await orchestrator.aclose()
        await publisher.aclose()
        await negotiator.aclose()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Live captions from a microphone to browser overlays",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start the overlay server
    caption-relay serve --port 8080

    # List audio devices
    caption-relay transcribe --list-devices

    # Caption the default microphone in English
    caption-relay transcribe --language en

Environment variables:
    GLADIA_API_KEY   API key for the transcription service
    HOST, PORT, LOG_LEVEL, CORS_ORIGIN, SSE_MAX_CLIENTS, SSE_KEEP_ALIVE_SECONDS
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    commands = parser.add_subparsers(dest="command", required=True)

    serve_parser = commands.add_parser("serve", help="Run the broadcast server")
    serve_parser.add_argument("--host", type=str, default=None, help="Bind address (default: HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: PORT or 8080)")
    serve_parser.add_argument("--log-level", type=str, default=None, help="Log level (default: LOG_LEVEL or info)")

    languages = [AUTO_LANGUAGE, *LANGUAGE_CODES]
    transcribe_parser = commands.add_parser("transcribe", help="Caption the microphone")
    transcribe_parser.add_argument(
        "--api-key",
        type=str,
        default=None,
        help="Transcription API key (or set GLADIA_API_KEY env var)",
    )
    transcribe_parser.add_argument("--language", choices=languages, default="fr", help="Spoken language")
    transcribe_parser.add_argument(
        "--translate-to",
        choices=LANGUAGE_CODES,
        default=None,
        help="Caption a translation instead of the transcript",
    )
    transcribe_parser.add_argument(
        "--silence",
        type=float,
        default=0.05,
        help="Silence in seconds that ends an utterance (default: 0.05)",
    )
    transcribe_parser.add_argument(
        "--max-duration",
        type=float,
        default=5,
        help="Longest utterance in seconds before it is cut (default: 5)",
    )
    transcribe_parser.add_argument(
        "--vocabulary",
        type=str,
        default=None,
        help="Custom vocabulary, comma or semicolon separated",
    )
    transcribe_parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Audio input device ID or name (use --list-devices to see options)",
    )
    transcribe_parser.add_argument(
        "--server-url",
        type=str,
        default="http://127.0.0.1:8080",
        help="Relay server to publish captions to",
    )
    transcribe_parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available audio input devices and exit",
    )
    transcribe_parser.add_argument("--log-level", type=str, default=None, help="Log level")
    return parser


def main(argv=None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        return serve(args)

    setup_logging(args.log_level)
    if args.list_devices:
        try:
            _print_devices()
        except RelayError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        return 0
    return asyncio.run(transcribe(args))


if __name__ == "__main__":
    sys.exit(main())
