"""
Command-line voice client.

Opens a microphone, connects to the realtime backend through the voice
server and keeps the session running until interrupted.

Usage:
    python -m voicerag.voice_client --server http://localhost:8000 --category admissions
"""

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

from voicerag.config import settings
from voicerag.errors import DeviceError
from voicerag.logging_config import configure_logging
from voicerag.orchestration.context_client import HttpContextClient
from voicerag.orchestration.persistence import ConversationSaver
from voicerag.orchestration.session_controller import SessionOrchestrator
from voicerag.orchestration.transcript_buffer import Exchange
from voicerag.realtime.media import MicrophoneSource
from voicerag.realtime.negotiation import NegotiationClient

logger = logging.getLogger("voicerag.voice_client")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Talk to the voice assistant from the terminal")
    parser.add_argument("--server", default=settings.server_url, help="Voice server base URL")
    parser.add_argument("--device", default=settings.microphone_device, help="Capture device name")
    parser.add_argument("--format", default=settings.microphone_format, help="FFmpeg input format (pulse, alsa, avfoundation, dshow)")
    parser.add_argument("--category", default=None, help="Restrict retrieval to one knowledge category")
    parser.add_argument("--voice", default=settings.realtime_voice, help="Voice the assistant speaks with")
    parser.add_argument("--record", default=None, help="Write assistant audio to this file")
    parser.add_argument("--muted", action="store_true", help="Start with capture disabled")
    parser.add_argument("--no-save", action="store_true", help="Do not persist the conversation")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    return parser


def _print_exchange(exchange: Exchange) -> None:
    speaker = "You" if exchange.role == "user" else "Assistant"
    print(f"{speaker}: {exchange.content}")


def _print_summary(exchanges: List[Exchange], session_id: Optional[str]) -> None:
    print(f"\nConversation {session_id} ended with {len(exchanges)} messages.")


async def run(args: argparse.Namespace) -> int:
    negotiation = NegotiationClient(args.server, voice=args.voice)
    context_client = HttpContextClient(args.server, timeout_ms=settings.context_timeout_ms)
    saver = None if args.no_save else ConversationSaver(args.server, variant=settings.persistence_variant)
    microphone = MicrophoneSource(args.device, fmt=args.format)

    stop = asyncio.Event()

    def on_error(message: str) -> None:
        print(f"Error: {message}")
        stop.set()

    orchestrator = SessionOrchestrator(
        negotiation=negotiation,
        context_client=context_client,
        microphone=microphone,
        saver=saver,
        category=args.category,
        record_path=args.record,
        on_message_add=_print_exchange,
        on_conversation_end=_print_summary,
        on_error=on_error,
    )
    orchestrator.record.capture_enabled = not args.muted

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    exit_code = 0
    try:
        if await orchestrator.connect():
            print("Connected. Speak now (Ctrl-C to quit).")
        await stop.wait()
    except DeviceError:
        exit_code = 1
    finally:
        await orchestrator.disconnect()
        await negotiation.close()
        await context_client.close()
        if saver is not None:
            await saver.close()

    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
