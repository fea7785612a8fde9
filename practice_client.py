import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from backend.live_client import LiveClientError, LiveSessionClient

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("PracticeClient")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a live voice practice session against the relay.")
    parser.add_argument("script", help="Path to a UTF-8 practice script file")
    parser.add_argument(
        "--server",
        default=os.environ.get("LIVE_RELAY_URL", "http://127.0.0.1:8000"),
        help="Relay base URL (default: %(default)s)",
    )
    parser.add_argument("--input-device", default=None, help="sounddevice input device name or index")
    parser.add_argument("--no-playback", action="store_true", help="Do not play model audio")
    parser.add_argument("--verbose", action="store_true")
    return parser


def _print_card(card: dict) -> None:
    tags = ", ".join(str(t) for t in card.get("tags") or [])
    print("\n==== 知识卡片 ====")
    print(card.get("title", ""))
    print(card.get("content", ""))
    if tags:
        print(f"[{tags}]")
    print("=================\n")


async def run(args) -> int:
    script_path = Path(args.script).expanduser()
    try:
        script = script_path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error(f"Cannot read script {script_path}: {e}")
        return 2
    if not script.strip():
        logger.error("Script file is empty")
        return 2

    device = args.input_device
    if isinstance(device, str) and device.isdigit():
        device = int(device)

    client = LiveSessionClient(
        args.server,
        script,
        on_connect=lambda: logger.info("Connected. Start speaking (Ctrl+C to stop)."),
        on_disconnect=lambda: logger.info("Disconnected."),
        on_error=lambda message: logger.error(message),
        on_transcription=lambda source, text: print(f"{'你' if source == 'input' else 'AI'}: {text}"),
        on_knowledge_card=_print_card,
        audio_output=not args.no_playback,
    )
    try:
        await client.connect()
    except LiveClientError:
        return 1

    try:
        client.start_recording(device=device)
        while True:
            await asyncio.sleep(1.0)
    except asyncio.CancelledError:
        pass
    finally:
        await client.disconnect()
    return 0


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Stopping...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
