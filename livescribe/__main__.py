#!/usr/bin/env python3
"""
Entry point for running LiveScribe as a module.

This allows the application to be run with:
    python -m livescribe

The main() function is also used as the entry point for the console script
defined in pyproject.toml. It records from the microphone until Enter is
pressed, shows the live transcript on one terminal line, and prints the
final transcript at the end.
"""

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("faster_whisper").setLevel(logging.INFO if verbose else logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="livescribe",
        description="Live speech-to-text with a local Whisper model.",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to the JSON config file")
    parser.add_argument("--model", default=None,
                        help="Model id from the catalog (see --list-models)")
    parser.add_argument("--language", default=None,
                        help="Language code such as 'ja' or 'en', or 'auto'")
    parser.add_argument("--device", type=int, default=None,
                        help="Input device index (see --list-devices)")
    parser.add_argument("--no-streaming", action="store_true",
                        help="Only transcribe once recording stops")
    parser.add_argument("--list-devices", action="store_true",
                        help="List audio input devices and exit")
    parser.add_argument("--list-models", action="store_true",
                        help="List available models and exit")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    return parser


class _TerminalView:
    """Renders session callbacks on a single, rewritten terminal line."""

    def __init__(self, stream=sys.stdout) -> None:
        self._stream = stream
        self._lock = threading.Lock()
        self._width = 0

    def _render(self, text: str) -> None:
        with self._lock:
            padding = max(0, self._width - len(text))
            self._stream.write("\r" + text + " " * padding)
            self._stream.flush()
            self._width = len(text)

    def progress(self, fraction: float) -> None:
        if fraction <= 0.0:
            self._render("Downloading model...")
        else:
            self._render(f"Downloading model... {fraction * 100:5.1f}%")

    def streaming(self, confirmed: str, hypothesis: str) -> None:
        self._render(f"{confirmed}[{hypothesis}]" if hypothesis else confirmed)

    def clear(self) -> None:
        self._render("")

    def line(self, text: str) -> None:
        with self._lock:
            if self._width:
                self._stream.write("\n")
            self._stream.write(text + "\n")
            self._stream.flush()
            self._width = 0


def _list_devices() -> int:
    from .audio import AudioDeviceManager
    from .exceptions import AudioDeviceError

    try:
        manager = AudioDeviceManager()
    except AudioDeviceError as e:
        print(f"Could not list devices: {e}", file=sys.stderr)
        return 1
    for device in manager.get_input_devices():
        print(f"{device.index:3d}  {device}  ({device.channels} ch, {device.default_sample_rate:.0f} Hz)")
    return 0


def _list_models() -> int:
    from .transcription import MODEL_CATALOG

    for model in MODEL_CATALOG.values():
        print(f"{model.id:16s} {model.display_name}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Application entry point.

    Returns:
        int: Exit code (0 for success, non-zero for errors)
    """
    from . import __version__

    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if args.list_models:
        return _list_models()
    if args.list_devices:
        return _list_devices()

    from .config import AppConfig
    from .exceptions import ConfigurationError
    from .session import DictationSession

    try:
        config = AppConfig.load(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.model:
        config.transcription.model = args.model
    if args.language:
        config.transcription.language = args.language
    if args.device is not None:
        config.audio.device_index = args.device
    if args.no_streaming:
        config.streaming.enabled = False

    logger.info(f"LiveScribe v{__version__} starting")

    view = _TerminalView()
    errors: List[str] = []

    def on_error(message: str) -> None:
        errors.append(message)
        view.line(f"Error: {message}")

    with DictationSession(config) as session:
        session.on_streaming_update = view.streaming
        session.on_streaming_cleared = view.clear
        session.on_notice = lambda message: view.line(message)
        session.on_error = on_error

        if not session.prepare_model(on_progress=view.progress):
            return 1
        view.line(f"Model '{config.transcription.model}' ready.")

        if not session.start():
            return 1
        view.line("Recording... press Enter to stop.")

        try:
            input()
        except (KeyboardInterrupt, EOFError):
            session.cancel()
            view.line("Cancelled.")
            return 130

        view.line("Transcribing...")
        text = session.stop()

    if text:
        view.line(text)
        return 0
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
