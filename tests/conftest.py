"""Shared fixtures for the LiveScribe test suite."""

import sys
import threading
from pathlib import Path
from typing import List, Optional
from unittest.mock import MagicMock

import numpy as np
import pytest

try:
    import sounddevice  # noqa: F401
except OSError:
    # PortAudio is missing on this machine; every test patches the calls it needs
    _sd_mock = MagicMock()
    _sd_mock.PortAudioError = type("PortAudioError", (Exception,), {})
    sys.modules["sounddevice"] = _sd_mock


class FakeEngine:
    """Stands in for InferenceEngine in model manager and session tests."""

    def __init__(self, texts: Optional[List[str]] = None) -> None:
        self.events: List[str] = []
        self.loaded_dir: Optional[Path] = None
        self.live_contexts = 0
        self.max_live_contexts = 0
        self.load_error: Optional[Exception] = None
        self.texts = list(texts or [])
        self.calls: List[int] = []
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self.loaded_dir is not None

    def load(self, model_dir: Path) -> None:
        if self.loaded_dir is not None:
            self.unload()
        if self.load_error is not None:
            self.events.append(f"load-failed:{model_dir.name}")
            raise self.load_error
        self.live_contexts += 1
        self.max_live_contexts = max(self.max_live_contexts, self.live_contexts)
        self.loaded_dir = model_dir
        self.events.append(f"load:{model_dir.name}")

    def unload(self) -> None:
        if self.loaded_dir is not None:
            self.events.append(f"unload:{self.loaded_dir.name}")
            self.live_contexts -= 1
        self.loaded_dir = None

    def transcribe_full(self, samples, language=None):
        from livescribe.transcription.engine import TranscriptionResult

        with self._lock:
            self.calls.append(int(np.asarray(samples).size))
            text = self.texts.pop(0) if self.texts else ""
        return TranscriptionResult(text)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def models_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def sine_48k():
    """One second of a 440 Hz tone at 48 kHz."""
    t = np.arange(48000) / 48000.0
    return (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
