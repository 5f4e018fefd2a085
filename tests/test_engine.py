"""Tests for the inference engine with faster-whisper mocked out."""

import threading
import time
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import numpy as np
import pytest
import soundfile as sf

from livescribe.exceptions import ModelLoadError, ModelNotReadyError, TranscriptionError
from livescribe.transcription.engine import (
    InferenceEngine,
    TranscriptionResult,
    resolve_language,
    thread_count,
)

INFO = SimpleNamespace(language="en", duration=1.0)


def _segments(*texts):
    return [SimpleNamespace(text=text) for text in texts]


@pytest.fixture
def whisper_model():
    with patch("livescribe.transcription.engine.WhisperModel") as model_class:
        model_class.return_value.transcribe.return_value = (_segments(" Hello", " world."), INFO)
        yield model_class


@pytest.fixture
def engine(whisper_model, tmp_path):
    engine = InferenceEngine(cpu_threads=2)
    engine.load(tmp_path)
    return engine


class TestHelpers:

    @pytest.mark.parametrize("cpus, expected", [(1, 1), (2, 1), (3, 1), (4, 2), (10, 8), (64, 8)])
    def test_thread_count(self, cpus, expected):
        assert thread_count(cpus) == expected

    def test_resolve_language(self):
        assert resolve_language("auto") is None
        assert resolve_language(None) is None
        assert resolve_language("") is None
        assert resolve_language("ja") == "ja"

    def test_empty_result(self):
        assert TranscriptionResult("  ").is_empty
        assert not TranscriptionResult("hi").is_empty


class TestInferenceEngine:
    """Tests for InferenceEngine."""

    def test_not_loaded(self):
        engine = InferenceEngine()
        assert not engine.is_loaded
        with pytest.raises(ModelNotReadyError):
            engine.transcribe_full(np.zeros(16000, dtype=np.float32))

    def test_load_passes_settings(self, whisper_model, tmp_path):
        engine = InferenceEngine(device="cpu", compute_type="int8", cpu_threads=3)
        engine.load(tmp_path)

        whisper_model.assert_called_once_with(
            str(tmp_path), device="cpu", compute_type="int8", cpu_threads=3
        )
        assert engine.is_loaded
        assert engine.model_dir == tmp_path

    def test_load_failure(self, whisper_model, tmp_path):
        whisper_model.side_effect = RuntimeError("unsupported model")
        engine = InferenceEngine()

        with pytest.raises(ModelLoadError):
            engine.load(tmp_path)
        assert not engine.is_loaded

    def test_reload_replaces_context(self, whisper_model, engine, tmp_path):
        other = tmp_path / "other"
        engine.load(other)

        assert engine.model_dir == other
        assert whisper_model.call_count == 2

    def test_transcribe_full_decoding_options(self, whisper_model, engine):
        result = engine.transcribe_full(np.zeros(16000, dtype=np.float32), language="auto")

        assert result.text == "Hello world."
        args, kwargs = whisper_model.return_value.transcribe.call_args
        assert args[0].dtype == np.float32
        assert kwargs["language"] is None
        assert kwargs["beam_size"] == 1
        assert kwargs["temperature"] == 0.0
        assert kwargs["condition_on_previous_text"] is False
        assert kwargs["vad_filter"] is False

    def test_explicit_language(self, whisper_model, engine):
        engine.transcribe_full(np.zeros(1600, dtype=np.float32), language="ja")
        assert whisper_model.return_value.transcribe.call_args.kwargs["language"] == "ja"

    def test_decode_failure_yields_empty_result(self, whisper_model, engine):
        whisper_model.return_value.transcribe.side_effect = RuntimeError("decoder crashed")

        result = engine.transcribe_full(np.zeros(16000, dtype=np.float32))

        assert result.is_empty
        assert engine.is_loaded

    def test_failure_while_iterating_segments(self, whisper_model, engine):
        def broken_segments():
            yield SimpleNamespace(text="partial")
            raise RuntimeError("out of memory")

        whisper_model.return_value.transcribe.return_value = (broken_segments(), INFO)

        assert engine.transcribe_full(np.zeros(16000, dtype=np.float32)).is_empty

    def test_unload(self, engine):
        engine.unload()
        assert not engine.is_loaded
        with pytest.raises(ModelNotReadyError):
            engine.transcribe_full(np.zeros(16000, dtype=np.float32))

    def test_calls_are_serialized(self, whisper_model, engine):
        active = 0
        peak = 0
        counter_lock = threading.Lock()

        def slow_transcribe(audio, **kwargs):
            nonlocal active, peak
            with counter_lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with counter_lock:
                active -= 1
            return _segments("ok"), INFO

        whisper_model.return_value.transcribe.side_effect = slow_transcribe
        threads = [
            threading.Thread(target=engine.transcribe_full, args=(np.zeros(1600, dtype=np.float32),))
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert peak == 1
        assert whisper_model.return_value.transcribe.call_count == 4

    def test_unload_waits_for_running_decode(self, whisper_model, engine):
        started = threading.Event()
        release = threading.Event()
        results = []

        def blocking_transcribe(audio, **kwargs):
            started.set()
            release.wait(2.0)
            return _segments("done"), INFO

        whisper_model.return_value.transcribe.side_effect = blocking_transcribe
        worker = threading.Thread(
            target=lambda: results.append(engine.transcribe_full(np.zeros(1600, dtype=np.float32)))
        )
        worker.start()
        assert started.wait(2.0)

        unloader = threading.Thread(target=engine.unload)
        unloader.start()
        time.sleep(0.05)
        assert engine.is_loaded

        release.set()
        worker.join()
        unloader.join()

        assert results[0].text == "done"
        assert not engine.is_loaded


class TestTranscribeFile:
    """Tests for InferenceEngine.transcribe_file."""

    def test_resamples_file_to_16k(self, whisper_model, engine, tmp_path):
        path = tmp_path / "clip.wav"
        sf.write(str(path), np.zeros((8000, 2), dtype=np.float32), 8000)

        result = engine.transcribe_file(path, "en")

        audio = whisper_model.return_value.transcribe.call_args.args[0]
        assert audio.ndim == 1
        assert audio.size == 16000
        assert result.text == "Hello world."

    def test_unreadable_file(self, engine, tmp_path):
        path = tmp_path / "broken.wav"
        path.write_bytes(b"not audio")

        with pytest.raises(TranscriptionError):
            engine.transcribe_file(path)

    def test_requires_loaded_model(self, tmp_path):
        with pytest.raises(ModelNotReadyError):
            InferenceEngine().transcribe_file(Path(tmp_path / "any.wav"))
