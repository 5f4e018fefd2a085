"""Tests for the local file transcription service."""

from unittest.mock import MagicMock

import pytest

from livescribe.exceptions import EmptyTranscriptionError
from livescribe.transcription.engine import InferenceEngine, TranscriptionResult
from livescribe.transcription.service import LocalTranscriptionService


@pytest.fixture
def engine():
    return MagicMock(spec=InferenceEngine)


class TestLocalTranscriptionService:
    """Tests for LocalTranscriptionService."""

    def test_transcribes_file(self, engine, tmp_path):
        path = tmp_path / "take.wav"
        path.write_bytes(b"RIFF")
        engine.transcribe_file.return_value = TranscriptionResult("こんにちは")

        text = LocalTranscriptionService(engine).transcribe(path, "ja")

        assert text == "こんにちは"
        engine.transcribe_file.assert_called_once_with(path, "ja")

    def test_accepts_string_path(self, engine, tmp_path):
        path = tmp_path / "take.wav"
        path.write_bytes(b"RIFF")
        engine.transcribe_file.return_value = TranscriptionResult("hi")

        assert LocalTranscriptionService(engine).transcribe(str(path), "auto") == "hi"

    def test_missing_file(self, engine, tmp_path):
        with pytest.raises(FileNotFoundError):
            LocalTranscriptionService(engine).transcribe(tmp_path / "missing.wav", "ja")
        engine.transcribe_file.assert_not_called()

    def test_empty_result(self, engine, tmp_path):
        path = tmp_path / "silence.wav"
        path.write_bytes(b"RIFF")
        engine.transcribe_file.return_value = TranscriptionResult("  ")

        with pytest.raises(EmptyTranscriptionError):
            LocalTranscriptionService(engine).transcribe(path, "ja")
