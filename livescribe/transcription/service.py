"""
File-based transcription services.

``TranscriptionService`` is the seam for anything that turns a recorded WAV
file into text, whether the local model or a remote provider. Callers wrap
``transcribe`` in ``with_retry`` the same way for every implementation.
"""

import logging
from pathlib import Path
from typing import Protocol, Union

from ..exceptions import EmptyTranscriptionError
from .engine import InferenceEngine

logger = logging.getLogger(__name__)


class TranscriptionService(Protocol):
    def transcribe(self, audio_path: Union[str, Path], language: str) -> str:
        """
        Transcribe a recorded audio file.

        Raises:
            TranscriptionError: Or a subclass, on failure. An empty result
                is reported as EmptyTranscriptionError.
        """
        ...


class LocalTranscriptionService:
    """
    ``TranscriptionService`` backed by the local ``InferenceEngine``.

    Example:
        >>> service = LocalTranscriptionService(engine)
        >>> text = service.transcribe(Path("recording.wav"), "ja")
    """

    def __init__(self, engine: InferenceEngine) -> None:
        self._engine = engine

    def transcribe(self, audio_path: Union[str, Path], language: str) -> str:
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise FileNotFoundError(f"Audio file not found: {audio_path}")

        logger.info(f"Starting transcription of '{audio_path}'")
        result = self._engine.transcribe_file(audio_path, language)
        if result.is_empty:
            raise EmptyTranscriptionError("No speech detected")

        logger.info(f"Transcription complete ({len(result.text)} chars)")
        return result.text
