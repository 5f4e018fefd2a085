"""
Serialized faster-whisper inference for LiveScribe.

One ``InferenceEngine`` owns at most one loaded model (an
``InferenceContext``). Every transcription, load and unload goes through the
engine's lock, so at most one decode runs at a time and a model is never
swapped out underneath a running decode.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
import soundfile as sf
from faster_whisper import WhisperModel

from ..audio.converter import TARGET_SAMPLE_RATE, resample_to_target, to_mono
from ..exceptions import (
    InferenceError,
    ModelLoadError,
    ModelNotReadyError,
    TranscriptionError,
)

logger = logging.getLogger(__name__)

# Sentinel language meaning "let the model detect it"
AUTO_LANGUAGE = "auto"

MAX_THREADS = 8
# Cores left free for the audio callback and the UI
RESERVED_CORES = 2


def thread_count(cpu_count: Optional[int] = None) -> int:
    """Return clamp(cpu_count - 2, 1, 8) for the inference backend."""
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    return max(1, min(MAX_THREADS, cpu_count - RESERVED_CORES))


def resolve_language(language: Optional[str]) -> Optional[str]:
    """Map the auto-detect sentinel to None; pass any other code through."""
    if not language or language == AUTO_LANGUAGE:
        return None
    return language


@dataclass(frozen=True)
class TranscriptionResult:
    """Text produced by one inference call."""
    text: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class InferenceContext:
    """
    One loaded Whisper model.

    Owned exclusively by an ``InferenceEngine``. ``close()`` drops the
    model so its native memory is released right away rather than whenever
    the engine happens to be collected.
    """

    def __init__(self, model: WhisperModel, model_dir: Path) -> None:
        self._model: Optional[WhisperModel] = model
        self.model_dir = model_dir

    @classmethod
    def create(
        cls,
        model_dir: Path,
        device: str = "cpu",
        compute_type: str = "int8",
        cpu_threads: Optional[int] = None,
    ) -> "InferenceContext":
        """
        Load the model stored in ``model_dir``.

        Raises:
            ModelLoadError: If faster-whisper cannot load the model.
        """
        threads = cpu_threads if cpu_threads is not None else thread_count()
        logger.info(f"Loading Whisper model from {model_dir} (device={device}, threads={threads})")
        try:
            model = WhisperModel(
                str(model_dir),
                device=device,
                compute_type=compute_type,
                cpu_threads=threads,
            )
        except Exception as e:
            raise ModelLoadError(f"Failed to load Whisper model from '{model_dir}': {e}") from e
        return cls(model, model_dir)

    @property
    def is_closed(self) -> bool:
        return self._model is None

    def decode(self, samples: np.ndarray, language: Optional[str]) -> str:
        """
        Run one complete decode over ``samples``.

        Greedy, temperature 0, and no text carried over from earlier calls,
        so repeated calls over a growing buffer are independent passes.

        Raises:
            InferenceError: If the model is closed or decoding fails.
        """
        if self._model is None:
            raise InferenceError("Inference context is closed")
        try:
            segments, info = self._model.transcribe(
                samples,
                language=language,
                beam_size=1,
                best_of=1,
                temperature=0.0,
                condition_on_previous_text=False,
                vad_filter=False,
                without_timestamps=True,
            )
            # Segments are produced lazily; decoding happens while iterating
            text = "".join(segment.text for segment in segments)
        except Exception as e:
            raise InferenceError(f"Decoding failed: {e}") from e

        logger.debug(f"Decoded language={info.language}, duration={info.duration:.2f}s")
        return text.strip()

    def close(self) -> None:
        if self._model is not None:
            self._model = None
            logger.info(f"Released Whisper model from {self.model_dir}")

    def __enter__(self) -> "InferenceContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class InferenceEngine:
    """
    Exclusive-access wrapper around one ``InferenceContext``.

    Callers issuing a transcription while another one runs block until it
    finishes. Loading and unloading take the same lock.

    Example:
        >>> engine = InferenceEngine()
        >>> engine.load(Path("~/models/base"))
        >>> result = engine.transcribe_full(samples, language="ja")
        >>> print(result.text)
    """

    def __init__(
        self,
        device: str = "cpu",
        compute_type: str = "int8",
        cpu_threads: Optional[int] = None,
    ) -> None:
        self.device = device
        self.compute_type = compute_type
        self.cpu_threads = cpu_threads if cpu_threads is not None else thread_count()

        self._lock = threading.Lock()
        self._context: Optional[InferenceContext] = None

    @property
    def is_loaded(self) -> bool:
        return self._context is not None

    @property
    def model_dir(self) -> Optional[Path]:
        context = self._context
        return context.model_dir if context is not None else None

    def load(self, model_dir: Path) -> None:
        """
        Load a model, replacing any loaded one.

        The old context is closed before the new one is created, so two
        models are never held at once. On failure no context remains.

        Raises:
            ModelLoadError: If the model fails to load.
        """
        with self._lock:
            if self._context is not None:
                self._context.close()
                self._context = None
            self._context = InferenceContext.create(
                model_dir,
                device=self.device,
                compute_type=self.compute_type,
                cpu_threads=self.cpu_threads,
            )
        logger.info(f"Whisper model ready: {model_dir}")

    def unload(self) -> None:
        """Release the loaded model, waiting for any running decode."""
        with self._lock:
            if self._context is not None:
                self._context.close()
                self._context = None

    def transcribe_full(
        self,
        samples: np.ndarray,
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        """
        Transcribe a complete 16 kHz mono sample sequence.

        A failing decode is logged and yields an empty result so that one
        bad pass does not end a session.

        Args:
            samples: float32 samples in [-1, 1].
            language: Language code, or None/"auto" to auto-detect.

        Raises:
            ModelNotReadyError: If no model is loaded.
        """
        audio = np.ascontiguousarray(samples, dtype=np.float32).reshape(-1)
        lang = resolve_language(language)

        with self._lock:
            context = self._context
            if context is None:
                raise ModelNotReadyError("Whisper model not loaded")

            start = time.monotonic()
            logger.debug(
                f"transcribe_full: {audio.size} samples "
                f"({audio.size / TARGET_SAMPLE_RATE:.2f}s audio), "
                f"lang={lang or 'auto'}, threads={self.cpu_threads}"
            )
            try:
                text = context.decode(audio, lang)
            except InferenceError as e:
                logger.error(f"Inference pass failed: {e}")
                return TranscriptionResult("")
            logger.debug(f"transcribe_full completed in {time.monotonic() - start:.3f}s")

        return TranscriptionResult(text)

    def transcribe_file(
        self,
        audio_path: Union[str, Path],
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        """
        Transcribe an audio file.

        The file is read with soundfile, reduced to mono and resampled to
        16 kHz before decoding.

        Raises:
            ModelNotReadyError: If no model is loaded.
            TranscriptionError: If the file cannot be read.
        """
        audio_path = Path(audio_path)
        if not self.is_loaded:
            raise ModelNotReadyError("Whisper model not loaded")

        try:
            audio_data, sample_rate = sf.read(audio_path, dtype=np.float32, always_2d=False)
        except Exception as e:
            raise TranscriptionError(f"Could not read audio file '{audio_path}': {e}") from e

        audio_data = resample_to_target(to_mono(audio_data), sample_rate)
        logger.debug(f"Loaded {audio_path}: {audio_data.size} samples at {TARGET_SAMPLE_RATE}Hz")
        return self.transcribe_full(audio_data, language)
