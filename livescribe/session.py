"""
Recording session controller for LiveScribe.

This module provides the ``DictationSession`` class that ties the components
together: it starts audio capture, runs streaming passes while the user
speaks, and produces the final transcript when the recording stops. It
implements a small state machine and reports everything through callbacks so
that any front end (terminal, GUI) can observe it.

Example:
    >>> session = DictationSession(AppConfig.load())
    >>> session.on_streaming_update = lambda c, h: print(c, "|", h)
    >>> session.prepare_model()
    >>> session.start()
    >>> # ... user speaks ...
    >>> text = session.stop()
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple

from .audio import AudioCapture
from .config import AppConfig
from .exceptions import (
    EmptyTranscriptionError,
    LiveScribeError,
    ModelNotReadyError,
    OperationCancelled,
    user_message,
)
from .retry import with_retry
from .transcription import (
    InferenceEngine,
    LocalTranscriptionService,
    ModelManager,
    ModelState,
    StreamingTranscriber,
    TranscriptionService,
    get_model,
)

logger = logging.getLogger(__name__)

# Number of finished transcripts kept in memory
HISTORY_LIMIT = 50


class SessionState(Enum):
    """
    States of the dictation state machine.

    State transitions:
        IDLE -> RECORDING (start)
        RECORDING -> TRANSCRIBING (stop)
        TRANSCRIBING -> IDLE (final transcript ready or failed)

        Any state -> IDLE (error or cancellation)
    """

    IDLE = auto()
    RECORDING = auto()
    TRANSCRIBING = auto()


@dataclass(frozen=True)
class TranscriptionRecord:
    """One finished transcript."""
    text: str
    duration: float
    provider: str
    date: datetime = field(default_factory=datetime.now)


class DictationSession:
    """
    Orchestrates capture, streaming transcription and the final pass.

    Callbacks:
        on_state_changed: Signature: (old: SessionState, new: SessionState) -> None
        on_level: Live input level. Signature: (level: float) -> None
        on_streaming_update: Signature: (confirmed: str, hypothesis: str) -> None
        on_streaming_cleared: Displayed streaming text should be cleared.
            Signature: () -> None
        on_final_text: Signature: (text: str) -> None
        on_model_state_change: Signature: (state: ModelState) -> None
        on_notice: Non-fatal conditions. Signature: (message: str) -> None
        on_error: Short user-facing message. Signature: (message: str) -> None
    """

    def __init__(
        self,
        config: AppConfig,
        capture: Optional[AudioCapture] = None,
        engine: Optional[InferenceEngine] = None,
        model_manager: Optional[ModelManager] = None,
        fallback_service: Optional[TranscriptionService] = None,
    ) -> None:
        self.config = config
        transcription = config.transcription

        self.engine = engine or InferenceEngine(
            device=transcription.device,
            compute_type=transcription.compute_type,
        )
        self.model_manager = model_manager or ModelManager(
            transcription.resolve_models_dir(),
            self.engine,
            retry_config=config.retry,
        )
        self.capture = capture or AudioCapture(config.audio)
        self.fallback_service = fallback_service
        self._local_service = LocalTranscriptionService(self.engine)

        self._state = SessionState.IDLE
        self._state_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._streamer: Optional[StreamingTranscriber] = None
        self._worker: Optional[threading.Thread] = None

        self.confirmed_text = ""
        self.hypothesis_text = ""
        self._history: Deque[TranscriptionRecord] = deque(maxlen=HISTORY_LIMIT)

        self.on_state_changed: Optional[Callable[[SessionState, SessionState], None]] = None
        self.on_level: Optional[Callable[[float], None]] = None
        self.on_streaming_update: Optional[Callable[[str, str], None]] = None
        self.on_streaming_cleared: Optional[Callable[[], None]] = None
        self.on_final_text: Optional[Callable[[str], None]] = None
        self.on_model_state_change: Optional[Callable[[ModelState], None]] = None
        self.on_notice: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

        self.capture.on_level = self._on_level
        self.capture.on_device_fallback = self._on_device_fallback
        self.model_manager.on_state_change = self._on_model_state

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> List[TranscriptionRecord]:
        """Finished transcripts, most recent first."""
        return list(self._history)

    def _set_state(self, new_state: SessionState) -> None:
        with self._state_lock:
            old_state = self._state
            if old_state == new_state:
                return
            self._state = new_state
            logger.info(f"State transition: {old_state.name} -> {new_state.name}")

        self._notify(self.on_state_changed, old_state, new_state)

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in session callback {getattr(callback, '__name__', callback)}: {e}")

    def _handle_error(self, error: Exception) -> None:
        """Log ``error``, return to IDLE and report a short message."""
        logger.error(f"Session error: {error}")
        self._set_state(SessionState.IDLE)
        self._notify(self.on_error, user_message(error))

    # ------------------------------------------------------------------
    # Model
    # ------------------------------------------------------------------

    def prepare_model(self, on_progress: Optional[Callable[[float], None]] = None) -> bool:
        """
        Download and load the configured model if needed.

        Returns:
            True when the model is ready, False if preparing it failed (the
            error has been reported through ``on_error``).
        """
        try:
            model = get_model(self.config.transcription.model)
        except ValueError as e:
            logger.error(str(e))
            self._notify(self.on_error, str(e))
            return False

        try:
            self.model_manager.ensure_ready(model, on_progress)
        except LiveScribeError as e:
            logger.error(f"Model preparation failed: {e}")
            self._notify(self.on_error, user_message(e))
            return False
        return True

    def _on_model_state(self, state: ModelState) -> None:
        self._notify(self.on_model_state_change, state)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def start(self, device_index: Optional[int] = None) -> bool:
        """
        Start recording and, if the model is ready, streaming passes.

        Returns:
            True if recording started.
        """
        if self._state != SessionState.IDLE:
            logger.warning(f"Cannot start recording in state {self._state.name}")
            return False

        self._cancel_event = threading.Event()
        self._clear_streaming_text()
        self._set_state(SessionState.RECORDING)

        try:
            self.capture.start(device_index)
        except LiveScribeError as e:
            self._handle_error(e)
            return False

        if self.config.streaming.enabled and self.model_manager.is_ready:
            self._streamer = StreamingTranscriber(
                self.engine,
                self.capture.sample_buffer_snapshot,
                on_update=self._on_streaming_update,
                language=self.config.transcription.language,
                config=self.config.streaming,
            )
            self._streamer.start()
        else:
            logger.info("Streaming transcription disabled for this session")

        return True

    def stop(self) -> Optional[str]:
        """
        Stop recording and produce the final transcript.

        Blocks until the final pass has finished; see ``stop_async``. If
        ``cancel`` is called while the final pass runs, its result is
        discarded and the session state is left to whatever came next.

        Returns:
            The final text, or None if nothing was transcribed.
        """
        if self._state != SessionState.RECORDING:
            return None

        # The event belongs to this recording; a later start() makes a new one
        cancel_event = self._cancel_event
        self._set_state(SessionState.TRANSCRIBING)
        # Joining waits for an in-flight streaming pass, freeing the engine
        self._stop_streaming()

        recording = self.capture.stop()
        if recording is None:
            logger.warning("No audio captured")
            self._finish_transcribing(cancel_event)
            return None

        audio_path, duration = recording
        try:
            text, provider = self._final_transcription(audio_path, cancel_event)
        except OperationCancelled:
            logger.info("Final transcription cancelled")
            return None
        except EmptyTranscriptionError:
            logger.warning("Empty transcription result")
            if self._finish_transcribing(cancel_event):
                self._notify(self.on_notice, "No speech was detected.")
            return None
        except Exception as e:
            logger.error(f"Session error: {e}")
            if self._finish_transcribing(cancel_event):
                self._notify(self.on_error, user_message(e))
            return None
        finally:
            self.capture.cleanup(audio_path)

        record = TranscriptionRecord(text=text, duration=duration, provider=provider)
        if not self._finish_transcribing(cancel_event, record):
            logger.info("Final transcript discarded after cancel")
            return None

        self._notify(self.on_final_text, text)
        logger.info(f"Transcription ready: {text[:50]}...")
        return text

    def _finish_transcribing(
        self,
        cancel_event: threading.Event,
        record: Optional[TranscriptionRecord] = None,
    ) -> bool:
        """
        Move TRANSCRIBING -> IDLE for the recording owning ``cancel_event``.

        Returns False, changing nothing, when that recording was cancelled
        in the meantime.
        """
        with self._state_lock:
            if cancel_event.is_set() or self._state != SessionState.TRANSCRIBING:
                return False
            if record is not None:
                self._history.appendleft(record)
            self._state = SessionState.IDLE
            logger.info("State transition: TRANSCRIBING -> IDLE")

        self._notify(self.on_state_changed, SessionState.TRANSCRIBING, SessionState.IDLE)
        return True

    def stop_async(self) -> threading.Thread:
        """Run ``stop`` in a background thread and return it."""
        self._worker = threading.Thread(
            target=self.stop,
            name="FinalTranscription",
            daemon=True
        )
        self._worker.start()
        return self._worker

    def cancel(self) -> None:
        """Abort the recording or the pending final pass without a result."""
        if self._state == SessionState.IDLE:
            return
        self._cancel_event.set()
        self._stop_streaming()
        if self.capture.is_recording:
            self.capture.cancel()
        self._clear_streaming_text()
        self._set_state(SessionState.IDLE)
        logger.info("Session cancelled")

    def toggle(self) -> None:
        """Start when idle, stop (in the background) when recording."""
        if self._state == SessionState.IDLE:
            self.start()
        elif self._state == SessionState.RECORDING:
            self.stop_async()

    def _final_transcription(self, audio_path: Path, cancel_event: threading.Event) -> Tuple[str, str]:
        language = self.config.transcription.language
        if self.model_manager.is_ready:
            service: TranscriptionService = self._local_service
            provider = "local"
        elif self.fallback_service is not None:
            service = self.fallback_service
            provider = type(self.fallback_service).__name__
        else:
            raise ModelNotReadyError("No transcription backend available")

        text = with_retry(
            lambda: service.transcribe(audio_path, language),
            max_attempts=self.config.retry.max_attempts,
            initial_delay=self.config.retry.initial_delay,
            cancel_event=cancel_event,
        )
        text = text.strip()
        if not text:
            raise EmptyTranscriptionError("No speech detected")
        return text, provider

    def _stop_streaming(self) -> None:
        if self._streamer is not None:
            self._streamer.stop()
            self._streamer = None

    # ------------------------------------------------------------------
    # Callbacks from components
    # ------------------------------------------------------------------

    def _on_level(self, level: float) -> None:
        self._notify(self.on_level, level)

    def _on_device_fallback(self, requested_index: int) -> None:
        self._notify(
            self.on_notice,
            f"Input device {requested_index} is not available, using the system default."
        )

    def _on_streaming_update(self, confirmed: str, hypothesis: str) -> None:
        if self._state != SessionState.RECORDING:
            return
        self.confirmed_text = confirmed
        self.hypothesis_text = hypothesis
        self._notify(self.on_streaming_update, confirmed, hypothesis)

    def _clear_streaming_text(self) -> None:
        self.confirmed_text = ""
        self.hypothesis_text = ""
        self._notify(self.on_streaming_cleared)

    def close(self) -> None:
        """Cancel any activity and release the model."""
        self.cancel()
        self.model_manager.unload()

    def __enter__(self) -> "DictationSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
