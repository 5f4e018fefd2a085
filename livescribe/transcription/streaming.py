"""
Incremental transcription while recording is still running.

Every streaming pass re-decodes the whole buffer captured so far. Passes
over the same speech come back with different punctuation and spacing, so
consecutive outputs are compared on *normalized* text (punctuation and
whitespace removed). The part both passes agree on becomes *confirmed* text,
which is never retracted for the rest of the session; the remainder is the
*hypothesis*, which may still change.
"""

import logging
import threading
import unicodedata
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from ..config import StreamingConfig
from ..exceptions import ModelNotReadyError
from .engine import InferenceEngine

logger = logging.getLogger(__name__)

# Boilerplate Whisper produces on silence or noise
HALLUCINATION_PHRASES = frozenset({
    "ご視聴ありがとうございました",
    "ありがとうございました",
    "チャンネル登録お願いします",
    "お疲れ様でした",
    "字幕をご覧いただけます",
    "Thank you for watching",
    "Thanks for watching",
    "Subscribe",
})

# Sentence punctuation stripped before matching hallucinations
_HALLUCINATION_TRIM = "。、.!！"

UpdateCallback = Callable[[str, str], None]


def _is_separator(ch: str) -> bool:
    """True for whitespace and Unicode punctuation (categories P*)."""
    return ch.isspace() or unicodedata.category(ch).startswith("P")


def normalize(text: str) -> str:
    """Remove punctuation and whitespace."""
    return "".join(ch for ch in text if not _is_separator(ch))


def is_hallucination(text: str) -> bool:
    """Exact match against ``HALLUCINATION_PHRASES`` after trimming punctuation."""
    trimmed = text.strip().strip(_HALLUCINATION_TRIM)
    return trimmed in HALLUCINATION_PHRASES


def common_prefix_length(a: str, b: str) -> int:
    length = 0
    for ca, cb in zip(a, b):
        if ca != cb:
            break
        length += 1
    return length


def split_offset(text: str, normalized_length: int) -> int:
    """
    Map a normalized character count onto an index into ``text``.

    Walks ``text`` until ``normalized_length`` non-separator characters have
    been passed, then extends over any directly following punctuation and
    whitespace so the split lands on a natural boundary.
    """
    index = 0
    count = 0
    while index < len(text) and count < normalized_length:
        if not _is_separator(text[index]):
            count += 1
        index += 1
    while index < len(text) and _is_separator(text[index]):
        index += 1
    return index


def split_confirmed_hypothesis(
    prev_text: str,
    current_text: str,
    previous_confirmed_length: int,
) -> Tuple[str, str, int]:
    """
    Split ``current_text`` into confirmed and hypothesis parts.

    Returns:
        (confirmed, hypothesis, confirmed_length), where confirmed_length is
        the normalized length actually covered by ``confirmed`` (at most the
        normalized length of ``current_text``).
    """
    prev_norm = normalize(prev_text)
    curr_norm = normalize(current_text)

    common = common_prefix_length(prev_norm, curr_norm)
    # Only grow confirmed, never shrink, but stay within the current text
    target = max(common, previous_confirmed_length)
    effective = min(target, len(curr_norm))

    offset = split_offset(current_text, effective)
    confirmed = current_text[:offset]
    hypothesis = current_text[offset:].strip()
    return confirmed, hypothesis, effective


@dataclass
class StreamingState:
    """
    Reconciler memory for one recording session.

    ``confirmed_normalized_length`` never decreases until ``reset()``.
    """
    previous_raw_text: str = ""
    confirmed_normalized_length: int = 0
    confirmed_text: str = ""
    last_sample_count: int = 0

    def reset(self) -> None:
        self.previous_raw_text = ""
        self.confirmed_normalized_length = 0
        self.confirmed_text = ""
        self.last_sample_count = 0


@dataclass(frozen=True)
class StreamingUpdate:
    confirmed: str
    hypothesis: str


class StreamingReconciler:
    """
    Turns successive full-buffer transcriptions into confirmed/hypothesis
    pairs and decides when the next pass is worth running.

    Example:
        >>> reconciler = StreamingReconciler()
        >>> reconciler.apply("今日は")
        StreamingUpdate(confirmed='', hypothesis='今日は')
        >>> reconciler.apply("今日はいい天気")
        StreamingUpdate(confirmed='今日は', hypothesis='いい天気')
    """

    def __init__(
        self,
        min_initial_samples: int = 24000,
        min_new_samples: int = 8000,
    ) -> None:
        self.min_initial_samples = min_initial_samples
        self.min_new_samples = min_new_samples
        self.state = StreamingState()

    @classmethod
    def from_config(cls, config: StreamingConfig) -> "StreamingReconciler":
        return cls(
            min_initial_samples=config.min_initial_samples,
            min_new_samples=config.min_new_samples,
        )

    def reset(self) -> None:
        self.state.reset()

    def should_transcribe(self, sample_count: int) -> bool:
        """
        Gate inference passes.

        The first pass waits for ``min_initial_samples``; later passes need
        at least ``min_new_samples`` more than the previous pass saw.
        """
        last = self.state.last_sample_count
        if last == 0 and sample_count < self.min_initial_samples:
            return False
        return sample_count > last + self.min_new_samples

    def mark_transcribed(self, sample_count: int) -> None:
        self.state.last_sample_count = sample_count

    def apply(self, current_text: str) -> Optional[StreamingUpdate]:
        """
        Reconcile one raw pass result.

        Empty and hallucinated passes are discarded: ``None`` is returned
        and the state is left as it was.
        """
        current_text = current_text.strip()
        if not current_text:
            return None
        if is_hallucination(current_text):
            logger.info(f"Filtered hallucination: {current_text!r}")
            return None

        state = self.state
        confirmed, hypothesis, covered = split_confirmed_hypothesis(
            state.previous_raw_text,
            current_text,
            state.confirmed_normalized_length,
        )

        if covered < state.confirmed_normalized_length:
            # The pass came back shorter than what is already confirmed;
            # keep showing the confirmed text rather than deleting any of it
            confirmed, hypothesis = state.confirmed_text, ""
        else:
            state.confirmed_normalized_length = covered
            state.confirmed_text = confirmed

        state.previous_raw_text = current_text
        return StreamingUpdate(confirmed=confirmed, hypothesis=hypothesis)


class StreamingTranscriber:
    """
    Background loop running streaming passes during a recording.

    Every ``interval_s`` the loop takes a snapshot of the sample buffer,
    asks the reconciler whether a pass is due, runs the engine over the full
    snapshot and emits the reconciled text through ``on_update``.

    Cancellation is checked before every snapshot and after every inference
    call; a running inference call is allowed to finish, but its result is
    dropped once cancellation has been requested.

    Example:
        >>> streamer = StreamingTranscriber(engine, capture.sample_buffer_snapshot,
        ...                                 on_update=print, language="ja")
        >>> streamer.start()
        >>> streamer.stop()
    """

    def __init__(
        self,
        engine: InferenceEngine,
        samples_provider: Callable[[], np.ndarray],
        on_update: UpdateCallback,
        language: Optional[str] = None,
        config: Optional[StreamingConfig] = None,
    ) -> None:
        self._engine = engine
        self._samples_provider = samples_provider
        self._on_update = on_update
        self._language = language
        self._config = config or StreamingConfig()

        self.reconciler = StreamingReconciler.from_config(self._config)
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.passes = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start a fresh streaming loop, stopping any previous one first."""
        self.stop()
        self.reconciler.reset()
        self.passes = 0
        self._cancel = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._cancel,),
            daemon=True,
            name="StreamingTranscription"
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Cancel the loop and wait for it to exit.

        Waits for an in-flight inference call to return, so the engine is
        free once this returns (unless ``timeout`` expired first).
        """
        self._cancel.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Streaming thread still running after stop timeout")
        self._thread = None

    def _run(self, cancel: threading.Event) -> None:
        logger.debug("Streaming task started")
        while not cancel.wait(self._config.interval_s):
            try:
                self._step(cancel)
            except ModelNotReadyError:
                logger.warning("Streaming stopped: model not loaded")
                break
        logger.debug(f"Streaming task ended after {self.passes} passes")

    def _step(self, cancel: threading.Event) -> None:
        samples = self._samples_provider()
        count = int(samples.size)
        if not self.reconciler.should_transcribe(count):
            return

        logger.debug(
            f"Streaming pass over {count} samples "
            f"(+{count - self.reconciler.state.last_sample_count} new)"
        )
        self.reconciler.mark_transcribed(count)

        result = self._engine.transcribe_full(samples, self._language)
        self.passes += 1
        if cancel.is_set():
            return

        update = self.reconciler.apply(result.text)
        if update is None:
            return

        logger.debug(f"confirmed={update.confirmed!r} hypothesis={update.hypothesis!r}")
        try:
            self._on_update(update.confirmed, update.hypothesis)
        except Exception as e:
            logger.warning(f"Error in streaming update callback: {e}")
