"""
Sample-rate and channel conversion to the 16 kHz mono float32 format
expected by Whisper.

``SampleRateConverter`` works on a live stream: each audio callback hands
over one block and gets back the converted samples for exactly that block.
Filter memory and the interpolation phase are carried from one block to the
next in a ``ConverterState``, so no frames are lost or duplicated at block
boundaries.
"""

import logging
import threading
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional

import numpy as np
from scipy import signal as scipy_signal

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000

# Anti-aliasing cutoff as a fraction of the output rate (just below Nyquist)
_CUTOFF_RATIO = 0.45
_FILTER_ORDER = 8


@dataclass
class ConverterState:
    """
    Carry-over between consecutive ``convert`` calls of one stream.

    Attributes:
        filter_state: Low-pass filter memory (None when no filtering).
        position: Read position of the next output sample, in input samples
            relative to ``last_sample`` (index 0).
        last_sample: Final filtered sample of the previous block.
    """
    filter_state: Optional[np.ndarray] = None
    position: float = 1.0
    last_sample: float = 0.0


def to_mono(block: np.ndarray) -> np.ndarray:
    """Average all channels of a (frames, channels) block into one."""
    data = np.asarray(block, dtype=np.float32)
    if data.ndim == 1:
        return data
    if data.shape[1] == 1:
        return data[:, 0]
    return data.mean(axis=1, dtype=np.float32)


class SampleRateConverter:
    """
    Streaming converter from a device format to 16 kHz mono float32.

    One converter instance serves one stream. ``convert`` must be called
    once per incoming block and is not reentrant: a second call while one
    is running raises ``RuntimeError`` instead of corrupting the state.

    Example:
        >>> converter = SampleRateConverter(input_rate=48000, channels=2)
        >>> state = converter.new_state()
        >>> out = converter.convert(block, state)
    """

    def __init__(self, input_rate: int, channels: int = 1,
                 output_rate: int = TARGET_SAMPLE_RATE) -> None:
        if input_rate <= 0 or output_rate <= 0:
            raise ValueError("Sample rates must be positive")

        self.input_rate = int(input_rate)
        self.output_rate = int(output_rate)
        self.channels = channels
        self._step = self.input_rate / self.output_rate
        self._busy = threading.Lock()

        if self.input_rate > self.output_rate:
            cutoff = _CUTOFF_RATIO * self.output_rate
            self._sos: Optional[np.ndarray] = scipy_signal.butter(
                _FILTER_ORDER, cutoff, btype="low", fs=self.input_rate, output="sos"
            )
        else:
            self._sos = None

        logger.debug(
            f"Converter {self.input_rate}Hz x{channels} -> {self.output_rate}Hz mono "
            f"(filter={'on' if self._sos is not None else 'off'})"
        )

    @property
    def is_passthrough(self) -> bool:
        return self.input_rate == self.output_rate

    def new_state(self) -> ConverterState:
        """Create the carry-over state for a fresh stream."""
        state = ConverterState()
        if self._sos is not None:
            state.filter_state = np.zeros((self._sos.shape[0], 2), dtype=np.float64)
        return state

    def convert(self, block: np.ndarray, state: ConverterState) -> np.ndarray:
        """
        Convert one block of device audio.

        Args:
            block: Samples shaped (frames,) or (frames, channels).
            state: The stream's ``ConverterState``, updated in place.

        Returns:
            float32 mono samples at the output rate.

        Raises:
            RuntimeError: If called while another conversion is running.
        """
        if not self._busy.acquire(blocking=False):
            raise RuntimeError("SampleRateConverter.convert is not reentrant")
        try:
            mono = to_mono(block)
            if mono.size == 0:
                return np.zeros(0, dtype=np.float32)

            if self.is_passthrough:
                return mono.astype(np.float32, copy=True)

            data = mono.astype(np.float64)
            if self._sos is not None:
                data, state.filter_state = scipy_signal.sosfilt(
                    self._sos, data, zi=state.filter_state
                )
            return self._interpolate(data, state)
        finally:
            self._busy.release()

    def _interpolate(self, data: np.ndarray, state: ConverterState) -> np.ndarray:
        n = data.size
        if state.position > n:
            # Block too short to reach the next output sample
            state.position -= n
            state.last_sample = float(data[-1])
            return np.zeros(0, dtype=np.float32)

        count = int(np.floor((n - state.position) / self._step)) + 1
        positions = state.position + self._step * np.arange(count)
        extended = np.concatenate(([state.last_sample], data))
        out = np.interp(positions, np.arange(n + 1), extended)

        state.position = state.position + self._step * count - n
        state.last_sample = float(data[-1])
        return out.astype(np.float32)


def resample_to_target(audio: np.ndarray, sample_rate: int) -> np.ndarray:
    """
    Resample a complete mono signal to 16 kHz.

    Used for whole recordings read back from disk, where the full signal is
    available and a polyphase filter gives the best quality.
    """
    audio = np.asarray(audio, dtype=np.float32)
    if sample_rate == TARGET_SAMPLE_RATE or audio.size == 0:
        return audio
    frac = Fraction(TARGET_SAMPLE_RATE, int(sample_rate))
    logger.debug(f"Resampling from {sample_rate}Hz to {TARGET_SAMPLE_RATE}Hz")
    return scipy_signal.resample_poly(audio, frac.numerator, frac.denominator).astype(np.float32, copy=False)
