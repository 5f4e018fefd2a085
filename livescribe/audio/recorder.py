"""
Real-time audio capture for LiveScribe.

Opens the input device at its native format, converts every callback block
to 16 kHz mono float32, meters the level, and hands the converted samples to
both the session's ``SampleBuffer`` and a 16-bit PCM WAV recording file.
"""

import atexit
import logging
import queue
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Set, Tuple

import numpy as np
import sounddevice as sd
import soundfile as sf

from ..config import AudioConfig
from ..exceptions import (
    AudioDeviceError,
    AudioRecordingError,
    DeviceSelectionFailedError,
)
from .buffer import SampleBuffer
from .converter import TARGET_SAMPLE_RATE, ConverterState, SampleRateConverter, to_mono
from .devices import AudioDeviceManager, DeviceResolution

logger = logging.getLogger(__name__)

# Global registry for tracking temp files across all AudioCapture instances
# This enables cleanup on exit even after crashes
_temp_file_registry: Set[Path] = set()
_temp_file_lock = threading.Lock()

# Fallback rate when the device cannot be queried
_FALLBACK_SAMPLE_RATE = 44100

# How long stop() waits for queued blocks to reach the WAV file
_WRITER_JOIN_TIMEOUT_S = 5.0


def _cleanup_temp_files() -> None:
    """Remove any recording files still registered at interpreter exit."""
    with _temp_file_lock:
        for temp_path in list(_temp_file_registry):
            try:
                if temp_path.exists():
                    temp_path.unlink()
                    logger.debug(f"Cleaned up temp file on exit: {temp_path}")
            except OSError as e:
                logger.warning(f"Failed to clean up temp file {temp_path}: {e}")
        _temp_file_registry.clear()


atexit.register(_cleanup_temp_files)


def register_temp_file(temp_path: Path) -> None:
    with _temp_file_lock:
        _temp_file_registry.add(temp_path)


def unregister_temp_file(temp_path: Path) -> None:
    """
    Remove a recording file from the exit cleanup registry.

    Call this after a recording has been processed and deleted, or handed
    over to something that now owns it.
    """
    with _temp_file_lock:
        _temp_file_registry.discard(temp_path)


def _remove_file(path: Path) -> None:
    try:
        if path.exists():
            path.unlink()
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
    unregister_temp_file(path)


@dataclass
class RecordingSession:
    """
    State of one recording, from start() to stop() or cancel().

    Attributes:
        start_time: Wall-clock start (time.time()).
        path: The WAV file being written.
        sample_buffer: Converted 16 kHz samples captured so far.
        device_index: Device that was opened (None = system default).
        device_sample_rate: Native rate the device runs at.
        used_fallback_device: True if the requested device was unavailable.
    """
    start_time: float
    path: Path
    sample_buffer: SampleBuffer
    device_index: Optional[int] = None
    device_sample_rate: int = TARGET_SAMPLE_RATE
    used_fallback_device: bool = False

    @property
    def duration(self) -> float:
        return time.time() - self.start_time


class AudioCapture:
    """
    Microphone capture with streaming conversion and level metering.

    The sounddevice callback only converts, meters and appends; the WAV file
    is written by a separate writer thread and the level is polled by another
    thread, so the callback never waits on disk or on listeners.

    Callbacks:
        on_level: Called ~30 times per second with the level in [0, 1].
            Signature: (level: float) -> None
        on_device_fallback: Called when the requested device was not
            available and the system default is used instead.
            Signature: (requested_index: int) -> None

    Example:
        >>> capture = AudioCapture()
        >>> capture.on_level = lambda level: print(f"{level:.2f}")
        >>> session = capture.start()
        >>> samples = capture.sample_buffer_snapshot()
        >>> path, duration = capture.stop()
    """

    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        device_manager_factory: Callable[[], AudioDeviceManager] = AudioDeviceManager,
    ) -> None:
        self._config = config or AudioConfig()
        self._device_manager_factory = device_manager_factory

        self._session: Optional[RecordingSession] = None
        self._stream: Any = None
        self._converter: Optional[SampleRateConverter] = None
        self._converter_state: Optional[ConverterState] = None
        self._buffer = SampleBuffer()

        self._level_lock = threading.Lock()
        self._level = 0.0
        self._raw_rms = 0.0

        self._write_queue: "queue.Queue[Optional[np.ndarray]]" = queue.Queue()
        self._writer_thread: Optional[threading.Thread] = None
        self._write_error: Optional[Exception] = None

        self._poll_thread: Optional[threading.Thread] = None
        self._stop_polling = threading.Event()

        self.on_level: Optional[Callable[[float], None]] = None
        self.on_device_fallback: Optional[Callable[[int], None]] = None

    @property
    def is_recording(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    def current_level(self) -> float:
        """Most recent level in [0, 1], 0.0 when not recording."""
        with self._level_lock:
            return self._level

    def raw_rms(self) -> float:
        with self._level_lock:
            return self._raw_rms

    def sample_buffer_snapshot(self) -> np.ndarray:
        """Copy of the 16 kHz mono samples captured so far."""
        return self._buffer.snapshot()

    def sample_count(self) -> int:
        return len(self._buffer)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(self, device_index: Optional[int] = None) -> RecordingSession:
        """
        Start capturing from ``device_index`` (or the configured device).

        Returns:
            The new RecordingSession.

        Raises:
            AudioRecordingError: If a recording is active, the output file
                cannot be created, or the input stream fails to start.
            DeviceSelectionFailedError: If the chosen device rejects the
                stream settings.
        """
        if self._session is not None:
            raise AudioRecordingError("Recording already active")

        requested = device_index if device_index is not None else self._config.device_index
        resolution = self._resolve_device(requested)
        if resolution.used_fallback and requested is not None and self.on_device_fallback:
            try:
                self.on_device_fallback(requested)
            except Exception as e:
                logger.warning(f"Error in on_device_fallback callback: {e}")

        sample_rate, channels = self._device_format(resolution.device_index)

        self._buffer.clear()
        self._set_level(0.0, 0.0)
        self._write_error = None

        path, sound_file = self._open_output_file()
        self._converter = SampleRateConverter(sample_rate, channels)
        self._converter_state = self._converter.new_state()
        # From here on the writer thread owns the file and closes it
        self._start_writer(sound_file)

        try:
            self._stream = sd.InputStream(
                samplerate=sample_rate,
                channels=channels,
                device=resolution.device_index,
                dtype="float32",
                blocksize=self._config.blocksize,
                callback=self._on_audio,
            )
            self._stream.start()
        except Exception as e:
            logger.error(f"Failed to start input stream: {e}")
            self._teardown_stream()
            if self._stop_writer():
                _remove_file(path)
            raise AudioRecordingError(f"Recording failed: {e}") from e

        self._session = RecordingSession(
            start_time=time.time(),
            path=path,
            sample_buffer=self._buffer,
            device_index=resolution.device_index,
            device_sample_rate=sample_rate,
            used_fallback_device=resolution.used_fallback,
        )
        self._start_level_poller()

        logger.info(
            f"Started recording (device={resolution.device_index}, "
            f"rate={sample_rate}Hz, channels={channels}) -> {path}"
        )
        return self._session

    def _resolve_device(self, requested: Optional[int]) -> DeviceResolution:
        try:
            manager = self._device_manager_factory()
        except AudioDeviceError as e:
            logger.warning(f"Could not enumerate devices, using system default: {e}")
            return DeviceResolution(device_index=None, used_fallback=requested is not None)
        if not manager.has_devices():
            logger.warning("No input devices enumerated, using system default")
            return DeviceResolution(device_index=None, used_fallback=requested is not None)
        return manager.resolve(requested)

    def _device_format(self, device_index: Optional[int]) -> Tuple[int, int]:
        """Return (sample_rate, channels) to open the device with."""
        try:
            device_info = sd.query_devices(device_index, 'input')
            sample_rate = int(device_info['default_samplerate'])
            max_channels = int(device_info.get('max_input_channels', 1))
        except Exception as e:
            if device_index is not None:
                raise DeviceSelectionFailedError(
                    f"Could not query input device {device_index}: {e}"
                ) from e
            logger.warning(f"Could not query default device: {e}")
            return _FALLBACK_SAMPLE_RATE, 1

        if max_channels < 1:
            raise DeviceSelectionFailedError(f"Device {device_index} has no input channels")
        # Open mono; the device or host API downmixes
        channels = 1

        if device_index is not None:
            try:
                sd.check_input_settings(device=device_index, channels=channels, samplerate=sample_rate)
            except Exception as e:
                raise DeviceSelectionFailedError(
                    f"Input device {device_index} rejected {sample_rate}Hz: {e}"
                ) from e

        logger.info(f"Using device: {device_info.get('name', device_index)}, rate={sample_rate}Hz")
        return sample_rate, channels

    def _open_output_file(self) -> Tuple[Path, sf.SoundFile]:
        temp_path: Optional[Path] = None
        try:
            temp_file = tempfile.NamedTemporaryFile(suffix='.wav', delete=False, prefix='livescribe_')
            temp_path = Path(temp_file.name)
            temp_file.close()
            register_temp_file(temp_path)

            sound_file = sf.SoundFile(
                temp_path,
                mode='w',
                samplerate=TARGET_SAMPLE_RATE,
                channels=1,
                format='WAV',
                subtype='PCM_16',
            )
            return temp_path, sound_file
        except Exception as e:
            if temp_path is not None:
                _remove_file(temp_path)
            raise AudioRecordingError(f"Could not create recording file: {e}") from e

    # ------------------------------------------------------------------
    # Audio thread
    # ------------------------------------------------------------------

    def _on_audio(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        """sounddevice callback: meter, convert once, append, queue for disk."""
        converter = self._converter
        state = self._converter_state
        if converter is None or state is None:
            return

        mono = to_mono(indata)
        rms = float(np.sqrt(np.mean(np.square(mono)))) if mono.size else 0.0
        self._set_level(max(0.0, min(1.0, rms * self._config.level_gain)), rms)

        converted = converter.convert(indata, state)
        if converted.size == 0:
            return
        self._buffer.append(converted)
        self._write_queue.put_nowait(converted)

    def _set_level(self, level: float, rms: float) -> None:
        with self._level_lock:
            self._level = level
            self._raw_rms = rms

    # ------------------------------------------------------------------
    # Helper threads
    # ------------------------------------------------------------------

    def _start_writer(self, sound_file: sf.SoundFile) -> None:
        self._write_queue = queue.Queue()
        self._writer_thread = threading.Thread(
            target=self._write_loop,
            args=(self._write_queue, sound_file),
            daemon=True,
            name="RecordingWriter"
        )
        self._writer_thread.start()

    def _write_loop(
        self,
        write_queue: "queue.Queue[Optional[np.ndarray]]",
        sound_file: sf.SoundFile,
    ) -> None:
        """Write queued blocks until the None sentinel, then close the file."""
        try:
            while True:
                block = write_queue.get()
                if block is None:
                    break
                if self._write_error is not None:
                    continue
                try:
                    sound_file.write(block)
                except Exception as e:
                    self._write_error = e
                    logger.error(f"Failed to write recording: {e}")
        finally:
            try:
                sound_file.close()
            except Exception as e:
                logger.warning(f"Error closing recording file: {e}")

    def _stop_writer(self) -> bool:
        """
        Send the sentinel and wait for the writer to close the file.

        Returns:
            True if the file is closed, False if the writer is still busy
            after the timeout (it closes the file itself once done).
        """
        thread = self._writer_thread
        if thread is None:
            return True
        self._write_queue.put(None)
        thread.join(timeout=_WRITER_JOIN_TIMEOUT_S)
        self._writer_thread = None
        if thread.is_alive():
            logger.warning("Recording writer did not finish in time; file left to the writer")
            return False
        return True

    def _start_level_poller(self) -> None:
        if self.on_level is None:
            return
        self._stop_polling.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_level,
            daemon=True,
            name="LevelMonitor"
        )
        self._poll_thread.start()

    def _poll_level(self) -> None:
        interval = 1.0 / max(self._config.level_poll_hz, 1.0)
        while not self._stop_polling.wait(interval):
            callback = self.on_level
            if callback is None:
                continue
            try:
                callback(self.current_level())
            except Exception as e:
                logger.warning(f"Error in level callback: {e}")

    def _stop_level_poller(self) -> None:
        self._stop_polling.set()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=1.0)
            self._poll_thread = None

    # ------------------------------------------------------------------
    # Stop / cancel
    # ------------------------------------------------------------------

    def stop(self) -> Optional[Tuple[Path, float]]:
        """
        Stop recording and finalize the WAV file.

        Returns:
            (path, duration_seconds), or None when nothing was recording.
        """
        session = self._session
        if session is None:
            return None

        duration = session.duration
        self._finish()

        if self._write_error is not None:
            logger.warning(f"Recording file may be incomplete: {self._write_error}")

        logger.info(f"Stopped recording: {duration:.2f}s -> {session.path}")
        return session.path, duration

    def cancel(self) -> None:
        """Stop recording and discard the file."""
        session = self._session
        if session is None:
            return
        self._finish()
        _remove_file(session.path)
        logger.info("Recording cancelled")

    def cleanup(self, path: Path) -> None:
        """Delete a finished recording file."""
        _remove_file(path)

    def _finish(self) -> None:
        self._stop_level_poller()
        self._teardown_stream()
        self._stop_writer()

        self._converter = None
        self._converter_state = None
        self._buffer.clear()
        self._set_level(0.0, 0.0)
        self._session = None

    def _teardown_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as e:
            logger.warning(f"Error stopping input stream: {e}")
        try:
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing input stream: {e}")
