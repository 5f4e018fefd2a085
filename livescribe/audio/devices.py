"""
Audio device management for LiveScribe.

Enumerates input devices and resolves the device a recording should use,
falling back to the system default when the requested one is gone.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import sounddevice as sd

from ..exceptions import AudioDeviceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioDevice:
    """Represents an audio input device."""
    index: int
    name: str
    channels: int
    default_sample_rate: float
    is_default: bool = False

    def __str__(self) -> str:
        default_marker = " (default)" if self.is_default else ""
        return f"{self.name}{default_marker}"


@dataclass(frozen=True)
class DeviceResolution:
    """
    Outcome of choosing a device for a recording.

    Attributes:
        device_index: Index to open, or None for the system default.
        used_fallback: True when a specific device was requested but could
            not be used and the system default was chosen instead.
    """
    device_index: Optional[int]
    used_fallback: bool = False


class AudioDeviceManager:
    """
    Manages audio input devices.

    Example:
        >>> manager = AudioDeviceManager()
        >>> for device in manager.get_input_devices():
        ...     print(device)
        >>> resolution = manager.resolve(3)
    """

    def __init__(self) -> None:
        self._devices: list[AudioDevice] = []
        self._default_device_index: Optional[int] = None
        self.refresh_devices()

    def refresh_devices(self) -> None:
        """
        Refresh the list of available audio input devices.

        Raises:
            AudioDeviceError: If querying devices fails.
        """
        try:
            self._devices.clear()
            devices = sd.query_devices()

            try:
                default_input = sd.query_devices(kind='input')
                self._default_device_index = default_input.get('index') if isinstance(default_input, dict) else None
            except sd.PortAudioError:
                self._default_device_index = None

            for idx, device in enumerate(devices):
                if device.get('max_input_channels', 0) > 0:
                    self._devices.append(AudioDevice(
                        index=idx,
                        name=device.get('name', f'Device {idx}'),
                        channels=device.get('max_input_channels', 1),
                        default_sample_rate=device.get('default_samplerate', 44100.0),
                        is_default=(idx == self._default_device_index)
                    ))

            logger.info(f"Found {len(self._devices)} audio input device(s)")

        except sd.PortAudioError as e:
            logger.error(f"Failed to query audio devices: {e}")
            raise AudioDeviceError(f"Failed to query audio devices: {e}") from e

    def get_input_devices(self) -> list[AudioDevice]:
        """Return a copy of the known input devices."""
        return self._devices.copy()

    def get_default_device(self) -> Optional[AudioDevice]:
        """Return the default input device, or the first one, or None."""
        for device in self._devices:
            if device.is_default:
                return device
        return self._devices[0] if self._devices else None

    def get_device_by_index(self, index: int) -> AudioDevice:
        """
        Get an audio device by its index.

        Raises:
            AudioDeviceError: If no device with the given index exists.
        """
        for device in self._devices:
            if device.index == index:
                return device
        raise AudioDeviceError(f"No audio device with index {index}")

    def get_device_by_name(self, name: str) -> Optional[AudioDevice]:
        """Return the first device whose name contains ``name`` (case-insensitive)."""
        name_lower = name.lower()
        for device in self._devices:
            if name_lower in device.name.lower():
                return device
        return None

    def has_devices(self) -> bool:
        return len(self._devices) > 0

    def resolve(self, requested_index: Optional[int]) -> DeviceResolution:
        """
        Choose the device a recording should open.

        The requested device is used if it is still enumerable. Otherwise,
        including when no devices are enumerable at all, the system default
        is used and the fallback is flagged rather than raised.
        """
        if requested_index is None:
            return DeviceResolution(device_index=None)

        if any(device.index == requested_index for device in self._devices):
            return DeviceResolution(device_index=requested_index)

        logger.warning(
            f"Input device {requested_index} is not available, using system default"
        )
        return DeviceResolution(device_index=None, used_fallback=True)
