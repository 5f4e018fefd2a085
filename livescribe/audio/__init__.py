"""
Audio module for LiveScribe.

Provides live capture, sample-rate conversion, the shared sample buffer and
device management.
"""

from .buffer import SampleBuffer
from .converter import TARGET_SAMPLE_RATE, ConverterState, SampleRateConverter
from .devices import AudioDevice, AudioDeviceManager
from .recorder import AudioCapture, RecordingSession, unregister_temp_file

__all__ = [
    'TARGET_SAMPLE_RATE',
    'AudioCapture',
    'AudioDevice',
    'AudioDeviceManager',
    'ConverterState',
    'RecordingSession',
    'SampleBuffer',
    'SampleRateConverter',
    'unregister_temp_file',
]
