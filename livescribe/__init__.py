"""
LiveScribe - live speech-to-text with a local Whisper model

This package captures microphone audio, transcribes it with faster-whisper
while recording is still running, and produces a final transcript when the
recording stops.

Modules:
    audio: Audio capture, conversion and device management
    transcription: Inference engine, model management and streaming
    session: Recording session orchestration
    config: Application configuration
    retry: Bounded retry with backoff
"""

__version__ = "0.1.0"
__author__ = "LiveScribe Team"
