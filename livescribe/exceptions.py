"""
Custom exceptions for LiveScribe.

This module defines application-specific exceptions for better error handling
and user feedback across all components, plus ``user_message()`` which turns
any of them into a short sentence that can be shown to the user.
"""

from typing import Optional


class LiveScribeError(Exception):
    """Base exception for all LiveScribe errors."""
    pass


class OperationCancelled(LiveScribeError):
    """Raised when a cancellable operation is aborted before completion."""
    pass


# Audio Exceptions
class AudioError(LiveScribeError):
    """Base exception for audio-related errors."""
    pass


class AudioDeviceError(AudioError):
    """Raised when querying audio devices fails."""
    pass


class RecordingError(AudioError):
    """Base exception for errors while starting or running a recording."""
    pass


class DeviceSelectionFailedError(RecordingError):
    """Raised when the requested input device cannot be configured."""
    pass


class AudioRecordingError(RecordingError):
    """Raised when the input stream or the recording file fails."""
    pass


# Model Exceptions
class ModelError(LiveScribeError):
    """Base exception for model download and loading errors."""
    pass


class ModelNotDownloadedError(ModelError):
    """Raised when loading a model whose file is not on disk."""
    pass


class ModelDownloadError(ModelError):
    """Raised when downloading a model file fails."""
    pass


class ModelLoadError(ModelError):
    """Raised when the Whisper model fails to load."""
    pass


class ModelNotReadyError(ModelError):
    """Raised when inference is requested without a loaded model."""
    pass


class InferenceError(LiveScribeError):
    """Raised internally when a single decoding pass fails."""
    pass


# Transcription Exceptions
class TranscriptionError(LiveScribeError):
    """Base exception for transcription-related errors."""
    pass


class InvalidAPIKeyError(TranscriptionError):
    """Raised when a transcription provider has no usable credentials."""
    pass


class NetworkError(TranscriptionError):
    """Raised when a transcription provider cannot be reached."""
    pass


class APIError(TranscriptionError):
    """Raised when a transcription provider answers with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidResponseError(TranscriptionError):
    """Raised when a provider response cannot be interpreted."""
    pass


class EmptyTranscriptionError(TranscriptionError):
    """Raised when no speech was recognized in the audio."""
    pass


class TextProcessingError(LiveScribeError):
    """Raised when post-processing of the transcript fails."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


# Configuration Exceptions
class ConfigurationError(LiveScribeError):
    """Raised when configuration loading or saving fails."""
    pass


def _api_error_message(error: APIError) -> str:
    status = error.status_code
    if status == 429:
        return "Rate limit reached. Please wait a moment and try again."
    if status in (401, 403):
        return "The API key was rejected. Please check your settings."
    if status is not None and 500 <= status < 600:
        return "The server reported an error. Please try again later."
    return f"API error: {error}"


def user_message(error: BaseException) -> str:
    """
    Return a short, human-readable description of an error.

    The result never contains a traceback or a native error code, so it can
    be shown to the user as-is.

    Args:
        error: Any exception raised by LiveScribe or one of its libraries.

    Returns:
        A one-sentence message.
    """
    if isinstance(error, APIError):
        return _api_error_message(error)

    messages = (
        (OperationCancelled, "The operation was cancelled."),
        (DeviceSelectionFailedError, "The input device could not be configured."),
        (AudioRecordingError, "Recording failed. Please check your microphone."),
        (AudioDeviceError, "Audio devices could not be listed."),
        (ModelNotDownloadedError, "The speech model has not been downloaded yet."),
        (ModelDownloadError, "The speech model could not be downloaded."),
        (ModelLoadError, "The speech model could not be loaded."),
        (ModelNotReadyError, "The speech model is not ready yet."),
        (InvalidAPIKeyError, "No API key is configured."),
        (NetworkError, "Network error. Please check your connection."),
        (InvalidResponseError, "The transcription service sent an invalid response."),
        (EmptyTranscriptionError, "No speech was detected."),
        (TextProcessingError, "Text processing failed."),
        (ConfigurationError, "The configuration file could not be used."),
        (TranscriptionError, "Transcription failed."),
        (LiveScribeError, "An unexpected error occurred."),
    )
    for error_type, message in messages:
        if isinstance(error, error_type):
            return message
    return "An unexpected error occurred."
