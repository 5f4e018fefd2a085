"""Tests for user-facing error messages."""

import pytest

from livescribe.exceptions import (
    APIError,
    AudioRecordingError,
    DeviceSelectionFailedError,
    EmptyTranscriptionError,
    LiveScribeError,
    ModelDownloadError,
    ModelError,
    ModelNotReadyError,
    NetworkError,
    RecordingError,
    user_message,
)


class TestHierarchy:

    def test_recording_errors(self):
        assert issubclass(DeviceSelectionFailedError, RecordingError)
        assert issubclass(AudioRecordingError, RecordingError)

    def test_model_errors(self):
        assert issubclass(ModelNotReadyError, ModelError)
        assert issubclass(ModelError, LiveScribeError)


class TestUserMessage:
    """Tests for user_message."""

    @pytest.mark.parametrize("status, fragment", [
        (429, "Rate limit"),
        (401, "API key"),
        (403, "API key"),
        (503, "server"),
    ])
    def test_api_errors_by_status(self, status, fragment):
        assert fragment in user_message(APIError("failed", status_code=status))

    def test_most_specific_type_wins(self):
        assert user_message(DeviceSelectionFailedError("x")) == \
            "The input device could not be configured."
        assert user_message(EmptyTranscriptionError("x")) == "No speech was detected."

    def test_messages_hide_details(self):
        message = user_message(ModelDownloadError("HTTPSConnectionPool(host=...) errno 111"))
        assert "errno" not in message
        assert user_message(NetworkError("[Errno 101]")) == \
            "Network error. Please check your connection."

    def test_unknown_errors(self):
        assert user_message(RuntimeError("boom")) == "An unexpected error occurred."
