"""
Bounded retry with exponential backoff.

Used around model downloads and transcription providers, anything that can
fail because of a transient network condition.
"""

import logging
import socket
import threading
import time
from typing import Callable, Optional, TypeVar

import requests

from .exceptions import APIError, NetworkError, OperationCancelled, TextProcessingError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP statuses worth retrying: request timeout, rate limit, bad gateway, unavailable
RETRYABLE_STATUS_CODES = frozenset({408, 429, 502, 503})


def is_retryable(error: BaseException) -> bool:
    """
    Classify an error as transient.

    Timeouts, lost or refused connections, DNS failures and the HTTP
    statuses in ``RETRYABLE_STATUS_CODES`` are retryable. Everything else
    is not.
    """
    if isinstance(error, requests.HTTPError):
        response = error.response
        return response is not None and response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(error, (TimeoutError, ConnectionError, socket.gaierror)):
        return True
    if isinstance(error, APIError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, TextProcessingError):
        return error.retryable
    return False


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``operation`` until it succeeds, retrying transient failures.

    The delay before retry ``n`` (0-based) is ``initial_delay * 2 ** n``.

    Args:
        operation: Zero-argument callable to run.
        max_attempts: Total number of attempts, including the first.
        initial_delay: Delay in seconds before the first retry.
        cancel_event: When set during a backoff sleep, the wait ends at once
            and no further attempt is made.
        sleep: Sleep function used when no cancel_event is given.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        OperationCancelled: If cancel_event is set before or during a wait.
        Exception: The last error, unmodified, when it is not retryable or
            all attempts are used up.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("Cancelled before attempt")
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e) or attempt == max_attempts - 1:
                raise

            delay = initial_delay * (2 ** attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed ({e}), retrying in {delay:.1f}s"
            )
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise OperationCancelled("Cancelled while waiting to retry") from e
            else:
                sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("with_retry exhausted without result")
