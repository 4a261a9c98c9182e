"""
Cooperative Cancellation

Cancellation tokens checked by the conversion pipeline at every stage
boundary and inside chunked loops. Stages are never interrupted from the
outside; they observe the token and raise CancellationError.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Optional, Union
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class CancellationReason(Enum):
    """Reasons for cancellation."""
    USER_REQUESTED = auto()
    TIMEOUT = auto()


@dataclass
class CancellationRequest:
    """Details about a cancellation request."""
    reason: CancellationReason
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


class CancellationToken:
    """
    Thread-safe cancellation token with optional deadline.

    A token may be cancelled from any thread; the worker polls it between
    units of work.

    Usage
    -----
    >>> token = CancellationToken(timeout=600)
    >>> # In worker:
    >>> for chunk in chunks:
    ...     token.raise_if_cancelled("traces")
    ...     process(chunk)
    >>> # From a signal handler or another thread:
    >>> token.cancel(CancellationReason.USER_REQUESTED)
    """

    def __init__(self, timeout: Optional[float] = None):
        self._id = uuid4()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._request: Optional[CancellationRequest] = None
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @property
    def id(self) -> UUID:
        """Get token ID."""
        return self._id

    @property
    def is_cancelled(self) -> bool:
        """
        Check if cancellation has been requested.

        An expired deadline cancels the token with reason TIMEOUT.
        """
        if self._cancelled.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel(CancellationReason.TIMEOUT, message="Deadline exceeded")
            return True
        return False

    @property
    def cancellation_request(self) -> Optional[CancellationRequest]:
        """Get cancellation request details."""
        return self._request

    def cancel(
        self,
        reason: CancellationReason = CancellationReason.USER_REQUESTED,
        message: Optional[str] = None,
    ) -> None:
        """
        Request cancellation. Only the first request is kept.

        Parameters
        ----------
        reason : CancellationReason
            Why cancellation is being requested
        message : str, optional
            Human-readable message
        """
        with self._lock:
            if self._cancelled.is_set():
                return
            self._request = CancellationRequest(reason=reason, message=message)
            self._cancelled.set()

        logger.info(f"Cancellation requested for token {self._id}: "
                    f"{reason.name} - {message or 'No message'}")

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        """Raise CancellationError if cancelled."""
        if self.is_cancelled:
            raise CancellationError(self.cancellation_request, stage=stage)


class CancellationError(Exception):
    """Exception raised when operation is cancelled."""

    def __init__(
        self,
        request_or_message: Optional[Union[CancellationRequest, str]] = None,
        stage: Optional[str] = None,
    ):
        self.stage = stage
        if isinstance(request_or_message, str):
            self.request = None
            message = f"Operation cancelled: {request_or_message}"
        elif request_or_message is not None:
            self.request = request_or_message
            message = f"Operation cancelled: {request_or_message.reason.name}"
            if request_or_message.message:
                message += f" - {request_or_message.message}"
        else:
            self.request = None
            message = "Operation cancelled"
        if stage:
            message += f" (during {stage})"
        super().__init__(message)


def check_cancelled(token: Optional[CancellationToken], stage: Optional[str] = None) -> None:
    """Raise CancellationError when an optional token has been cancelled."""
    if token is not None:
        token.raise_if_cancelled(stage)
