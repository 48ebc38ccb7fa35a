from __future__ import annotations

from typing import Optional


class BatchCrawlError(Exception):
    """Base class for all errors raised by the batch crawler."""


class ConfigurationError(BatchCrawlError):
    """Raised when a batch or a single job is misconfigured."""


class ManagerStateError(BatchCrawlError):
    """Raised when a manager operation is invalid in its current lifecycle state."""


class ProgressNotFoundError(BatchCrawlError):
    """Raised when no snapshot file matches a progress id."""


class CorruptStateError(BatchCrawlError):
    """Raised when a snapshot file cannot be read or fails schema validation."""


class StateTransitionError(BatchCrawlError):
    """Raised on a task state transition the state machine does not allow."""


class FetchError(BatchCrawlError):
    """A failed fetch, carrying what the fetcher reported about it."""

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
