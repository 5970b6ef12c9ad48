"""Error taxonomy for the expense pipeline."""

from enum import Enum
from typing import Any, Dict, List, Optional


class ExpenseWatchError(Exception):
    """Base error for ExpenseWatch."""


class FetchErrorKind(Enum):
    """Why an upstream call finally failed"""

    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    NETWORK = "network"


class FetchError(ExpenseWatchError):
    """Raised by the HTTP client once its retry budget is exhausted."""

    def __init__(
        self,
        kind: FetchErrorKind,
        attempts: int,
        url: str = "",
        status_code: Optional[int] = None,
        message: str = "",
    ):
        self.kind = kind
        self.attempts = attempts
        self.url = url
        self.status_code = status_code
        detail = f" ({message})" if message else ""
        status = f" status={status_code}" if status_code is not None else ""
        super().__init__(
            f"{kind.value} after {attempts} attempt(s) for {url}{status}{detail}"
        )


class RunCancelledError(ExpenseWatchError):
    """Raised when the run-level abort signal interrupts work in progress."""


class ValidationError(ExpenseWatchError):
    """A record field could not be checked. Never surfaced: records are repaired."""


class SubjectExtractionError(ExpenseWatchError):
    """One subject's extraction failed for a reason other than a fetch error."""

    def __init__(self, subject_id: str, cause: Exception):
        self.subject_id = subject_id
        self.cause = cause
        super().__init__(f"Subject {subject_id} failed: {cause}")


class LoadBatchError(ExpenseWatchError):
    """A single write batch was rejected by the document store."""

    def __init__(self, message: str, items: Optional[List[Dict[str, Any]]] = None):
        self.items = items or []
        super().__init__(message)


class FatalConfigurationError(ExpenseWatchError):
    """Run configuration is missing or invalid; nothing is extracted."""


class SinkUnavailableError(ExpenseWatchError):
    """The document store cannot be reached at all."""
