"""Failure taxonomy shared by data sources, the poller and the report service.

Data sources raise these; the poller and report service catch them and hand
them to subscribers or return them to callers. Only contract violations
(``PollerNotStartedError``) escape the public boundary.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Classification that drives retry decisions."""
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    CLIENT = "client"
    DATA_VALIDATION = "data_validation"


class FetchError(Exception):
    """Base class for every expected data-source failure."""

    kind: FailureKind = FailureKind.TRANSIENT
    retryable: bool = True

    def __init__(self, message: str, *, source: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, source={self.source!r}, status_code={self.status_code!r})"


class TransientFetchError(FetchError):
    """Timeouts, dropped connections and 5xx responses."""
    kind = FailureKind.TRANSIENT
    retryable = True


class RateLimitedError(FetchError):
    """Explicit upstream backpressure, optionally with a retry-after hint in seconds."""
    kind = FailureKind.RATE_LIMITED
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        source: str | None = None,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(message, source=source, status_code=status_code)
        self.retry_after = retry_after


class ClientFetchError(FetchError):
    """Invalid coordinates, missing credentials or a malformed request."""
    kind = FailureKind.CLIENT
    retryable = False


class DataValidationError(FetchError):
    """Payload missing required fields or carrying an implausible value."""
    kind = FailureKind.DATA_VALIDATION
    retryable = True


class PollerNotStartedError(RuntimeError):
    """Raised when a poller operation requires a prior ``start()``."""


def parse_retry_after(raw: str | None) -> float | None:
    """Parse a Retry-After header expressed in seconds; HTTP dates are ignored."""
    if raw is None:
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def classify_http_error(
    status_code: int,
    *,
    source: str | None = None,
    retry_after: str | None = None,
    detail: str | None = None,
) -> FetchError:
    """Map an HTTP status code onto the failure taxonomy."""
    message = f"HTTP {status_code}" + (f": {detail}" if detail else "")
    if status_code == 429:
        return RateLimitedError(message, retry_after=parse_retry_after(retry_after), source=source)
    if status_code == 408 or status_code >= 500:
        return TransientFetchError(message, source=source, status_code=status_code)
    return ClientFetchError(message, source=source, status_code=status_code)
