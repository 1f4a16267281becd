"""Error families raised by the ingestion pipeline.

Every pipeline error carries its classification from the point where it is
raised: an :class:`ErrorKind`, a ``retryable`` flag and, when the failure came
from an HTTP response, the status code.  Callers branch on these attributes
and never on message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    HTTP_ERROR = "http_error"
    INVALID_URL = "invalid_url"
    SSRF_BLOCKED = "ssrf_blocked"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    NO_CONTENT = "no_content"
    INVALID_RESPONSE = "invalid_response"


_RETRYABLE_KINDS = {
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVER_ERROR,
}


def classify_http_status(status: int) -> tuple[ErrorKind, bool]:
    """Map an HTTP status to its error kind and retryability.

    429 and any 5xx are retryable no matter which component saw them.
    """
    if status == 429:
        return ErrorKind.RATE_LIMITED, True
    if 500 <= status <= 599:
        return ErrorKind.SERVER_ERROR, True
    if status == 404:
        return ErrorKind.NOT_FOUND, False
    if status == 403:
        return ErrorKind.FORBIDDEN, False
    return ErrorKind.HTTP_ERROR, False


def is_retryable_kind(kind: ErrorKind) -> bool:
    return kind in _RETRYABLE_KINDS


class PipelineError(Exception):
    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        retryable: bool | None = None,
        http_status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = is_retryable_kind(kind) if retryable is None else retryable
        self.http_status = http_status
        self.retry_after = retry_after

    @classmethod
    def from_status(
        cls, status: int, message: str | None = None, retry_after: float | None = None
    ) -> "PipelineError":
        kind, retryable = classify_http_status(status)
        return cls(
            message or f"HTTP {status}",
            kind=kind,
            retryable=retryable,
            http_status=status,
            retry_after=retry_after,
        )

    def describe(self) -> str:
        return f"{self.kind.value}: {self}"


class DecodeError(PipelineError):
    pass


class FetchError(PipelineError):
    pass


class SecurityError(PipelineError):
    def __init__(self, message: str, *, kind: ErrorKind = ErrorKind.SSRF_BLOCKED) -> None:
        super().__init__(message, kind=kind, retryable=False)


class DuplicateArticleError(Exception):
    def __init__(self, final_url: str) -> None:
        super().__init__(f"duplicate final_url {final_url}")
        self.final_url = final_url


class RateLimitExceeded(Exception):
    def __init__(self, identity: object, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded for {identity}")
        self.identity = identity
        self.retry_after = retry_after
