from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    FATAL = "fatal"
    TRANSIENT = "transient"
    PARTIAL = "partial"


class ErrorCode(str, Enum):
    INVALID_URL = "INVALID_URL"
    INVALID_HOST = "INVALID_HOST"
    FETCH_FAILED = "FETCH_FAILED"
    FETCH_TIMEOUT = "FETCH_TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    RESPONSE_TOO_LARGE = "RESPONSE_TOO_LARGE"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"


_FATAL_CODES = {
    ErrorCode.INVALID_URL,
    ErrorCode.INVALID_HOST,
    ErrorCode.NOT_FOUND,
    ErrorCode.RESPONSE_TOO_LARGE,
    ErrorCode.INVALID_PAYLOAD,
}


class ExtractionError(Exception):
    """Tagged failure raised by a strategy while fetching or extracting a page."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status_code: int | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.kind = kind or (ErrorKind.FATAL if code in _FATAL_CODES else ErrorKind.TRANSIENT)

    @property
    def is_rate_limited(self) -> bool:
        return self.code is ErrorCode.RATE_LIMITED

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class InvalidJobPayloadError(ExtractionError):
    """Raised when a job's payload cannot be processed (missing profile, bad source url)."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_PAYLOAD, message, kind=ErrorKind.FATAL)
