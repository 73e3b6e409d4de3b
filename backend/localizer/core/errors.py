"""
Error taxonomy for the localization pipeline.

Every failure that reaches the state machine is a PipelineError carrying a
stable code, a human message and a retryable flag; those three values are what
gets persisted on the video row.
"""

import asyncio

import httpx


class ErrorCode:
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    DURATION_UNAVAILABLE = "DURATION_UNAVAILABLE"
    PROVIDER_QUOTA_EXCEEDED = "PROVIDER_QUOTA_EXCEEDED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    NOT_CONFIRMED = "NOT_CONFIRMED"
    TIMEOUT = "TIMEOUT"
    INTERNAL = "INTERNAL"


RETRYABLE_ERRORS = {
    ErrorCode.EXTRACTION_FAILED,
    ErrorCode.DURATION_UNAVAILABLE,
    ErrorCode.PROVIDER_QUOTA_EXCEEDED,
    ErrorCode.PROVIDER_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.INTERNAL,
}


class PipelineError(Exception):
    code = ErrorCode.INTERNAL
    http_status = 500

    def __init__(self, message: str, retryable: bool | None = None, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.message, "retryable": self.retryable}


class ExtractionFailed(PipelineError):
    code = ErrorCode.EXTRACTION_FAILED
    http_status = 502

    def __init__(self, message: str, exit_detail: str | None = None):
        self.exit_detail = exit_detail
        if exit_detail:
            message = f"{message}: {exit_detail[-300:]}"
        super().__init__(message)


class DurationUnavailable(PipelineError):
    code = ErrorCode.DURATION_UNAVAILABLE
    http_status = 502


class ProviderError(PipelineError):
    code = ErrorCode.PROVIDER_ERROR
    http_status = 502

    def __init__(self, message: str, provider: str | None = None, retryable: bool | None = None):
        self.provider = provider
        super().__init__(message, retryable=retryable)


class ProviderQuotaExceeded(ProviderError):
    code = ErrorCode.PROVIDER_QUOTA_EXCEEDED
    http_status = 429


class UnsupportedFormat(PipelineError):
    code = ErrorCode.UNSUPPORTED_FORMAT
    http_status = 415


class NotFound(PipelineError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class InvalidState(PipelineError):
    code = ErrorCode.INVALID_STATE
    http_status = 409


class NotConfirmed(PipelineError):
    code = ErrorCode.NOT_CONFIRMED
    http_status = 409


class Timeout(PipelineError):
    code = ErrorCode.TIMEOUT
    http_status = 504


def classify_error(exc: BaseException) -> PipelineError:
    """Map any exception raised by a stage onto the pipeline taxonomy."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return Timeout(f"Stage timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ProviderQuotaExceeded(f"Provider rate limit: {exc}")
        if status == 415:
            return UnsupportedFormat(str(exc))
        return ProviderError(f"Provider returned {status}", retryable=status >= 500)
    if isinstance(exc, httpx.HTTPError):
        return ProviderError(f"Provider request failed: {exc}")
    return PipelineError(f"{type(exc).__name__}: {exc}", code=ErrorCode.INTERNAL)
