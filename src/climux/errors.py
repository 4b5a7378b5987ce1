"""Typed error hierarchy shared by routing, supervision and storage."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes exposed to callers."""

    PROVIDER_NOT_FOUND = "provider_not_found"
    PROVIDER_NOT_AVAILABLE = "provider_not_available"
    PROVIDERS_EXHAUSTED = "providers_exhausted"
    SESSION_NOT_FOUND = "session_not_found"
    NATIVE_SESSION_MISSING = "native_session_missing"
    SESSION_NOT_INTERACTIVE = "session_not_interactive"
    PROCESS_CRASHED = "process_crashed"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    DATABASE_ERROR = "database_error"


class ClimuxError(RuntimeError):
    """Base error with a stable code and an optional operator hint."""

    code: ErrorCode = ErrorCode.PROCESS_CRASHED

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = False,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.recoverable = recoverable
        self.suggestion = suggestion


class ProviderNotFoundError(ClimuxError):
    """Referenced provider name is not registered."""

    code = ErrorCode.PROVIDER_NOT_FOUND


class ProviderUnavailableError(ClimuxError):
    """Provider is registered but cannot serve the request."""

    code = ErrorCode.PROVIDER_NOT_AVAILABLE


class RateLimitedError(ClimuxError):
    """Provider reported throttling or exhausted quota."""

    code = ErrorCode.RATE_LIMITED


class ProvidersExhaustedError(ClimuxError):
    """Every provider in the fallback chain was unavailable."""

    code = ErrorCode.PROVIDERS_EXHAUSTED


class SessionNotFoundError(ClimuxError):
    """Session is unknown, or not live when a live process is required."""

    code = ErrorCode.SESSION_NOT_FOUND


class NativeSessionMissingError(ClimuxError):
    """Session has no tool-native id to resume from."""

    code = ErrorCode.NATIVE_SESSION_MISSING


class SessionNotInteractiveError(ClimuxError):
    """Session process was started without an input stream."""

    code = ErrorCode.SESSION_NOT_INTERACTIVE


class ProcessCrashedError(ClimuxError):
    """Subprocess could not be started or its streams broke."""

    code = ErrorCode.PROCESS_CRASHED


class SessionTimeoutError(ClimuxError):
    """Deadline elapsed while waiting for a session to finish."""

    code = ErrorCode.TIMEOUT


class CapacityExceededError(ClimuxError):
    """Concurrency ceiling reached."""

    code = ErrorCode.CAPACITY_EXCEEDED


class PersistenceError(ClimuxError):
    """Session storage failed to read or write."""

    code = ErrorCode.DATABASE_ERROR


FALLBACK_ERRORS: tuple[type[ClimuxError], ...] = (ProviderUnavailableError, RateLimitedError)
