"""
Custom Exception Hierarchy for ERP PRIME

Provides structured exceptions for the realtime client. Components raise
and catch these internally; the session boundary only exposes the
``message`` of an error as a plain string.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PrimeError(Exception):
    """
    Base exception for all ERP PRIME errors.

    All custom exceptions should inherit from this class.
    """

    error_code: str = "PRIME_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        """
        Initialize ERP PRIME error.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            details: Additional context/details
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.details:
            parts.append(f" Details: {self.details}")
        if self.cause:
            parts.append(f" Caused by: {self.cause}")
        return "".join(parts)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PrimeError):
    """Base class for configuration-related errors."""

    error_code = "CONFIG_ERROR"


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    error_code = "CONFIG_INVALID"


class CredentialError(ConfigurationError):
    """The bearer token cannot be used to open a connection."""

    error_code = "CREDENTIAL_ERROR"


class MissingCredentialError(CredentialError):
    """No token is available."""

    error_code = "CREDENTIAL_MISSING"


class InvalidCredentialError(CredentialError):
    """Token is not a decodable JWT."""

    error_code = "CREDENTIAL_INVALID"


class ExpiredCredentialError(CredentialError):
    """Token expiry claim is in the past."""

    error_code = "CREDENTIAL_EXPIRED"

    def __init__(
        self,
        message: str,
        *,
        expired_at: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.expired_at = expired_at
        if expired_at is not None:
            self.details["expired_at"] = expired_at


# =============================================================================
# Realtime Errors
# =============================================================================


class RealtimeError(PrimeError):
    """Base class for realtime channel errors."""

    error_code = "REALTIME_ERROR"


class ReachabilityError(RealtimeError):
    """Backend host did not answer the health probe."""

    error_code = "REALTIME_UNREACHABLE"


class ConnectionTimeoutError(RealtimeError):
    """Connection was still being established when the timeout fired."""

    error_code = "REALTIME_CONNECT_TIMEOUT"


class TransportError(RealtimeError):
    """The push transport reported an error event."""

    error_code = "REALTIME_TRANSPORT"


class FrameDecodeError(RealtimeError):
    """Inbound frame could not be decoded."""

    error_code = "REALTIME_FRAME_DECODE"


class UnknownFrameTypeError(FrameDecodeError):
    """Inbound frame carries a type tag outside the known event kinds."""

    error_code = "REALTIME_FRAME_UNKNOWN_TYPE"

    def __init__(self, message: str, *, frame_type: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.frame_type = frame_type
        self.details["frame_type"] = frame_type


class InvalidTransitionError(RealtimeError):
    """A state transition outside the transition table was requested."""

    error_code = "REALTIME_INVALID_TRANSITION"


# =============================================================================
# Helper Functions
# =============================================================================


def wrap_exception(
    exception: BaseException,
    wrapper_class: type = PrimeError,
    message: Optional[str] = None,
) -> PrimeError:
    """
    Wrap a standard exception in an ERP PRIME exception.

    Args:
        exception: The original exception
        wrapper_class: PrimeError subclass to use
        message: Optional custom message

    Returns:
        Wrapped PrimeError
    """
    if isinstance(exception, PrimeError):
        return exception

    return wrapper_class(
        message=message or str(exception) or exception.__class__.__name__,
        cause=exception,
    )
