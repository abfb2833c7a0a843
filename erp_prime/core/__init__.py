# Core library
from erp_prime.core.config import RealtimeConfig, load_config
from erp_prime.core.exceptions import (
    ConfigurationError,
    ConnectionTimeoutError,
    CredentialError,
    ExpiredCredentialError,
    FrameDecodeError,
    InvalidConfigError,
    InvalidCredentialError,
    InvalidTransitionError,
    MissingCredentialError,
    PrimeError,
    ReachabilityError,
    RealtimeError,
    TransportError,
    UnknownFrameTypeError,
    wrap_exception,
)
from erp_prime.core.state_manager import (
    StateContext,
    register_state_reset,
    reset_all_state,
)
from erp_prime.core.structured_logging import (
    JSONFormatter,
    LogContext,
    configure_logging,
)

__all__ = [
    "ConfigurationError",
    "ConnectionTimeoutError",
    "CredentialError",
    "ExpiredCredentialError",
    "FrameDecodeError",
    "InvalidConfigError",
    "InvalidCredentialError",
    "InvalidTransitionError",
    "JSONFormatter",
    "LogContext",
    "MissingCredentialError",
    "PrimeError",
    "ReachabilityError",
    "RealtimeConfig",
    "RealtimeError",
    "StateContext",
    "TransportError",
    "UnknownFrameTypeError",
    "configure_logging",
    "load_config",
    "register_state_reset",
    "reset_all_state",
    "wrap_exception",
]
