"""Broker Connect Exception Hierarchy.

Typed errors raised inside the broker subsystem. The public managers
catch them at their boundary and turn them into notifications plus a
safe return value.
"""

from enum import Enum
from typing import Iterable, Optional


class ErrorCode(str, Enum):
    """Error codes attached to every broker error."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_BROKER = "UNKNOWN_BROKER"
    BACKEND_UNREACHABLE = "BACKEND_UNREACHABLE"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    STREAM_ERROR = "STREAM_ERROR"
    ORDER_REJECTED = "ORDER_REJECTED"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"


class BrokerConnectError(Exception):
    """Base exception for all broker connectivity errors."""

    default_code = ErrorCode.CONFIGURATION_ERROR

    def __init__(
        self,
        message: str,
        broker_id: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
    ):
        super().__init__(message)
        self.message = message
        self.broker_id = broker_id
        self.error_code = error_code or self.default_code

    @property
    def user_message(self) -> str:
        """Message suitable for showing to the user."""
        return self.message


class ConfigurationError(BrokerConnectError):
    """Broker setup is incomplete or malformed. Recoverable locally."""

    default_code = ErrorCode.CONFIGURATION_ERROR


class ValidationError(ConfigurationError):
    """Raised when a payload is missing required fields."""

    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str = "Validation failed",
        fields: Optional[Iterable[str]] = None,
        broker_id: Optional[str] = None,
    ):
        super().__init__(message, broker_id=broker_id)
        self.fields = list(fields or [])


class UnknownBrokerError(ConfigurationError):
    """Raised when a broker id is not in the catalog."""

    default_code = ErrorCode.UNKNOWN_BROKER

    def __init__(self, broker_id: str):
        super().__init__(f"Broker not found: {broker_id}", broker_id=broker_id)


class UnreachableBackendError(BrokerConnectError):
    """Health probe timed out or the backend could not be reached."""

    default_code = ErrorCode.BACKEND_UNREACHABLE

    def __init__(
        self,
        message: str = "Backend server is not available. Please try again later.",
        broker_id: Optional[str] = None,
    ):
        super().__init__(message, broker_id=broker_id)


class AuthenticationFailure(BrokerConnectError):
    """The broker rejected the handshake."""

    default_code = ErrorCode.AUTHENTICATION_FAILED


class StreamError(BrokerConnectError):
    """Transport failure on an open stream."""

    default_code = ErrorCode.STREAM_ERROR


class OrderRejected(BrokerConnectError):
    """The broker declined an order."""

    default_code = ErrorCode.ORDER_REJECTED


class InvalidStatusTransition(BrokerConnectError):
    """A connection status change violated the transition table."""

    default_code = ErrorCode.INVALID_STATUS_TRANSITION
