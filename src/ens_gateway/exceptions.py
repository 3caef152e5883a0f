"""
Exception classes for the ENS gateway.

All exceptions inherit from EnsGatewayError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class EnsGatewayError(Exception):
    """Base exception for all ENS gateway errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(EnsGatewayError):
    """Raised when a name, address or batch request is malformed."""

    pass


class NotFoundError(EnsGatewayError):
    """Raised when a well-formed query has no matching record."""

    pass


class ProviderError(EnsGatewayError):
    """Raised when a single upstream RPC call fails."""

    pass


class ProvidersExhaustedError(ProviderError):
    """Raised when every attempt in the fallback budget has failed."""

    pass


class CacheBackendError(EnsGatewayError):
    """Raised by the persistent cache backend (never leaves the cache tier)."""

    pass


class ConnectionLimitError(EnsGatewayError):
    """Raised when a WebSocket peer is rejected because capacity is reached."""

    pass


class RateLimitError(EnsGatewayError):
    """Raised when a client exceeds its request window."""

    pass


class ConfigurationError(EnsGatewayError):
    """Raised when configuration values cannot be parsed."""

    pass
