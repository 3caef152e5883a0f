"""
Enumeration types for the ENS gateway.

These enums provide type-safe constants for lookup kinds, error codes,
and configuration options throughout the system.
"""

from enum import Enum


class LookupKind(Enum):
    """Kind of a single ENS lookup operation."""

    RESOLVE = "resolve"
    REVERSE = "reverse"
    AVATAR = "avatar"
    RECORDS = "records"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ErrorCode(Enum):
    """Error codes carried by EnsGatewayError subclasses."""

    INVALID_NAME = "invalid_name"
    INVALID_ADDRESS = "invalid_address"
    INVALID_BATCH = "invalid_batch"
    INVALID_QUERY = "invalid_query"
    EMPTY_INPUT = "empty_input"
    NAME_NOT_FOUND = "name_not_found"
    RESOLVER_NOT_FOUND = "resolver_not_found"
    PROVIDER_FAILED = "provider_failed"
    PROVIDERS_EXHAUSTED = "providers_exhausted"
    CACHE_BACKEND = "cache_backend"
    CONNECTION_LIMIT = "connection_limit"
    RATE_LIMITED = "rate_limited"
    INVALID_CONFIG = "invalid_config"


class BatchEntryStatus(Enum):
    """Outcome of a single batch sub-operation."""

    FULFILLED = "fulfilled"
    REJECTED = "rejected"


class ConnectionState(Enum):
    """Lifecycle state of a live block subscriber."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
