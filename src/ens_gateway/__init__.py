"""
ENS Gateway - HTTP and WebSocket gateway for Ethereum Name Service lookups.

This package resolves ENS names, reverse-resolves addresses and reads avatar
and text records through a fallback set of JSON-RPC providers, with a
dual-layer cache in front and a live block feed for WebSocket subscribers.
"""

__version__ = "0.1.0"
__author__ = "ENS Gateway Team"

from ens_gateway.exceptions import (
    EnsGatewayError,
    ValidationError,
    NotFoundError,
    ProviderError,
    ProvidersExhaustedError,
    CacheBackendError,
    ConnectionLimitError,
    RateLimitError,
    ConfigurationError,
)
from ens_gateway.enums import (
    LookupKind,
    LogLevel,
    ErrorCode,
    BatchEntryStatus,
    ConnectionState,
)
from ens_gateway.config import (
    DEFAULT_RPC_PROVIDERS,
    ProviderConfig,
    CacheConfig,
    RateLimitRule,
    RateLimitConfig,
    WebSocketConfig,
    ServerConfig,
    LoggingConfig,
    SystemConfig,
)
from ens_gateway.models import (
    Endpoint,
    LookupResult,
    BatchOperation,
    BatchEntry,
    SearchResult,
    ProviderStats,
    CacheStats,
)
from ens_gateway.validators import (
    EnsInputValidator,
    InputValidationResult,
    InputValidationError,
)
from ens_gateway.audit_logger import (
    AuditLogger,
    LogEntry,
)
from ens_gateway.transport import (
    EnsResolver,
    EnsTransport,
    Web3Transport,
    web3_transport_factory,
)
from ens_gateway.provider_manager import ProviderManager
from ens_gateway.cache import (
    LocalCache,
    PersistentBackend,
    RedisBackend,
    DualLayerCache,
)
from ens_gateway.rate_limiter import (
    RateLimiter,
    RateLimitStatus,
)
from ens_gateway.orchestrator import LookupOrchestrator
from ens_gateway.notifier import (
    BlockNotifier,
    SubscriberConnection,
)
from ens_gateway.api import create_app
from ens_gateway.server import (
    GatewayServer,
    build_components,
)
from ens_gateway.self_test import (
    SelfTest,
    SelfTestResult,
    EndpointTestResult,
    ConfigValidationResult,
    run_self_test,
)
from ens_gateway.cli import (
    main as cli_main,
    create_parser,
    create_default_config,
    load_config_from_env,
    load_config_from_file,
    save_config_to_file,
)

__all__ = [
    # Exceptions
    "EnsGatewayError",
    "ValidationError",
    "NotFoundError",
    "ProviderError",
    "ProvidersExhaustedError",
    "CacheBackendError",
    "ConnectionLimitError",
    "RateLimitError",
    "ConfigurationError",
    # Enums
    "LookupKind",
    "LogLevel",
    "ErrorCode",
    "BatchEntryStatus",
    "ConnectionState",
    # Configuration
    "DEFAULT_RPC_PROVIDERS",
    "ProviderConfig",
    "CacheConfig",
    "RateLimitRule",
    "RateLimitConfig",
    "WebSocketConfig",
    "ServerConfig",
    "LoggingConfig",
    "SystemConfig",
    # Models
    "Endpoint",
    "LookupResult",
    "BatchOperation",
    "BatchEntry",
    "SearchResult",
    "ProviderStats",
    "CacheStats",
    # Validation
    "EnsInputValidator",
    "InputValidationResult",
    "InputValidationError",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Transport
    "EnsResolver",
    "EnsTransport",
    "Web3Transport",
    "web3_transport_factory",
    # Provider Manager
    "ProviderManager",
    # Cache
    "LocalCache",
    "PersistentBackend",
    "RedisBackend",
    "DualLayerCache",
    # Rate Limiter
    "RateLimiter",
    "RateLimitStatus",
    # Orchestrator
    "LookupOrchestrator",
    # Notifier
    "BlockNotifier",
    "SubscriberConnection",
    # HTTP API and server
    "create_app",
    "GatewayServer",
    "build_components",
    # Self-Test
    "SelfTest",
    "SelfTestResult",
    "EndpointTestResult",
    "ConfigValidationResult",
    "run_self_test",
    # CLI
    "cli_main",
    "create_parser",
    "create_default_config",
    "load_config_from_env",
    "load_config_from_file",
    "save_config_to_file",
]
