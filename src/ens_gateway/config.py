"""
Configuration dataclasses for the ENS gateway.

This module defines all configuration structures used throughout the system,
including upstream providers, caching, rate limiting, the live block channel,
server binding, and logging configuration.
"""

from dataclasses import dataclass, field
from typing import Optional


DEFAULT_RPC_PROVIDERS = [
    "https://eth.llamarpc.com",
    "https://rpc.ankr.com/eth",
    "https://cloudflare-eth.com",
    "https://ethereum.publicnode.com",
]


@dataclass
class ProviderConfig:
    """Upstream RPC endpoints and fallback behavior."""

    urls: list[str] = field(default_factory=lambda: list(DEFAULT_RPC_PROVIDERS))
    max_attempts: int = 3
    request_timeout_seconds: float = 10.0


@dataclass
class CacheConfig:
    """Dual-layer cache configuration."""

    ttl_seconds: int = 300
    max_entries: int = 10_000
    use_redis: bool = False
    redis_url: Optional[str] = None

    @property
    def persistent_enabled(self) -> bool:
        """True when the Redis tier should be created."""
        return self.use_redis and bool(self.redis_url)


@dataclass
class RateLimitRule:
    """A single rate limit rule."""

    max_requests: int
    window_seconds: float
    min_delay_seconds: float = 0.0


@dataclass
class RateLimitConfig:
    """Rate limiting configuration for HTTP clients."""

    per_client: Optional[RateLimitRule] = field(
        default_factory=lambda: RateLimitRule(max_requests=100, window_seconds=15 * 60.0)
    )
    global_limit: Optional[RateLimitRule] = None


@dataclass
class WebSocketConfig:
    """Live block channel configuration."""

    heartbeat_interval_seconds: float = 30.0
    max_clients: int = 1000
    max_message_bytes: int = 100 * 1024
    block_poll_interval_seconds: float = 4.0
    outbound_queue_size: int = 100


@dataclass
class ServerConfig:
    """Network binding for the HTTP and WebSocket servers."""

    host: str = "0.0.0.0"
    http_port: int = 3000
    ws_port: int = 8080


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    providers: ProviderConfig
    cache: CacheConfig
    rate_limits: RateLimitConfig
    websocket: WebSocketConfig
    server: ServerConfig
    logging: LoggingConfig
    startup_self_test: bool = False
