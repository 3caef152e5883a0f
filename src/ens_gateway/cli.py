"""
Command-line interface for the ENS gateway.

This module provides the main CLI entry point with commands for:
- serve: Run the HTTP API and the live block WebSocket server
- lookup: Run a single lookup against the configured providers
- self-test: Validate configuration and probe every RPC provider
- config: Configuration management
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from . import __version__
from .audit_logger import AuditLogger
from .config import (
    DEFAULT_RPC_PROVIDERS,
    CacheConfig,
    LoggingConfig,
    ProviderConfig,
    RateLimitConfig,
    RateLimitRule,
    ServerConfig,
    SystemConfig,
    WebSocketConfig,
)
from .enums import ErrorCode
from .exceptions import ConfigurationError, EnsGatewayError
from .self_test import SelfTest, run_self_test
from .server import build_components, run_server


DEFAULT_CONFIG_PATH = Path.home() / ".ens_gateway" / "config.json"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def create_default_config() -> SystemConfig:
    """
    Create a default system configuration.

    Returns:
        SystemConfig with the public RPC providers and default limits
    """
    return SystemConfig(
        providers=ProviderConfig(urls=list(DEFAULT_RPC_PROVIDERS), max_attempts=3),
        cache=CacheConfig(ttl_seconds=300),
        rate_limits=RateLimitConfig(
            per_client=RateLimitRule(max_requests=100, window_seconds=15 * 60.0),
        ),
        websocket=WebSocketConfig(heartbeat_interval_seconds=30.0, max_clients=1000),
        server=ServerConfig(host="0.0.0.0", http_port=3000, ws_port=8080),
        logging=LoggingConfig(level="info", output_format="text"),
        startup_self_test=False,
    )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(
            code=ErrorCode.INVALID_CONFIG.value,
            message=f"{name} must be an integer, got {raw!r}",
            details={"variable": name, "value": raw},
        ) from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ConfigurationError(
            code=ErrorCode.INVALID_CONFIG.value,
            message=f"{name} must be a number, got {raw!r}",
            details={"variable": name, "value": raw},
        ) from None


def load_config_from_env(
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[Path] = None,
) -> SystemConfig:
    """
    Load configuration from environment variables.

    When ``env`` is omitted, a ``.env`` file is loaded first (existing
    variables win) and ``os.environ`` is read.

    Args:
        env: Mapping to read instead of the process environment
        dotenv_path: Explicit ``.env`` location

    Returns:
        SystemConfig built on top of the defaults

    Raises:
        ConfigurationError: If a numeric variable cannot be parsed
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    defaults = create_default_config()

    providers_raw = env.get("RPC_PROVIDERS", "")
    urls = [url.strip() for url in providers_raw.split(",") if url.strip()]

    # RATE_LIMIT_WINDOW and WS_HEARTBEAT_INTERVAL are milliseconds
    window_ms = _env_int(
        env, "RATE_LIMIT_WINDOW", int(defaults.rate_limits.per_client.window_seconds * 1000)
    )
    heartbeat_ms = _env_int(
        env, "WS_HEARTBEAT_INTERVAL", int(defaults.websocket.heartbeat_interval_seconds * 1000)
    )

    redis_url = env.get("REDIS_URL") or None

    return SystemConfig(
        providers=ProviderConfig(
            urls=urls or list(DEFAULT_RPC_PROVIDERS),
            max_attempts=_env_int(env, "MAX_ATTEMPTS", defaults.providers.max_attempts),
            request_timeout_seconds=_env_float(
                env, "RPC_TIMEOUT", defaults.providers.request_timeout_seconds
            ),
        ),
        cache=CacheConfig(
            ttl_seconds=_env_int(env, "CACHE_TTL", defaults.cache.ttl_seconds),
            max_entries=_env_int(env, "CACHE_MAX_ENTRIES", defaults.cache.max_entries),
            use_redis=env.get("USE_REDIS", "").strip().lower() in _TRUE_VALUES,
            redis_url=redis_url,
        ),
        rate_limits=RateLimitConfig(
            per_client=RateLimitRule(
                max_requests=_env_int(
                    env, "RATE_LIMIT_MAX", defaults.rate_limits.per_client.max_requests
                ),
                window_seconds=window_ms / 1000,
            ),
        ),
        websocket=WebSocketConfig(
            heartbeat_interval_seconds=heartbeat_ms / 1000,
            max_clients=_env_int(env, "WS_MAX_CLIENTS", defaults.websocket.max_clients),
        ),
        server=ServerConfig(
            host=env.get("HOST") or defaults.server.host,
            http_port=_env_int(env, "PORT", defaults.server.http_port),
            ws_port=_env_int(env, "WS_PORT", defaults.server.ws_port),
        ),
        logging=LoggingConfig(
            level=(env.get("LOG_LEVEL") or defaults.logging.level).lower(),
            output_format=(env.get("LOG_FORMAT") or defaults.logging.output_format).lower(),
        ),
        startup_self_test=env.get("STARTUP_SELF_TEST", "").strip().lower() in _TRUE_VALUES,
    )


def load_config_from_file(config_path: Path) -> Optional[SystemConfig]:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        SystemConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        providers_data = data.get("providers", {})
        providers = ProviderConfig(
            urls=list(providers_data.get("urls") or DEFAULT_RPC_PROVIDERS),
            max_attempts=int(providers_data.get("max_attempts", 3)),
            request_timeout_seconds=float(providers_data.get("request_timeout_seconds", 10.0)),
        )

        cache_data = data.get("cache", {})
        cache = CacheConfig(
            ttl_seconds=int(cache_data.get("ttl_seconds", 300)),
            max_entries=int(cache_data.get("max_entries", 10_000)),
            use_redis=bool(cache_data.get("use_redis", False)),
            redis_url=cache_data.get("redis_url"),
        )

        # Parse rate limits; an explicit null disables a rule
        rate_limits_data = data.get("rate_limits")
        if rate_limits_data is None:
            rate_limits = RateLimitConfig()
        else:
            rules = {}
            for key in ("per_client", "global_limit"):
                rule_data = rate_limits_data.get(key)
                rules[key] = RateLimitRule(
                    max_requests=int(rule_data["max_requests"]),
                    window_seconds=float(rule_data["window_seconds"]),
                    min_delay_seconds=float(rule_data.get("min_delay_seconds", 0.0)),
                ) if rule_data else None
            rate_limits = RateLimitConfig(**rules)

        websocket_data = data.get("websocket", {})
        websocket = WebSocketConfig(
            heartbeat_interval_seconds=float(websocket_data.get("heartbeat_interval_seconds", 30.0)),
            max_clients=int(websocket_data.get("max_clients", 1000)),
            max_message_bytes=int(websocket_data.get("max_message_bytes", 100 * 1024)),
            block_poll_interval_seconds=float(websocket_data.get("block_poll_interval_seconds", 4.0)),
            outbound_queue_size=int(websocket_data.get("outbound_queue_size", 100)),
        )

        server_data = data.get("server", {})
        server = ServerConfig(
            host=server_data.get("host", "0.0.0.0"),
            http_port=int(server_data.get("http_port", 3000)),
            ws_port=int(server_data.get("ws_port", 8080)),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
        )

        return SystemConfig(
            providers=providers,
            cache=cache,
            rate_limits=rate_limits,
            websocket=websocket,
            server=server,
            logging=logging_config,
            startup_self_test=bool(data.get("startup_self_test", False)),
        )

    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except FileNotFoundError:
        return None


def _rule_to_dict(rule: Optional[RateLimitRule]) -> Optional[dict]:
    if rule is None:
        return None
    return {
        "max_requests": rule.max_requests,
        "window_seconds": rule.window_seconds,
        "min_delay_seconds": rule.min_delay_seconds,
    }


def save_config_to_file(config: SystemConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Args:
        config: SystemConfig to save
        config_path: Path to save the configuration

    Returns:
        True if successful, False otherwise
    """
    try:
        # Ensure parent directory exists
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "providers": {
                "urls": list(config.providers.urls),
                "max_attempts": config.providers.max_attempts,
                "request_timeout_seconds": config.providers.request_timeout_seconds,
            },
            "cache": {
                "ttl_seconds": config.cache.ttl_seconds,
                "max_entries": config.cache.max_entries,
                "use_redis": config.cache.use_redis,
                "redis_url": config.cache.redis_url,
            },
            "rate_limits": {
                "per_client": _rule_to_dict(config.rate_limits.per_client),
                "global_limit": _rule_to_dict(config.rate_limits.global_limit),
            },
            "websocket": {
                "heartbeat_interval_seconds": config.websocket.heartbeat_interval_seconds,
                "max_clients": config.websocket.max_clients,
                "max_message_bytes": config.websocket.max_message_bytes,
                "block_poll_interval_seconds": config.websocket.block_poll_interval_seconds,
                "outbound_queue_size": config.websocket.outbound_queue_size,
            },
            "server": {
                "host": config.server.host,
                "http_port": config.server.http_port,
                "ws_port": config.server.ws_port,
            },
            "logging": {
                "level": config.logging.level,
                "output_format": config.logging.output_format,
            },
            "startup_self_test": config.startup_self_test,
        }

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        return True

    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def _resolve_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    """Config from ``--config`` if given, else from the environment."""
    if getattr(args, "config", None):
        config = load_config_from_file(Path(args.config))
        if config is None:
            print(f"Error: Could not load config from {args.config}", file=sys.stderr)
        return config

    try:
        return load_config_from_env()
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return None


async def run_lookup(kind: str, value: str, config: SystemConfig, verbose: bool = False) -> int:
    """
    Run one lookup and print the JSON result.

    Returns:
        Exit code (0 on success, 1 on any gateway error)
    """
    logger = AuditLogger(output_format="text", level="debug" if verbose else "error")
    components = build_components(config, logger=logger)

    async with components.orchestrator as orchestrator:
        operation = {
            "resolve": orchestrator.resolve,
            "reverse": orchestrator.reverse,
            "avatar": orchestrator.avatar,
            "records": orchestrator.records,
        }[kind]
        try:
            result = await operation(value)
        except EnsGatewayError as e:
            print(json.dumps({"error": e.message, "code": e.code}, indent=2), file=sys.stderr)
            return 1

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle the 'serve' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    if args.port is not None:
        config.server.http_port = args.port
    if args.ws_port is not None:
        config.server.ws_port = args.ws_port

    if config.startup_self_test or args.self_test:
        result = asyncio.run(run_self_test(config=config, print_output=True))
        if not result.success:
            print("Self-test failed, not starting the gateway.", file=sys.stderr)
            return 1

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        pass
    return 0


def cmd_lookup(args: argparse.Namespace) -> int:
    """Handle the 'lookup' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    return asyncio.run(run_lookup(
        kind=args.kind,
        value=args.value,
        config=config,
        verbose=args.verbose,
    ))


def cmd_self_test(args: argparse.Namespace) -> int:
    """Handle the 'self-test' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    result = asyncio.run(run_self_test(config=config, print_output=True))
    return 0 if result.success else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(f"  RPC providers: {', '.join(config.providers.urls)}")
        print(f"  Max attempts: {config.providers.max_attempts}")
        print(f"  Cache TTL: {config.cache.ttl_seconds}s")
        print(f"  Redis: {config.cache.redis_url if config.cache.persistent_enabled else 'disabled'}")
        print(f"  HTTP port: {config.server.http_port}")
        print(f"  WebSocket port: {config.server.ws_port}")
        print(f"  Log level: {config.logging.level}")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        if save_config_to_file(create_default_config(), config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1

        validation = SelfTest(config).validate_config()
        for warning in validation.warnings:
            print(f"Warning: {warning}")
        if not validation.valid:
            for error in validation.errors:
                print(f"Error: {error}", file=sys.stderr)
            return 1

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="ens-gateway",
        description="HTTP and WebSocket gateway for ENS lookups",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'serve' command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP API and the live block WebSocket server",
    )
    serve_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file (default: environment variables)",
    )
    serve_parser.add_argument(
        "--port", "-p",
        type=int,
        help="HTTP port (overrides configuration)",
    )
    serve_parser.add_argument(
        "--ws-port",
        type=int,
        help="WebSocket port (overrides configuration)",
    )
    serve_parser.add_argument(
        "--self-test",
        action="store_true",
        help="Run the self-test before serving",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # 'lookup' command
    lookup_parser = subparsers.add_parser(
        "lookup",
        help="Run a single lookup",
    )
    lookup_parser.add_argument(
        "kind",
        choices=["resolve", "reverse", "avatar", "records"],
        help="Lookup kind",
    )
    lookup_parser.add_argument(
        "value",
        help="ENS name (e.g., vitalik.eth) or address for reverse lookups",
    )
    lookup_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    lookup_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output",
    )
    lookup_parser.set_defaults(func=cmd_lookup)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    # 'self-test' command
    self_test_parser = subparsers.add_parser(
        "self-test",
        help="Validate configuration and probe every RPC provider",
    )
    self_test_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    self_test_parser.set_defaults(func=cmd_self_test)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
