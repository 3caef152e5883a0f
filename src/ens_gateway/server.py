"""
Server runtime for the ENS gateway.

Wires the components together from a SystemConfig and runs the three
long-lived pieces on one event loop:
- The HTTP API (uvicorn)
- The live block WebSocket server (websockets)
- The block subscription task

Shutdown order: HTTP server, WebSocket peers and server, subscription task,
then upstream transports and the cache.
"""

import asyncio
import contextlib
import signal
from dataclasses import dataclass
from typing import Iterator, Optional

import uvicorn
from fastapi import FastAPI
from websockets.asyncio.server import Server, serve

from .api import create_app
from .audit_logger import AuditLogger
from .cache import DualLayerCache, LocalCache, PersistentBackend, RedisBackend
from .config import SystemConfig
from .enums import LogLevel
from .models import Endpoint
from .notifier import BlockNotifier
from .orchestrator import LookupOrchestrator
from .provider_manager import ProviderManager
from .rate_limiter import RateLimiter
from .transport import TransportFactory, web3_transport_factory


@dataclass
class GatewayComponents:
    """Everything the runtime needs, built from one configuration."""

    config: SystemConfig
    logger: AuditLogger
    providers: ProviderManager
    cache: DualLayerCache
    orchestrator: LookupOrchestrator
    notifier: BlockNotifier
    rate_limiter: RateLimiter
    app: FastAPI


def build_components(
    config: SystemConfig,
    logger: Optional[AuditLogger] = None,
    transport_factory: Optional[TransportFactory] = None,
    persistent: Optional[PersistentBackend] = None,
) -> GatewayComponents:
    """
    Build the gateway components from configuration.

    Args:
        config: System configuration
        logger: Audit logger (created from the logging config if omitted)
        transport_factory: Upstream transport factory (web3 if omitted)
        persistent: Persistent cache backend (Redis from config if omitted)

    Returns:
        GatewayComponents ready to serve
    """
    if logger is None:
        logger = AuditLogger(
            output_format=config.logging.output_format,
            level=config.logging.level,
        )

    providers = ProviderManager(
        endpoints=[Endpoint(url) for url in config.providers.urls],
        transport_factory=transport_factory
        or web3_transport_factory(config.providers.request_timeout_seconds),
        default_max_attempts=config.providers.max_attempts,
        logger=logger,
    )

    if persistent is None and config.cache.persistent_enabled:
        persistent = RedisBackend(config.cache.redis_url)
        logger.log(LogLevel.INFO, "GatewayServer", "Redis cache tier enabled")

    cache = DualLayerCache(
        local=LocalCache(
            default_ttl=config.cache.ttl_seconds,
            max_entries=config.cache.max_entries,
        ),
        persistent=persistent,
        default_ttl=config.cache.ttl_seconds,
        logger=logger,
    )

    orchestrator = LookupOrchestrator(providers=providers, cache=cache, logger=logger)
    notifier = BlockNotifier(providers=providers, config=config.websocket, logger=logger)
    rate_limiter = RateLimiter(config.rate_limits)

    app = create_app(
        orchestrator,
        notifier=notifier,
        rate_limiter=rate_limiter,
        logger=logger,
        server_config=config.server,
    )

    return GatewayComponents(
        config=config,
        logger=logger,
        providers=providers,
        cache=cache,
        orchestrator=orchestrator,
        notifier=notifier,
        rate_limiter=rate_limiter,
        app=app,
    )


SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class EmbeddedHttpServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the gateway runtime."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class GatewayServer:
    """
    Runs the HTTP API, the WebSocket server and the block subscription.

    SIGINT and SIGTERM stop the HTTP server; the rest of the runtime is then
    torn down in order. An unhandled error on the event loop is logged and
    triggers the same orderly shutdown.
    """

    def __init__(self, components: GatewayComponents) -> None:
        self._components = components
        self._http: Optional[uvicorn.Server] = None
        self._ws_server: Optional[Server] = None
        self._subscription: Optional[asyncio.Task] = None
        self._signals_installed: list[signal.Signals] = []
        self._stopped = False

    @property
    def components(self) -> GatewayComponents:
        return self._components

    @property
    def started(self) -> bool:
        """True once the HTTP server accepts connections."""
        return self._http is not None and self._http.started

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def run(self) -> None:
        """Serve until a shutdown signal arrives, then clean up."""
        config = self._components.config
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)

        self._http = EmbeddedHttpServer(uvicorn.Config(
            self._components.app,
            host=config.server.host,
            port=config.server.http_port,
            log_level="warning",
            access_log=False,
        ))
        self._install_signal_handlers(loop)

        try:
            self._ws_server = await serve(
                self._components.notifier.serve_connection,
                config.server.host,
                config.server.ws_port,
                max_size=config.websocket.max_message_bytes,
                ping_interval=None,
            )
            self._subscription = asyncio.create_task(
                self._components.notifier.run_block_subscription()
            )

            self._log(
                LogLevel.INFO,
                f"ENS Gateway listening on http://{config.server.host}:{config.server.http_port}",
                {"ws_port": config.server.ws_port, "providers": len(config.providers.urls)},
            )

            await self._http.serve()
        finally:
            self._remove_signal_handlers(loop)
            teardown = asyncio.ensure_future(self.shutdown())
            try:
                await asyncio.shield(teardown)
            except asyncio.CancelledError:
                await teardown
                raise
            finally:
                loop.set_exception_handler(None)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops and non-main threads
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def _on_signal(self, sig: signal.Signals) -> None:
        self._log(LogLevel.INFO, f"Received {sig.name}, stopping")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        """Ask the HTTP server to stop; ``run`` then performs the cleanup."""
        if self._http is not None:
            self._http.should_exit = True

    async def shutdown(self) -> None:
        """Tear down every component. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._log(LogLevel.INFO, "Shutting down gracefully")

        self.request_shutdown()

        await self._components.notifier.close_all()
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()

        if self._subscription is not None:
            self._subscription.cancel()
            try:
                await self._subscription
            except asyncio.CancelledError:
                pass

        await self._components.orchestrator.close()
        self._log(LogLevel.INFO, "Shutdown complete")

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        error = context.get("exception")
        self._components.logger.log_error(
            "GatewayServer",
            f"Unhandled error: {context.get('message', 'unknown')}",
            error=error if isinstance(error, Exception) else None,
        )
        self.request_shutdown()

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        self._components.logger.log(level, "GatewayServer", message, data)


async def run_server(config: SystemConfig) -> None:
    """Build the components from ``config`` and serve until stopped."""
    server = GatewayServer(build_components(config))
    await server.run()
