"""
Tests for the server runtime.

Runs the real HTTP and WebSocket servers on ephemeral loopback ports with
in-memory upstream transports and checks that every way of stopping the
gateway tears down the WebSocket server, the block subscription, the cache
backend and the transports.
"""

import asyncio
import os
import signal
import sys
from io import StringIO

import pytest

from ens_gateway.audit_logger import AuditLogger
from ens_gateway.cli import create_default_config
from ens_gateway.enums import LogLevel
from ens_gateway.server import EmbeddedHttpServer, GatewayServer, build_components

from fakes import FakeRedis, FakeTransport


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


class RunningGateway:
    """A GatewayServer wired to fakes, plus handles for assertions."""

    def __init__(self) -> None:
        config = create_default_config()
        config.providers.urls = ["https://a.example", "https://b.example"]
        config.server.host = "127.0.0.1"
        config.server.http_port = 0
        config.server.ws_port = 0

        self.transports: dict[str, FakeTransport] = {}
        self.redis = FakeRedis()
        self.logger = AuditLogger(output_format="json", output_stream=StringIO())
        self.server = GatewayServer(build_components(
            config,
            logger=self.logger,
            transport_factory=self._make_transport,
            persistent=self.redis,
        ))

    def _make_transport(self, endpoint) -> FakeTransport:
        transport = FakeTransport(endpoint.url)
        self.transports[endpoint.url] = transport
        return transport

    async def serve_until(self, stop) -> None:
        """Start serving, call ``stop()`` once listening, wait for the exit."""
        task = asyncio.create_task(self.server.run())
        while not self.server.started:
            if task.done():
                task.result()
            await asyncio.sleep(0.01)
        stop()
        await asyncio.wait_for(task, timeout=10)

    @property
    def messages(self) -> list[str]:
        return [e.message for e in self.logger.entries]

    def assert_torn_down(self) -> None:
        assert self.server.stopped
        assert all(t.closed for t in self.transports.values())
        assert len(self.transports) == 2
        assert self.redis.closed
        assert "Shutting down gracefully" in self.messages
        assert self.messages[-1] == "Shutdown complete"


class TestOrderlyShutdown:
    """Every stop path runs the full teardown."""

    def test_request_shutdown(self) -> None:
        gateway = RunningGateway()

        asyncio.run(gateway.serve_until(gateway.server.request_shutdown))

        gateway.assert_torn_down()

    @posix_only
    @pytest.mark.parametrize("sig", [signal.SIGTERM, signal.SIGINT])
    def test_signal_stops_gateway(self, sig: signal.Signals) -> None:
        gateway = RunningGateway()

        asyncio.run(gateway.serve_until(lambda: os.kill(os.getpid(), sig)))

        gateway.assert_torn_down()
        assert f"Received {sig.name}, stopping" in gateway.messages

    @posix_only
    def test_signal_handlers_are_removed_after_exit(self) -> None:
        gateway = RunningGateway()
        before = signal.getsignal(signal.SIGTERM)

        asyncio.run(gateway.serve_until(gateway.server.request_shutdown))

        assert signal.getsignal(signal.SIGTERM) == before

    def test_uncaught_loop_error_triggers_shutdown(self) -> None:
        gateway = RunningGateway()

        def fail() -> None:
            asyncio.get_running_loop().call_exception_handler({
                "message": "Task exception was never retrieved",
                "exception": RuntimeError("subscription crashed"),
            })

        asyncio.run(gateway.serve_until(fail))

        gateway.assert_torn_down()
        errors = [e for e in gateway.logger.entries if e.level is LogLevel.ERROR]
        assert errors[0].message == "Unhandled error: Task exception was never retrieved"
        assert errors[0].data["error_type"] == "RuntimeError"

    def test_shutdown_is_idempotent(self) -> None:
        gateway = RunningGateway()

        async def run():
            await gateway.serve_until(gateway.server.request_shutdown)
            await gateway.server.shutdown()

        asyncio.run(run())

        assert gateway.messages.count("Shutdown complete") == 1


def test_http_server_leaves_signals_alone() -> None:
    """EmbeddedHttpServer installs no handlers of its own."""
    before = signal.getsignal(signal.SIGINT)
    server = EmbeddedHttpServer.__new__(EmbeddedHttpServer)

    with server.capture_signals():
        assert signal.getsignal(signal.SIGINT) == before


def test_build_components_shares_one_provider_manager() -> None:
    gateway = RunningGateway()
    components = gateway.server.components

    assert components.orchestrator.providers is components.providers
    assert components.cache.has_persistent_tier
    assert components.rate_limiter.enabled
