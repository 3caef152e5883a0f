"""
Tests for the startup self-test.

RPC endpoints are simulated with ``httpx.MockTransport``.
"""

import asyncio
import json

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from ens_gateway.cli import create_default_config
from ens_gateway.self_test import SelfTest


def rpc_handler(responses: dict):
    """MockTransport handler answering per host."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["method"] == "eth_blockNumber"
        outcome = responses[request.url.host]
        if isinstance(outcome, Exception):
            raise outcome
        status, body = outcome
        return httpx.Response(status, json=body) if isinstance(body, (dict, list)) else httpx.Response(status, text=body)

    return handler


def config_with(urls: list[str]):
    config = create_default_config()
    config.providers.urls = urls
    return config


class TestConnectivity:
    """Per-endpoint probes."""

    def test_mixed_endpoints(self) -> None:
        config = config_with([
            "https://good.example",
            "https://down.example",
            "https://error.example",
            "https://garbage.example",
        ])
        transport = httpx.MockTransport(rpc_handler({
            "good.example": (200, {"jsonrpc": "2.0", "id": 1, "result": "0x121eac0"}),
            "down.example": httpx.ConnectError("connection refused"),
            "error.example": (200, {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "limit"}}),
            "garbage.example": (502, "bad gateway"),
        }))

        result = asyncio.run(SelfTest(config, http_transport=transport).run())

        assert result.success
        by_host = {httpx.URL(r.endpoint).host: r for r in result.endpoint_results}
        assert by_host["good.example"].block_number == 0x121EAC0
        assert by_host["down.example"].error.startswith("Connection error")
        assert by_host["error.example"].error.startswith("RPC error")
        assert by_host["garbage.example"].error == "HTTP 502"
        assert by_host["garbage.example"].http_status_code == 502
        assert [r.index for r in result.endpoint_results] == [0, 1, 2, 3]
        assert len(result.failed_endpoints) == 3

    def test_all_endpoints_down_fails(self) -> None:
        config = config_with(["https://a.example", "https://b.example"])
        transport = httpx.MockTransport(rpc_handler({
            "a.example": httpx.ReadTimeout("timed out"),
            "b.example": (200, {"jsonrpc": "2.0", "id": 1, "result": "not-hex"}),
        }))

        result = asyncio.run(SelfTest(config, http_transport=transport).run())

        assert not result.success
        assert result.endpoint_results[0].error == "Connection timed out after 5.0s"
        assert result.endpoint_results[1].error.startswith("Malformed block number")

    @given(block=st.integers(min_value=0, max_value=2**40))
    @settings(max_examples=50)
    def test_block_number_is_decoded(self, block: int) -> None:
        transport = httpx.MockTransport(rpc_handler({
            "rpc.example": (200, {"jsonrpc": "2.0", "id": 1, "result": hex(block)}),
        }))

        result = asyncio.run(SelfTest(config_with(["https://rpc.example"]), http_transport=transport).run())

        assert result.successful_endpoints[0].block_number == block


class TestConfigValidation:
    """Static configuration checks."""

    def test_default_config_is_valid(self) -> None:
        validation = SelfTest(create_default_config()).validate_config()

        assert validation.valid
        assert validation.errors == []

    @pytest.mark.parametrize("mutate,message", [
        (lambda c: setattr(c.providers, "urls", []), "No RPC providers configured"),
        (lambda c: setattr(c.providers, "urls", ["ftp://rpc.example"]), "RPC provider URL is not an http(s) URL: ftp://rpc.example"),
        (lambda c: setattr(c.providers, "max_attempts", 0), "max_attempts must be at least 1"),
        (lambda c: setattr(c.cache, "ttl_seconds", 0), "Cache TTL must be positive"),
        (lambda c: setattr(c.cache, "use_redis", True), "USE_REDIS is enabled but no Redis URL is configured"),
        (lambda c: setattr(c.websocket, "max_clients", 0), "max_clients must be at least 1"),
        (lambda c: setattr(c.server, "ws_port", 70000), "WebSocket port out of range: 70000"),
    ])
    def test_invalid_values_are_reported(self, mutate, message: str) -> None:
        config = create_default_config()
        mutate(config)

        validation = SelfTest(config).validate_config()

        assert not validation.valid
        assert message in validation.errors

    def test_invalid_config_skips_connectivity(self) -> None:
        config = config_with([])

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        result = asyncio.run(SelfTest(config, http_transport=httpx.MockTransport(handler)).run())

        assert not result.success
        assert result.endpoint_results == []

    def test_plain_http_and_single_provider_warn(self) -> None:
        validation = SelfTest(config_with(["http://localhost:8545"])).validate_config()

        assert validation.valid
        assert "RPC provider does not use TLS: http://localhost:8545" in validation.warnings
        assert any("no fallback" in w for w in validation.warnings)

    def test_print_results(self, capsys: pytest.CaptureFixture) -> None:
        transport = httpx.MockTransport(rpc_handler({
            "rpc.example": (200, {"jsonrpc": "2.0", "id": 1, "result": "0x10"}),
        }))
        self_test = SelfTest(config_with(["https://rpc.example"]), http_transport=transport)

        self_test.print_results(asyncio.run(self_test.run()))

        out = capsys.readouterr().out
        assert "Self-test passed" in out
        assert "block 16" in out
