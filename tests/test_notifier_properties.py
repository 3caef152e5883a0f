"""
Property-based tests for the live block notifier.

WebSocket peers are in-memory doubles; heartbeats and polls are driven
one round at a time instead of waiting on timers.
"""

import asyncio
import json
from io import StringIO

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from ens_gateway.audit_logger import AuditLogger
from ens_gateway.config import WebSocketConfig
from ens_gateway.enums import ConnectionState, LogLevel
from ens_gateway.exceptions import ConnectionLimitError
from ens_gateway.notifier import GOING_AWAY, POLICY_VIOLATION, BlockNotifier

from fakes import FakePeer, FakeTransport, make_manager


async def settle(rounds: int = 10) -> None:
    """Let writer tasks and pong callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_notifier(
    transport: FakeTransport = None,
    max_clients: int = 10,
    logger: AuditLogger = None,
) -> tuple[BlockNotifier, FakeTransport]:
    transport = transport or FakeTransport(block_number=100)
    notifier = BlockNotifier(
        providers=make_manager([transport]),
        config=WebSocketConfig(heartbeat_interval_seconds=30.0, max_clients=max_clients),
        logger=logger,
    )
    return notifier, transport


def messages_of(peer: FakePeer, message_type: str) -> list[dict]:
    return [m for m in map(json.loads, peer.sent) if m["type"] == message_type]


class TestConnectionLifecycle:
    """Registration, welcome payload and capacity."""

    def test_welcome_is_sent_on_connect(self) -> None:
        notifier, _ = make_notifier()
        peer = FakePeer()

        async def scenario():
            conn = await notifier.register(peer)
            await settle()
            await notifier.close_all()
            return conn

        conn = asyncio.run(scenario())

        welcome = json.loads(peer.sent[0])
        assert welcome["type"] == "welcome"
        assert welcome["features"] == ["live-blocks", "ens-updates"]
        assert "timestamp" in welcome
        assert conn.state is ConnectionState.CLOSED

    def test_connection_over_capacity_is_closed_with_policy_violation(self) -> None:
        notifier, _ = make_notifier(max_clients=1)
        first, second = FakePeer(), FakePeer()

        async def scenario():
            await notifier.register(first)
            with pytest.raises(ConnectionLimitError):
                await notifier.register(second)
            count = len(notifier.connections)
            await notifier.close_all()
            return count

        assert asyncio.run(scenario()) == 1
        assert second.close_code == POLICY_VIOLATION
        assert second.close_reason == "Maximum clients reached"
        assert second.sent == []

    def test_serve_connection_rejects_over_capacity_quietly(self) -> None:
        notifier, _ = make_notifier(max_clients=1)
        first, second = FakePeer(), FakePeer(incoming=["{}"])

        async def scenario():
            await notifier.register(first)
            await notifier.serve_connection(second)
            await notifier.close_all()

        asyncio.run(scenario())

        assert second.close_code == POLICY_VIOLATION

    def test_serve_connection_unregisters_when_peer_leaves(self) -> None:
        notifier, _ = make_notifier()
        peer = FakePeer(incoming=[json.dumps({"type": "subscribe", "channel": "blocks"})])

        asyncio.run(notifier.serve_connection(peer))

        assert notifier.connections == frozenset()
        assert notifier.get_stats()["connected_clients"] == 0

    def test_subscribe_is_acknowledged(self) -> None:
        notifier, _ = make_notifier()
        peer = FakePeer()

        async def scenario():
            conn = await notifier.register(peer)
            await notifier.handle_message(conn, json.dumps({"type": "subscribe", "channel": "blocks"}))
            await notifier.handle_message(conn, b'{"type": "subscribe", "channel": "ens"}')
            await settle()
            channels = set(conn.channels)
            await notifier.close_all()
            return channels

        channels = asyncio.run(scenario())

        acks = messages_of(peer, "subscribed")
        assert [ack["channel"] for ack in acks] == ["blocks", "ens"]
        assert channels == {"blocks", "ens"}

    def test_malformed_message_is_logged_and_ignored(self) -> None:
        logger = AuditLogger(output_format="json", output_stream=StringIO())
        notifier, _ = make_notifier(logger=logger)
        peer = FakePeer()

        async def scenario():
            conn = await notifier.register(peer)
            await notifier.handle_message(conn, "{not json")
            await settle()
            open_count = len(notifier.connections)
            await notifier.close_all()
            return open_count

        assert asyncio.run(scenario()) == 1
        assert any(
            e.level is LogLevel.WARN and "parse error" in e.message for e in logger.entries
        )

    def test_close_all_uses_going_away(self) -> None:
        notifier, _ = make_notifier()
        peers = [FakePeer() for _ in range(3)]

        async def scenario():
            for peer in peers:
                await notifier.register(peer)
            await notifier.close_all()

        asyncio.run(scenario())

        assert all(p.close_code == GOING_AWAY for p in peers)
        assert notifier.connections == frozenset()


class TestHeartbeat:
    """Liveness probing and removal of silent peers."""

    def test_responsive_peer_survives(self) -> None:
        notifier, _ = make_notifier()
        peer = FakePeer(answers_pings=True)

        async def scenario():
            conn = await notifier.register(peer)
            for _ in range(3):
                assert await notifier.heartbeat(conn) is True
                await settle()
            alive, last_pong = conn.is_alive, conn.last_pong
            await notifier.close_all()
            return alive, last_pong

        alive, last_pong = asyncio.run(scenario())

        assert alive is True
        assert last_pong is not None
        assert peer.pings == 3
        assert peer.close_code == GOING_AWAY  # from close_all only

    def test_silent_peer_is_removed_and_gets_no_more_blocks(self) -> None:
        notifier, _ = make_notifier()
        silent = FakePeer(answers_pings=False)

        async def scenario():
            conn = await notifier.register(silent)
            await settle()
            first = await notifier.heartbeat(conn)
            await settle()
            second = await notifier.heartbeat(conn)
            delivered = notifier.broadcast_block(101)
            await settle()
            return first, second, delivered

        first, second, delivered = asyncio.run(scenario())

        assert first is True
        assert second is False
        assert delivered == 0
        assert notifier.connections == frozenset()
        assert silent.close_code == GOING_AWAY
        assert silent.close_reason == "Heartbeat timeout"
        assert messages_of(silent, "block") == []

    @given(answers=st.lists(st.booleans(), min_size=1, max_size=8))
    @settings(max_examples=50)
    def test_two_rounds_keep_exactly_the_responsive_peers(self, answers: list[bool]) -> None:
        """
        *For any* mix of responsive and silent peers, two heartbeat rounds
        leave exactly the responsive ones, and a broadcast reaches only them.
        """
        notifier, _ = make_notifier(max_clients=len(answers))
        peers = [FakePeer(answers_pings=a) for a in answers]

        async def scenario():
            for peer in peers:
                await notifier.register(peer)
            await settle()
            await notifier.heartbeat_all()
            await settle()
            survivors = await notifier.heartbeat_all()
            delivered = notifier.broadcast_block(200)
            await settle()
            await notifier.close_all()
            return survivors, delivered

        survivors, delivered = asyncio.run(scenario())

        assert survivors == delivered == sum(answers)
        for peer, answered in zip(peers, answers):
            assert bool(messages_of(peer, "block")) == answered


class TestBlockFanOut:
    """Polling and broadcast isolation."""

    def test_first_poll_sets_baseline_then_new_blocks_broadcast(self) -> None:
        notifier, transport = make_notifier(FakeTransport(block_number=100))
        peer = FakePeer()

        async def scenario():
            await notifier.register(peer)
            baseline = await notifier.poll_once()
            same = await notifier.poll_once()
            transport.block_number = 101
            new = await notifier.poll_once()
            transport.block_number = 99
            older = await notifier.poll_once()
            await settle()
            await notifier.close_all()
            return baseline, same, new, older

        baseline, same, new, older = asyncio.run(scenario())

        assert (baseline, same, new, older) == (None, None, 101, None)
        blocks = messages_of(peer, "block")
        assert [b["block_number"] for b in blocks] == [101]
        assert notifier.last_block == 101

    def test_poll_failure_is_logged_not_raised(self) -> None:
        logger = AuditLogger(output_format="json", output_stream=StringIO())
        notifier, _ = make_notifier(FakeTransport(failing=True), logger=logger)

        assert asyncio.run(notifier.poll_once()) is None
        assert any(e.message.startswith("Block poll failed") for e in logger.entries)

    def test_send_failure_does_not_block_other_peers(self) -> None:
        notifier, _ = make_notifier()
        healthy_a, broken, healthy_b = FakePeer(), FakePeer(), FakePeer()

        async def scenario():
            for peer in (healthy_a, broken, healthy_b):
                await notifier.register(peer)
            await settle()
            broken.fail_sends = True
            queued = notifier.broadcast_block(500)
            await settle()
            remaining = len(notifier.connections)
            await notifier.close_all()
            return queued, remaining

        queued, remaining = asyncio.run(scenario())

        assert queued == 3
        assert remaining == 2
        assert [b["block_number"] for b in messages_of(healthy_a, "block")] == [500]
        assert [b["block_number"] for b in messages_of(healthy_b, "block")] == [500]
        assert messages_of(broken, "block") == []
        assert broken.close_code == GOING_AWAY

    def test_full_outbound_queue_drops_message_for_that_peer_only(self) -> None:
        transport = FakeTransport()
        notifier = BlockNotifier(
            providers=make_manager([transport]),
            config=WebSocketConfig(max_clients=5, outbound_queue_size=1),
        )
        peer = FakePeer()

        async def scenario():
            await notifier.register(peer)
            # Welcome still queued: the queue is full
            return notifier.broadcast_block(1)

        assert asyncio.run(scenario()) == 0

    def test_stats(self) -> None:
        notifier, _ = make_notifier(max_clients=7)

        assert notifier.get_stats() == {
            "connected_clients": 0,
            "max_clients": 7,
            "last_block": None,
        }
