"""
Live Block Notifier for the ENS gateway.

This module streams new-block events to WebSocket subscribers:
- One subscription task polls the active upstream endpoint for new blocks
- Each event is serialized once and pushed onto every open connection's
  outbound queue; a per-connection writer task drains it
- A heartbeat probes every connection and drops peers that stop answering
- Capacity is bounded; peers over the limit are closed with 1008

Connection lifecycle: CONNECTING -> OPEN -> (heartbeat loop) -> CLOSED
"""

import asyncio
import itertools
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from websockets.exceptions import ConnectionClosed

from .audit_logger import AuditLogger
from .config import WebSocketConfig
from .enums import ConnectionState, ErrorCode, LogLevel
from .exceptions import ConnectionLimitError
from .models import utc_timestamp
from .provider_manager import ProviderManager


POLICY_VIOLATION = 1008
GOING_AWAY = 1001

FEATURES = ["live-blocks", "ens-updates"]


class PeerSocket(Protocol):
    """The subset of a server-side WebSocket connection the notifier uses."""

    async def send(self, message: str) -> None:
        ...

    async def ping(self) -> Awaitable[Any]:
        """Send a probe; the returned awaitable completes when the pong arrives."""
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    def __aiter__(self) -> AsyncIterator[Any]:
        ...


@dataclass(eq=False)
class SubscriberConnection:
    """One live WebSocket peer."""

    id: int
    peer: PeerSocket
    outbound: asyncio.Queue
    state: ConnectionState = ConnectionState.CONNECTING
    is_alive: bool = True
    last_pong: Optional[float] = None
    channels: set[str] = field(default_factory=set)
    connected_at: str = field(default_factory=utc_timestamp)
    writer_task: Optional[asyncio.Task] = None


class BlockNotifier:
    """
    Connection registry, heartbeat and block fan-out.

    The connection set is only mutated between awaits, so no lock guards it.
    """

    def __init__(
        self,
        providers: ProviderManager,
        config: WebSocketConfig,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the notifier.

        Args:
            providers: Source of the active endpoint for block polling
            config: Live block channel configuration
            logger: Optional audit logger
            clock: Wall clock used for pong timestamps
        """
        self._providers = providers
        self._config = config
        self._logger = logger
        self._clock = clock
        self._connections: set[SubscriberConnection] = set()
        self._ids = itertools.count(1)
        self._last_block: Optional[int] = None

    @property
    def connections(self) -> frozenset[SubscriberConnection]:
        return frozenset(self._connections)

    @property
    def last_block(self) -> Optional[int]:
        return self._last_block

    # -- Connection lifecycle ----------------------------------------------

    async def register(self, peer: PeerSocket) -> SubscriberConnection:
        """
        Admit ``peer`` and queue the welcome payload.

        Raises:
            ConnectionLimitError: If the set is full (the peer is closed first)
        """
        if len(self._connections) >= self._config.max_clients:
            await self._close_peer(peer, POLICY_VIOLATION, "Maximum clients reached")
            self._log(
                LogLevel.WARN,
                "WebSocket client rejected: maximum clients reached",
                {"max_clients": self._config.max_clients},
            )
            raise ConnectionLimitError(
                code=ErrorCode.CONNECTION_LIMIT.value,
                message="Maximum clients reached",
                details={"max_clients": self._config.max_clients},
            )

        conn = SubscriberConnection(
            id=next(self._ids),
            peer=peer,
            outbound=asyncio.Queue(maxsize=self._config.outbound_queue_size),
        )
        self._connections.add(conn)
        conn.state = ConnectionState.OPEN
        conn.writer_task = asyncio.create_task(self._writer(conn))

        self._enqueue(conn, json.dumps({
            "type": "welcome",
            "message": "Connected to ENS Gateway WebSocket",
            "features": FEATURES,
            "timestamp": utc_timestamp(),
        }))

        self._log(
            LogLevel.INFO,
            f"WebSocket client connected ({len(self._connections)} total)",
            {"connection_id": conn.id},
        )
        return conn

    async def unregister(self, conn: SubscriberConnection) -> None:
        """Remove ``conn`` from the set and stop its writer."""
        if conn.state is ConnectionState.CLOSED:
            return
        conn.state = ConnectionState.CLOSED
        self._connections.discard(conn)

        task = conn.writer_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        self._log(
            LogLevel.INFO,
            f"WebSocket client disconnected ({len(self._connections)} remaining)",
            {"connection_id": conn.id},
        )

    async def serve_connection(self, peer: PeerSocket) -> None:
        """
        Full lifecycle of one peer: register, heartbeat, read loop, cleanup.

        Used as the WebSocket server's connection handler.
        """
        try:
            conn = await self.register(peer)
        except ConnectionLimitError:
            return

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(conn))
        try:
            async for raw in peer:
                await self.handle_message(conn, raw)
        except ConnectionClosed:
            pass
        finally:
            heartbeat_task.cancel()
            await self.unregister(conn)

    async def handle_message(self, conn: SubscriberConnection, raw: Any) -> None:
        """
        Handle one inbound frame.

        Subscribe requests are acknowledged; every connection receives every
        block regardless of the channels it declared.
        """
        try:
            text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
            message = json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            self._log(
                LogLevel.WARN,
                f"WebSocket message parse error: {e}",
                {"connection_id": conn.id},
            )
            return

        if isinstance(message, dict) and message.get("type") == "subscribe":
            channel = message.get("channel")
            if isinstance(channel, str):
                conn.channels.add(channel)
            self._enqueue(conn, json.dumps({
                "type": "subscribed",
                "channel": channel,
                "timestamp": utc_timestamp(),
            }))

    # -- Heartbeat ---------------------------------------------------------

    async def heartbeat(self, conn: SubscriberConnection) -> bool:
        """
        Run one liveness round for ``conn``.

        Returns:
            False if the connection was terminated, True otherwise
        """
        if conn.state is not ConnectionState.OPEN:
            return False

        if not conn.is_alive:
            self._log(
                LogLevel.INFO,
                "Terminating unresponsive WebSocket client",
                {"connection_id": conn.id, "last_pong": conn.last_pong},
            )
            await self._close_peer(conn.peer, GOING_AWAY, "Heartbeat timeout")
            await self.unregister(conn)
            return False

        conn.is_alive = False
        try:
            pong_waiter = await conn.peer.ping()
        except Exception as e:
            self._log(
                LogLevel.WARN,
                f"WebSocket ping failed: {e}",
                {"connection_id": conn.id},
            )
            await self.unregister(conn)
            return False

        asyncio.ensure_future(pong_waiter).add_done_callback(
            lambda future: self._on_pong(conn, future)
        )
        return True

    async def heartbeat_all(self) -> int:
        """Run one liveness round for every connection; returns survivors."""
        for conn in list(self._connections):
            await self.heartbeat(conn)
        return len(self._connections)

    def _on_pong(self, conn: SubscriberConnection, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        conn.is_alive = True
        conn.last_pong = self._clock()

    async def _heartbeat_loop(self, conn: SubscriberConnection) -> None:
        while conn.state is ConnectionState.OPEN:
            await asyncio.sleep(self._config.heartbeat_interval_seconds)
            if not await self.heartbeat(conn):
                break

    # -- Block fan-out -----------------------------------------------------

    def broadcast_block(self, block_number: int) -> int:
        """
        Queue a block event for every open connection.

        Returns:
            Number of connections the event was queued for
        """
        message = json.dumps({
            "type": "block",
            "block_number": block_number,
            "timestamp": utc_timestamp(),
        })

        delivered = 0
        for conn in list(self._connections):
            if conn.state is ConnectionState.OPEN and self._enqueue(conn, message):
                delivered += 1
        return delivered

    async def poll_once(self) -> Optional[int]:
        """
        Read the block number from the active endpoint and broadcast it if new.

        Returns:
            The new block number, or None if nothing was broadcast
        """
        transport = self._providers.get_active_transport()
        try:
            block_number = await transport.get_block_number()
        except Exception as e:
            self._log(
                LogLevel.WARN,
                f"Block poll failed: {e}",
                {"endpoint": transport.endpoint.url},
            )
            return None

        if self._last_block is not None and block_number <= self._last_block:
            return None

        first_observation = self._last_block is None
        self._last_block = block_number
        if first_observation:
            return None

        self.broadcast_block(block_number)
        return block_number

    async def run_block_subscription(self) -> None:
        """Poll for new blocks until cancelled."""
        self._log(
            LogLevel.INFO,
            "Block subscription started",
            {"interval": self._config.block_poll_interval_seconds},
        )
        while True:
            await self.poll_once()
            await asyncio.sleep(self._config.block_poll_interval_seconds)

    async def close_all(self) -> None:
        """Close every peer (server shutdown)."""
        for conn in list(self._connections):
            await self._close_peer(conn.peer, GOING_AWAY, "Server shutting down")
            await self.unregister(conn)

    def get_stats(self) -> dict:
        return {
            "connected_clients": len(self._connections),
            "max_clients": self._config.max_clients,
            "last_block": self._last_block,
        }

    # -- Internals ---------------------------------------------------------

    def _enqueue(self, conn: SubscriberConnection, message: str) -> bool:
        try:
            conn.outbound.put_nowait(message)
        except asyncio.QueueFull:
            self._log(
                LogLevel.WARN,
                "Outbound queue full, dropping message",
                {"connection_id": conn.id},
            )
            return False
        return True

    async def _writer(self, conn: SubscriberConnection) -> None:
        while True:
            message = await conn.outbound.get()
            try:
                await conn.peer.send(message)
            except Exception as e:
                conn.outbound.task_done()
                self._log(
                    LogLevel.WARN,
                    f"WebSocket send failed: {e}",
                    {"connection_id": conn.id},
                )
                await self._close_peer(conn.peer, GOING_AWAY, "Send failed")
                await self.unregister(conn)
                return
            conn.outbound.task_done()

    async def _close_peer(self, peer: PeerSocket, code: int, reason: str) -> None:
        try:
            await peer.close(code, reason)
        except Exception as e:
            self._log(LogLevel.DEBUG, f"Error closing WebSocket peer: {e}")

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "BlockNotifier", message, data)
