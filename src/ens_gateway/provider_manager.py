"""
Provider Manager for the ENS gateway.

This module owns the upstream endpoint rotation: a cursor into the endpoint
list, per-endpoint consecutive failure counters, and the fallback algorithm
that retries a read-only operation across endpoints.

Behavior:
- Each attempt runs against the endpoint under the cursor
- Success resets that endpoint's failure counter; the cursor stays put
- Failure increments the counter and advances the cursor round-robin
- Exhausting the attempt budget raises ProvidersExhaustedError
- Domain outcomes (validation, not found) propagate without counting as failures

Failure counters are informational only; no endpoint is ever excluded from
rotation.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from .audit_logger import AuditLogger
from .enums import ErrorCode, LogLevel
from .exceptions import NotFoundError, ProvidersExhaustedError, ValidationError
from .models import Endpoint, ProviderStats
from .transport import EnsTransport, TransportFactory, web3_transport_factory

T = TypeVar("T")

Operation = Callable[[EnsTransport], Awaitable[T]]


class ProviderManager:
    """
    Round-robin-on-failure controller over a fixed endpoint set.

    All state changes happen between awaits, so concurrent callers on one
    event loop never observe a half-updated cursor.
    """

    # Errors that describe the query, not the endpoint
    PASSTHROUGH_ERRORS = (ValidationError, NotFoundError)

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        transport_factory: Optional[TransportFactory] = None,
        default_max_attempts: int = 3,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the provider manager.

        Args:
            endpoints: Ordered upstream endpoints (at least one)
            transport_factory: Builds the transport bound to each endpoint
            default_max_attempts: Attempt budget when a call does not pass one
            logger: Optional audit logger
        """
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be at least 1")

        factory = transport_factory or web3_transport_factory()
        self._endpoints: tuple[Endpoint, ...] = tuple(endpoints)
        self._transports: list[EnsTransport] = [factory(e) for e in self._endpoints]
        self._default_max_attempts = default_max_attempts
        self._logger = logger

        self._current_index = 0
        self._failure_count: dict[int, int] = {}

        self._log(
            LogLevel.INFO,
            f"Initialized {len(self._endpoints)} RPC providers",
            {"endpoints": [e.url for e in self._endpoints]},
        )

    @property
    def endpoints(self) -> tuple[Endpoint, ...]:
        return self._endpoints

    @property
    def current_index(self) -> int:
        return self._current_index

    def get_active_endpoint(self) -> Endpoint:
        """Return the endpoint under the cursor without making a call."""
        return self._endpoints[self._current_index]

    def get_active_transport(self) -> EnsTransport:
        """Return the transport bound to the endpoint under the cursor."""
        return self._transports[self._current_index]

    async def execute_with_fallback(
        self,
        operation: Operation[T],
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run ``operation`` against successive endpoints until one succeeds.

        Args:
            operation: Async read-only call taking the transport of one endpoint
            max_attempts: Total attempt budget (defaults to the configured cap)

        Returns:
            The first successful result

        Raises:
            ProvidersExhaustedError: If every attempt failed
            ValidationError, NotFoundError: Raised by the operation itself
        """
        attempts_allowed = max_attempts or self._default_max_attempts
        last_error: Optional[Exception] = None
        attempts = 0

        while attempts < attempts_allowed:
            index = self._current_index
            transport = self._transports[index]
            attempts += 1

            try:
                result = await operation(transport)
            except self.PASSTHROUGH_ERRORS:
                raise
            except Exception as e:
                last_error = e
                self._failure_count[index] = self._failure_count.get(index, 0) + 1
                self._current_index = (index + 1) % len(self._endpoints)
                self._log(
                    LogLevel.WARN,
                    f"Provider {index} failed (attempt {attempts}/{attempts_allowed}): "
                    f"{self._describe(e)}",
                    {
                        "provider_index": index,
                        "endpoint": self._endpoints[index].url,
                        "failures": self._failure_count[index],
                        "next_provider": self._current_index,
                    },
                )
                continue

            self._failure_count[index] = 0
            return result

        last_message = self._describe(last_error) if last_error else "unknown error"
        raise ProvidersExhaustedError(
            code=ErrorCode.PROVIDERS_EXHAUSTED.value,
            message=f"All providers failed after {attempts} attempts: {last_message}",
            details={"attempts": attempts, "last_error": last_message},
        )

    def get_stats(self) -> ProviderStats:
        """Snapshot of endpoint count, cursor and failure counters."""
        return ProviderStats(
            total_providers=len(self._endpoints),
            current_provider=self._current_index,
            failures=dict(self._failure_count),
        )

    async def close(self) -> None:
        """Release the resources of every transport."""
        for transport in self._transports:
            try:
                await transport.close()
            except Exception as e:
                self._log(
                    LogLevel.WARN,
                    f"Failed to close transport: {e}",
                    {"endpoint": transport.endpoint.url},
                )

    @staticmethod
    def _describe(error: Exception) -> str:
        return getattr(error, "message", None) or str(error) or type(error).__name__

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "ProviderManager", message, data)
