"""
Lookup Orchestrator for the ENS gateway.

This module provides the layer between the transport/routing surface and the
core. For every logical operation it:
- Normalizes and validates the input
- Reads the dual-layer cache under a namespaced key
- On a miss, runs the upstream call through the provider fallback
- Writes the fresh result back before returning it

Not-found policy per kind:
- resolve: no address -> NotFoundError (never cached)
- reverse: no name -> success with name None
- avatar: no avatar -> success with avatar None
- records: no resolver -> NotFoundError; each missing field -> None
"""

import asyncio
import os
import platform
import time
from typing import Any, Awaitable, Callable, Optional

from .audit_logger import AuditLogger
from .cache import DualLayerCache
from .enums import BatchEntryStatus, ErrorCode, LogLevel, LookupKind
from .exceptions import EnsGatewayError, NotFoundError, ValidationError
from .models import BatchEntry, BatchOperation, LookupResult, SearchResult, utc_timestamp
from .provider_manager import ProviderManager
from .transport import EnsResolver, EnsTransport
from .validators import EnsInputValidator


RECORD_KEYS = (
    "email",
    "url",
    "avatar",
    "description",
    "com.twitter",
    "com.github",
    "com.discord",
    "com.telegram",
)

MAX_BATCH_SIZE = 10

SEARCH_SUFFIXES = ("", "-dao", "-nft")


class LookupOrchestrator:
    """
    Main orchestrator for ENS lookups.

    Coordinates validation, caching and provider fallback. Holds no request
    state of its own; concurrent calls share the cache and the rotation state
    of the injected components.
    """

    def __init__(
        self,
        providers: ProviderManager,
        cache: DualLayerCache,
        logger: Optional[AuditLogger] = None,
        validator: Optional[EnsInputValidator] = None,
    ) -> None:
        """
        Initialize the lookup orchestrator.

        Args:
            providers: Provider rotation controller
            cache: Dual-layer cache
            logger: Optional audit logger
            validator: Input validator (default instance if omitted)
        """
        self._providers = providers
        self._cache = cache
        self._logger = logger
        self._validator = validator or EnsInputValidator()
        self._started_at = time.monotonic()

    async def __aenter__(self) -> "LookupOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def providers(self) -> ProviderManager:
        return self._providers

    @property
    def cache(self) -> DualLayerCache:
        return self._cache

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_at

    # -- Single operations -------------------------------------------------

    async def resolve(self, raw_name: Optional[str]) -> LookupResult:
        """Forward lookup: ENS name -> address."""
        name = self._validator.validate_name(raw_name).raise_for_error()

        async def fetch() -> dict:
            address = await self._providers.execute_with_fallback(
                lambda transport: transport.resolve_name(name)
            )
            if not address:
                raise NotFoundError(
                    code=ErrorCode.NAME_NOT_FOUND.value,
                    message="ENS name not found",
                    details={"name": name},
                )
            return {"name": name, "address": address}

        return await self._lookup(LookupKind.RESOLVE, name, fetch)

    async def reverse(self, raw_address: Optional[str]) -> LookupResult:
        """Reverse lookup: address -> primary ENS name (None if unset)."""
        address = self._validator.validate_address(raw_address).raise_for_error()

        async def fetch() -> dict:
            name = await self._providers.execute_with_fallback(
                lambda transport: transport.lookup_address(address)
            )
            return {"address": address, "name": name or None}

        return await self._lookup(LookupKind.REVERSE, address, fetch)

    async def avatar(self, raw_name: Optional[str]) -> LookupResult:
        """Avatar URI of an ENS name (None if unset or no resolver)."""
        name = self._validator.validate_name(raw_name).raise_for_error()

        async def read_avatar(transport: EnsTransport) -> Optional[str]:
            resolver = await transport.get_resolver(name)
            if resolver is None:
                return None
            return await resolver.get_avatar()

        async def fetch() -> dict:
            avatar = await self._providers.execute_with_fallback(read_avatar)
            return {"name": name, "avatar": avatar or None}

        return await self._lookup(LookupKind.AVATAR, name, fetch)

    async def records(self, raw_name: Optional[str]) -> LookupResult:
        """Well-known text records of an ENS name."""
        name = self._validator.validate_name(raw_name).raise_for_error()

        async def read_records(transport: EnsTransport) -> Optional[dict]:
            resolver = await transport.get_resolver(name)
            if resolver is None:
                return None
            values = await asyncio.gather(
                *(self._read_text(resolver, name, key) for key in RECORD_KEYS)
            )
            return dict(zip(RECORD_KEYS, values))

        async def fetch() -> dict:
            records = await self._providers.execute_with_fallback(read_records)
            if records is None:
                raise NotFoundError(
                    code=ErrorCode.RESOLVER_NOT_FOUND.value,
                    message="ENS resolver not found",
                    details={"name": name},
                )
            return {"name": name, "records": records}

        return await self._lookup(LookupKind.RECORDS, name, fetch)

    # -- Composite operations ----------------------------------------------

    async def batch(self, operations: Any) -> list[BatchEntry]:
        """
        Run up to MAX_BATCH_SIZE resolve/reverse operations concurrently.

        Each sub-operation takes the same path as its single counterpart.
        A failing entry is reported as rejected; the batch itself only fails
        when the request shape is invalid.
        """
        if not isinstance(operations, list) or not operations:
            raise ValidationError(
                code=ErrorCode.INVALID_BATCH.value,
                message="Invalid batch request format",
            )
        if len(operations) > MAX_BATCH_SIZE:
            raise ValidationError(
                code=ErrorCode.INVALID_BATCH.value,
                message=f"Batch size limit exceeded (max {MAX_BATCH_SIZE})",
                details={"size": len(operations)},
            )

        outcomes = await asyncio.gather(
            *(self._run_batch_operation(BatchOperation.from_dict(op)) for op in operations),
            return_exceptions=True,
        )

        entries: list[BatchEntry] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, Exception):
                entries.append(BatchEntry(
                    index=index,
                    status=BatchEntryStatus.REJECTED,
                    error=self._describe(outcome),
                ))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                entries.append(BatchEntry(
                    index=index,
                    status=BatchEntryStatus.FULFILLED,
                    data=outcome,
                ))

        rejected = sum(1 for e in entries if e.status is BatchEntryStatus.REJECTED)
        self._log(
            LogLevel.INFO,
            f"Batch completed: {len(entries) - rejected} fulfilled, {rejected} rejected",
            {"size": len(entries), "rejected": rejected},
        )
        return entries

    async def search(self, raw_query: Optional[str]) -> SearchResult:
        """
        Try a fixed set of candidate names built from ``raw_query``.

        Candidates that fail to resolve for any reason are left out of
        ``found``.
        """
        query = self._validator.validate_search_query(raw_query).raise_for_error()
        suggestions = [f"{query}{suffix}.eth" for suffix in SEARCH_SUFFIXES]

        outcomes = await asyncio.gather(*(self._try_resolve(name) for name in suggestions))

        return SearchResult(
            query=query,
            suggestions=suggestions,
            found=[outcome for outcome in outcomes if outcome is not None],
        )

    # -- Introspection -----------------------------------------------------

    async def health(self) -> dict:
        """
        Probe the active endpoint.

        Raises whatever the transport raises; callers report that as unhealthy.
        """
        transport = self._providers.get_active_transport()
        block_number = await transport.get_block_number()
        network = await transport.get_network()

        return {
            "status": "healthy",
            "uptime": round(self.uptime_seconds, 3),
            "timestamp": utc_timestamp(),
            "blockchain": {
                "connected": True,
                "block_number": block_number,
                "network": network,
            },
            "cache": self._cache.get_stats().to_dict(),
            "provider": self._providers.get_stats().to_dict(),
        }

    def stats(self) -> dict:
        return {
            "uptime": round(self.uptime_seconds, 3),
            "cache": self._cache.get_stats().to_dict(),
            "provider": self._providers.get_stats().to_dict(),
            "process": {
                "pid": os.getpid(),
                "python_version": platform.python_version(),
                "platform": platform.platform(),
            },
        }

    async def close(self) -> None:
        await self._cache.close()
        await self._providers.close()

    # -- Internals ---------------------------------------------------------

    async def _lookup(
        self,
        kind: LookupKind,
        query: str,
        fetch: Callable[[], Awaitable[dict]],
    ) -> LookupResult:
        cache_key = f"{kind.value}:{query}"

        cached = await self._cache.get(cache_key)
        if cached is not None:
            return LookupResult(kind=kind, query=query, payload=cached, cached=True)

        payload = await fetch()
        payload["timestamp"] = utc_timestamp()
        await self._cache.set(cache_key, payload)

        self._log(
            LogLevel.DEBUG,
            f"Fresh {kind.value} lookup for {query}",
            {"kind": kind.value, "query": query},
        )
        return LookupResult(kind=kind, query=query, payload=payload, cached=False)

    async def _run_batch_operation(self, operation: BatchOperation) -> dict:
        if operation.type == LookupKind.RESOLVE.value:
            return (await self.resolve(operation.name)).to_dict()
        if operation.type == LookupKind.REVERSE.value:
            return (await self.reverse(operation.address)).to_dict()
        raise ValidationError(
            code=ErrorCode.INVALID_BATCH.value,
            message="Invalid operation type",
            details={"type": operation.type},
        )

    async def _try_resolve(self, name: str) -> Optional[dict]:
        try:
            result = await self.resolve(name)
        except EnsGatewayError:
            return None
        return {"name": name, "address": result.value, "available": False}

    async def _read_text(self, resolver: EnsResolver, name: str, key: str) -> Optional[str]:
        try:
            return await resolver.get_text(key) or None
        except Exception as e:
            self._log(
                LogLevel.DEBUG,
                f"Text record '{key}' unavailable for {name}: {e}",
                {"name": name, "key": key},
            )
            return None

    @staticmethod
    def _describe(error: BaseException) -> str:
        return getattr(error, "message", None) or str(error) or type(error).__name__

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "LookupOrchestrator", message, data)
