"""
Data models for the ENS gateway.

This module defines the data structures used for upstream endpoints,
lookup results, batch and search outcomes, and component statistics.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import BatchEntryStatus, LookupKind


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Endpoint:
    """One upstream RPC provider, identified by its URL."""

    url: str


@dataclass
class LookupResult:
    """
    Outcome of one logical lookup.

    ``payload`` holds the operation-specific fields (``name``, ``address``,
    ``avatar`` or ``records``) together with the timestamp of the upstream
    call; it is exactly what gets written to the cache.
    """

    kind: LookupKind
    query: str
    payload: dict
    cached: bool = False

    @property
    def timestamp(self) -> Optional[str]:
        return self.payload.get("timestamp")

    @property
    def value(self) -> Any:
        """The resolved value for this kind (may be None)."""
        field_name = {
            LookupKind.RESOLVE: "address",
            LookupKind.REVERSE: "name",
            LookupKind.AVATAR: "avatar",
            LookupKind.RECORDS: "records",
        }[self.kind]
        return self.payload.get(field_name)

    def to_dict(self) -> dict:
        return {**self.payload, "cached": self.cached}


@dataclass
class BatchOperation:
    """A single sub-operation of a batch request."""

    type: str
    name: Optional[str] = None
    address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "BatchOperation":
        if not isinstance(data, dict):
            return cls(type="")
        name = data.get("name")
        address = data.get("address")
        return cls(
            type=str(data.get("type") or ""),
            name=name if isinstance(name, str) else None,
            address=address if isinstance(address, str) else None,
        )


@dataclass
class BatchEntry:
    """Result of one batch sub-operation, in request order."""

    index: int
    status: BatchEntryStatus
    data: Optional[dict] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "status": self.status.value,
            "data": self.data,
            "error": self.error,
        }


@dataclass
class SearchResult:
    """Candidate names for a query and the subset that resolved."""

    query: str
    suggestions: list[str]
    found: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "suggestions": list(self.suggestions),
            "found": list(self.found),
        }


@dataclass
class ProviderStats:
    """Snapshot of the rotation state."""

    total_providers: int
    current_provider: int
    failures: dict[int, int]

    def to_dict(self) -> dict:
        return {
            "total_providers": self.total_providers,
            "current_provider": self.current_provider,
            "failures": {str(k): v for k, v in self.failures.items()},
        }


@dataclass
class CacheStats:
    """Counters of the dual-layer cache."""

    hits: int
    misses: int
    sets: int
    memory_keys: int
    persistent_backend: str

    @property
    def hit_rate(self) -> str:
        total = self.hits + self.misses
        if total == 0:
            return "0.00%"
        return f"{self.hits / total * 100:.2f}%"

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "hit_rate": self.hit_rate,
            "memory_keys": self.memory_keys,
            "persistent_backend": self.persistent_backend,
        }
