"""
Upstream RPC transport for ENS lookups.

This module defines the capability set the gateway needs from one upstream
endpoint and provides the default implementation on top of web3's async
JSON-RPC provider and async ENS module.
"""

from typing import Callable, Optional, Protocol, runtime_checkable

from ens import AsyncENS
from eth_utils import to_checksum_address
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

from .enums import ErrorCode
from .exceptions import ProviderError
from .models import Endpoint


# Public gateways used to turn content-addressed avatar URIs into fetchable URLs
IPFS_GATEWAY = "https://ipfs.io"
ARWEAVE_GATEWAY = "https://arweave.net"

# Chain ids of the networks an ENS deployment exists on
NETWORK_NAMES = {
    1: "mainnet",
    11155111: "sepolia",
    17000: "holesky",
}


@runtime_checkable
class EnsResolver(Protocol):
    """Resolver contract attached to one ENS name."""

    async def get_avatar(self) -> Optional[str]:
        ...

    async def get_text(self, key: str) -> Optional[str]:
        ...


@runtime_checkable
class EnsTransport(Protocol):
    """Read-only capabilities required from an upstream endpoint."""

    endpoint: Endpoint

    async def resolve_name(self, name: str) -> Optional[str]:
        ...

    async def lookup_address(self, address: str) -> Optional[str]:
        ...

    async def get_resolver(self, name: str) -> Optional[EnsResolver]:
        ...

    async def get_block_number(self) -> int:
        ...

    async def get_network(self) -> str:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[Endpoint], EnsTransport]


def avatar_url(record: Optional[str]) -> Optional[str]:
    """
    Map an ENS ``avatar`` text record to a URL a browser can fetch.

    ``ipfs://``, ``ipns://`` and ``ar://`` URIs are rewritten to public
    gateways. Anything else (https URLs, data URIs, ``eip155:`` NFT
    references) is returned unchanged.
    """
    if not record:
        return None
    record = record.strip()
    lowered = record.lower()
    if lowered.startswith("ipfs://"):
        path = record[len("ipfs://"):]
        if path.lower().startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return f"{IPFS_GATEWAY}/ipfs/{path}"
    if lowered.startswith("ipns://"):
        return f"{IPFS_GATEWAY}/ipns/{record[len('ipns://'):]}"
    if lowered.startswith("ar://"):
        return f"{ARWEAVE_GATEWAY}/{record[len('ar://'):]}"
    return record


class Web3Resolver:
    """EnsResolver backed by AsyncENS text record lookups."""

    def __init__(self, ns: AsyncENS, name: str) -> None:
        self._ns = ns
        self._name = name

    async def get_avatar(self) -> Optional[str]:
        return avatar_url(await self.get_text("avatar"))

    async def get_text(self, key: str) -> Optional[str]:
        value = await self._ns.get_text(self._name, key)
        return value or None


class Web3Transport:
    """
    EnsTransport for one JSON-RPC endpoint.

    Every upstream failure is re-raised as ProviderError so the rotation
    controller sees one error type regardless of what web3 raised.
    """

    def __init__(self, endpoint: Endpoint, timeout: float = 10.0) -> None:
        """
        Initialize the transport.

        Args:
            endpoint: The upstream endpoint to bind to
            timeout: Per-request timeout in seconds
        """
        self.endpoint = endpoint
        self._w3 = AsyncWeb3(
            AsyncHTTPProvider(endpoint.url, request_kwargs={"timeout": timeout})
        )
        self._ns = AsyncENS.from_web3(self._w3)

    async def resolve_name(self, name: str) -> Optional[str]:
        try:
            address = await self._ns.address(name)
        except Exception as e:
            raise self._provider_error("resolve_name", e) from e
        return str(address) if address else None

    async def lookup_address(self, address: str) -> Optional[str]:
        try:
            return await self._ns.name(to_checksum_address(address))
        except Exception as e:
            raise self._provider_error("lookup_address", e) from e

    async def get_resolver(self, name: str) -> Optional[EnsResolver]:
        try:
            resolver = await self._ns.resolver(name)
        except Exception as e:
            raise self._provider_error("get_resolver", e) from e
        if resolver is None:
            return None
        return Web3Resolver(self._ns, name)

    async def get_block_number(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except Exception as e:
            raise self._provider_error("get_block_number", e) from e

    async def get_network(self) -> str:
        try:
            chain_id = int(await self._w3.eth.chain_id)
        except Exception as e:
            raise self._provider_error("get_network", e) from e
        return NETWORK_NAMES.get(chain_id, f"chain-{chain_id}")

    async def close(self) -> None:
        await self._w3.provider.disconnect()

    def _provider_error(self, method: str, error: Exception) -> ProviderError:
        return ProviderError(
            code=ErrorCode.PROVIDER_FAILED.value,
            message=str(error) or type(error).__name__,
            details={
                "endpoint": self.endpoint.url,
                "method": method,
                "error_type": type(error).__name__,
            },
        )


def web3_transport_factory(timeout: float = 10.0) -> TransportFactory:
    """Build a TransportFactory creating Web3Transport instances."""

    def factory(endpoint: Endpoint) -> EnsTransport:
        return Web3Transport(endpoint, timeout=timeout)

    return factory
