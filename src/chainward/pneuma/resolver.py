"""
Contract Resolver - turns (contract type, network, address?) into a handle.

ABIs are cached per ``(contract_type, network)`` with a TTL; handles are
cached per ``(contract_type, address, network)`` (plus signer address for
write-bound handles) so repeated resolution returns the identical object until the
ABI entry it was built from expires or is invalidated.  Concurrent
cache misses for one key share a single in-flight fetch.  Nothing here is
retried: a missing or malformed ABI/address is not a transient condition.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Hashable, Iterable, Optional, TypeVar

from ..errors import ChainwardError, ErrorCode, ResolutionError
from ..sigil.eth import Signer
from ..utils import to_checksum_address, validate_address
from .abi import SUPPORTS_INTERFACE, MethodRegistry, parse_abi
from .registry import ContractInfo, MetadataService
from .rpc import ExecutionContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ABI_TTL = 300.0  # 5 minutes


class ExecutionMode(str, Enum):
    READ_ONLY = "read-only"
    READ_WRITE = "read-write"


class TokenStandard(str, Enum):
    ERC721 = "ERC721"
    ERC1155 = "ERC1155"
    UNKNOWN = "Unknown"


# ERC-165 interface probes, first match wins.  Order is part of the contract.
STANDARD_PROBES: tuple[tuple[TokenStandard, bytes], ...] = (
    (TokenStandard.ERC721, bytes.fromhex("80ac58cd")),
    (TokenStandard.ERC1155, bytes.fromhex("d9b67a26")),
)


@dataclass(frozen=True, eq=False)
class ContractHandle:
    contract_type: str
    network: str
    address: str
    abi_version: str
    methods: MethodRegistry
    context: ExecutionContext
    signer: Optional[Signer] = None

    @property
    def mode(self) -> ExecutionMode:
        return ExecutionMode.READ_WRITE if self.signer is not None else ExecutionMode.READ_ONLY

    def __repr__(self) -> str:
        return (
            f"ContractHandle({self.contract_type!r}, network={self.network!r}, "
            f"address={self.address!r}, mode={self.mode.value})"
        )


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


class ContractResolver:
    def __init__(
        self,
        metadata: MetadataService,
        *,
        abi_ttl: float = DEFAULT_ABI_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.metadata = metadata
        self.abi_ttl = abi_ttl
        self._clock = clock
        self._info_cache: dict[Hashable, _CacheEntry] = {}
        self._handles: dict[Hashable, tuple[ContractInfo, ContractHandle]] = {}
        self._inflight: dict[Hashable, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    async def resolve(
        self,
        contract_type: str,
        network: str,
        context: ExecutionContext,
        address: Optional[str] = None,
        signer: Optional[Signer] = None,
    ) -> ContractHandle:
        """
        Resolve a callable contract handle.

        Args:
            contract_type: Registry contract type (e.g. "ERC721NFTExchange")
            network: Network name or chain id
            context: Execution context the handle is bound to
            address: Deployed address (default: the registry's address)
            signer: Signing capability for write calls

        Returns:
            The cached handle for this key, or a newly built one

        Raises:
            ResolutionError: ABI or address not found
            InvalidABIError: Malformed ABI payload
            InvalidAddressError: Malformed address string
        """
        if address is not None:
            validate_address(address)

        info = await self._contract_info(contract_type, network)
        abi = parse_abi(info.abi)

        if address is None:
            address = info.address
            if not address:
                raise ResolutionError(
                    ErrorCode.CONTRACT_NOT_FOUND,
                    f"No address registered for {contract_type} on {network}",
                )
            validate_address(address)

        key = self._handle_key(contract_type, address, network, signer)
        cached = self._handles.get(key)
        if cached is not None and cached[0] is info:
            return cached[1]

        handle = ContractHandle(
            contract_type=contract_type,
            network=network,
            address=to_checksum_address(address),
            abi_version=info.abi_version,
            methods=MethodRegistry.from_abi(abi),
            context=context,
            signer=signer,
        )
        # A handle lives as long as the ABI entry it was built from
        self._handles[key] = (info, handle)
        return handle

    @staticmethod
    def _handle_key(contract_type: str, address: str, network: str, signer: Optional[Signer]) -> Hashable:
        if signer is None:
            return (contract_type, address.lower(), network)
        return (contract_type, address.lower(), network, signer.address.lower())

    # ------------------------------------------------------------------
    # ABIs
    # ------------------------------------------------------------------

    async def get_abi(self, contract_type: str, network: str) -> list[dict[str, Any]]:
        info = await self._contract_info(contract_type, network)
        return parse_abi(info.abi)

    async def get_abi_by_address(self, address: str, network: str) -> list[dict[str, Any]]:
        validate_address(address)
        key = ("address", address.lower(), network)
        info = await self._cached(key, lambda: self.metadata.get_contract_by_address(address, network))
        return parse_abi(info.abi)

    async def prefetch_abis(self, contract_types: Iterable[str], network: str) -> None:
        await asyncio.gather(*(self._contract_info(t, network) for t in contract_types))

    def is_abi_cached(self, contract_type: str, network: str) -> bool:
        entry = self._info_cache.get(("type", contract_type, network))
        return entry is not None and entry.expires_at > self._clock()

    async def _contract_info(self, contract_type: str, network: str) -> ContractInfo:
        key = ("type", contract_type, network)
        return await self._cached(key, lambda: self.metadata.get_contract_by_type(contract_type, network))

    async def _cached(self, key: Hashable, fetch: Callable[[], Awaitable[T]]) -> T:
        entry = self._info_cache.get(key)
        if entry is not None:
            if entry.expires_at > self._clock():
                logger.debug("ABI cache hit for %s", key)
                return entry.value
            del self._info_cache[key]

        future = self._inflight.get(key)
        if future is None:
            logger.debug("ABI cache miss for %s", key)
            future = asyncio.ensure_future(self._fetch(key, fetch))
            self._inflight[key] = future
        # shield: one caller giving up must not cancel the shared fetch
        return await asyncio.shield(future)

    async def _fetch(self, key: Hashable, fetch: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await fetch()
        except ChainwardError:
            raise
        except Exception as exc:
            raise ResolutionError.from_exception(exc, ErrorCode.ABI_NOT_FOUND) from exc
        finally:
            # invalidate() detaches in-flight fetches; a detached fetch never writes back
            owner = self._inflight.get(key) is asyncio.current_task()
            if owner:
                del self._inflight[key]

        if owner:
            self._info_cache[key] = _CacheEntry(value, self._clock() + self.abi_ttl)
        return value

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, contract_type: Optional[str] = None, network: Optional[str] = None) -> None:
        """
        Drop cached ABIs and handles.

        With no arguments everything is cleared.  Otherwise only ABI entries
        matching the given contract type and/or network are dropped, together
        with the handles built from them.  Matching in-flight fetches are
        detached: their callers still get the result but it is not cached.
        """
        if contract_type is None and network is None:
            self._info_cache.clear()
            self._handles.clear()
            self._inflight.clear()
            return

        for cache in (self._info_cache, self._inflight):
            for key in [k for k in cache if _key_matches(k, contract_type, network)]:
                del cache[key]

        for key, (_, handle) in list(self._handles.items()):
            if network is not None and handle.network != network:
                continue
            if contract_type is not None and handle.contract_type != contract_type:
                continue
            del self._handles[key]

    def clear_contract_cache(self) -> None:
        self._handles.clear()

    # ------------------------------------------------------------------
    # Token standard detection
    # ------------------------------------------------------------------

    async def verify_standard(self, address: str, context: ExecutionContext) -> TokenStandard:
        return await verify_standard(address, context)


def _key_matches(key: Hashable, contract_type: Optional[str], network: Optional[str]) -> bool:
    kind, ident, net = key  # type: ignore[misc]
    if network is not None and net != network:
        return False
    return contract_type is None or (kind == "type" and ident == contract_type)


async def verify_standard(address: str, context: ExecutionContext) -> TokenStandard:
    """
    Detect a token contract's standard via ERC-165.

    Probes run in ``STANDARD_PROBES`` order and the first positive answer
    wins.  A probe that errors counts as "not supported".

    Raises:
        InvalidAddressError: If ``address`` is malformed
    """
    validate_address(address)
    for standard, interface_id in STANDARD_PROBES:
        calldata = SUPPORTS_INTERFACE.encode_call([interface_id])
        try:
            result = await context.call({"to": address, "data": calldata})
            supported = bool(result) and result != "0x" and SUPPORTS_INTERFACE.decode_result(result)
        except Exception as exc:
            logger.debug("supportsInterface(%s) probe failed on %s: %s", standard.value, address, exc)
            continue
        if supported:
            return standard
    return TokenStandard.UNKNOWN


__all__ = [
    "ContractHandle",
    "ContractResolver",
    "ExecutionMode",
    "STANDARD_PROBES",
    "TokenStandard",
    "verify_standard",
]
