"""
Registry metadata service.

The resolver asks a ``MetadataService`` for contract addresses and ABIs.
``RegistryClient`` is the HTTP implementation (httpx) for the hosted
contract registry; tests and offline tools plug in their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from ..errors import ChainwardError, ConfigurationError, ErrorCode, ResolutionError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.zuno.com/v1"

SUPPORTED_NETWORKS: dict[str, int] = {
    # Mainnets
    "mainnet": 1,
    "ethereum": 1,
    "polygon": 137,
    "polygon-mainnet": 137,
    "arbitrum": 42161,
    "arbitrum-one": 42161,
    "optimism": 10,
    "optimism-mainnet": 10,
    "base": 8453,
    "base-mainnet": 8453,
    "bsc": 56,
    "binance-smart-chain": 56,
    "avalanche": 43114,
    "avalanche-c-chain": 43114,
    # Testnets
    "sepolia": 11155111,
    "ethereum-sepolia": 11155111,
    "goerli": 5,
    "polygon-mumbai": 80001,
    "mumbai": 80001,
    "arbitrum-sepolia": 421614,
    "optimism-sepolia": 11155420,
    "base-sepolia": 84532,
    "bsc-testnet": 97,
    # Local development
    "localhost": 31337,
    "hardhat": 31337,
    "anvil": 31337,
    "ganache": 1337,
}


def is_supported_network(network: str) -> bool:
    return network.lower() in SUPPORTED_NETWORKS


def resolve_chain_id(network: str | int) -> int:
    """Chain id for a network name or numeric id."""
    if isinstance(network, int):
        return network
    if network.strip().isdigit():
        return int(network)
    chain_id = SUPPORTED_NETWORKS.get(network.lower())
    if chain_id is None:
        raise ConfigurationError(
            ErrorCode.INVALID_NETWORK,
            f"Unknown network: {network}. Supported networks: {', '.join(SUPPORTED_NETWORKS)}",
        )
    return chain_id


@dataclass(frozen=True)
class ContractInfo:
    address: Optional[str]
    abi: Any
    abi_version: str = ""


class MetadataService(Protocol):
    async def get_contract_by_type(self, contract_type: str, network: str) -> ContractInfo:
        ...

    async def get_contract_by_address(self, address: str, network: str) -> ContractInfo:
        ...


class RegistryClient:
    """HTTP client for the contract registry API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_URL,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError(ErrorCode.MISSING_API_KEY, "API key is required")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json", "X-API-Key": api_key},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise ChainwardError(ErrorCode.API_TIMEOUT, "Request timeout", cause=exc) from exc
        except httpx.HTTPError as exc:
            raise ChainwardError(ErrorCode.API_REQUEST_FAILED, str(exc), cause=exc) from exc

        if response.status_code >= 400:
            raise self._error_for(response)
        return response.json().get("data")

    @staticmethod
    def _error_for(response: httpx.Response) -> ChainwardError:
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        status = response.status_code
        if status == 401:
            return ConfigurationError(ErrorCode.API_UNAUTHORIZED, "Unauthorized: Invalid API key", details=body)
        if status == 404:
            return ResolutionError(ErrorCode.API_NOT_FOUND, "Resource not found", details=body)
        if status == 429:
            return ChainwardError(ErrorCode.API_RATE_LIMIT, "Rate limit exceeded", details=body)
        message = body.get("message") if isinstance(body, dict) else None
        return ChainwardError(ErrorCode.API_REQUEST_FAILED, message or "API request failed", details=body)

    async def get_abi_by_id(self, abi_id: str) -> dict[str, Any]:
        data = await self._get(f"/abis/{abi_id}")
        if not data or "abi" not in data:
            raise ResolutionError(ErrorCode.ABI_NOT_FOUND, f"ABI {abi_id} not found")
        return data

    async def get_contract_by_type(self, contract_type: str, network: str) -> ContractInfo:
        """
        Look up a deployed contract by type on a network.

        Args:
            contract_type: Registry contract name (e.g. "ERC721NFTExchange")
            network: Network name or chain id

        Returns:
            ContractInfo with address, ABI and ABI version

        Raises:
            ResolutionError: If the contract or its ABI is not registered
        """
        chain_id = resolve_chain_id(network)
        data = await self._get(f"/contracts/by-name/{contract_type}", params={"chainId": chain_id})
        contracts = (data or {}).get("contracts") or []
        if not contracts:
            raise ResolutionError(
                ErrorCode.ABI_NOT_FOUND,
                f"Contract '{contract_type}' not found on chain ID {chain_id}",
            )
        contract = contracts[0]
        abi_id = contract.get("abiId")
        if not abi_id:
            raise ResolutionError(
                ErrorCode.ABI_NOT_FOUND,
                f"Contract '{contract_type}' has no ABI associated",
            )
        abi_entity = await self.get_abi_by_id(abi_id)
        logger.debug("Registry resolved %s on chain %s -> %s", contract_type, chain_id, contract.get("address"))
        return ContractInfo(
            address=contract.get("address"),
            abi=abi_entity["abi"],
            abi_version=str(abi_entity.get("version", "")),
        )

    async def get_contract_by_address(self, address: str, network: str) -> ContractInfo:
        data = await self._get(f"/contracts/{address}", params={"networkId": network})
        if not data or not data.get("abiId"):
            raise ResolutionError(
                ErrorCode.CONTRACT_NOT_FOUND,
                f"Contract {address} not registered on {network}",
            )
        abi_entity = await self.get_abi_by_id(data["abiId"])
        return ContractInfo(
            address=data.get("address", address),
            abi=abi_entity["abi"],
            abi_version=str(abi_entity.get("version", "")),
        )

    async def get_networks(self) -> list[dict[str, Any]]:
        return await self._get("/networks") or []
