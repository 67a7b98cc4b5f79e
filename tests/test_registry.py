"""Unit tests for pneuma/registry.py (httpx.MockTransport backed)."""

from __future__ import annotations

import httpx
import pytest

from chainward.errors import ChainwardError, ConfigurationError, ErrorCode, ResolutionError
from chainward.pneuma.registry import RegistryClient, is_supported_network, resolve_chain_id

CONTRACT = "0x" + "11" * 20
ABI = [{"type": "function", "name": "ownerOf", "inputs": [{"type": "uint256"}], "outputs": [{"type": "address"}]}]


def _client(handler) -> RegistryClient:
    return RegistryClient("test-key", transport=httpx.MockTransport(handler))


def _registry_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/v1/contracts/by-name/ERC721NFTExchange":
        assert request.url.params["chainId"] == "84532"
        assert request.headers["X-API-Key"] == "test-key"
        return httpx.Response(200, json={"data": {"contracts": [{"address": CONTRACT, "abiId": "abi-1"}]}})
    if path == "/v1/contracts/by-name/Empty":
        return httpx.Response(200, json={"data": {"contracts": []}})
    if path == "/v1/abis/abi-1":
        return httpx.Response(200, json={"data": {"abi": ABI, "version": "2.0.1"}})
    if path == f"/v1/contracts/{CONTRACT}":
        return httpx.Response(200, json={"data": {"address": CONTRACT, "abiId": "abi-1"}})
    return httpx.Response(404, json={"message": "not here"})


class TestRegistryLookups:
    @pytest.mark.asyncio
    async def test_by_type(self) -> None:
        async with _client(_registry_handler) as client:
            info = await client.get_contract_by_type("ERC721NFTExchange", "base-sepolia")
        assert info.address == CONTRACT
        assert info.abi == ABI
        assert info.abi_version == "2.0.1"

    @pytest.mark.asyncio
    async def test_by_address(self) -> None:
        async with _client(_registry_handler) as client:
            info = await client.get_contract_by_address(CONTRACT, "base-sepolia")
        assert info.abi == ABI

    @pytest.mark.asyncio
    async def test_type_not_registered(self) -> None:
        async with _client(_registry_handler) as client:
            with pytest.raises(ResolutionError, match="not found on chain ID 84532") as exc_info:
                await client.get_contract_by_type("Empty", "base-sepolia")
        assert exc_info.value.code is ErrorCode.ABI_NOT_FOUND

    def test_api_key_required(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            RegistryClient("")
        assert exc_info.value.code is ErrorCode.MISSING_API_KEY


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error_type, code",
        [
            (401, ConfigurationError, ErrorCode.API_UNAUTHORIZED),
            (404, ResolutionError, ErrorCode.API_NOT_FOUND),
            (429, ChainwardError, ErrorCode.API_RATE_LIMIT),
            (500, ChainwardError, ErrorCode.API_REQUEST_FAILED),
        ],
    )
    async def test_status_codes(self, status, error_type, code) -> None:
        async with _client(lambda request: httpx.Response(status, json={"message": "upstream"})) as client:
            with pytest.raises(error_type) as exc_info:
                await client.get_networks()
        assert exc_info.value.code is code
        assert exc_info.value.details == {"message": "upstream"}

    @pytest.mark.asyncio
    async def test_server_message_used(self) -> None:
        async with _client(lambda request: httpx.Response(503, text="maintenance")) as client:
            with pytest.raises(ChainwardError, match="maintenance"):
                await client.get_networks()

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(ChainwardError) as exc_info:
                await client.get_networks()
        assert exc_info.value.code is ErrorCode.API_TIMEOUT
        assert isinstance(exc_info.value.cause, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(ChainwardError) as exc_info:
                await client.get_networks()
        assert exc_info.value.code is ErrorCode.API_REQUEST_FAILED


class TestNetworks:
    @pytest.mark.parametrize(
        "network, chain_id",
        [("base-sepolia", 84532), ("Base", 8453), ("anvil", 31337), ("137", 137), (10, 10)],
    )
    def test_resolve_chain_id(self, network, chain_id) -> None:
        assert resolve_chain_id(network) == chain_id

    def test_unknown_network(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_chain_id("atlantis")
        assert exc_info.value.code is ErrorCode.INVALID_NETWORK

    def test_is_supported(self) -> None:
        assert is_supported_network("SEPOLIA")
        assert not is_supported_network("atlantis")
