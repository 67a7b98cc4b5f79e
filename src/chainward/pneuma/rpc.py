"""
JSON-RPC execution context.

Lightweight alternative to web3.py: uses httpx for HTTP.  ``JsonRpcContext``
implements the ``ExecutionContext`` capability set the engine needs:
cost estimation, broadcast, receipt lookup, fee info, pending nonce and a
single-shot confirmation check.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from ..utils import hex_to_int

logger = logging.getLogger(__name__)

# Default RPC endpoint (Base Sepolia)
DEFAULT_RPC_URL = "https://sepolia.base.org"


class RpcError(RuntimeError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


@dataclass(frozen=True)
class FeeInfo:
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    def as_tx_fields(self) -> dict[str, int]:
        if self.eip1559:
            fees: dict[str, int] = {"maxFeePerGas": self.max_fee_per_gas}  # type: ignore[dict-item]
            if self.max_priority_fee_per_gas is not None:
                fees["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
            return fees
        if self.gas_price is not None:
            return {"gasPrice": self.gas_price}
        return {}


@dataclass(frozen=True)
class Receipt:
    hash: str
    block_number: int
    block_hash: str
    status: int
    gas_used: str
    cumulative_gas_used: str = "0"
    effective_gas_price: str = "0"
    from_address: str = ""
    to_address: str = ""
    contract_address: Optional[str] = None
    logs: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "Receipt":
        logs = tuple(
            {
                "address": log.get("address"),
                "topics": list(log.get("topics", [])),
                "data": log.get("data"),
                "blockNumber": hex_to_int(log.get("blockNumber")),
                "transactionHash": log.get("transactionHash"),
                "logIndex": hex_to_int(log.get("logIndex")),
            }
            for log in data.get("logs", [])
        )
        return cls(
            hash=data.get("transactionHash") or data.get("hash", ""),
            block_number=hex_to_int(data.get("blockNumber")),
            block_hash=data.get("blockHash", ""),
            status=hex_to_int(data.get("status", "0x0")),
            gas_used=str(hex_to_int(data.get("gasUsed"))),
            cumulative_gas_used=str(hex_to_int(data.get("cumulativeGasUsed"))),
            effective_gas_price=str(hex_to_int(data.get("effectiveGasPrice"))),
            from_address=data.get("from", ""),
            to_address=data.get("to") or "",
            contract_address=data.get("contractAddress"),
            logs=logs,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "status": "success" if self.succeeded else "failed",
            "gasUsed": self.gas_used,
            "cumulativeGasUsed": self.cumulative_gas_used,
            "effectiveGasPrice": self.effective_gas_price,
            "from": self.from_address,
            "to": self.to_address,
            "contractAddress": self.contract_address,
            "logs": list(self.logs),
        }


class ExecutionContext(Protocol):
    async def chain_id(self) -> int:
        ...

    async def call(self, tx: dict[str, Any]) -> str:
        ...

    async def estimate_cost(self, tx: dict[str, Any]) -> int:
        ...

    async def broadcast(self, raw_tx: str) -> str:
        ...

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        ...

    async def get_block_number(self) -> int:
        ...

    async def get_fee_info(self) -> FeeInfo:
        ...

    async def get_pending_sequence_number(self, address: str) -> int:
        ...

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int) -> Optional[Receipt]:
        ...


class JsonRpcContext:
    """ExecutionContext over JSON-RPC 2.0 (eth_* methods)."""

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)
        self._chain_id: Optional[int] = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "JsonRpcContext":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _rpc_call(self, method: str, params: list) -> Any:
        """
        Make a JSON-RPC call.

        Args:
            method: RPC method name (e.g., "eth_call")
            params: RPC parameters

        Returns:
            Result field from the RPC response

        Raises:
            RpcError: If the node returns an error object
            httpx.HTTPError: On transport failure
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }
        response = await self._client.post(self.rpc_url, json=payload)
        response.raise_for_status()
        data = response.json()

        if "error" in data:
            error = data["error"] or {}
            if isinstance(error, dict):
                raise RpcError(
                    error.get("message", "RPC error"),
                    code=error.get("code"),
                    data=error.get("data"),
                )
            raise RpcError(str(error))

        return data.get("result")

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = hex_to_int(await self._rpc_call("eth_chainId", []))
        return self._chain_id

    async def call(self, tx: dict[str, Any]) -> str:
        return await self._rpc_call("eth_call", [_rpc_tx(tx), "latest"])

    async def estimate_cost(self, tx: dict[str, Any]) -> int:
        return hex_to_int(await self._rpc_call("eth_estimateGas", [_rpc_tx(tx)]))

    async def broadcast(self, raw_tx: str) -> str:
        return await self._rpc_call("eth_sendRawTransaction", [raw_tx])

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        result = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None
        return Receipt.from_rpc(result)

    async def get_block_number(self) -> int:
        return hex_to_int(await self._rpc_call("eth_blockNumber", []))

    async def get_fee_info(self) -> FeeInfo:
        gas_price = hex_to_int(await self._rpc_call("eth_gasPrice", []))
        block = await self._rpc_call("eth_getBlockByNumber", ["latest", False])
        base_fee = (block or {}).get("baseFeePerGas")
        if base_fee is None:
            return FeeInfo(gas_price=gas_price)
        try:
            priority = hex_to_int(await self._rpc_call("eth_maxPriorityFeePerGas", []))
        except RpcError:
            logger.debug("eth_maxPriorityFeePerGas unsupported, deriving from gas price")
            priority = max(gas_price - hex_to_int(base_fee), 0)
        return FeeInfo(
            gas_price=gas_price,
            max_fee_per_gas=hex_to_int(base_fee) * 2 + priority,
            max_priority_fee_per_gas=priority,
        )

    async def get_pending_sequence_number(self, address: str) -> int:
        result = await self._rpc_call("eth_getTransactionCount", [address, "pending"])
        return hex_to_int(result)

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int) -> Optional[Receipt]:
        """Return the receipt once it has ``confirmations`` blocks, else None."""
        receipt = await self.get_receipt(tx_hash)
        if receipt is None:
            return None
        if confirmations <= 1:
            return receipt
        head = await self.get_block_number()
        if head - receipt.block_number + 1 >= confirmations:
            return receipt
        return None


def _rpc_tx(tx: dict[str, Any]) -> dict[str, Any]:
    """Hex-encode integer fields for JSON-RPC."""
    out: dict[str, Any] = {}
    for key, value in tx.items():
        if value is None or key == "chainId":
            continue
        out[key] = hex(value) if isinstance(value, int) and not isinstance(value, bool) else value
    return out


__all__ = [
    "DEFAULT_RPC_URL",
    "ExecutionContext",
    "FeeInfo",
    "JsonRpcContext",
    "Receipt",
    "RpcError",
]
