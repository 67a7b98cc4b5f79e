"""
Shared fixtures: in-memory fakes for the execution context, metadata
service and signer, plus a fake clock whose sleep advances time instantly.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from chainward.engine.events import EventChannel
from chainward.engine.ledger import TransactionLedger
from chainward.engine.retry import RetryPolicy
from chainward.engine.submitter import TransactionSubmitter
from chainward.errors import ErrorCode, ResolutionError
from chainward.pneuma.abi import MethodRegistry
from chainward.pneuma.registry import ContractInfo
from chainward.pneuma.resolver import ContractHandle
from chainward.pneuma.rpc import FeeInfo, Receipt

CONTRACT_ADDRESS = "0x" + "11" * 20
OWNER_ADDRESS = "0x" + "22" * 20
SIGNER_ADDRESS = "0x" + "ab" * 20

NFT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "ownerOf",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "transferFrom",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "safeTransferFrom",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "safeTransferFrom",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
            {"name": "data", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "listNFT",
        "stateMutability": "payable",
        "inputs": [
            {"name": "nft", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
            {"name": "price", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "Transfer",
        "inputs": [],
    },
]


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time without waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeSigner:
    def __init__(self, address: str = SIGNER_ADDRESS) -> None:
        self._address = address
        self.signed: list[dict[str, Any]] = []

    @property
    def address(self) -> str:
        return self._address

    def sign_transaction(self, tx: dict[str, Any]) -> str:
        self.signed.append(dict(tx))
        return f"0xsigned{len(self.signed)}"


class FakeContext:
    """
    Scriptable ExecutionContext.

    ``broadcast_errors`` is consumed one item per broadcast: an exception is
    raised, ``None`` lets the broadcast through.  ``pending_polls`` is the
    number of confirmation checks that return None before the receipt shows
    up; ``never_confirm`` keeps every check pending.  ``poll_errors`` is
    consumed one item per confirmation check, like ``broadcast_errors``.
    """

    def __init__(self) -> None:
        self.chain = 84532
        self.broadcast_errors: list[Optional[BaseException]] = []
        self.broadcasts: list[str] = []
        self.estimate_error: Optional[BaseException] = None
        self.estimate = 100_000
        self.estimates: list[dict[str, Any]] = []
        self.fee_info = FeeInfo(gas_price=1_000_000_000)
        self.nonce = 7
        self.pending_polls = 0
        self.never_confirm = False
        self.receipt_status = 1
        self.polls = 0
        self.poll_errors: list[Optional[BaseException]] = []
        self.confirmation_depths: list[int] = []
        self.call_results: dict[str, Any] = {}
        self.call_error: Optional[BaseException] = None
        self.calls: list[dict[str, Any]] = []

    async def chain_id(self) -> int:
        return self.chain

    async def call(self, tx: dict[str, Any]) -> str:
        self.calls.append(tx)
        if self.call_error is not None:
            raise self.call_error
        result = self.call_results.get(tx["data"][:10], "0x")
        if isinstance(result, BaseException):
            raise result
        return result

    async def estimate_cost(self, tx: dict[str, Any]) -> int:
        self.estimates.append(tx)
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.estimate

    async def broadcast(self, raw_tx: str) -> str:
        if self.broadcast_errors:
            error = self.broadcast_errors.pop(0)
            if error is not None:
                raise error
        self.broadcasts.append(raw_tx)
        return "0x" + f"{len(self.broadcasts):064x}"

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self._receipt(tx_hash)

    async def get_block_number(self) -> int:
        return 100

    async def get_fee_info(self) -> FeeInfo:
        return self.fee_info

    async def get_pending_sequence_number(self, address: str) -> int:
        return self.nonce

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int) -> Optional[Receipt]:
        self.polls += 1
        self.confirmation_depths.append(confirmations)
        if self.poll_errors:
            error = self.poll_errors.pop(0)
            if error is not None:
                raise error
        if self.never_confirm or self.polls <= self.pending_polls:
            return None
        return self._receipt(tx_hash)

    def _receipt(self, tx_hash: str) -> Receipt:
        return Receipt(
            hash=tx_hash,
            block_number=99,
            block_hash="0x" + "00" * 32,
            status=self.receipt_status,
            gas_used="21000",
        )


class FakeMetadata:
    """MetadataService over a dict, counting fetches."""

    def __init__(self, contracts: Optional[dict[tuple[str, str], ContractInfo]] = None) -> None:
        self.contracts = contracts if contracts is not None else {}
        self.by_address: dict[tuple[str, str], ContractInfo] = {}
        self.fetches = 0
        self.gate: Optional[asyncio.Event] = None

    async def get_contract_by_type(self, contract_type: str, network: str) -> ContractInfo:
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        info = self.contracts.get((contract_type, network))
        if info is None:
            raise ResolutionError(
                ErrorCode.ABI_NOT_FOUND,
                f"Contract '{contract_type}' not found on {network}",
            )
        return info

    async def get_contract_by_address(self, address: str, network: str) -> ContractInfo:
        self.fetches += 1
        info = self.by_address.get((address.lower(), network))
        if info is None:
            raise ResolutionError(ErrorCode.CONTRACT_NOT_FOUND, f"Contract {address} not registered")
        return info


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context() -> FakeContext:
    return FakeContext()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def metadata() -> FakeMetadata:
    return FakeMetadata({
        ("ERC721NFTExchange", "base-sepolia"): ContractInfo(
            address=CONTRACT_ADDRESS,
            abi=NFT_ABI,
            abi_version="1.2.0",
        ),
    })


@pytest.fixture
def ledger() -> TransactionLedger:
    return TransactionLedger()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def handle(context: FakeContext, signer: FakeSigner) -> ContractHandle:
    return ContractHandle(
        contract_type="ERC721NFTExchange",
        network="base-sepolia",
        address=CONTRACT_ADDRESS,
        abi_version="1.2.0",
        methods=MethodRegistry.from_abi(NFT_ABI),
        context=context,
        signer=signer,
    )


@pytest.fixture
def submitter(ledger: TransactionLedger, events: EventChannel, clock: FakeClock) -> TransactionSubmitter:
    return TransactionSubmitter(
        ledger,
        events,
        RetryPolicy(max_retries=3, initial_delay=1.0, multiplier=2.0, max_delay=30.0),
        confirmation_timeout=10.0,
        poll_interval=2.0,
        sleep=clock.sleep,
        clock=clock,
    )
