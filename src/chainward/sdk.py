"""
Chainward facade.

Wires one resolver, one submitter, one ledger and one event channel around
the configured metadata service, execution context and signer.

Example:
    async with Chainward.from_env() as cw:
        receipt = await cw.send("ERC721NFTExchange", "listNFT", [nft, token_id, price])
        print(cw.ledger.get_all()[0].to_dict())
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from .config import EngineConfig
from .engine.events import EventChannel
from .engine.ledger import CanRetryRule, RetryConfig, TransactionLedger
from .engine.submitter import TransactionSubmitter, TxOptions
from .errors import ConfigurationError, ErrorCode
from .pneuma.registry import MetadataService, RegistryClient
from .pneuma.resolver import ContractHandle, ContractResolver, TokenStandard, verify_standard
from .pneuma.rpc import ExecutionContext, JsonRpcContext, Receipt
from .sigil.eth import LocalSigner, Signer

logger = logging.getLogger(__name__)


class Chainward:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        metadata: Optional[MetadataService] = None,
        context: Optional[ExecutionContext] = None,
        signer: Optional[Signer] = None,
        ledger: Optional[TransactionLedger] = None,
        events: Optional[EventChannel] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.validate()
        self.metadata = metadata
        self.context = context
        self.signer = signer
        self.ledger = ledger or TransactionLedger(
            max_entries=self.config.max_ledger_entries,
            can_retry_rule=CanRetryRule.STRICT if self.config.strict_can_retry else CanRetryRule.LEGACY,
            retry_config=RetryConfig(
                max_retries=self.config.max_retries,
                delay_ms=int(self.config.initial_delay * 1000),
                backoff_multiplier=self.config.backoff_multiplier,
            ),
        )
        self.events = events or EventChannel()
        self._resolver: Optional[ContractResolver] = None
        self.submitter = TransactionSubmitter(
            self.ledger,
            self.events,
            self.config.retry_policy(),
            confirmations=self.config.confirmations,
            confirmation_timeout=self.config.confirmation_timeout,
            poll_interval=self.config.poll_interval,
            gas_buffer_percent=self.config.gas_buffer_percent,
        )
        self._owned: list[Any] = []

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, **overrides: Any) -> "Chainward":
        """
        Build a facade from ``CHAINWARD_*`` variables and ``PRIVATE_KEY``.

        The registry client is only created when an API key is configured and
        the signer only when a private key is available; operations that need
        a missing collaborator raise ``ConfigurationError``.
        """
        config = EngineConfig.from_env(env_path, **overrides)
        metadata = RegistryClient(config.api_key, config.registry_url) if config.api_key else None
        context = JsonRpcContext(config.rpc_url)
        try:
            signer: Optional[Signer] = LocalSigner.from_env(env_path)
        except ConfigurationError:
            logger.debug("No PRIVATE_KEY configured; running read-only")
            signer = None

        sdk = cls(config, metadata=metadata, context=context, signer=signer)
        sdk._owned = [r for r in (metadata, context) if r is not None]
        return sdk

    async def aclose(self) -> None:
        for resource in self._owned:
            await resource.aclose()
        self._owned = []

    async def __aenter__(self) -> "Chainward":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def resolver(self) -> ContractResolver:
        if self._resolver is None:
            if self.metadata is None:
                raise ConfigurationError(
                    ErrorCode.MISSING_API_KEY,
                    "No metadata service configured; set CHAINWARD_API_KEY",
                )
            self._resolver = ContractResolver(self.metadata, abi_ttl=self.config.abi_ttl)
        return self._resolver

    def _require_context(self) -> ExecutionContext:
        if self.context is None:
            raise ConfigurationError(ErrorCode.MISSING_PROVIDER, "No execution context configured")
        return self.context

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def resolve(
        self,
        contract_type: str,
        address: Optional[str] = None,
        network: Optional[str] = None,
        *,
        with_signer: bool = True,
    ) -> ContractHandle:
        signer = self.signer if with_signer else None
        return await self.resolver.resolve(
            contract_type,
            network or self.config.network,
            self._require_context(),
            address=address,
            signer=signer,
        )

    async def verify_standard(self, address: str) -> TokenStandard:
        return await verify_standard(address, self._require_context())

    async def send(
        self,
        contract_type: str,
        method: str,
        args: Sequence[Any] = (),
        options: Optional[TxOptions] = None,
        *,
        address: Optional[str] = None,
        network: Optional[str] = None,
    ) -> Receipt:
        if self.signer is None:
            raise ConfigurationError(
                ErrorCode.MISSING_SIGNER,
                "Signer required for transactions; set PRIVATE_KEY",
            )
        handle = await self.resolve(contract_type, address, network)
        return await self.submitter.send(handle, method, args, options)

    async def call(
        self,
        contract_type: str,
        method: str,
        args: Sequence[Any] = (),
        *,
        address: Optional[str] = None,
        network: Optional[str] = None,
    ) -> Any:
        handle = await self.resolve(contract_type, address, network, with_signer=False)
        return await self.submitter.call(handle, method, args)


__all__ = ["Chainward"]
