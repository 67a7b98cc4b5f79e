"""
Signing capability for Chainward.

The engine never holds keys itself: write calls need an externally supplied
``Signer``.  ``LocalSigner`` is the bundled implementation, backed by
eth-account, for scripts and the CLI.

Keys are read from the environment or ~/.chainward/.env as PRIVATE_KEY.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Protocol

from dotenv import load_dotenv
from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..errors import ConfigurationError, ErrorCode
from ..utils import to_checksum_address

# Default config directory
CHAINWARD_DIR = Path.home() / ".chainward"
CHAINWARD_ENV = CHAINWARD_DIR / ".env"

# Used when the transaction carries no gas limit (estimation failed)
DEFAULT_GAS_LIMIT = 500_000


class Signer(Protocol):
    @property
    def address(self) -> str:
        ...

    def sign_transaction(self, tx: dict[str, Any]) -> str:
        ...


class LocalSigner:
    """Signer backed by an in-process eth-account LocalAccount."""

    def __init__(self, private_key: str) -> None:
        self._account: LocalAccount = Account.from_key(private_key)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "LocalSigner":
        return cls(load_private_key(env_path))

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: dict[str, Any]) -> str:
        """
        Sign a transaction dict.

        Args:
            tx: Transaction fields (to/data/value/nonce/gas/fees/chainId)

        Returns:
            0x-prefixed raw signed transaction
        """
        fields = {k: v for k, v in tx.items() if k != "from" and v is not None}
        fields.setdefault("gas", DEFAULT_GAS_LIMIT)
        if fields.get("to"):
            fields["to"] = to_checksum_address(fields["to"])
        signed = self._account.sign_transaction(fields)
        return "0x" + bytes(signed.raw_transaction).hex()

    def __repr__(self) -> str:
        return f"LocalSigner(address={self.address!r})"


def load_private_key(env_path: Optional[Path] = None) -> str:
    """
    Load private key from .env file or environment.

    Args:
        env_path: Path to .env file (default: ~/.chainward/.env)

    Returns:
        0x-prefixed hex private key

    Raises:
        ConfigurationError: If PRIVATE_KEY is not set
    """
    env_path = env_path or CHAINWARD_ENV

    if env_path.exists():
        load_dotenv(env_path, override=True)

    private_key = os.environ.get("PRIVATE_KEY")
    if not private_key:
        raise ConfigurationError(
            ErrorCode.MISSING_SIGNER,
            f"PRIVATE_KEY not found. Set PRIVATE_KEY in the environment or in {env_path}",
        )

    # Ensure 0x prefix
    if not private_key.startswith("0x"):
        private_key = "0x" + private_key

    return private_key
