"""
Engine configuration.

Values come from keyword arguments, or from ``CHAINWARD_*`` environment
variables (optionally loaded from ``~/.chainward/.env`` via python-dotenv).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .engine.retry import RetryPolicy
from .errors import ConfigurationError, ErrorCode
from .pneuma.registry import DEFAULT_API_URL as DEFAULT_REGISTRY_URL
from .pneuma.rpc import DEFAULT_RPC_URL
from .sigil.eth import CHAINWARD_ENV

DEFAULT_NETWORK = "base-sepolia"


@dataclass
class EngineConfig:
    rpc_url: str = DEFAULT_RPC_URL
    registry_url: str = DEFAULT_REGISTRY_URL
    api_key: Optional[str] = None
    network: str = DEFAULT_NETWORK

    # Retry policy (seconds)
    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0

    # Confirmation
    confirmations: int = 1
    confirmation_timeout: float = 120.0
    poll_interval: float = 2.0
    gas_buffer_percent: int = 20

    # Caches / ledger
    abi_ttl: float = 300.0
    max_ledger_entries: int = 50
    strict_can_retry: bool = False

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, **overrides) -> "EngineConfig":
        """
        Build a config from the environment.

        Args:
            env_path: Path to .env file (default: ~/.chainward/.env)
            **overrides: Explicit values that win over the environment

        Returns:
            A validated EngineConfig
        """
        env_path = env_path or CHAINWARD_ENV
        if env_path.exists():
            load_dotenv(env_path, override=False)

        values: dict[str, object] = {}
        for f in fields(cls):
            raw = os.environ.get(f"CHAINWARD_{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, f.type)
        # Fall back to the legacy per-chain RPC variable
        if "rpc_url" not in values and os.environ.get("BASE_SEPOLIA_RPC"):
            values["rpc_url"] = os.environ["BASE_SEPOLIA_RPC"]
        values.update(overrides)

        config = cls(**values)  # type: ignore[arg-type]
        config.validate()
        return config

    def validate(self) -> None:
        problems = []
        if self.max_retries < 0:
            problems.append("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            problems.append("delays must be >= 0")
        if self.backoff_multiplier < 1:
            problems.append("backoff_multiplier must be >= 1")
        if self.confirmations < 1:
            problems.append("confirmations must be >= 1")
        if self.confirmation_timeout <= 0 or self.poll_interval <= 0:
            problems.append("confirmation_timeout and poll_interval must be > 0")
        if self.gas_buffer_percent < 0:
            problems.append("gas_buffer_percent must be >= 0")
        if self.abi_ttl < 0:
            problems.append("abi_ttl must be >= 0")
        if self.max_ledger_entries < 1:
            problems.append("max_ledger_entries must be >= 1")
        if problems:
            raise ConfigurationError(ErrorCode.INVALID_CONFIG, "; ".join(problems))

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
        )


def _coerce(name: str, raw: str, annotation: object) -> object:
    kind = str(annotation)
    try:
        if kind == "bool":
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
    except ValueError as exc:
        raise ConfigurationError(
            ErrorCode.INVALID_CONFIG,
            f"CHAINWARD_{name.upper()} has invalid value {raw!r}",
            cause=exc,
        ) from exc
    return raw
