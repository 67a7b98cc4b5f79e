"""
ABI handling - validation, method registry and calldata codec.

A contract's callable surface is compiled once, at resolution time, into a
``MethodRegistry``.  Looking up a method that the ABI does not declare
fails immediately with a ``CallError`` naming the method.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional, Sequence

from eth_abi import decode, encode

from ..errors import CallError, ErrorCode, InvalidABIError
from ..utils import keccak256

READ_ONLY_MUTABILITY = frozenset({"view", "pure"})


def _canonical_type(param: Mapping[str, Any]) -> str:
    """Canonical ABI type string, expanding tuples into ``(t1,t2)``."""
    typ = param.get("type")
    if not isinstance(typ, str) or not typ:
        raise InvalidABIError(message=f"ABI parameter without a type: {param!r}")
    if not typ.startswith("tuple"):
        return typ
    components = param.get("components")
    if not isinstance(components, list):
        raise InvalidABIError(message=f"Tuple parameter without components: {param!r}")
    inner = ",".join(_canonical_type(c) for c in components)
    return f"({inner}){typ[len('tuple'):]}"


@dataclass(frozen=True)
class MethodSpec:
    name: str
    input_types: tuple[str, ...]
    output_types: tuple[str, ...]
    state_mutability: str = "nonpayable"

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return keccak256(self.signature.encode("utf-8"))[:4]

    @property
    def read_only(self) -> bool:
        return self.state_mutability in READ_ONLY_MUTABILITY

    @property
    def payable(self) -> bool:
        return self.state_mutability == "payable"

    def encode_call(self, args: Sequence[Any]) -> str:
        """ABI-encode a call to 0x-prefixed hex calldata."""
        if len(args) != len(self.input_types):
            raise CallError(
                ErrorCode.CONTRACT_CALL_FAILED,
                f"{self.signature} expects {len(self.input_types)} argument(s), got {len(args)}",
            )
        try:
            encoded_args = encode(list(self.input_types), list(args)) if args else b""
        except Exception as exc:
            raise CallError(
                ErrorCode.CONTRACT_CALL_FAILED,
                f"Cannot encode arguments for {self.signature}: {exc}",
                cause=exc,
            ) from exc
        return "0x" + self.selector.hex() + encoded_args.hex()

    def decode_result(self, data: str) -> Any:
        """ABI-decode return data; single outputs are unwrapped."""
        if not self.output_types:
            return None
        raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        decoded = decode(list(self.output_types), raw)
        if len(decoded) == 1:
            return decoded[0]
        return decoded


class MethodRegistry:
    """Statically built name -> MethodSpec map derived from an ABI."""

    def __init__(self, methods: Sequence[MethodSpec]) -> None:
        self._by_signature: dict[str, MethodSpec] = {}
        self._by_name: dict[str, list[MethodSpec]] = {}
        for spec in methods:
            self._by_signature[spec.signature] = spec
            self._by_name.setdefault(spec.name, []).append(spec)

    @classmethod
    def from_abi(cls, abi: Sequence[Mapping[str, Any]]) -> "MethodRegistry":
        methods = []
        for entry in abi:
            if entry.get("type", "function") != "function":
                continue
            name = entry.get("name")
            if not isinstance(name, str) or not name:
                raise InvalidABIError(message=f"ABI function without a name: {entry!r}")
            inputs = entry.get("inputs", [])
            outputs = entry.get("outputs", [])
            if not isinstance(inputs, list) or not isinstance(outputs, list):
                raise InvalidABIError(message=f"ABI function {name} has malformed inputs/outputs")
            mutability = entry.get("stateMutability")
            if mutability is None:
                # Pre-0.4.16 ABIs use constant/payable flags
                if entry.get("constant"):
                    mutability = "view"
                elif entry.get("payable"):
                    mutability = "payable"
                else:
                    mutability = "nonpayable"
            methods.append(MethodSpec(
                name=name,
                input_types=tuple(_canonical_type(p) for p in inputs),
                output_types=tuple(_canonical_type(p) for p in outputs),
                state_mutability=mutability,
            ))
        return cls(methods)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name or name in self._by_signature

    def __iter__(self) -> Iterator[MethodSpec]:
        return iter(self._by_signature.values())

    def __len__(self) -> int:
        return len(self._by_signature)

    def names(self) -> list[str]:
        return sorted(self._by_name)

    def get(self, name: str, arg_count: Optional[int] = None) -> MethodSpec:
        """
        Look up a method by name or full signature.

        Overloaded names are disambiguated by ``arg_count``; pass the full
        signature (``"transfer(address,uint256)"``) when arity is not enough.

        Raises:
            CallError: If no method matches
        """
        if "(" in name:
            spec = self._by_signature.get(name)
            if spec is None:
                raise CallError(ErrorCode.METHOD_NOT_FOUND, f"Method {name} not found on contract")
            return spec

        candidates = self._by_name.get(name)
        if not candidates:
            raise CallError(ErrorCode.METHOD_NOT_FOUND, f"Method {name} not found on contract")
        if len(candidates) == 1:
            return candidates[0]
        if arg_count is not None:
            matching = [c for c in candidates if len(c.input_types) == arg_count]
            if len(matching) == 1:
                return matching[0]
        options = ", ".join(c.signature for c in candidates)
        raise CallError(
            ErrorCode.METHOD_NOT_FOUND,
            f"Method {name} is overloaded; use one of: {options}",
        )


def parse_abi(payload: Any) -> list[dict[str, Any]]:
    """
    Validate an ABI payload from the metadata service.

    Accepts a list of entries, a JSON string, or an artifact dict with an
    ``abi`` key (Foundry/Hardhat output).

    Raises:
        InvalidABIError: If the payload is not a usable ABI
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidABIError(message=f"ABI is not valid JSON: {exc}", cause=exc) from exc
    if isinstance(payload, dict) and "abi" in payload:
        payload = payload["abi"]
    if not isinstance(payload, list):
        raise InvalidABIError(message=f"ABI must be a list, got {type(payload).__name__}")
    for entry in payload:
        if not isinstance(entry, dict):
            raise InvalidABIError(message=f"ABI entries must be objects, got {entry!r}")
    return payload


# ---------------------------------------------------------------------------
# ERC-165 probe
# ---------------------------------------------------------------------------

SUPPORTS_INTERFACE = MethodSpec(
    name="supportsInterface",
    input_types=("bytes4",),
    output_types=("bool",),
    state_mutability="view",
)
