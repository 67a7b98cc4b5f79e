"""
Chainward CLI

Command-line interface for the Chainward transaction engine.

Commands:
  networks  - List supported networks
  whoami    - Show current signer address
  standard  - Detect a token contract's standard (ERC-165)
  read      - Call a read-only contract method
  send      - Submit a transaction with retry and print its ledger entry
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Optional

import click

from .engine.submitter import TxOptions
from .errors import ChainwardError, ConfigurationError
from .pneuma.registry import SUPPORTED_NETWORKS
from .sdk import Chainward
from .sigil.eth import LocalSigner


# ============ Constants ============

VERSION = "0.1.0"


# ============ Banner ============


def _print_banner() -> None:
    click.echo(
        click.style("  ◆ ", fg="cyan")
        + click.style("C H A I N W A R D", fg="bright_white", bold=True)
        + click.style(f"  v{VERSION}", dim=True)
    )
    click.echo()


# ============ Main CLI Group ============


@click.group(invoke_without_command=True)
@click.version_option(version=VERSION, prog_name="chainward")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Chainward: resilient contract transactions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        _print_banner()
        click.echo(ctx.get_help())


# ============ Shared options ============


def _contract_options(func):
    func = click.option("--network", "-n", default=None, help="Network name (default: CHAINWARD_NETWORK)")(func)
    func = click.option("--args", "args_json", default="[]", help="Function args as JSON array")(func)
    func = click.option("--function", "func_name", required=True, help="Function name or signature")(func)
    func = click.option("--address", default=None, help="Contract address (default: registry address)")(func)
    func = click.option("--contract-type", required=True, help="Registry contract type")(func)
    return func


def _parse_args(args_json: str) -> list[Any]:
    try:
        args = json.loads(args_json)
        if not isinstance(args, list):
            raise ValueError("Args must be a JSON array")
    except (json.JSONDecodeError, ValueError) as exc:
        click.secho(f"ERROR: Invalid args: {exc}", fg="red")
        sys.exit(1)
    return args


def _fail(exc: ChainwardError) -> None:
    click.secho(f"ERROR [{exc.code.value}]: {exc.to_user_message()}", fg="red")
    sys.exit(1)


# ============ Commands ============


@cli.command()
def networks() -> None:
    """List supported networks and chain IDs."""
    width = max(len(name) for name in SUPPORTED_NETWORKS)
    for name, chain_id in SUPPORTED_NETWORKS.items():
        click.echo(f"  {name.ljust(width)}  {chain_id}")


@cli.command()
def whoami() -> None:
    """Show current signer identity."""
    try:
        signer = LocalSigner.from_env()
    except ConfigurationError as exc:
        click.echo("No signer found.")
        click.echo(str(exc))
        sys.exit(1)
    click.echo(f"Address: {signer.address}")


@cli.command()
@click.option("--address", required=True, help="Token contract address")
def standard(address: str) -> None:
    """Detect ERC721 / ERC1155 via supportsInterface."""

    async def run() -> str:
        async with Chainward.from_env() as sdk:
            return (await sdk.verify_standard(address)).value

    try:
        result = asyncio.run(run())
    except ChainwardError as exc:
        _fail(exc)
        return
    click.echo(f"Standard: {result}")


@cli.command()
@_contract_options
def read(contract_type: str, address: Optional[str], func_name: str, args_json: str, network: Optional[str]) -> None:
    """Call a read-only contract method."""
    args = _parse_args(args_json)

    async def run() -> Any:
        async with Chainward.from_env() as sdk:
            return await sdk.call(contract_type, func_name, args, address=address, network=network)

    try:
        result = asyncio.run(run())
    except ChainwardError as exc:
        _fail(exc)
        return
    click.echo(json.dumps(result, indent=2, default=_json_default))


@cli.command()
@_contract_options
@click.option("--value", default=0, type=int, help="Native value in wei")
@click.option("--gas-limit", default=None, type=int, help="Gas limit (default: estimate)")
@click.option("--max-retries", default=None, type=int, help="Override retry budget")
def send(
    contract_type: str,
    address: Optional[str],
    func_name: str,
    args_json: str,
    network: Optional[str],
    value: int,
    gas_limit: Optional[int],
    max_retries: Optional[int],
) -> None:
    """
    Submit a transaction and wait for confirmation.

    Transient failures are retried with exponential backoff.  The final
    ledger entry is printed as JSON either way.
    """
    _print_banner()
    args = _parse_args(args_json)

    click.echo(f"  Contract: {contract_type}" + (f" @ {address}" if address else ""))
    click.echo(f"  Function: {func_name}")
    click.echo(f"  Args: {args}")
    if value > 0:
        click.echo(f"  Value: {value} wei")
    click.echo("")

    options = TxOptions(
        value=value,
        gas_limit=gas_limit,
        max_retries=max_retries,
        on_sent=lambda tx_hash: click.echo(f"  Sent: {tx_hash}"),
    )

    async def run() -> tuple[Optional[ChainwardError], list]:
        async with Chainward.from_env() as sdk:
            error: Optional[ChainwardError] = None
            try:
                await sdk.send(contract_type, func_name, args, options, address=address, network=network)
            except ChainwardError as exc:
                error = exc
            return error, sdk.ledger.get_all()

    try:
        error, entries = asyncio.run(run())
    except ChainwardError as exc:
        _fail(exc)
        return

    if entries:
        click.echo(json.dumps(entries[0].to_dict(), indent=2))
    if error is not None:
        _fail(error)
        return
    click.secho("SUCCESS: Transaction confirmed!", fg="green")


# ============ Helper Functions ============


def _json_default(value: Any) -> Any:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return str(value)


# ============ Entry Points ============


def main() -> None:
    """Chainward CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
