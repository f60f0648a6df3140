"""
fairplay.cli
------------

Operator CLI for the settlement layer.

Commands:
  - commit            : Generate (or take) a seed and print its commitment.
  - verify            : Check a seed against a commitment.
  - resolve-handle    : Recover the subscription handle created by a transaction.
  - treasury-balance  : Live treasury balance.
  - show-config       : Effective configuration (signing key redacted).
  - serve             : Run the HTTP surface under uvicorn.

Configuration comes from `--config PATH` (JSON/YAML) or FAIRPLAY_* environment
variables.

Example:
  python -m fairplay.cli commit
  python -m fairplay.cli resolve-handle 0x5c50… --config fairplay.yaml
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from typing import Any, Optional, Sequence

import typer

from ..chain.evm import EvmChain, EvmSubscriptionRegistry, TxSender
from ..chain.jsonrpc import JsonRpcClient
from ..commit_reveal import commit, generate_seed, verify
from ..config import FairplayConfig
from ..errors import FairplayError
from ..resolver.handles import HandleResolver

__all__ = ["app", "main"]

app = typer.Typer(
    name="fairplay",
    help="Fairplay randomness & treasury settlement CLI.",
    no_args_is_help=True,
    add_completion=False,
)


def _opt_config() -> Optional[str]:
    return typer.Option(None, "--config", "-c", help="JSON/YAML config file (default: FAIRPLAY_* env)")  # type: ignore[return-value]


def _load_config(path: Optional[str]) -> FairplayConfig:
    try:
        return FairplayConfig.from_file(path) if path else FairplayConfig.from_env()
    except (FairplayError, ValueError, OSError) as e:
        raise SystemExit(f"invalid configuration: {e}")


def _hex(value: str) -> bytes:
    v = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(v)
    except ValueError:
        raise typer.BadParameter(f"not hex: {value!r}")


def _echo(obj: Any) -> None:
    typer.echo(json.dumps(obj, indent=2, sort_keys=True))


@app.command("commit")
def cmd_commit(
    seed: Optional[str] = typer.Option(None, "--seed", "-s", help="0x-hex seed (random 32 bytes if omitted)."),
) -> None:
    """Print a seed and its commitment."""
    raw = _hex(seed) if seed else generate_seed()
    try:
        c = commit(raw)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    _echo({"seed": "0x" + raw.hex(), "commitment": "0x" + c.hex()})


@app.command("verify")
def cmd_verify(
    commitment: str = typer.Argument(..., help="0x-hex 32-byte commitment."),
    seed: str = typer.Argument(..., help="0x-hex revealed seed."),
) -> None:
    """Check that SEED hashes to COMMITMENT. Exit code 1 on mismatch."""
    try:
        ok = verify(commitment, _hex(seed))
    except ValueError as e:
        raise typer.BadParameter(str(e))
    _echo({"valid": ok})
    if not ok:
        raise typer.Exit(code=1)


async def _resolve_handle(cfg: FairplayConfig, tx_ref: str, owner: Optional[str]) -> dict:
    async with JsonRpcClient(cfg.rpc_url, timeout=cfg.rpc_timeout_s) as rpc:
        chain = EvmChain(rpc)
        registry = EvmSubscriptionRegistry(
            chain, TxSender(rpc, cfg.treasury_key, cfg.chain_id), cfg.provider_address,
            fee_token_address=cfg.fee_token_address,
        )
        receipt = await chain.get_transaction_receipt(tx_ref)
        if receipt is None:
            raise SystemExit(f"no receipt for {tx_ref}")
        creator = owner or receipt.sender
        if not creator:
            raise SystemExit("creator unknown; pass --owner")
        handle = await HandleResolver.from_config(cfg, chain, registry).resolve(receipt, creator)
        return {"txRef": tx_ref, "owner": creator, "handle": handle}


@app.command("resolve-handle")
def cmd_resolve_handle(
    tx_ref: str = typer.Argument(..., help="createSubscription transaction hash."),
    owner: Optional[str] = typer.Option(None, "--owner", help="Creator address (default: receipt sender)."),
    config: Optional[str] = _opt_config(),
) -> None:
    """Recover a subscription handle: event log, then simulation, then bounded scan."""
    cfg = _load_config(config)
    try:
        _echo(asyncio.run(_resolve_handle(cfg, tx_ref, owner)))
    except FairplayError as e:
        typer.echo(json.dumps(e.to_dict(), indent=2), err=True)
        raise typer.Exit(code=2)


async def _treasury_balance(cfg: FairplayConfig) -> int:
    async with JsonRpcClient(cfg.rpc_url, timeout=cfg.rpc_timeout_s) as rpc:
        return await EvmChain(rpc).get_balance(cfg.treasury_address)


@app.command("treasury-balance")
def cmd_treasury_balance(config: Optional[str] = _opt_config()) -> None:
    """Live on-chain balance of the treasury account."""
    cfg = _load_config(config)
    try:
        balance = asyncio.run(_treasury_balance(cfg))
    except FairplayError as e:
        typer.echo(json.dumps(e.to_dict(), indent=2), err=True)
        raise typer.Exit(code=2)
    _echo({"address": cfg.treasury_address, "balance": balance})


@app.command("show-config")
def cmd_show_config(config: Optional[str] = _opt_config()) -> None:
    """Print the effective configuration with the signing key redacted."""
    typer.echo(_load_config(config).to_json())


def _load_object(target: str) -> Any:
    module, _, attr = target.partition(":")
    if not module or not attr:
        raise typer.BadParameter("expected 'module:attribute'")
    obj = getattr(importlib.import_module(module), attr)
    return obj() if isinstance(obj, type) else obj


@app.command("serve")
def cmd_serve(
    evaluator: str = typer.Option(..., "--evaluator", help="Outcome evaluator as 'module:attribute'."),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8080, "--port"),
    log_level: str = typer.Option("info", "--log-level"),
    config: Optional[str] = _opt_config(),
) -> None:
    """Run the HTTP surface, expiry sweeper and fulfillment watcher."""
    import uvicorn

    from ..adapters.rpc_mount import create_app
    from ..service import FairplayService

    cfg = _load_config(config)
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    service = FairplayService.from_config(cfg, evaluator=_load_object(evaluator))
    uvicorn.run(create_app(service), host=host, port=port, log_level=log_level)


def main(argv: Optional[Sequence[str]] = None) -> None:  # pragma: no cover - thin wrapper
    """Entry-point for the `fairplay` console script and `python -m fairplay.cli`."""
    try:
        app(args=list(argv) if argv is not None else None, prog_name="fairplay")
    except KeyboardInterrupt:
        typer.echo("", err=True)
        sys.exit(130)


if __name__ == "__main__":  # pragma: no cover
    main()
