#!/usr/bin/env python3
"""
Secure finality CLI.

Commands:
    advance   Keep the watermark moving with the finalized head (privileged key)
    send      Submit a demo transfer and track it until secure finalized,
              or only watch the watermark with --watch-only-target

Exit codes: 0 on success, 1 on setup failure or on a failed dispatch.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import replace
from typing import Callable, Optional

import click
from rich.console import Console

from secure_finality.advancer import WatermarkAdvancer
from secure_finality.config import Settings
from secure_finality.exceptions import SecureFinalityError
from secure_finality.logging_config import setup_logging
from secure_finality.models import (
    Broadcast,
    Failed,
    Finalized,
    InBlock,
    LifecycleEvent,
    Ready,
    SecureFinalized,
)
from secure_finality.substrate import SubstrateChainClient
from secure_finality.tracker import sign_and_send_secure
from secure_finality.watermark import wait_for_watermark

logger = logging.getLogger(__name__)
console = Console()


def _handle_cli_error(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler."""
    logger.debug("CLI error: %s", exc, exc_info=True)
    console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(exit_code)


def _install_stop_handlers(stop: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except NotImplementedError:
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead.
            pass


def _print_event(event: LifecycleEvent) -> None:
    if isinstance(event, Ready):
        console.print("Status of transfer: Ready")
    elif isinstance(event, Broadcast):
        console.print("Status of transfer: Broadcast")
    elif isinstance(event, InBlock):
        console.print(f"Successful transfer ... InBlock {event.block_hash}")
    elif isinstance(event, Finalized):
        console.print(f"Status of transfer: Finalized at {event.block_hash}")
        console.print(f"→ Tx finalized in block #{event.block_number}")
    elif isinstance(event, Failed):
        console.print(f"[bold red]❌ {event.detail}[/]")
    elif isinstance(event, SecureFinalized):
        console.print(f"[bold green]Status of transfer: Secure finalized[/] (#{event.block_number})")


@click.group()
@click.option("--ws", "ws_url", help="WebSocket endpoint [env: WS]")
@click.option("--seed", help="Signing seed or URI [env: SEED]")
@click.option("--pallet", help="Pallet exposing the watermark [env: PALLET]")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level [env: LOG_LEVEL]",
)
@click.option("--json-logs", is_flag=True, help="Emit JSON logs [env: LOG_JSON=1]")
@click.pass_context
def cli(
    ctx: click.Context,
    ws_url: Optional[str],
    seed: Optional[str],
    pallet: Optional[str],
    log_level: Optional[str],
    json_logs: bool,
):
    """Secure finality tools: watermark advancement and secure transaction tracking."""
    ctx.ensure_object(dict)
    try:
        settings = Settings.from_env()
        settings = settings.with_overrides(
            ws_url=ws_url,
            seed=seed,
            surface=replace(settings.surface, pallet=pallet) if pallet else None,
            log_level=log_level.upper() if log_level else None,
            log_json=True if json_logs else None,
        )
    except SecureFinalityError as exc:
        _handle_cli_error(exc)
    setup_logging(level=settings.log_level, json_format=settings.log_json, log_file=settings.log_file)
    ctx.obj["settings"] = settings


@cli.command("advance")
@click.option("--interval", type=float, help="Poll interval in seconds [env: INTERVAL_SEC]")
@click.option("--cooldown", type=float, help="Extra pause after a failed tick [env: COOLDOWN_SEC]")
@click.option("--min-lag", type=click.IntRange(min=1), help="Smallest lag that triggers a call [env: MIN_LAG]")
@click.option("--dry-run", is_flag=True, help="Log intended calls without sending [env: DRY_RUN=1]")
@click.pass_context
def advance(
    ctx: click.Context,
    interval: Optional[float],
    cooldown: Optional[float],
    min_lag: Optional[int],
    dry_run: bool,
):
    """Periodically advance the watermark to the finalized head."""
    try:
        settings = ctx.obj["settings"].with_overrides(
            interval=interval,
            cooldown=cooldown,
            min_lag=min_lag,
            dry_run=True if dry_run else None,
        )
        asyncio.run(_run_advancer(settings))
    except SecureFinalityError as exc:
        _handle_cli_error(exc)


async def _run_advancer(settings: Settings) -> None:
    console.print(f"Connecting to {settings.ws_url} ...")
    client = await SubstrateChainClient.connect(settings)
    try:
        advancer = WatermarkAdvancer(
            client,
            interval=settings.interval,
            cooldown=settings.cooldown,
            grace_period=settings.grace_period,
            dry_run=settings.dry_run,
            min_lag=settings.min_lag,
            call_label=settings.surface.call_label,
        )
        _install_stop_handlers(advancer.stop)
        console.print(
            f"Started. Polling every {settings.interval}s as {client.signer_address}. "
            f"DRY_RUN={'1' if settings.dry_run else '0'}"
        )
        await advancer.run()
    finally:
        await client.close()


@cli.command("send")
@click.option("--to", "dest", help="Destination address [env: TO]")
@click.option("--amount", type=click.IntRange(min=0), help="Amount in base units [env: AMOUNT]")
@click.option(
    "--watch-only-target",
    type=click.IntRange(min=0),
    help="Send nothing; wait until the watermark reaches this block [env: WATCH_ONLY_TARGET_BLOCK]",
)
@click.option("--timeout", type=float, help="Give up waiting for the watermark after N seconds")
@click.pass_context
def send(
    ctx: click.Context,
    dest: Optional[str],
    amount: Optional[int],
    watch_only_target: Optional[int],
    timeout: Optional[float],
):
    """Send a transfer and wait until it is secure finalized."""
    try:
        settings = ctx.obj["settings"].with_overrides(
            transfer_to=dest,
            transfer_amount=amount,
            watch_only_target=watch_only_target,
        )
        exit_code = asyncio.run(_run_send(settings, timeout))
    except SecureFinalityError as exc:
        _handle_cli_error(exc)
    ctx.exit(exit_code)


async def _run_send(settings: Settings, timeout: Optional[float]) -> int:
    console.print(f"Connecting to {settings.ws_url} ...")
    client = await SubstrateChainClient.connect(settings, require_advance=False)
    label = settings.surface.watermark_label
    try:
        if settings.watch_only_target is not None:
            target = settings.watch_only_target
            console.print(f"→ Watching {label} until it ≥ #{target} ...")
            await wait_for_watermark(
                client,
                target,
                timeout=timeout,
                on_observe=lambda value: console.print(f"{label} = #{value}"),
            )
            console.print("[bold green]Status: Secure finalized[/]")
            return 0

        payload = await client.sign_transfer(settings.transfer_to, settings.transfer_amount)
        console.print(
            f"Submitting transfer from {client.signer_address} → {settings.transfer_to}, "
            f"amount={settings.transfer_amount} ..."
        )
        tracker = await sign_and_send_secure(
            client,
            payload,
            _print_event,
            wait_timeout=timeout,
            label="transfer",
        )
        terminal = await tracker.wait()
        return 1 if isinstance(terminal, Failed) else 0
    finally:
        await client.close()


def main():
    """Main CLI entry point"""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()
