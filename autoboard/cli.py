"""
Autoboard CLI

  autoboard check <board.yaml>     (dry run: what would fire now)
  autoboard run <board.yaml>       (poll and execute until interrupted)
  autoboard run <board.yaml> --once
  autoboard history <board.yaml>   (execution records per instruction)
  autoboard status                 (config + API keys)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from autoboard import __codename__, __version__
from autoboard.config_loader import AutoboardConfig, load_config, validate_api_keys
from autoboard.dispatcher import ExecutionResult
from autoboard.engine import AutomationEngine
from autoboard.event_bus import AutomationEventBus
from autoboard.models import ThresholdCheck
from autoboard.router import LiteLLMInstructionRunner
from autoboard.safeguards import SafeguardGate
from autoboard.schedule import localize
from autoboard.store import BoardStore
from autoboard.triggers import column_card_counts, evaluate_scheduled, evaluate_threshold

load_dotenv()
load_dotenv(Path.home() / ".autoboard" / ".env")

app = typer.Typer(
    name="autoboard",
    help=f"{__codename__}: automation engine for AI-driven Kanban boards.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_STATUS_COLORS = {"completed": "green", "denied": "yellow", "busy": "yellow"}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def check(
    board: Path = typer.Argument(..., help="Board YAML file"),
    at: Optional[datetime] = typer.Option(None, "--at", help="Evaluate at this instant (ISO 8601)"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config override YAML"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Show which instructions would fire now, without executing anything."""
    _configure_logging(verbose)
    store, config = _load_board(board, config_file)
    tz = config.tz
    now = localize(at, tz) if at else datetime.now(tz)
    gate = SafeguardGate(tz)
    instructions = list(store.instruction_cards.values())

    matches = evaluate_scheduled(now, instructions, tz)
    for channel in store.channels.values():
        matches += evaluate_threshold(
            ThresholdCheck(channel_id=channel.id), column_card_counts(channel), instructions, channel
        )

    table = Table(title=f"Due at {now.isoformat(timespec='minutes')}", border_style="cyan")
    table.add_column("Instruction")
    table.add_column("Trigger")
    table.add_column("Verdict")

    for match in matches:
        decision = gate.permits(match.instruction, now, match.triggered_by, cards=store.cards)
        verdict = "[green]would run[/]" if decision.allowed else f"[yellow]{decision.reason}[/] {decision.details}"
        table.add_row(match.instruction.title, match.triggered_by, verdict)

    if not matches:
        console.print("[dim]Nothing due.[/]")
        return
    console.print(table)


@app.command()
def run(
    board: Path = typer.Argument(..., help="Board YAML file"),
    once: bool = typer.Option(False, "--once", help="Run a single startup pass and exit"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config override YAML"),
    save: bool = typer.Option(True, "--save/--no-save", help="Write the board back when done"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run automation against a board file."""
    _configure_logging(verbose)
    bus = AutomationEventBus()
    store, config = _load_board(board, config_file, bus=bus)
    runner = LiteLLMInstructionRunner(config.routing)
    engine = AutomationEngine(store, runner, config=config, bus=bus)

    try:
        results = asyncio.run(_run_engine(engine, once))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        results = []

    if results:
        _print_results(results, store)
    if save:
        store.save(board)
        console.print(f"[dim]Board saved to {board}[/]")


@app.command()
def history(
    board: Path = typer.Argument(..., help="Board YAML file"),
    count: int = typer.Option(10, "--count", "-n", help="Records to show per instruction"),
):
    """View execution history of automatic instructions."""
    store, _ = _load_board(board, None)

    shown = False
    for instruction in store.instruction_cards.values():
        if not instruction.execution_history:
            continue
        shown = True
        table = Table(title=instruction.title, border_style="cyan")
        table.add_column("Time", style="dim")
        table.add_column("Trigger")
        table.add_column("Result")
        table.add_column("Cards")
        for record in instruction.execution_history[:count]:
            result = "[green]success[/]" if record.success else "[red]failed[/]"
            table.add_row(
                record.timestamp.isoformat(timespec="seconds"),
                record.triggered_by,
                result,
                str(record.cards_affected),
            )
        console.print(table)

    if not shown:
        console.print("[dim]No history yet.[/]")


@app.command()
def status(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Config override YAML"),
):
    """Check Autoboard configuration and readiness."""
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    config = load_config(config_file=config_file)
    console.print(f"\n[bold]Engine:[/]")
    console.print(f"  Poll interval:  {config.engine.poll_interval_seconds:g}s")
    console.print(f"  History limit:  {config.engine.history_limit}")
    console.print(f"  Timezone:       {config.engine.timezone}")
    console.print(f"\n[bold]Default safeguards:[/]")
    console.print(f"  Cooldown:       {config.safeguards.cooldown_minutes} min")
    console.print(f"  Daily cap:      {config.safeguards.daily_cap}")
    console.print(f"  Prevent loops:  {config.safeguards.prevent_loops}")
    console.print(f"\n[bold]Routing:[/]")
    console.print(f"  Model:          {config.routing.model}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_board(
    board: Path, config_file: Optional[Path], bus: AutomationEventBus | None = None
) -> tuple[BoardStore, AutoboardConfig]:
    board = board.resolve()
    if not board.exists():
        console.print(f"[red]Board file not found: {board}[/]")
        raise typer.Exit(1)
    config = load_config(board.parent, config_file)
    return BoardStore.load(board, bus=bus, default_safeguards=config.default_safeguards()), config


async def _run_engine(engine: AutomationEngine, once: bool) -> list[ExecutionResult]:
    if once:
        engine.attach()
        results = await engine.initialize()
        await engine.drain()
        engine.detach()
        return results

    engine.start()
    console.print("[cyan]Polling for due instructions. Ctrl-C to stop.[/]")
    try:
        await asyncio.Event().wait()
    finally:
        await engine.stop()
    return []


def _print_results(results: list[ExecutionResult], store: BoardStore) -> None:
    table = Table(title="Automation Results", border_style="bright_green")
    table.add_column("Instruction")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Cards")
    table.add_column("Notes")

    for r in results:
        instruction = store.instruction_cards.get(r.instruction_id)
        title = instruction.title if instruction else r.instruction_id
        color = _STATUS_COLORS.get(r.status, "red")
        notes = r.error or (r.decision.details if r.decision else "")
        if r.cards_skipped:
            notes = f"skipped:{r.cards_skipped} {notes}".strip()
        table.add_row(title, r.triggered_by, f"[{color}]{r.status}[/]", str(r.cards_affected), notes[:60])

    console.print(table)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
