#!/usr/bin/env python3
"""
Main Entry Point

Screening Consensus Engine - operator CLI
"""

import argparse
import asyncio
import sys

from dotenv import load_dotenv
from rich.console import Console
from rich.rule import Rule
from rich.table import Table

from review_consensus.config.loader import DEFAULT_SETTINGS_PATH, load_settings
from review_consensus.errors import ConsensusError
from review_consensus.models import EngineSettings, ScreeningPhase
from review_consensus.utils.logging_config import LogLevel, setup_logging
from review_consensus.utils.structured_log import configure_structured_logging
from review_consensus.web.app import build_engine

console = Console()

# Load environment variables from .env file
load_dotenv()


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Screening Consensus Engine - inspect screening state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_SETTINGS_PATH,
        help=f"Path to settings file (default: {DEFAULT_SETTINGS_PATH})",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output (detailed logging)",
    )

    parser.add_argument(
        "--debug",
        "-d",
        action="store_true",
        help="Enable debug mode (full logging with all details)",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        nargs="?",
        const="logs/review_consensus.log",
        default=None,
        help="Enable file logging, optionally to a custom path",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create or migrate the screening database")

    counts = subparsers.add_parser("counts", help="Show phase counts for a project")
    counts.add_argument("project_id")
    counts.add_argument("--user", required=True, help="Requesting project member id")

    conflicts = subparsers.add_parser("conflicts", help="List conflicts for a project")
    conflicts.add_argument("project_id")
    conflicts.add_argument("--user", required=True, help="Requesting project member id")
    conflicts.add_argument("--status", choices=["PENDING", "RESOLVED"], default=None)

    stats = subparsers.add_parser("conflict-stats", help="Summarize conflicts for a project")
    stats.add_argument("project_id")
    stats.add_argument("--user", required=True, help="Requesting project member id")

    progress = subparsers.add_parser("progress", help="Show completion of one screening phase")
    progress.add_argument("project_id")
    progress.add_argument("phase", choices=[p.value for p in ScreeningPhase])
    progress.add_argument("--user", required=True, help="Requesting project member id")

    audit = subparsers.add_parser("audit", help="Show the audit trail for one study")
    audit.add_argument("project_work_id")
    audit.add_argument("--user", required=True, help="Requesting project member id")

    return parser.parse_args(argv)


def _print_counts(counts) -> None:
    table = Table(title="Phase counts")
    table.add_column("Bucket", style="cyan")
    table.add_column("Studies", justify="right")
    table.add_row("Pending", str(counts.pending))
    table.add_row("In progress", str(counts.in_progress))
    table.add_row("Conflict", str(counts.conflict))
    for phase in ScreeningPhase:
        table.add_row(f"Included at {phase.value}", str(counts.included_by_phase[phase]))
        table.add_row(f"Excluded at {phase.value}", str(counts.excluded_by_phase[phase]))
    console.print(table)


def _print_conflicts(conflicts) -> None:
    table = Table(title=f"Conflicts ({len(conflicts)})")
    table.add_column("Conflict", style="cyan")
    table.add_column("Study")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Decisions")
    for conflict in conflicts:
        decisions = ", ".join(f"{d.reviewer_id}={d.decision.value}" for d in conflict.decisions)
        table.add_row(
            conflict.id, conflict.project_work_id, conflict.phase.value, conflict.status.value, decisions
        )
    console.print(table)


def _print_conflict_stats(stats) -> None:
    table = Table(title="Conflict statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(stats.total))
    table.add_row("Pending", str(stats.pending))
    table.add_row("Resolved", str(stats.resolved))
    table.add_row("Escalated", str(stats.escalated))
    for phase in ScreeningPhase:
        table.add_row(f"At {phase.value}", str(stats.by_phase[phase]))
    if stats.average_resolution_time_ms is None:
        table.add_row("Average resolution time", "-")
    else:
        table.add_row("Average resolution time", f"{stats.average_resolution_time_ms / 1000:.1f}s")
    console.print(table)


def _print_progress(progress) -> None:
    console.print(
        f"[bold]{progress.phase.value}[/bold]: {progress.decided}/{progress.total} decided "
        f"({progress.percentage:.1f}%)"
    )
    if progress.complete:
        console.print("[green]Phase complete[/green]")
    for blocker in progress.blockers:
        console.print(f"[yellow]- {blocker}[/yellow]")


def _print_audit(facts) -> None:
    table = Table(title="Audit trail")
    table.add_column("Phase", style="cyan")
    table.add_column("Decision")
    table.add_column("Source")
    table.add_column("Actor")
    table.add_column("At")
    for fact in facts:
        table.add_row(
            fact.phase.value, fact.decision.value, fact.source.value, fact.actor_id, fact.timestamp.isoformat()
        )
    console.print(table)


async def run_command(args, settings: EngineSettings) -> None:
    engine = build_engine(settings)
    await engine.database.initialize()

    if args.command == "init-db":
        console.print(f"[green]Database ready at {settings.database_path}[/green]")
    elif args.command == "counts":
        _print_counts(await engine.get_phase_counts(args.project_id, args.user))
    elif args.command == "conflicts":
        _print_conflicts(await engine.list_conflicts(args.project_id, args.user, status=args.status))
    elif args.command == "conflict-stats":
        _print_conflict_stats(await engine.get_conflict_stats(args.project_id, args.user))
    elif args.command == "progress":
        _print_progress(await engine.get_phase_progress(args.project_id, args.phase, args.user))
    elif args.command == "audit":
        _print_audit(await engine.get_audit_trail(args.project_work_id, args.user))


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(2)

    level = LogLevel.FULL if args.debug else settings.logging.level
    log_file = args.log_file or settings.logging.log_file
    setup_logging(
        level=level,
        log_to_file=log_file is not None,
        log_file=log_file,
        verbose=args.verbose,
        debug=args.debug,
    )
    if settings.logging.structured_log_dir:
        configure_structured_logging(settings.logging.structured_log_dir)

    console.print(Rule("[bold cyan]Screening Consensus Engine[/bold cyan]", style="cyan"))
    try:
        asyncio.run(run_command(args, settings))
    except ConsensusError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
