"""Command-line interface for labcontrol workspaces.

Usage:
    labcontrol status
    labcontrol backup --store cargo
    labcontrol backups
    labcontrol restore database-backup-2024-05-01T12-00-00-123Z.sqlite --yes
    labcontrol unified-backup --output exports/nightly
    labcontrol link TAG-001 P-12 --kind hot
    labcontrol piece-status TAG-001 completed
    labcontrol complete-assay 12 TAG-001
    labcontrol finalize-protocol P-12 --kind hot --cycles 5
    labcontrol pieces --unlinked
    labcontrol sync
    labcontrol reconcile
    labcontrol integrity

Commands:
    status            - Show store files, schema state and backup count
    backup            - Snapshot one store file into the backup directory
    backups           - List snapshots, newest first
    restore           - Restore a snapshot over a store file
    unified-backup    - Snapshot both stores consistently
    link              - Link a protocol to a piece
    piece-status      - Update a piece's status from an assay status
    complete-assay    - Complete an assay and apply its cycles to the piece
    finalize-protocol - Credit cycles to every piece linked to a protocol run
    pieces            - List pieces, optionally only unlinked or expired ones
    sync              - Summarize cargo pieces and links
    reconcile         - Apply cycles missing after partial failures
    integrity         - Check references between the two stores

Global options ``--workspace`` and ``--config`` select the workspace and its
``labcontrol.toml``.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from labcontrol.backup.engine import BackupEngine, backup_timestamp
from labcontrol.config.loader import load_config
from labcontrol.config.models import LabControlConfig
from labcontrol.errors import LabControlError
from labcontrol.factory import connect_and_validate, open_coordinator

console = Console()

STORE_CHOICES = ("main", "cargo")


def _load(args: argparse.Namespace) -> LabControlConfig:
    config_path = Path(args.config) if args.config else None
    return load_config(Path(args.workspace), config_path)


def _store_path(config: LabControlConfig, store: str) -> Path:
    return config.main_path if store == "main" else config.cargo_path


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


# ============================================================================
# Backup commands (file level, no store connection)
# ============================================================================


def cmd_backup(args: argparse.Namespace) -> int:
    """Snapshot one store file.

    Returns:
        0 on success, 1 on failure.
    """
    config = _load(args)
    engine = BackupEngine(config.workspace_root)

    if engine.create_backup(_store_path(config, args.store)):
        console.print(f"[bold green]v[/bold green] {engine.last_message}")
        return 0
    console.print(f"[bold red]x[/bold red] {engine.last_message}")
    return 1


def cmd_backups(args: argparse.Namespace) -> int:
    """List snapshots in the backup directory.

    Returns:
        0 always (informational command).
    """
    config = _load(args)
    engine = BackupEngine(config.workspace_root)
    records = engine.list_backups()

    if not records:
        console.print(f"[yellow]No backups in {engine.backup_dir}[/yellow]")
        return 0

    table = Table(title="Backups", show_header=True, header_style="bold")
    table.add_column("File")
    table.add_column("Version", justify="right")
    table.add_column("Date")
    table.add_column("Size", justify="right")
    table.add_column("Kind", style="dim")

    for record in records:
        table.add_row(
            record.file_name,
            str(record.version) if record.has_metadata else "[yellow]-[/yellow]",
            record.backup_date.strftime("%Y-%m-%d %H:%M:%S"),
            f"{record.file_size_bytes:,}",
            record.kind,
        )

    console.print(table)
    stats = engine.backup_stats()
    console.print(f"{stats.total_backups} backup(s), {stats.total_size_bytes:,} bytes")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a snapshot over a store file.

    Returns:
        0 on success or when cancelled, 1 on failure.
    """
    config = _load(args)
    target = _store_path(config, args.store)

    if not args.yes:
        console.print(f"This will replace [bold]{target}[/bold] with {args.backup_name}")
        console.print("[dim]The current file is saved to the backup directory first.[/dim]")
        response = input("Continue? [y/N] ")
        if response.lower() not in ["y", "yes"]:
            console.print("Cancelled.")
            return 0

    engine = BackupEngine(config.workspace_root)
    if engine.restore_backup(args.backup_name, target):
        console.print(f"[bold green]v[/bold green] {engine.last_message}")
        return 0
    console.print(f"[bold red]x[/bold red] {engine.last_message}")
    return 1


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_status(args: argparse.Namespace) -> int:
    config = _load(args)
    results = await connect_and_validate(config)

    table = Table(title="Stores", show_header=True, header_style="bold")
    table.add_column("Store")
    table.add_column("File")
    table.add_column("Schema")

    for result in results:
        state = "[green]valid[/green]" if result.success else f"[red]{result.error}[/red]"
        table.add_row(result.store, result.path or "", state)

    console.print(table)
    backups = BackupEngine(config.workspace_root).list_backups()
    console.print(f"Backups: {len(backups)}")
    if not config.backup.auto:
        console.print("[dim]Automatic backup disabled in config.[/dim]")

    return 0 if all(r.success for r in results) else 1


async def _async_unified_backup(args: argparse.Namespace) -> int:
    config = _load(args)
    output = Path(args.output) if args.output else (
        config.workspace_root / "exports" / f"unified-{backup_timestamp()}"
    )

    async with open_coordinator(config) as coordinator:
        result = await coordinator.create_unified_backup(output)

    for outcome in (result.main, result.cargo):
        if outcome.success:
            console.print(f"[bold green]v[/bold green] {outcome.store}: {outcome.snapshot_path}")
        else:
            console.print(f"[bold red]x[/bold red] {outcome.store}: {outcome.error}")
    return 0 if result.success else 1


async def _async_link(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        link = await coordinator.link_protocol_to_piece(
            args.tag_id, args.protocol, args.kind, actor=args.actor
        )
    console.print(
        f"[bold green]v[/bold green] Protocol [bold]{link.protocol}[/bold] linked to "
        f"[bold cyan]{args.tag_id}[/bold cyan] ({link.cycle_kind}, link {link.id})"
    )
    return 0


async def _async_piece_status(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        change = await coordinator.update_piece_status_from_assay(
            args.tag_id, args.assay_status, actor=args.actor
        )
    console.print(
        f"[bold green]v[/bold green] {change.tag_id}: {change.old_status} -> "
        f"[bold]{change.new_status}[/bold] (assay {change.assay_status})"
    )
    return 0


async def _async_complete_assay(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        result = await coordinator.notify_assay_completion(
            args.assay_id, args.tag_id, actor=args.actor
        )

    if result.outcome == "applied":
        console.print(
            f"[bold green]v[/bold green] Assay {result.assay_id} completed; "
            f"{result.tag_id} now at {result.total_cycles} cycles"
        )
        if result.expired:
            console.print(f"[yellow]{result.tag_id} reached the cycle limit and was retired[/yellow]")
        return 0
    if result.outcome == "partial":
        console.print(f"[bold yellow]![/bold yellow] Assay completed but cycles not applied: {result.error}")
        console.print("[dim]Run[/dim] [cyan]labcontrol reconcile[/cyan] [dim]to retry.[/dim]")
        return 1
    console.print(f"[bold red]x[/bold red] {result.error}")
    return 1


async def _async_finalize_protocol(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        result = await coordinator.finalize_protocol(
            args.protocol, args.kind, args.cycles, actor=args.actor
        )

    if not result.affected:
        console.print(f"[yellow]No pieces actively linked to {result.protocol} ({result.cycle_kind})[/yellow]")
        return 0

    table = Table(title=f"Protocol {result.protocol}", show_header=True, header_style="bold")
    table.add_column("Piece")
    table.add_column("Type", style="dim")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    for change in result.affected:
        table.add_row(change.tag_id, change.type, str(change.cycles_before), str(change.cycles_after))
    console.print(table)
    for change in result.expired:
        console.print(f"[yellow]{change.tag_id} reached the cycle limit and was retired[/yellow]")
    return 0


async def _async_pieces(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        if args.expired:
            pieces = await coordinator.cargo.list_expired_pieces(coordinator.cycle_limit)
        elif args.unlinked:
            pieces = await coordinator.cargo.list_pieces_without_active_link()
        else:
            pieces = await coordinator.cargo.list_pieces()

    if not pieces:
        console.print("[yellow]No matching pieces.[/yellow]")
        return 0

    table = Table(title="Pieces", show_header=True, header_style="bold")
    table.add_column("Tag")
    table.add_column("Type", style="dim")
    table.add_column("Cycles", justify="right")
    table.add_column("Status")
    table.add_column("Acquired")
    for piece in pieces:
        table.add_row(
            piece.tag_id,
            piece.type,
            str(piece.cycle_count),
            piece.status,
            piece.acquisition_date or "",
        )
    console.print(table)
    return 0


async def _async_sync(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        summary = await coordinator.sync_cargo_data_to_main()

    table = Table(title="Cargo Summary", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("Pieces", str(summary.total_pieces))
    table.add_row("Active", str(summary.active_pieces))
    table.add_row("Inactive", str(summary.inactive_pieces))
    table.add_row("At cycle limit", str(summary.expired_pieces))
    table.add_row("Links", str(summary.total_links))
    table.add_row("Active links", str(summary.active_links))
    console.print(table)
    if summary.active_protocols:
        console.print(f"Active protocols: {', '.join(summary.active_protocols)}")
    return 0


async def _async_reconcile(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        results = await coordinator.reconcile()

    if not results:
        console.print("[green]Nothing to reconcile.[/green]")
        return 0

    table = Table(title="Reconciliation", show_header=True, header_style="bold")
    table.add_column("Assay", justify="right")
    table.add_column("Piece")
    table.add_column("Outcome")
    table.add_column("Cycles", justify="right")
    for result in results:
        style = "green" if result.success else "red"
        table.add_row(
            str(result.assay_id),
            result.tag_id or "",
            f"[{style}]{result.outcome}[/{style}]",
            str(result.cycles_added),
        )
    console.print(table)
    return 0 if all(r.success for r in results) else 1


async def _async_integrity(args: argparse.Namespace) -> int:
    config = _load(args)
    async with open_coordinator(config) as coordinator:
        report = await coordinator.validate_cross_module_integrity()

    if report.valid:
        console.print("[bold green]v[/bold green] Stores are consistent")
        return 0

    console.print(f"[bold red]x[/bold red] {report.error_count} problem(s) found")
    if report.unknown_tag_assays:
        ids = ", ".join(map(str, report.unknown_tag_assays))
        console.print(f"  Assays referencing unknown pieces: {ids}")
    if report.multiple_active_links:
        console.print(f"  Pieces with several active links: {', '.join(report.multiple_active_links)}")
    if report.orphan_ledger_entries:
        ids = ", ".join(map(str, report.orphan_ledger_entries))
        console.print(f"  Ledger entries for deleted pieces: {ids}")
    return 1


# ============================================================================
# Sync command wrappers
# ============================================================================


def _run(coro) -> int:
    """Run an async command, reporting domain errors as exit code 1."""
    try:
        return asyncio.run(coro)
    except (LabControlError, FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    return _run(_async_status(args))


def cmd_unified_backup(args: argparse.Namespace) -> int:
    return _run(_async_unified_backup(args))


def cmd_link(args: argparse.Namespace) -> int:
    return _run(_async_link(args))


def cmd_piece_status(args: argparse.Namespace) -> int:
    return _run(_async_piece_status(args))


def cmd_complete_assay(args: argparse.Namespace) -> int:
    return _run(_async_complete_assay(args))


def cmd_finalize_protocol(args: argparse.Namespace) -> int:
    return _run(_async_finalize_protocol(args))


def cmd_pieces(args: argparse.Namespace) -> int:
    return _run(_async_pieces(args))


def cmd_sync(args: argparse.Namespace) -> int:
    return _run(_async_sync(args))


def cmd_reconcile(args: argparse.Namespace) -> int:
    return _run(_async_reconcile(args))


def cmd_integrity(args: argparse.Namespace) -> int:
    return _run(_async_integrity(args))


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labcontrol",
        description="Lab store coordination, backup and restore",
    )
    parser.add_argument(
        "--workspace",
        "-w",
        default=".",
        help="Workspace directory holding the store files (default: current directory)",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=None,
        help="Config file (default: <workspace>/labcontrol.toml if present)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show store and backup status")
    p_status.set_defaults(func=cmd_status)

    p_backup = subparsers.add_parser("backup", help="Snapshot a store file")
    p_backup.add_argument("--store", choices=STORE_CHOICES, default="main")
    p_backup.set_defaults(func=cmd_backup)

    p_backups = subparsers.add_parser("backups", help="List snapshots")
    p_backups.set_defaults(func=cmd_backups)

    p_restore = subparsers.add_parser("restore", help="Restore a snapshot over a store file")
    p_restore.add_argument("backup_name", help="Snapshot file name as shown by 'backups'")
    p_restore.add_argument("--store", choices=STORE_CHOICES, default="main")
    p_restore.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_restore.set_defaults(func=cmd_restore)

    p_unified = subparsers.add_parser("unified-backup", help="Snapshot both stores")
    p_unified.add_argument(
        "--output",
        "-o",
        default=None,
        help="Path prefix; writes <prefix>_main.sqlite and <prefix>_cargo.sqlite",
    )
    p_unified.set_defaults(func=cmd_unified_backup)

    p_link = subparsers.add_parser("link", help="Link a protocol to a piece")
    p_link.add_argument("tag_id")
    p_link.add_argument("protocol")
    p_link.add_argument("--kind", choices=("cold", "hot"), required=True)
    p_link.add_argument("--actor", default=None)
    p_link.set_defaults(func=cmd_link)

    p_piece_status = subparsers.add_parser(
        "piece-status", help="Update a piece's status from an assay status"
    )
    p_piece_status.add_argument("tag_id")
    p_piece_status.add_argument("assay_status")
    p_piece_status.add_argument("--actor", default=None)
    p_piece_status.set_defaults(func=cmd_piece_status)

    p_complete = subparsers.add_parser(
        "complete-assay", help="Complete an assay and apply its cycles"
    )
    p_complete.add_argument("assay_id", type=int)
    p_complete.add_argument("tag_id")
    p_complete.add_argument("--actor", default=None)
    p_complete.set_defaults(func=cmd_complete_assay)

    p_finalize = subparsers.add_parser(
        "finalize-protocol", help="Credit cycles to every piece linked to a protocol run"
    )
    p_finalize.add_argument("protocol")
    p_finalize.add_argument("--kind", choices=("cold", "hot"), required=True)
    p_finalize.add_argument("--cycles", type=int, required=True)
    p_finalize.add_argument("--actor", default=None)
    p_finalize.set_defaults(func=cmd_finalize_protocol)

    p_pieces = subparsers.add_parser("pieces", help="List pieces")
    which = p_pieces.add_mutually_exclusive_group()
    which.add_argument("--unlinked", action="store_true", help="Active pieces with no active link")
    which.add_argument("--expired", action="store_true", help="Pieces at the cycle limit")
    p_pieces.set_defaults(func=cmd_pieces)

    p_sync = subparsers.add_parser("sync", help="Summarize cargo pieces and links")
    p_sync.set_defaults(func=cmd_sync)

    p_reconcile = subparsers.add_parser("reconcile", help="Apply cycles left after partial failures")
    p_reconcile.set_defaults(func=cmd_reconcile)

    p_integrity = subparsers.add_parser("integrity", help="Check cross-store references")
    p_integrity.set_defaults(func=cmd_integrity)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
