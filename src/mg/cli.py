"""mg CLI: maintain a file-backed memory graph.

Commands:
    mg init [NAME]             create mg.toml + .mg/ dirs
    mg bootstrap               ingest workspace memory and logs (resumable)
    mg dedup [--semantic]      one dedup pass over the graph
    mg maintain                post-bootstrap dedup, once
    mg status                  bootstrap / lock / dedup state and node counts
    mg audit                   recent merge audit entries
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from pathlib import Path

import click

from mg.bootstrap.failures import FailureLog
from mg.bootstrap.lock import LeaseLock
from mg.bootstrap.pipeline import run_bootstrap
from mg.bootstrap.state import read_state
from mg.config import MGConfig, init_config, load_config
from mg.dedup.run import run_dedup, run_maintenance, run_semantic_dedup
from mg.dedup.state import load_dedup_state, read_audit_log
from mg.llm import ModelClient, ModelError, client_from_config
from mg.store import FileStore, Registry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg() -> MGConfig:
    try:
        return load_config()
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc


def _client(cfg: MGConfig) -> ModelClient:
    try:
        return client_from_config(cfg.model)
    except ModelError as exc:
        raise click.ClickException(str(exc)) from exc


def _report_errors(errors: list[str]) -> None:
    for err in errors:
        click.echo(f"  error: {err}", err=True)
    if errors:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="mg")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """mg: memory graph maintenance."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(message)s",
    )


@cli.command()
@click.argument("name", required=False)
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
def init(name: str | None, root: str) -> None:
    """Create mg.toml and the graph directory."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, name=name)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("mg.toml already exists, skipping init")

    cfg = load_config(root_path)
    cfg.ensure_dirs()
    click.echo(f"Graph dir : {cfg.graph_dir}")


# ---------------------------------------------------------------------------
# mg bootstrap
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Workspace to read memory/ from (default: project root)")
@click.option("--force", is_flag=True, help="Start over even if a previous run completed")
@click.option("--retry-failed", is_flag=True, help="Re-run only batches in the failure log")
@click.option("--max-batches", type=click.IntRange(min=0), default=None,
              help="Batches to process this run (0 = all; default from mg.toml)")
def bootstrap(workspace: Path | None, force: bool, retry_failed: bool, max_batches: int | None) -> None:
    """Ingest source material into graph nodes. Safe to re-run: resumes where it stopped."""
    if force and retry_failed:
        raise click.UsageError("--force and --retry-failed are mutually exclusive")
    cfg = _load_cfg()
    client = _client(cfg)
    result = asyncio.run(run_bootstrap(
        cfg, client,
        workspace=workspace.resolve() if workspace else None,
        force=force,
        retry_failed=retry_failed,
        max_batches=max_batches,
    ))
    if not result.ran:
        click.echo(f"Bootstrap skipped: {result.reason}")
        _report_errors(result.errors)
        return
    click.echo(
        f"Bootstrap {result.status or 'stopped'}: {result.batches_processed} batch(es), "
        f"{result.chunks_succeeded} chunk(s) ok, {result.chunks_failed} failed, "
        f"{result.nodes_written} node(s) written, {result.tokens_used} tokens",
    )
    if result.more_work_remaining:
        click.echo("More work remains; run `mg bootstrap` again to continue.")
    _report_errors(result.errors)


# ---------------------------------------------------------------------------
# mg dedup / mg maintain
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--semantic", is_flag=True, help="Run the semantic pass instead of the literal one")
def dedup(semantic: bool) -> None:
    """Find and merge duplicate nodes."""
    cfg = _load_cfg()
    client = _client(cfg)
    if semantic:
        sem = asyncio.run(run_semantic_dedup(cfg, client))
        click.echo(
            f"Semantic dedup: {sem.blocks_processed} block(s), {sem.merges_executed} merge(s), "
            f"{sem.nodes_archived} archived, {sem.tokens_used} tokens",
        )
        _report_errors(sem.errors)
        return
    result = asyncio.run(run_dedup(cfg, client))
    click.echo(
        f"Dedup: {result.clusters_processed} cluster(s), {result.merges_executed} merge(s), "
        f"{result.nodes_archived} archived, {result.conflicts_detected} conflict(s), {result.tokens_used} tokens",
    )
    _report_errors(result.errors)


@cli.command()
def maintain() -> None:
    """Run post-bootstrap dedup once."""
    cfg = _load_cfg()
    client = _client(cfg)
    result = asyncio.run(run_maintenance(cfg, client))
    if not result.ran:
        click.echo(f"Maintenance skipped: {result.reason}")
        return
    merges = sum(r.merges_executed for r in (result.dedup, result.semantic) if r is not None)
    archived = sum(r.nodes_archived for r in (result.dedup, result.semantic) if r is not None)
    click.echo(f"Maintenance done: {merges} merge(s), {archived} archived")
    _report_errors(result.errors)


# ---------------------------------------------------------------------------
# mg status / mg audit
# ---------------------------------------------------------------------------


@cli.command()
def status() -> None:
    """Show bootstrap progress, lock holder, dedup state and node counts."""
    from rich.console import Console
    from rich.table import Table

    cfg = _load_cfg()
    console = Console()

    table = Table(title=f"mg — {cfg.name}", show_header=True, header_style="bold")
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")

    table.add_row("Config", str(cfg.root / "mg.toml"))
    table.add_row("Graph", str(cfg.graph_dir))
    table.add_row("", "")

    # --- Nodes ---
    if cfg.graph_dir.exists():
        entries = Registry(FileStore(cfg.graph_dir)).entries()
        live = [e for e in entries if not e.archived]
        table.add_row("Nodes", str(len(live)))
        table.add_row("  Archived", str(len(entries) - len(live)))
        for node_type, n in Counter(e.type for e in live).most_common():
            table.add_row(f"  {node_type}", str(n))
    else:
        table.add_row("Nodes", "[red]no graph, run `mg init`[/red]")
    table.add_row("", "")

    # --- Bootstrap ---
    state = read_state(cfg.graph_dir) if cfg.graph_dir.exists() else None
    if state is None:
        table.add_row("Bootstrap", "[yellow]never run[/yellow]")
    else:
        color = {"completed": "green", "failed": "red"}.get(state.status, "yellow")
        table.add_row("Bootstrap", f"[{color}]{state.status}[/{color}]")
        if state.status != "completed":
            table.add_row("  Batches done", f"{len(state.done)}/{state.total}")
        table.add_row("  Chunks ok/failed", f"{state.ok}/{state.fail}")
        table.add_row("  Updated", state.updated_at)
        if state.last_error:
            table.add_row("  Last error", f"[red]{state.last_error}[/red]")
        table.add_row("  Maintenance", "done" if state.maintenance_done else "pending")
    failed = FailureLog(cfg.graph_dir).read() if cfg.graph_dir.exists() else []
    if failed:
        table.add_row("  Failed batches", f"[yellow]{len(failed)}[/yellow] (mg bootstrap --retry-failed)")
    holder = LeaseLock(cfg.graph_dir).read()
    table.add_row("  Lock", f"pid {holder.pid} since {holder.started_at}" if holder else "free")
    table.add_row("", "")

    # --- Dedup ---
    ds = load_dedup_state(cfg.graph_dir)
    table.add_row("Dedup last run", ds.last_dedup_at or "never")
    table.add_row("  Runs", str(ds.runs_completed))
    table.add_row("  Merges", str(ds.total_merges))

    console.print(table)


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Entries to show (most recent last)")
def audit(limit: int) -> None:
    """Show recent merge audit entries."""
    cfg = _load_cfg()
    entries = read_audit_log(cfg.graph_dir)
    if not entries:
        click.echo("No merges recorded.")
        return
    for entry in entries[-limit:]:
        click.echo(f"{entry.timestamp}  {entry.keep_node_id} <- {', '.join(entry.merged_node_ids)}")
        if entry.alias_keys:
            click.echo(f"    aliases: {', '.join(entry.alias_keys)}")
        if entry.conflicts:
            click.echo(f"    conflicts: {'; '.join(entry.conflicts)}")
