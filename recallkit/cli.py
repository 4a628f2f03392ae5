"""CLI entry point for recallkit."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

import click

from recallkit import __version__
from recallkit.core.errors import RecallError
from recallkit.core.protocols import CommandRequest, FileMetadata

BANNER = """\
╔══════════════════════════════════════╗
║  RECALLKIT — memory for commands     ║
║  Initialization                      ║
╚══════════════════════════════════════╝"""


def _find_template() -> Path:
    return Path(__file__).parent / "config.cp.yaml"


def _bootstrap(config_path: Optional[str]):
    from recallkit.app import build_services
    from recallkit.config import load_config
    from recallkit.logging_config import setup_logging

    cfg = load_config(config_path)
    setup_logging(Path(cfg.log.dir).expanduser())
    return build_services(cfg)


@contextmanager
def _open_services(config_path: Optional[str]):
    """Bootstrap services for a synchronous command and always release them."""
    services = _bootstrap(config_path)
    try:
        yield services
    finally:
        asyncio.run(services.aclose())


def _file_metadata(path: Path) -> FileMetadata:
    stat = path.stat()
    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
    return FileMetadata(path=str(path), name=path.name, modified=modified, size=stat.st_size)


def _walk(paths: List[str], excluded: List[str]) -> Iterator[FileMetadata]:
    for raw in paths:
        root = Path(raw).expanduser().resolve()
        if root.is_file():
            yield _file_metadata(root)
            continue
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in excluded]
            for name in filenames:
                yield _file_metadata(Path(dirpath) / name)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.yaml.")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]) -> None:
    """recallkit — memory-augmented command pipeline"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite existing config file.")
def init(force: bool) -> None:
    """Initialize config to ~/.recallkit/."""
    from recallkit.config import _default_data_dir

    config_dir = _default_data_dir()
    config_dest = config_dir / "config.yaml"

    click.echo(BANNER)
    click.echo()

    config_dir.mkdir(parents=True, exist_ok=True)
    click.echo(f"  [ok] Directory ready: {config_dir}")

    if config_dest.exists() and not force:
        click.echo(f"  [--] Config already exists: {config_dest}")
        click.echo("       Use --force to overwrite.")
    else:
        shutil.copy2(_find_template(), config_dest)
        click.echo(f"  [ok] Config created: {config_dest}")

    logs = config_dir / "logs"
    logs.mkdir(parents=True, exist_ok=True)
    click.echo(f"  [ok] Subdirectory ready: {logs}")

    click.echo()
    click.echo(f"  -> Edit {config_dest} to enable an LLM endpoint.")
    click.echo("  -> Then run `recallkit index <dir>` to build memories.")


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--workspace", "-w", default=None, help="Workspace id (defaults to config).")
@click.pass_context
def index(ctx: click.Context, paths: tuple, workspace: Optional[str]) -> None:
    """Index files and ingest their content."""
    services = _bootstrap(ctx.obj["config_path"])
    ws = workspace or services.config.workspace.default_id
    files = list(_walk(list(paths), services.config.ingest.exclude_patterns))
    if not files:
        click.echo("No files found.")
        return

    async def _run():
        try:
            result = await services.indexer.index_files(files, ws)
            click.echo(f"Indexed {result.indexed} files; ingesting content...")
        finally:
            await services.aclose()

    try:
        asyncio.run(_run())
    except RecallError as e:
        raise click.ClickException(f"{e.error_type}: {e.message}")
    click.echo(f"Done. {services.store.count_memories(ws)} memories in workspace '{ws}'.")


@cli.command()
@click.argument("text")
@click.option("--workspace", "-w", default=None, help="Workspace id (defaults to config).")
@click.option("--active-path", default=None, help="Path of the file currently in focus.")
@click.option("--json", "as_json", is_flag=True, help="Print the full response as JSON.")
@click.pass_context
def ask(ctx: click.Context, text: str, workspace: Optional[str], active_path: Optional[str], as_json: bool) -> None:
    """Process one command and print the response."""
    services = _bootstrap(ctx.obj["config_path"])
    request = CommandRequest(
        user_id=workspace or services.config.workspace.default_id,
        command_id=f"cli-{uuid.uuid4().hex[:12]}",
        text=text,
        timestamp=datetime.now(timezone.utc).isoformat(),
        active_path=active_path,
    )

    async def _run():
        try:
            return await services.processor.process(request)
        finally:
            await services.aclose()

    try:
        response = asyncio.run(_run())
    except RecallError as e:
        raise click.ClickException(f"{e.error_type}: {e.message}")

    if as_json:
        click.echo(response.model_dump_json(indent=2))
        return
    click.echo(response.assistant_text)
    for action in response.actions:
        click.echo(f"  -> {action.type} {json.dumps(action.params, ensure_ascii=False)}")


@cli.command()
@click.argument("query")
@click.option("--workspace", "-w", default=None, help="Workspace id (defaults to config).")
@click.option("--limit", "-n", default=8, show_default=True)
@click.pass_context
def search(ctx: click.Context, query: str, workspace: Optional[str], limit: int) -> None:
    """Search memories."""
    with _open_services(ctx.obj["config_path"]) as services:
        ws = workspace or services.config.workspace.default_id
        try:
            results = services.store.search_memories(query, ws, limit)
        except RecallError as e:
            raise click.ClickException(f"{e.error_type}: {e.message}")
    if not results:
        click.echo("No memories found.")
        return
    for mem in results:
        click.echo(f"{mem.score:.2f}  [{mem.type}]  {mem.summary[:100]}")


@cli.command()
@click.argument("memory_id")
@click.option("--depth", "-d", default=1, show_default=True)
@click.pass_context
def related(ctx: click.Context, memory_id: str, depth: int) -> None:
    """List memories linked to MEMORY_ID."""
    with _open_services(ctx.obj["config_path"]) as services:
        results = services.store.get_related_memories(memory_id, depth)
    for mem in results:
        click.echo(f"{mem.id}  [{mem.type}]  {mem.summary[:100]}")


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show store statistics."""
    with _open_services(ctx.obj["config_path"]) as services:
        data = services.store.get_stats()
    click.echo(f"Commands:     {data['total_commands']}")
    click.echo(f"Memories:     {data['total_memories']}")
    click.echo(f"Success rate: {data['success_rate']:.0%}")


@cli.command()
@click.option("--workspace", "-w", default=None, help="Workspace id (defaults to config).")
@click.option("--threshold", "-t", default=0.85, show_default=True, type=click.FloatRange(0.0, 1.0),
              help="Minimum cosine similarity for two memories to merge.")
@click.option("--dry-run", is_flag=True, help="List clusters without merging them.")
@click.pass_context
def consolidate(ctx: click.Context, workspace: Optional[str], threshold: float, dry_run: bool) -> None:
    """Merge near-duplicate memories into versioned parents."""
    with _open_services(ctx.obj["config_path"]) as services:
        ws = workspace or services.config.workspace.default_id
        try:
            clusters = services.consolidation.find_similar_memories(ws, threshold)
            if not clusters:
                click.echo("No similar memories found.")
                return
            for cluster in clusters:
                newest = cluster.memories[0]
                click.echo(f"{cluster.avg_similarity:.2f}  {len(cluster.memories)} x  {newest.summary[:80]}")
                if not dry_run:
                    merged = services.consolidation.consolidate_cluster(cluster)
                    click.echo(f"  -> {merged.parent.id} now v{merged.version}")
        except RecallError as e:
            raise click.ClickException(f"{e.error_type}: {e.message}")
    verb = "Found" if dry_run else "Consolidated"
    click.echo(f"{verb} {len(clusters)} clusters in workspace '{ws}'.")


@cli.command()
@click.argument("memory_id")
@click.pass_context
def history(ctx: click.Context, memory_id: str) -> None:
    """Show the versions folded into MEMORY_ID."""
    with _open_services(ctx.obj["config_path"]) as services:
        result = services.consolidation.get_version_history(memory_id)
    if result is None:
        raise click.ClickException(f"No active memory {memory_id}")
    click.echo(f"{result.parent.id}  v{result.version}  {result.parent.summary[:100]}")
    for mem in result.versions:
        click.echo(f"  {mem.id}  {mem.created_at or '-'}  {mem.summary[:90]}")


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"recallkit v{__version__}")
