"""
Storymap CLI

Click-based command-line interface for Storymap.
Provides commands for the database, the API server, project snapshots and
stale run recovery.
"""

import click
import json
import sys
import threading
from dataclasses import asdict
from typing import Dict, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from storymap import __version__
from storymap.logging import EXIT_CONFIG_ERROR, EXIT_RUNTIME_ERROR, get_logger, setup_logging

logger = get_logger(__name__)
console = Console()

_db_cache: Dict[str, object] = {}
_db_cache_lock = threading.Lock()


def get_service_context(request_id: Optional[str] = None):
    """Create a ServiceContext from the current environment."""
    from storymap.config import load_config
    from storymap.services.base import ServiceContext

    return ServiceContext(config=load_config(), request_id=request_id)


def get_db():
    """
    Get the database for the configured URL or path.

    Instances are cached per location so a PostgreSQL pool is created once.
    """
    from storymap.config import load_config
    from storymap.db.database import get_database

    config = load_config()
    key = config.db_url if config.is_postgres else str(config.db_path.resolve())
    with _db_cache_lock:
        db = _db_cache.get(key)
        if db is None:
            db = get_database(db_url=config.db_url, db_path=config.db_path, pool_size=config.db_pool_size)
            _db_cache[key] = db
    return db


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def cli(ctx, verbose, json_output):
    """Storymap - product planning and build orchestration."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["json_output"] = json_output

    from storymap.config import load_config
    from storymap.errors import ConfigError

    try:
        config = load_config()
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    setup_logging("DEBUG" if verbose else config.log_level, json_output=config.log_json)


@cli.command()
@click.pass_context
def version(ctx):
    """Show version information."""
    if ctx.obj.get("json_output"):
        click.echo(json.dumps({"version": __version__}))
    else:
        click.echo(f"Storymap v{__version__}")


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the database schema (safe to run repeatedly)."""
    try:
        db = get_db()
        db.init_schema()
    except Exception as e:
        logger.exception("init_db_failed")
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(EXIT_RUNTIME_ERROR)

    if ctx.obj.get("json_output"):
        click.echo(json.dumps({"success": True}))
    else:
        click.echo("✓ Database schema initialized")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host, port, reload):
    """Run the HTTP API with uvicorn."""
    try:
        import uvicorn
    except ImportError:
        click.echo("✗ uvicorn is not installed", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    uvicorn.run("storymap.api.app:app", host=host, port=port, reload=reload)


@cli.command()
@click.argument("project_id")
@click.pass_context
def snapshot(ctx, project_id):
    """Print a project's story map."""
    from storymap.services.snapshot import SnapshotService

    state = SnapshotService(get_service_context(), get_db()).fetch_snapshot(project_id)
    if state is None:
        click.echo(f"✗ Project {project_id} not found", err=True)
        sys.exit(EXIT_RUNTIME_ERROR)

    if ctx.obj.get("json_output"):
        click.echo(json.dumps(state.to_dict(), default=str))
        return

    tree = Tree(f"[bold]{escape(state.project.name)}[/bold] ({state.project.id})")
    for wf in state.ordered_workflows():
        wf_node = tree.add(f"[magenta]{escape(wf.title)}[/magenta]")
        for activity in state.activities_of(wf.id):
            activity_node = wf_node.add(escape(activity.title))
            for card in state.cards_in_scope(activity.id, None):
                activity_node.add(_card_label(card))
            for step in state.steps_of(activity.id):
                step_node = activity_node.add(f"[cyan]{escape(step.title)}[/cyan]")
                for card in state.cards_in_scope(activity.id, step.id):
                    step_node.add(_card_label(card))
    console.print(tree)


def _card_label(card) -> str:
    return escape(f"{card.title} [{card.status}]")


@cli.command("recover-stale")
@click.option("--minutes", type=int, default=None, help="Staleness threshold (default: STORYMAP_STALE_RUN_MINUTES)")
@click.pass_context
def recover_stale(ctx, minutes):
    """Fail runs left running by a stopped agent."""
    from storymap.services.runs import RunService

    context = get_service_context()
    threshold = context.config.stale_run_minutes if minutes is None else minutes
    if threshold <= 0:
        click.echo("✗ Set --minutes or STORYMAP_STALE_RUN_MINUTES to a positive value", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        recovered = RunService(context, get_db()).recover_stale_runs(threshold)
    except Exception as e:
        logger.exception("recover_stale_failed")
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(EXIT_RUNTIME_ERROR)

    if ctx.obj.get("json_output"):
        click.echo(json.dumps({"recovered": recovered, "stale_minutes": threshold}))
    else:
        click.echo(f"✓ Recovered {recovered} run(s) older than {threshold} min")


@cli.command("events")
@click.argument("project_id")
@click.option("--run", "run_id", default=None, help="Only events of this run")
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def events(ctx, project_id, run_id, limit):
    """List recent audit events of a project."""
    from storymap.services.events import EventLogger

    entries = EventLogger(get_service_context(), get_db()).list(project_id, run_id, limit=limit)
    if ctx.obj.get("json_output"):
        click.echo(json.dumps([asdict(e) for e in entries], default=str))
        return
    table = Table(title=f"Events of {project_id}")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="magenta")
    table.add_column("Actor", style="green")
    table.add_column("Run", style="cyan")
    for entry in entries:
        table.add_row(entry.created_at, entry.event_type, entry.actor, entry.run_id or "-")
    console.print(table)


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
