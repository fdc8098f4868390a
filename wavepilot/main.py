"""Wavepilot CLI entrypoint."""

import asyncio
import json
import sys
from pathlib import Path

import click

from .config.loader import ConfigError, create_default_config, load_config
from .config.models import WavepilotConfig
from .executor.errors import OrchestrationError
from .executor.loop import build_orchestrator, build_store
from .scheduler.dag import GraphError, NodeStatus, build_dag
from .scheduler.readiness import get_ready_nodes, is_deadlocked, pending_ids
from .scheduler.waves import compute_execution_waves
from .state.persistence import list_runs
from .state.store import StoreError
from .utils.logging import setup_logging
from .worktree.manager import WorktreeManager
from .worktree.session import RegistryError, SessionRegistry, SessionStatus

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
}


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "-c",
    default=".wavepilot/config.yml",
    help="Path to configuration file",
    type=click.Path(exists=False, path_type=Path),
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx: click.Context, config: Path, verbose: bool) -> None:
    """Wavepilot - run a dependency graph of work units through isolated agent sessions."""
    setup_logging(level="DEBUG" if verbose else "WARNING")

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


def _load_config_or_exit(ctx: click.Context) -> WavepilotConfig:
    config_path: Path = ctx.obj["config_path"]
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(1)


def _load_graph_or_exit(config: WavepilotConfig):
    store = build_store(config)
    try:
        nodes = store.load_nodes()
        return nodes, build_dag(nodes)
    except (StoreError, GraphError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize wavepilot configuration."""
    config_path: Path = ctx.obj["config_path"]

    if config_path.exists() and not force:
        click.echo(f"Configuration already exists: {config_path}")
        click.echo("Use --force to overwrite")
        sys.exit(1)

    try:
        create_default_config(config_path)
    except OSError as e:
        click.echo(f"✗ Failed to create configuration: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Created configuration: {config_path}")
    click.echo("\nNext steps:")
    click.echo(f"  1. Set source.slug and the verifier gates in {config_path}")
    click.echo("  2. Check the schedule: wavepilot plan")
    click.echo("  3. Run: wavepilot run (start more processes to work in parallel)")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_context
def plan(ctx: click.Context, as_json: bool) -> None:
    """Show execution waves for the configured graph."""
    config = _load_config_or_exit(ctx)
    _, dag = _load_graph_or_exit(config)
    execution_plan = compute_execution_waves(dag)

    if as_json:
        click.echo(json.dumps(execution_plan.to_dict(), indent=2))
        return

    for wave in execution_plan.waves:
        names = ", ".join(f"{node_id} ({dag[node_id].name})" for node_id in wave.node_ids)
        click.echo(f"Wave {wave.wave_number}: {names}")
    click.echo(f"\nNodes: {execution_plan.total_nodes}")
    click.echo(f"Max parallelism: {execution_plan.max_parallelism}")
    click.echo(f"Sequential: {'yes' if execution_plan.is_sequential else 'no'}")


@cli.command()
@click.pass_context
def ready(ctx: click.Context) -> None:
    """List nodes that can start now."""
    config = _load_config_or_exit(ctx)
    nodes, dag = _load_graph_or_exit(config)
    completed = {node.id for node in nodes if node.status == NodeStatus.COMPLETE}
    ready_ids = get_ready_nodes(dag, completed)

    if is_deadlocked(dag, completed, ready_ids):
        click.echo(f"✗ Deadlock: nothing is ready, pending {pending_ids(dag, completed)}", err=True)
        sys.exit(1)
    if not ready_ids:
        click.echo("All nodes complete")
        return
    statuses = {node.id: node.status for node in nodes}
    for node_id in ready_ids:
        line = f"{node_id}\t{dag[node_id].name}"
        if not statuses[node_id].dispatchable:
            line += f"\t({statuses[node_id].value}, not dispatched)"
        click.echo(line)


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Execute nodes until the graph is complete."""
    config = _load_config_or_exit(ctx)
    verbose: bool = ctx.obj["verbose"]

    log_dir = config.logging.log_dir
    if not log_dir.is_absolute():
        log_dir = config.repo.root / log_dir
    setup_logging(
        level="DEBUG" if verbose else config.logging.level,
        log_dir=log_dir,
        rotation_mb=config.logging.rotation_mb,
        retention_days=config.logging.retention_days,
    )

    try:
        summary = asyncio.run(build_orchestrator(config).run())
    except OrchestrationError as e:
        click.echo(json.dumps(e.to_payload(), indent=2))
        sys.exit(1)

    click.echo(f"✓ Run {summary.run_id} complete")
    if summary.completed:
        click.echo(f"Completed this run: {', '.join(str(node_id) for node_id in summary.completed)}")
    sys.exit(0)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show recorded runs and node statuses."""
    config_path: Path = ctx.obj["config_path"]
    root = Path.cwd()
    config = None
    if config_path.exists():
        config = _load_config_or_exit(ctx)
        root = config.repo.root

    runs = list_runs(root / ".wavepilot" / "runs")
    if not runs:
        click.echo("No wavepilot run recorded")
    for state in runs[:5]:
        current = f", node {state.current_node}" if state.current_node is not None else ""
        click.echo(f"{state.run_id} (pid {state.pid}): {state.phase.value}{current}")
        if state.error_message:
            click.echo(f"  Error: {state.error_message}")

    if config is None:
        return
    try:
        nodes = build_store(config).load_nodes()
    except StoreError as e:
        click.echo(f"\nNode statuses unavailable: {e}")
        return
    click.echo("\nNodes:")
    for node in nodes:
        click.echo(f"  {node.id}\t{node.status.value}\t{node.name}")


@cli.command()
@click.option("--detect-stale", is_flag=True, help="Mark sessions of exited processes as stale first")
@click.pass_context
def sessions(ctx: click.Context, detect_stale: bool) -> None:
    """List registered sessions."""
    config = _load_config_or_exit(ctx)
    registry = SessionRegistry(config.repo.root)
    try:
        if detect_stale:
            for session in registry.detect_stale_sessions():
                click.echo(f"Marked stale: {session.id}")
        entries = registry.list_sessions()
    except RegistryError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if not entries:
        click.echo("No sessions registered")
        return
    for session in entries:
        click.echo(
            f"{session.id}\t{session.status.value}\tnode {session.node_ref}\t"
            f"{session.owner}\tpid {session.pid}\t{session.worktree_path}"
        )


@cli.command()
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
@click.pass_context
def clean(ctx: click.Context, dry_run: bool) -> None:
    """Remove worktrees and records of stale sessions."""
    config = _load_config_or_exit(ctx)
    registry = SessionRegistry(config.repo.root)
    try:
        registry.detect_stale_sessions()
        stale = [s for s in registry.list_sessions() if s.status == SessionStatus.STALE]
    except RegistryError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if not stale:
        click.echo("No stale sessions")
        return

    if dry_run:
        click.echo("Would remove:")
        for session in stale:
            click.echo(f"  {session.id}\t{session.worktree_path}")
        return

    manager = WorktreeManager(config.repo.root, namespace=config.worktree.namespace)
    result = asyncio.run(manager.cleanup_stale_worktrees(stale))
    for removed in result.removed:
        registry.deregister_session(removed["session_id"])

    if result.removed:
        click.echo("Removed:")
        for removed in result.removed:
            click.echo(f"  {removed['session_id']}\t{removed['worktree_path']}")
    if result.errors:
        click.echo("\nErrors:")
        for error in result.errors:
            click.echo(f"  {error['session_id']}: {error['error']}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
