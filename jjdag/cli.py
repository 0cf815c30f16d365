"""jjdag CLI entrypoint."""

import sys
from pathlib import Path
from typing import Optional

import click

from jjdag.config import Config, get_config
from jjdag.errors import EXIT_ERROR, EXIT_NOT_READY, JjdagError, PlanFailed
from jjdag.logging import get_logger, setup_logging
from jjdag.pipeline import CommandPipeline
from jjdag.plan import AddWorkspace, ForgetWorkspace, Intent, RenameWorkspace
from jjdag.planner import TopologyPlanner
from jjdag.probes.repo import find_repository
from jjdag.registry import Layout, WorkspaceRegistry, locate_store
from jjdag.render.text import (
    render_mismatches,
    render_plan,
    render_plan_failure,
    render_plan_outcome,
    render_queue_status,
    render_workspace_list,
    render_workspace_table,
)
from jjdag.scm.jj import JJ

logger = get_logger("cli")


class Session:
    """Collaborators for one CLI invocation, wired around a single pipeline."""

    def __init__(self, config: Config, anchor: Path, pipeline: CommandPipeline):
        self.config = config
        self.anchor = anchor
        self.pipeline = pipeline
        self.jj = JJ(config.jj_bin)
        self.registry = WorkspaceRegistry(
            pipeline, self.jj, anchor, default_name=config.default_workspace, config=config
        )
        self.planner = TopologyPlanner(self.registry, pipeline, self.jj, config=config)


def _fail(error: JjdagError) -> None:
    if isinstance(error, PlanFailed):
        click.echo(render_plan_failure(error), err=True)
    else:
        click.echo(f"Error: {error.message}", err=True)
    sys.exit(error.exit_code)


def _session(ctx: click.Context) -> Session:
    """Resolve the workspace to operate on and build the collaborators."""
    config: Config = ctx.obj["config"]
    start: Path = ctx.obj["start"]
    try:
        anchor = find_repository(start, config.jj_bin)
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)
    logger.debug(f"Operating on workspace {anchor}")
    pipeline = CommandPipeline(runner=ctx.obj.get("runner"))
    return Session(config, anchor, pipeline)


def _apply(ctx: click.Context, intent: Intent, plan_only: bool) -> None:
    session = _session(ctx)
    try:
        if plan_only:
            click.echo(render_plan(session.planner.build_plan(intent), plan_mode=True))
            return
        outcome = session.planner.apply(intent)
    except JjdagError as e:
        _fail(e)
        return
    click.echo(render_plan_outcome(outcome))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.option(
    "-R",
    "--repository",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project directory (defaults to the current directory)",
)
@click.version_option(package_name="jjdag")
@click.pass_context
def jjdag(ctx: click.Context, verbose: bool, repository: Optional[Path]) -> None:
    """jjdag - power workspace manager for jj."""
    ctx.ensure_object(dict)
    try:
        config = get_config()
    except JjdagError as e:
        _fail(e)
        return
    setup_logging(verbose=verbose or config.debug.enabled, log_dir=config.log_dir)
    ctx.obj["config"] = config
    ctx.obj["start"] = (repository or Path.cwd()).absolute()


@jjdag.command()
@click.pass_context
def root(ctx: click.Context) -> None:
    """Print the root of the workspace jjdag operates on."""
    session = _session(ctx)
    try:
        result = session.pipeline.run(session.jj.workspace_root(session.anchor))
    except JjdagError as e:
        _fail(e)
        return
    click.echo(result.stdout.strip())


@jjdag.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """
    Compare jj's workspace list, its operation store and the disk.

    Non-mutating. Exits 2 when anything disagrees.
    """
    session = _session(ctx)
    try:
        snapshot = session.registry.refresh(verify=False)
        store = locate_store(snapshot, session.config)
        mismatches = session.registry.check_consistency(store)
    except JjdagError as e:
        _fail(e)
        return

    click.echo(render_mismatches(mismatches))
    if mismatches:
        sys.exit(EXIT_NOT_READY)


@jjdag.group()
def workspace() -> None:
    """Add, forget and rename workspaces, keeping the power workspace layout."""


@workspace.command("list")
@click.option("--table", is_flag=True, help="Tabular view with layout details")
@click.pass_context
def workspace_list(ctx: click.Context, table: bool) -> None:
    """List workspaces as ``name: path``."""
    session = _session(ctx)
    try:
        snapshot = session.registry.refresh()
    except JjdagError as e:
        _fail(e)
        return

    if table:
        click.echo(render_workspace_table(snapshot))
    elif snapshot.workspaces:
        click.echo(render_workspace_list(snapshot))
    else:
        click.echo("No workspaces found")

    if session.registry.mismatches:
        click.echo(
            f"Warning: {len(session.registry.mismatches)} workspace mismatch(es); "
            "run 'jjdag check' for details",
            err=True,
        )
    if snapshot.layout == Layout.MIXED:
        click.echo("Warning: workspaces are neither scooped nor un-scooped", err=True)


@workspace.command("add")
@click.argument("name")
@click.option("--plan", "plan_only", is_flag=True, help="Show the steps without running them")
@click.pass_context
def workspace_add(ctx: click.Context, name: str, plan_only: bool) -> None:
    """
    Add workspace NAME at PROJECT_ROOT/NAME.

    The default workspace is scooped into PROJECT_ROOT/default first when
    it still lives directly in the project root.
    """
    _apply(ctx, AddWorkspace(name), plan_only)


@workspace.command("forget")
@click.argument("name")
@click.option(
    "--keep-files/--delete-files",
    "keep_files",
    default=None,
    help="Keep or delete the workspace directory (default from config)",
)
@click.option("--plan", "plan_only", is_flag=True, help="Show the steps without running them")
@click.pass_context
def workspace_forget(
    ctx: click.Context, name: str, keep_files: Optional[bool], plan_only: bool
) -> None:
    """
    Forget workspace NAME.

    When only the default workspace is left it is un-scooped back into
    the project root.
    """
    delete = None if keep_files is None else not keep_files
    _apply(ctx, ForgetWorkspace(name, delete_directory=delete), plan_only)


@workspace.command("rename")
@click.argument("old_name")
@click.argument("new_name")
@click.option("--plan", "plan_only", is_flag=True, help="Show the steps without running them")
@click.pass_context
def workspace_rename(ctx: click.Context, old_name: str, new_name: str, plan_only: bool) -> None:
    """Rename workspace OLD_NAME to NEW_NAME, moving its directory when scooped."""
    _apply(ctx, RenameWorkspace(old_name, new_name), plan_only)


@workspace.command("update-stale")
@click.pass_context
def workspace_update_stale(ctx: click.Context) -> None:
    """Update a stale working copy, then re-list workspaces."""
    session = _session(ctx)
    try:
        session.pipeline.run(session.jj.workspace_update_stale(session.anchor))
    except JjdagError as e:
        click.echo(render_queue_status(session.pipeline), err=True)
        _fail(e)
        return
    click.echo(render_queue_status(session.pipeline))

    try:
        session.registry.refresh()
    except JjdagError as e:
        _fail(e)


def main() -> None:
    jjdag(obj={})


if __name__ == "__main__":
    main()
