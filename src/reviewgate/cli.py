from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click

from reviewgate import __version__
from reviewgate.errors import WorkflowError
from reviewgate.utils.config import Config, get_config
from reviewgate.utils.logger import setup_logging

T = TypeVar("T")


def _run(ctx: click.Context, action: Callable[[Any], Awaitable[T]]) -> T:
    """Open a workflow context, run ``action`` in it, and map failures to exit 1."""
    from reviewgate.context import open_context

    config: Config = ctx.obj

    async def _main() -> T:
        async with open_context(config) as workflow:
            return await action(workflow)

    try:
        return asyncio.run(_main())
    except WorkflowError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(value: Any) -> None:
    click.echo(json.dumps(value, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="reviewgate")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace root (defaults to REVIEWGATE_ROOT or the current directory).",
)
@click.option("--log-level", default=None, help="Logging level (defaults to REVIEWGATE_LOG_LEVEL).")
@click.pass_context
def main(ctx: click.Context, root: Path | None, log_level: str | None) -> None:
    """Reviewgate: human review gate for agent plans and changesets."""
    overrides: dict[str, Any] = {}
    if root is not None:
        overrides["root"] = root.resolve()
    if log_level:
        overrides["log_level"] = log_level
    config = get_config(**overrides)
    setup_logging(config.log_level)
    ctx.obj = config


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize the repository and committer identity."""

    async def _init(workflow) -> None:
        await workflow.repository.ensure_ready()

    _run(ctx, _init)
    click.echo(f"Repository ready at {ctx.obj.root}")


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------


@main.group()
def plan() -> None:
    """Review plan documents."""


@plan.command("approve")
@click.argument("plan_id")
@click.pass_context
def plan_approve(ctx: click.Context, plan_id: str) -> None:
    """Approve a plan in review and move it to System/Active."""
    _run(ctx, lambda w: w.plans.approve(plan_id))


@plan.command("reject")
@click.argument("plan_id")
@click.option("--reason", "-r", required=True, help="Why the plan is rejected.")
@click.pass_context
def plan_reject(ctx: click.Context, plan_id: str, reason: str) -> None:
    """Reject a plan and move it to Inbox/Rejected."""
    _run(ctx, lambda w: w.plans.reject(plan_id, reason))


@plan.command("revise")
@click.argument("plan_id")
@click.option(
    "--comment", "-c", "comments", multiple=True, required=True, help="Review comment (repeatable)."
)
@click.pass_context
def plan_revise(ctx: click.Context, plan_id: str, comments: tuple[str, ...]) -> None:
    """Send a plan back to its author with review comments."""
    _run(ctx, lambda w: w.plans.revise(plan_id, list(comments)))


@plan.command("list")
@click.option("--status", default=None, help="Only plans with this status.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON.")
@click.pass_context
def plan_list(ctx: click.Context, status: str | None, as_json: bool) -> None:
    """List plans waiting in the inbox."""
    plans = _run(ctx, lambda w: w.plans.list(status))
    if as_json:
        _echo_json([p.model_dump() for p in plans])
        return
    if not plans:
        click.echo("No plans found.")
        return
    for item in plans:
        click.echo(f"{item.id}\t{item.status}\t{item.trace_id or '-'}\t{item.created_at or '-'}")


@plan.command("show")
@click.argument("plan_id")
@click.option("--json", "as_json", is_flag=True, help="Print JSON.")
@click.pass_context
def plan_show(ctx: click.Context, plan_id: str, as_json: bool) -> None:
    """Show a plan's header and body."""
    details = _run(ctx, lambda w: w.plans.show(plan_id))
    if as_json:
        _echo_json(details.model_dump())
        return
    for key, value in details.model_dump(exclude={"content"}).items():
        if value is not None:
            click.echo(f"{key}: {value}")
    click.echo("")
    click.echo(details.content)


# ----------------------------------------------------------------------
# Changesets
# ----------------------------------------------------------------------


@main.group()
def changeset() -> None:
    """Review changeset branches."""


@changeset.command("approve")
@click.argument("ref")
@click.pass_context
def changeset_approve(ctx: click.Context, ref: str) -> None:
    """Merge a changeset into trunk (must be run on trunk)."""
    _run(ctx, lambda w: w.changesets.approve(ref))


@changeset.command("reject")
@click.argument("ref")
@click.option("--reason", "-r", required=True, help="Why the changeset is rejected.")
@click.pass_context
def changeset_reject(ctx: click.Context, ref: str, reason: str) -> None:
    """Delete a changeset branch."""
    _run(ctx, lambda w: w.changesets.reject(ref, reason))


@changeset.command("list")
@click.option(
    "--status",
    type=click.Choice(["pending", "approved", "rejected"]),
    default=None,
    help="Only changesets with this status.",
)
@click.option("--json", "as_json", is_flag=True, help="Print JSON.")
@click.pass_context
def changeset_list(ctx: click.Context, status: str | None, as_json: bool) -> None:
    """List changeset branches."""
    changesets = _run(ctx, lambda w: w.changesets.list(status))
    if as_json:
        _echo_json([c.model_dump(mode="json") for c in changesets])
        return
    if not changesets:
        click.echo("No changesets found.")
        return
    for item in changesets:
        click.echo(
            f"{item.branch}\t{item.status.value}\t{item.files_changed} files\t{item.agent_id}"
        )


@changeset.command("show")
@click.argument("ref")
@click.option("--diff/--no-diff", default=False, help="Include the full diff.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON.")
@click.pass_context
def changeset_show(ctx: click.Context, ref: str, diff: bool, as_json: bool) -> None:
    """Show a changeset's commits and, optionally, its diff."""
    details = _run(ctx, lambda w: w.changesets.show(ref))
    if as_json:
        _echo_json(details.model_dump(mode="json"))
        return
    click.echo(f"branch: {details.branch}")
    click.echo(f"request_id: {details.request_id}")
    click.echo(f"trace_id: {details.trace_id}")
    click.echo(f"status: {details.status.value}")
    click.echo(f"agent: {details.agent_id}")
    click.echo(f"files_changed: {details.files_changed}")
    click.echo("commits:")
    for commit in details.commits:
        click.echo(f"  {commit.sha[:8]} {commit.message}")
    if diff:
        click.echo("")
        click.echo(details.diff)


# ----------------------------------------------------------------------
# Trace
# ----------------------------------------------------------------------


@main.command()
@click.argument("trace_id", required=False)
@click.option("--limit", default=20, show_default=True, help="Events to show without a trace id.")
@click.pass_context
def trace(ctx: click.Context, trace_id: str | None, limit: int) -> None:
    """Show journal events and commits for a trace id, or the latest events."""
    if trace_id is None:
        recent = _run(ctx, lambda w: w.journal.recent_activities(limit))
        if not recent:
            click.echo("No activity recorded.")
        for record in recent:
            click.echo(
                f"{record.timestamp} {record.trace_id} {record.actor} "
                f"{record.action_type} {record.target or ''}"
            )
        return

    async def _trace(workflow):
        activities = await workflow.journal.activities_by_trace(trace_id)
        commits = []
        if (workflow.config.root / ".git").exists():
            commits = await workflow.recorder.history_for_trace(trace_id)
        return activities, commits

    activities, commits = _run(ctx, _trace)
    click.echo("events:")
    for record in activities:
        target = record.target or ""
        click.echo(f"  {record.timestamp} {record.actor} {record.action_type} {target}")
    click.echo("commits:")
    for commit in commits:
        click.echo(f"  {commit.sha[:8]} {commit.timestamp} {commit.message}")
