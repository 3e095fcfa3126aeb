from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from stepledger import suspension as builders
from stepledger.config import CONFIG_FILENAME, save_config
from stepledger.context import ProjectContext
from stepledger.errors import StepLedgerError
from stepledger.legacy import can_exit_loop, loop_view, update_criterion
from stepledger.models import Session, Step
from stepledger.oracle import VerificationOracle
from stepledger.queue import TaskQueueManager, load_ready_tasks, parse_task_ids
from stepledger.regression import RegressionRechecker
from stepledger.state import SessionStore
from stepledger.suspension import SuspensionController
from stepledger.tracker import ExecutionTracker


@dataclass(slots=True)
class Runtime:
    context: ProjectContext
    config_path: Path
    store: SessionStore
    oracle: VerificationOracle
    tracker: ExecutionTracker
    suspensions: SuspensionController
    queue: TaskQueueManager


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    context = ProjectContext.load(root, config_path)
    store = SessionStore(context)
    oracle = VerificationOracle(context)
    suspensions = SuspensionController(store, runner=oracle.runner)
    rechecker = RegressionRechecker(oracle, policy=context.config.verification.regression_policy)
    tracker = ExecutionTracker(store, rechecker=rechecker, resume_checker=suspensions.check)
    return Runtime(
        context=context,
        config_path=config_path,
        store=store,
        oracle=oracle,
        tracker=tracker,
        suspensions=suspensions,
        queue=TaskQueueManager(store),
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _step_line(step: Step) -> str:
    return f"{step.id} {step.status.value:<11} {step.description}"


def _session_summary(runtime: Runtime, session: Session) -> dict[str, Any]:
    return {
        "task_id": session.task_id,
        "task_type": session.task_type,
        "session_id": session.session_id,
        "started_at": session.started_at,
        "updated_at": session.updated_at,
        "iteration": session.execution.iteration,
        "total_retries": session.execution.total_retries,
        "steps": [
            {"id": step.id, "status": step.status.value, "description": step.description}
            for step in session.steps
        ],
        "completion": runtime.tracker.check_completion(session).to_dict(),
        "suspension": runtime.suspensions.status(),
        "queue": runtime.queue.status(),
        "metrics": session.metrics.to_dict(),
    }


@click.group()
@click.option(
    "--root",
    "root_value",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.option("--verbose", "-v", is_flag=True, default=False)
@click.pass_context
def cli(ctx: click.Context, root_value: Path, config_value: str, verbose: bool) -> None:
    """Durable step tracking for long-running tasks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    root = root_value.resolve()
    try:
        ctx.obj = _load_runtime(root, _resolve_config_path(root, config_value))
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


pass_runtime = click.make_pass_decorator(Runtime)


@cli.command("init")
@pass_runtime
def init_command(runtime: Runtime) -> None:
    save_config(runtime.config_path, runtime.context.config)
    runtime.context.state_dir.mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized stepledger in {runtime.context.root}")
    click.echo(f"Config: {runtime.config_path}")


@cli.command("status")
@pass_runtime
def status_command(runtime: Runtime) -> None:
    session = runtime.store.load()
    if session is None:
        click.echo("No active session.")
        return
    _echo_json(_session_summary(runtime, session))


@cli.command("stats")
@pass_runtime
def stats_command(runtime: Runtime) -> None:
    _echo_json(runtime.store.stats())


@cli.command("clear")
@pass_runtime
def clear_command(runtime: Runtime) -> None:
    if runtime.store.clear():
        click.echo("Session cleared.")
    else:
        click.echo("No active session.")


@cli.command("start")
@click.argument("task_id")
@click.argument("steps", nargs=-1)
@click.option("--type", "task_type", default="task", show_default=True)
@pass_runtime
def start_command(runtime: Runtime, task_id: str, steps: tuple[str, ...], task_type: str) -> None:
    try:
        session = asyncio.run(runtime.store.create_locked(task_id, task_type, list(steps)))
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Session {session.session_id} for {session.task_id}")
    for step in session.steps:
        click.echo(_step_line(step))


@cli.command("next")
@pass_runtime
def next_command(runtime: Runtime) -> None:
    step = runtime.tracker.next_step()
    if step is None:
        click.echo("No actionable steps.")
        return
    _echo_json(step.to_dict())


@cli.group("step")
def step_group() -> None:
    """Move a single step through its lifecycle."""


@step_group.command("start")
@click.argument("step_id")
@pass_runtime
def step_start_command(runtime: Runtime, step_id: str) -> None:
    try:
        update = runtime.tracker.mark_started(step_id)
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_step_line(update.step))


@step_group.command("complete")
@click.argument("step_id")
@click.option("--proof", default=None)
@pass_runtime
def step_complete_command(runtime: Runtime, step_id: str, proof: str | None) -> None:
    try:
        update = runtime.tracker.mark_completed(step_id, proof)
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_step_line(update.step))
    for regression in update.regressions:
        click.echo(f"Regression: {regression.step_id} {regression.message}", err=True)


@step_group.command("fail")
@click.argument("step_id")
@click.option("--error", "error_text", default=None)
@pass_runtime
def step_fail_command(runtime: Runtime, step_id: str, error_text: str | None) -> None:
    try:
        update = runtime.tracker.mark_failed(step_id, error_text)
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_step_line(update.step))


@step_group.command("skip")
@click.argument("step_id")
@click.option("--reason", default=None)
@pass_runtime
def step_skip_command(runtime: Runtime, step_id: str, reason: str | None) -> None:
    try:
        update = runtime.tracker.mark_skipped(step_id, reason)
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_step_line(update.step))


@cli.command("add-step")
@click.argument("descriptions", nargs=-1, required=True)
@pass_runtime
def add_step_command(runtime: Runtime, descriptions: tuple[str, ...]) -> None:
    try:
        session = runtime.tracker.add_steps(list(descriptions))
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    for step in session.steps[-len(descriptions) :]:
        click.echo(_step_line(step))


@cli.command("iterate")
@pass_runtime
def iterate_command(runtime: Runtime) -> None:
    try:
        session = runtime.tracker.increment_iteration()
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Iteration {session.execution.iteration}")


@cli.command("check")
@pass_runtime
def check_command(runtime: Runtime) -> None:
    _echo_json(runtime.tracker.check_completion().to_dict())


@cli.command("can-exit")
@click.pass_context
def can_exit_command(ctx: click.Context) -> None:
    runtime = ctx.find_object(Runtime)
    completion = runtime.tracker.check_completion()
    click.echo(completion.summary or completion.reason or "Steps remaining.")
    ctx.exit(0 if completion.complete else 1)


@cli.command("archive")
@click.option(
    "--status",
    "final_status",
    type=click.Choice(["completed", "failed", "cancelled"]),
    default="completed",
    show_default=True,
)
@pass_runtime
def archive_command(runtime: Runtime, final_status: str) -> None:
    session = runtime.store.archive(final_status)
    if session is None:
        click.echo("No active session.")
        return
    click.echo(f"Archived {session.task_id} as {final_status}")


@cli.command("suspend")
@click.option("--wait-ci", "ci_command", default=None, help="Poll command that reports CI state.")
@click.option("--expect", "expected_value", default="completed", show_default=True)
@click.option("--rate-limit", "rate_limit_seconds", type=int, default=None)
@click.option("--review", "review_prompt", default=None)
@click.option("--wait-file", "watch_path", default=None)
@click.option("--schedule", "schedule_at", default=None, help="ISO-8601 resume time.")
@click.option("--long-running", "long_running_prompt", default=None)
@click.option("--reason", default=None)
@pass_runtime
def suspend_command(
    runtime: Runtime,
    ci_command: str | None,
    expected_value: str,
    rate_limit_seconds: int | None,
    review_prompt: str | None,
    watch_path: str | None,
    schedule_at: str | None,
    long_running_prompt: str | None,
    reason: str | None,
) -> None:
    try:
        if ci_command:
            request = builders.wait_for_ci(ci_command, expected_value)
        elif rate_limit_seconds is not None:
            request = builders.rate_limit(rate_limit_seconds, runtime.store.clock())
        elif review_prompt:
            request = builders.await_review(review_prompt)
        elif watch_path:
            request = builders.wait_for_file(watch_path)
        elif schedule_at:
            request = builders.schedule(schedule_at)
        elif long_running_prompt:
            request = builders.long_running(long_running_prompt)
        else:
            raise click.UsageError("Choose a suspension type.")
        if reason:
            request["reason"] = reason
        session = runtime.suspensions.suspend(request)
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc

    suspension = session.suspension
    click.echo(f"Suspended: {suspension.reason}")
    if suspension.suspended_at_step:
        click.echo(f"Step: {suspension.suspended_at_step}")


@cli.command("resume")
@click.option("--approve", is_flag=True, default=False)
@click.option("--by", "approved_by", default=None)
@click.option("--force", is_flag=True, default=False)
@click.pass_context
def resume_command(
    ctx: click.Context, approve: bool, approved_by: str | None, force: bool
) -> None:
    runtime = ctx.find_object(Runtime)
    try:
        outcome = runtime.suspensions.resume(
            force=force, approve=approve, approved_by=approved_by
        )
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    if not outcome.resumed:
        _echo_json(outcome.check.to_dict())
        ctx.exit(1)
    message = "Resumed."
    if outcome.released_step:
        message += f" {outcome.released_step} is pending again."
    click.echo(message)


@cli.command("verify")
@click.argument("description")
@click.pass_context
def verify_command(ctx: click.Context, description: str) -> None:
    runtime = ctx.find_object(Runtime)
    result = runtime.oracle.verify(description)
    _echo_json(result.to_dict())
    if result.passed is False:
        ctx.exit(1)


@cli.group("queue")
def queue_group() -> None:
    """Run several tasks back to back through one session."""


@queue_group.command("init")
@click.argument("task_ids", nargs=-1)
@click.option("--parse", "text", default=None, help='Free-form request, e.g. "story 1-3".')
@click.option("--source", default=None)
@pass_runtime
def queue_init_command(
    runtime: Runtime, task_ids: tuple[str, ...], text: str | None, source: str | None
) -> None:
    ids = list(task_ids)
    if text:
        ready = load_ready_tasks(runtime.context.ready_path)
        ids.extend(parse_task_ids(text, ready, runtime.context.config.queue.max_tasks))
        source = source or "natural"
    if not ids:
        raise click.ClickException("Could not determine any task ids to queue.")
    try:
        queue = runtime.queue.init(ids, source or "manual")
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Queued {len(queue.tasks)} task(s): {' '.join(queue.tasks)}")


@queue_group.command("status")
@pass_runtime
def queue_status_command(runtime: Runtime) -> None:
    _echo_json(runtime.queue.status())


@queue_group.command("advance")
@pass_runtime
def queue_advance_command(runtime: Runtime) -> None:
    _echo_json(runtime.queue.advance().to_dict())


@queue_group.command("clear")
@pass_runtime
def queue_clear_command(runtime: Runtime) -> None:
    if runtime.queue.clear():
        click.echo("Queue cleared.")
    else:
        click.echo("No active session.")


@queue_group.command("continue")
@click.pass_context
def queue_continue_command(ctx: click.Context) -> None:
    runtime = ctx.find_object(Runtime)
    continuation = runtime.queue.check_continuation()
    _echo_json(continuation.to_dict())
    ctx.exit(0 if continuation.should_continue else 1)


@cli.group("loop")
def loop_group() -> None:
    """Acceptance-criteria view of the session for older loop hooks."""


@loop_group.command("status")
@pass_runtime
def loop_status_command(runtime: Runtime) -> None:
    view = loop_view(runtime.store.load())
    if view is None:
        click.echo("No active session.")
        return
    _echo_json(view)


@loop_group.command("update")
@click.argument("criterion_id")
@click.argument("status", type=click.Choice(["completed", "failed", "skipped"]))
@click.option("--result", default=None)
@pass_runtime
def loop_update_command(
    runtime: Runtime, criterion_id: str, status: str, result: str | None
) -> None:
    try:
        update = update_criterion(runtime.tracker, criterion_id, status, result)
    except StepLedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{criterion_id} -> {_step_line(update.step)}")


@loop_group.command("can-exit")
@click.pass_context
def loop_can_exit_command(ctx: click.Context) -> None:
    runtime = ctx.find_object(Runtime)
    result = can_exit_loop(runtime.tracker)
    _echo_json(result)
    ctx.exit(0 if result["can_exit"] else 1)
