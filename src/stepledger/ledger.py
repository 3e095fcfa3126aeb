"""Step state machine.

::

    pending | failed --start--> in_progress --> completed | failed | suspended
    suspended --release--> pending
    pending | failed | in_progress --skip--> skipped   (operator only)

Completing or failing a step that was never started passes through an
implicit start so ``attempts`` and ``current_step_index`` stay accurate.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any

from stepledger.errors import StepNotFoundError, StepTransitionError
from stepledger.models import Session, Step, StepStatus, isoformat, utcnow

STARTABLE = frozenset({StepStatus.PENDING, StepStatus.FAILED})
ACTIONABLE = STARTABLE
OPEN = frozenset({StepStatus.PENDING, StepStatus.FAILED, StepStatus.IN_PROGRESS})
SKIPPABLE = OPEN


def find_step(session: Session, step_id: str) -> Step | None:
    for step in session.steps:
        if step.id == step_id:
            return step
    return None


def step_index(session: Session, step_id: str) -> int:
    for index, step in enumerate(session.steps):
        if step.id == step_id:
            return index
    raise StepNotFoundError(f"Step not found: {step_id}")


def require_step(session: Session, step_id: str) -> Step:
    step = find_step(session, step_id)
    if step is None:
        raise StepNotFoundError(f"Step not found: {step_id}")
    return step


def next_actionable_step(session: Session) -> Step | None:
    """First step in array order that is pending or failed."""
    for step in session.steps:
        if step.status in ACTIONABLE:
            return step
    return None


def remaining_steps(session: Session) -> list[Step]:
    return [step for step in session.steps if step.status in OPEN]


def in_progress_step(session: Session) -> Step | None:
    for step in session.steps:
        if step.status == StepStatus.IN_PROGRESS:
            return step
    return None


def count_by_status(session: Session) -> dict[str, int]:
    counts = Counter(step.status for step in session.steps)
    return {status.value: counts.get(status, 0) for status in StepStatus}


def _transition_error(step: Step, target: StepStatus) -> StepTransitionError:
    return StepTransitionError(
        f"Step {step.id} cannot move from {step.status.value} to {target.value}."
    )


def start_step(session: Session, step_id: str, now: datetime | None = None) -> Step:
    step = require_step(session, step_id)
    if step.status not in STARTABLE:
        raise _transition_error(step, StepStatus.IN_PROGRESS)
    active = in_progress_step(session)
    if active is not None and active.id != step.id:
        raise StepTransitionError(
            f"Step {active.id} is already in progress; finish it before starting {step.id}."
        )
    stamp = isoformat(now or utcnow())
    step.status = StepStatus.IN_PROGRESS
    step.started_at = stamp
    step.last_attempt_at = stamp
    step.attempts += 1
    session.execution.current_step_index = step_index(session, step_id)
    return step


def _ensure_started(session: Session, step: Step, target: StepStatus, now: datetime | None) -> None:
    if step.status == StepStatus.IN_PROGRESS:
        return
    if step.status in STARTABLE:
        start_step(session, step.id, now)
        return
    raise _transition_error(step, target)


def complete_step(
    session: Session, step_id: str, proof: Any = None, now: datetime | None = None
) -> Step:
    step = require_step(session, step_id)
    _ensure_started(session, step, StepStatus.COMPLETED, now)
    step.status = StepStatus.COMPLETED
    step.completed_at = isoformat(now or utcnow())
    step.verification_proof = proof
    step.error = None
    session.metrics.steps_completed += 1
    return step


def fail_step(
    session: Session, step_id: str, error: Any = None, now: datetime | None = None
) -> Step:
    step = require_step(session, step_id)
    _ensure_started(session, step, StepStatus.FAILED, now)
    step.status = StepStatus.FAILED
    step.error = error
    session.metrics.steps_failed += 1
    session.execution.total_retries += 1
    return step


def skip_step(
    session: Session, step_id: str, reason: str | None = None, now: datetime | None = None
) -> Step:
    step = require_step(session, step_id)
    if step.status not in SKIPPABLE:
        raise _transition_error(step, StepStatus.SKIPPED)
    step.status = StepStatus.SKIPPED
    step.completed_at = isoformat(now or utcnow())
    step.verification_proof = f"Skipped: {reason}" if reason else "Skipped by user"
    session.metrics.steps_skipped += 1
    return step


def suspend_active_step(session: Session) -> Step | None:
    step = in_progress_step(session)
    if step is not None:
        step.status = StepStatus.SUSPENDED
    return step


def release_suspended_step(session: Session, step_id: str | None) -> Step | None:
    if not step_id:
        return None
    step = find_step(session, step_id)
    if step is None or step.status != StepStatus.SUSPENDED:
        return None
    step.status = StepStatus.PENDING
    return step


def downgrade_regressed_step(session: Session, step_id: str, message: str) -> Step:
    """Send a completed step back to the actionable set after a regression."""
    step = require_step(session, step_id)
    if step.status != StepStatus.COMPLETED:
        raise _transition_error(step, StepStatus.FAILED)
    step.status = StepStatus.FAILED
    step.error = f"REGRESSION: {message}"
    step.verification_proof = f"REGRESSION: {message}"
    return step
