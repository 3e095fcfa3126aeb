"""Adapter for callers still speaking the acceptance-criteria loop format.

Older hooks address steps as ``AC-N`` (1-based). Translation happens here
only; the ledger itself only ever sees ``step-NNN`` ids.
"""

from __future__ import annotations

import re
from typing import Any

from stepledger.errors import StepLedgerError
from stepledger.models import Session, Step, StepStatus, canonical_step_id
from stepledger.tracker import ExecutionTracker, StepUpdate

CRITERION_ID = re.compile(r"^AC-(\d+)$")

_CRITERION_STATUSES = {
    StepStatus.COMPLETED: "completed",
    StepStatus.FAILED: "failed",
    StepStatus.SKIPPED: "skipped",
}


def to_step_id(criterion_id: str) -> str:
    match = CRITERION_ID.match(criterion_id)
    if match is None:
        return criterion_id
    return canonical_step_id(int(match.group(1)) - 1)


def to_criterion_id(step: Step, index: int) -> str:
    if step.id.startswith("step-"):
        return f"AC-{index + 1}"
    return step.id


def loop_view(session: Session | None) -> dict[str, Any] | None:
    if session is None:
        return None
    return {
        "task_id": session.task_id,
        "started_at": session.started_at,
        "acceptance_criteria": [
            {
                "id": to_criterion_id(step, index),
                "description": step.description,
                "status": _CRITERION_STATUSES.get(step.status, "pending"),
                "attempts": step.attempts,
                "last_attempt": step.last_attempt_at,
                "verification_result": step.verification_proof,
            }
            for index, step in enumerate(session.steps)
        ],
        "iteration": session.execution.iteration,
        "retries": session.execution.total_retries,
        "status": "suspended" if session.suspension else "in_progress",
    }


def update_criterion(
    tracker: ExecutionTracker, criterion_id: str, status: str, result: Any = None
) -> StepUpdate:
    step_id = to_step_id(criterion_id)
    if status == "completed":
        return tracker.mark_completed(step_id, result)
    if status == "failed":
        return tracker.mark_failed(step_id, result)
    if status == "skipped":
        return tracker.mark_skipped(step_id, result)
    raise StepLedgerError(f"Unsupported criterion status: {status}")


def can_exit_loop(tracker: ExecutionTracker) -> dict[str, Any]:
    completion = tracker.check_completion()
    return {
        "can_exit": completion.complete,
        "reason": completion.reason,
        "summary": completion.summary,
        **completion.counts,
    }
