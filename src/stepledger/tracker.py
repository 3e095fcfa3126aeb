from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from stepledger import ledger
from stepledger.config import StepLedgerConfig
from stepledger.errors import SessionNotFoundError
from stepledger.models import (
    Session,
    Step,
    StepStatus,
    Suspension,
    normalize_step,
    parse_timestamp,
)
from stepledger.oracle import VerificationContext
from stepledger.regression import Regression, RegressionRechecker
from stepledger.state.store import SessionStore, StepInput

log = logging.getLogger(__name__)

ResumeChecker = Callable[[Suspension], Any]


@dataclass(slots=True)
class CompletionStatus:
    complete: bool
    reason: str | None = None
    forced: bool = False
    summary: str = ""
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def suspended(self) -> bool:
        return self.reason == "session-suspended"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"complete": self.complete, "reason": self.reason}
        if self.forced:
            payload["forced"] = True
        if self.summary:
            payload["summary"] = self.summary
        payload.update(self.counts)
        return payload


@dataclass(slots=True)
class StepUpdate:
    session: Session
    step: Step
    regressions: list[Regression] = field(default_factory=list)


class ExecutionTracker:
    """Caller-facing API over the step ledger.

    Every mutation is a full load, transition and atomic save, so a crash
    between calls never leaves a half-written session behind.
    """

    def __init__(
        self,
        store: SessionStore,
        rechecker: RegressionRechecker | None = None,
        resume_checker: ResumeChecker | None = None,
    ) -> None:
        self.store = store
        self.rechecker = rechecker
        self.resume_checker = resume_checker

    @property
    def config(self) -> StepLedgerConfig:
        return self.store.context.config

    def _mutate(self, mutator: Callable[[Session], Any]) -> tuple[Session, Any]:
        session = self.store.load()
        if session is None:
            raise SessionNotFoundError("No active session.")
        result = mutator(session)
        self.store.save(session)
        return session, result

    def create(
        self, task_id: str, task_type: str = "task", steps: Sequence[StepInput] = ()
    ) -> Session:
        return self.store.create(task_id, task_type, steps)

    def session(self) -> Session | None:
        return self.store.load()

    def next_step(self) -> Step | None:
        session = self.store.load()
        if session is None:
            return None
        return ledger.next_actionable_step(session)

    def get_step(self, step_id: str) -> Step | None:
        session = self.store.load()
        if session is None:
            return None
        return ledger.find_step(session, step_id)

    def remaining_steps(self) -> list[Step]:
        session = self.store.load()
        if session is None:
            return []
        return ledger.remaining_steps(session)

    def mark_started(self, step_id: str) -> StepUpdate:
        now = self.store.clock()
        session, step = self._mutate(lambda s: ledger.start_step(s, step_id, now))
        return StepUpdate(session=session, step=step)

    def mark_completed(
        self,
        step_id: str,
        proof: Any = None,
        verification_context: VerificationContext | None = None,
    ) -> StepUpdate:
        now = self.store.clock()
        regressions: list[Regression] = []

        def _complete(session: Session) -> Step:
            step = ledger.complete_step(session, step_id, proof, now)
            if self.rechecker is not None and self.config.verification.recheck_enabled:
                regressions.extend(
                    self.rechecker.recheck(session, step_id, verification_context, now)
                )
            return step

        session, step = self._mutate(_complete)
        if regressions:
            log.warning("%d regression(s) detected after completing %s", len(regressions), step_id)
        return StepUpdate(session=session, step=step, regressions=regressions)

    def mark_failed(self, step_id: str, error: Any = None) -> StepUpdate:
        now = self.store.clock()
        session, step = self._mutate(lambda s: ledger.fail_step(s, step_id, error, now))
        return StepUpdate(session=session, step=step)

    def mark_skipped(self, step_id: str, reason: str | None = None) -> StepUpdate:
        now = self.store.clock()
        session, step = self._mutate(lambda s: ledger.skip_step(s, step_id, reason, now))
        return StepUpdate(session=session, step=step)

    def add_steps(self, new_steps: Sequence[StepInput | Mapping[str, Any]]) -> Session:
        default_max_attempts = self.config.steps.default_max_attempts

        def _append(session: Session) -> None:
            start = len(session.steps)
            for offset, raw in enumerate(new_steps):
                session.steps.append(normalize_step(raw, start + offset, default_max_attempts))

        session, _ = self._mutate(_append)
        return session

    def increment_iteration(self) -> Session:
        def _bump(session: Session) -> None:
            session.execution.iteration += 1

        session, _ = self._mutate(_bump)
        return session

    def add_tokens_saved(self, tokens: int, cost: float = 0.0) -> Session:
        def _add(session: Session) -> None:
            session.metrics.tokens_saved += max(0, int(tokens))
            session.metrics.cost_saved += max(0.0, float(cost))

        session, _ = self._mutate(_add)
        return session

    def check_completion(self, session: Session | None = None) -> CompletionStatus:
        """Decide whether the session may stop.

        Suspension is checked first so a session paused exactly when a
        ceiling was crossed is never reported as finished.
        """
        if session is None:
            session = self.store.load()
        if session is None:
            return CompletionStatus(complete=True, reason="no-session")

        counts = ledger.count_by_status(session)
        pending = counts[StepStatus.PENDING]
        failed = counts[StepStatus.FAILED]
        in_progress = counts[StepStatus.IN_PROGRESS]
        completed = counts[StepStatus.COMPLETED]
        skipped = counts[StepStatus.SKIPPED]
        suspended = counts[StepStatus.SUSPENDED]

        if suspended or session.suspension is not None:
            return CompletionStatus(
                complete=False,
                reason="session-suspended",
                summary=f"Session suspended with {suspended} step(s) waiting to resume",
                counts={"suspended": suspended},
            )

        if pending == 0 and failed == 0 and in_progress == 0:
            summary = f"All {completed} steps completed"
            if skipped:
                summary += f" ({skipped} skipped)"
            return CompletionStatus(complete=True, reason="all-complete", summary=summary)

        limits = self.config.steps
        if session.execution.total_retries >= limits.max_retries:
            return CompletionStatus(
                complete=True,
                reason="max-retries",
                forced=True,
                summary=(
                    f"Max retries ({limits.max_retries}) reached. {failed} steps still failing."
                ),
            )

        if session.execution.iteration >= limits.max_iterations:
            return CompletionStatus(
                complete=True,
                reason="max-iterations",
                forced=True,
                summary=f"Max iterations ({limits.max_iterations}) reached.",
            )

        started = parse_timestamp(session.started_at)
        max_duration = timedelta(minutes=limits.max_duration_minutes)
        if started is not None and self.store.clock() - started >= max_duration:
            return CompletionStatus(
                complete=True,
                reason="max-duration",
                forced=True,
                summary=f"Max session duration ({limits.max_duration_minutes} minutes) reached.",
            )

        return CompletionStatus(
            complete=False,
            counts={
                "pending": pending,
                "failed": failed,
                "in_progress": in_progress,
                "completed": completed,
                "skipped": skipped,
                "suspended": suspended,
            },
        )

    def can_resume_from_step(self, session: Session | None = None) -> dict[str, Any]:
        if session is None:
            session = self.store.load()
        if session is None:
            return {"can_resume": False, "reason": "no-session"}

        if session.suspension is not None and self.resume_checker is not None:
            check = self.resume_checker(session.suspension)
            if not check.can_resume:
                return {
                    "can_resume": False,
                    "reason": "suspended",
                    "suspension": session.suspension.to_dict(),
                    "condition_status": check.to_dict(),
                }

        remaining = ledger.remaining_steps(session)
        completed = sum(1 for step in session.steps if step.status == StepStatus.COMPLETED)
        if not remaining:
            return {"can_resume": False, "reason": "all-complete", "completed_count": completed}
        return {
            "can_resume": True,
            "from_step": remaining[0].to_dict(),
            "completed_count": completed,
            "total_steps": len(session.steps),
            "pending_count": len(remaining),
        }

    def resume_context(self) -> dict[str, Any] | None:
        session = self.store.load()
        if session is None:
            return None
        context = {
            "task_id": session.task_id,
            "task_type": session.task_type,
            "session_id": session.session_id,
            "started_at": session.started_at,
            "iteration": session.execution.iteration,
            "retries": session.execution.total_retries,
            "current_step_index": session.execution.current_step_index,
            "metrics": session.metrics.to_dict(),
            "suspension": session.suspension.to_dict() if session.suspension else None,
        }
        context.update(self.can_resume_from_step(session))
        return context
