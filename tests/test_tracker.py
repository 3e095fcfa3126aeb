from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from stepledger import ledger
from stepledger.config import StepLedgerConfig
from stepledger.context import ProjectContext
from stepledger.errors import SessionNotFoundError, StepNotFoundError, StepTransitionError
from stepledger.models import Session, StepStatus, Suspension
from stepledger.oracle import VerificationOracle
from stepledger.regression import RegressionRechecker
from stepledger.shell import CommandResult
from stepledger.state import SessionStore
from stepledger.tracker import ExecutionTracker


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeRunner:
    def __init__(self, returncode: int = 0, stdout: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.commands: list[str] = []

    def run(self, command: str, *, timeout: float, cwd: Path | None = None) -> CommandResult:
        self.commands.append(command)
        return CommandResult(command=command, returncode=self.returncode, stdout=self.stdout)


class StubCheck:
    def __init__(self, can_resume: bool) -> None:
        self.can_resume = can_resume

    def to_dict(self) -> dict[str, Any]:
        return {"can_resume": self.can_resume, "reason": "stub"}


def _tracker(
    root: Path,
    config: StepLedgerConfig | None = None,
    clock: FakeClock | None = None,
    **kwargs: Any,
) -> ExecutionTracker:
    context = ProjectContext(root=root, config=config or StepLedgerConfig.default())
    store = SessionStore(context, clock=clock or FakeClock())
    return ExecutionTracker(store, **kwargs)


def test_state_machine_moves_a_step_through_its_lifecycle() -> None:
    session = Session.new("T1", "task", ["a", "b"])

    started = ledger.start_step(session, "step-002")
    assert started.status == StepStatus.IN_PROGRESS
    assert started.attempts == 1
    assert session.execution.current_step_index == 1

    with pytest.raises(StepTransitionError):
        ledger.start_step(session, "step-001")

    ledger.fail_step(session, "step-002", "boom")
    assert session.steps[1].status == StepStatus.FAILED
    assert session.execution.total_retries == 1

    ledger.start_step(session, "step-002")
    ledger.complete_step(session, "step-002", "ok")
    assert session.steps[1].attempts == 2
    assert session.steps[1].error is None

    with pytest.raises(StepTransitionError):
        ledger.start_step(session, "step-002")
    with pytest.raises(StepTransitionError):
        ledger.skip_step(session, "step-002")


def test_completing_a_pending_step_counts_one_attempt() -> None:
    session = Session.new("T1", "task", ["a", "b"])

    step = ledger.complete_step(session, "step-002", "proof")

    assert step.attempts == 1
    assert step.started_at is not None
    assert session.execution.current_step_index == 1
    assert session.metrics.steps_completed == 1


def test_unknown_step_raises() -> None:
    session = Session.new("T1", "task", ["a"])

    with pytest.raises(StepNotFoundError):
        ledger.start_step(session, "step-009")


def test_suspended_steps_only_return_through_release() -> None:
    session = Session.new("T1", "task", ["a", "b"])
    ledger.start_step(session, "step-001")

    suspended = ledger.suspend_active_step(session)

    assert suspended is not None and suspended.status == StepStatus.SUSPENDED
    assert ledger.next_actionable_step(session).id == "step-002"
    with pytest.raises(StepTransitionError):
        ledger.complete_step(session, "step-001")

    released = ledger.release_suspended_step(session, "step-001")
    assert released is not None and released.status == StepStatus.PENDING
    assert ledger.release_suspended_step(session, "step-001") is None


def test_reads_never_bump_attempts(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)
    tracker.create("T1", steps=["a"])

    tracker.next_step()
    tracker.get_step("step-001")
    tracker.remaining_steps()
    tracker.check_completion()

    assert tracker.get_step("step-001").attempts == 0


def test_mutations_without_a_session_raise(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)

    with pytest.raises(SessionNotFoundError):
        tracker.mark_started("step-001")
    assert tracker.next_step() is None
    assert tracker.check_completion().reason == "no-session"


def test_end_to_end_completion(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "x.ts").write_text("export const x = 1;\n", encoding="utf-8")
    context = ProjectContext(root=tmp_path)
    store = SessionStore(context, clock=FakeClock())
    oracle = VerificationOracle(context, runner=FakeRunner())
    tracker = ExecutionTracker(store, rechecker=RegressionRechecker(oracle))
    tracker.create("T1", steps=["file exists: src/x.ts", "tests pass"])

    tracker.mark_completed("step-001", "created")
    status = tracker.check_completion()
    assert status.complete is False
    assert status.counts["pending"] == 1

    update = tracker.mark_completed("step-002", "green")
    assert update.regressions == []
    status = tracker.check_completion()
    assert status.complete is True
    assert status.reason == "all-complete"


def test_skipped_steps_count_as_done(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)
    tracker.create("T1", steps=["a", "b"])

    tracker.mark_completed("step-001")
    tracker.mark_skipped("step-002", "not needed")

    status = tracker.check_completion()
    assert status.complete is True
    assert "1 skipped" in status.summary
    assert tracker.get_step("step-002").verification_proof == "Skipped: not needed"


def test_suspension_wins_over_every_ceiling(tmp_path: Path) -> None:
    config = StepLedgerConfig.default()
    config.steps.max_iterations = 1
    config.steps.max_retries = 1
    clock = FakeClock()
    tracker = _tracker(tmp_path, config, clock)
    session = tracker.create("T1", steps=["a", "b"])
    ledger.start_step(session, "step-001")
    ledger.suspend_active_step(session)
    session.execution.iteration = 5
    session.execution.total_retries = 5
    tracker.store.save(session)
    clock.advance(days=2)

    status = tracker.check_completion()

    assert status.complete is False
    assert status.suspended is True


def test_suspension_record_alone_blocks_completion(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)
    session = tracker.create("T1", steps=["a"])
    ledger.complete_step(session, "step-001")
    session.suspension = Suspension(type="human-review", reason="wait", suspended_at="x")
    tracker.store.save(session)

    assert tracker.check_completion().reason == "session-suspended"


def test_ceilings_apply_in_order(tmp_path: Path) -> None:
    config = StepLedgerConfig.default()
    config.steps.max_retries = 2
    config.steps.max_iterations = 3
    config.steps.max_duration_minutes = 60
    clock = FakeClock()
    tracker = _tracker(tmp_path, config, clock)
    tracker.create("T1", steps=["a", "b"])

    clock.advance(minutes=61)
    assert tracker.check_completion().reason == "max-duration"

    for _ in range(3):
        tracker.increment_iteration()
    assert tracker.check_completion().reason == "max-iterations"

    tracker.mark_failed("step-001", "first")
    tracker.mark_failed("step-001", "second")
    status = tracker.check_completion()
    assert status.reason == "max-retries"
    assert status.forced is True


def test_add_steps_continues_numbering(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)
    tracker.create("T1", steps=["a"])

    session = tracker.add_steps(["b", {"description": "c", "type": "quality-gate"}])

    assert [step.id for step in session.steps] == ["step-001", "step-002", "step-003"]
    assert session.steps[2].type == "quality-gate"


def test_tokens_saved_accumulate(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path)
    tracker.create("T1", steps=["a"])

    tracker.add_tokens_saved(1200, 0.25)
    session = tracker.add_tokens_saved(300)

    assert session.metrics.tokens_saved == 1500
    assert session.metrics.cost_saved == pytest.approx(0.25)


def test_can_resume_consults_the_resume_checker(tmp_path: Path) -> None:
    checks: list[bool] = [False]
    tracker = _tracker(tmp_path, resume_checker=lambda _: StubCheck(checks[0]))
    tracker.create("T1", steps=["a", "b"])
    tracker.mark_completed("step-001")
    session = tracker.session()
    session.suspension = Suspension(type="ci-cd", reason="ci", suspended_at="x")
    tracker.store.save(session)

    blocked = tracker.can_resume_from_step()
    assert blocked["can_resume"] is False
    assert blocked["reason"] == "suspended"

    checks[0] = True
    ready = tracker.can_resume_from_step()
    assert ready["can_resume"] is True
    assert ready["from_step"]["id"] == "step-002"
    assert ready["completed_count"] == 1

    context = tracker.resume_context()
    assert context is not None
    assert context["task_id"] == "T1"
    assert context["suspension"]["type"] == "ci-cd"
