from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from stepledger import ledger
from stepledger.context import ProjectContext
from stepledger.errors import SessionNotFoundError, StepLedgerError
from stepledger.models import (
    DEFAULT_NOTIFICATIONS,
    ResumeConditionType,
    Session,
    Suspension,
    SuspensionType,
    isoformat,
    parse_timestamp,
    utcnow,
)
from stepledger.shell import CommandRunner, validate_command
from stepledger.state.store import SessionStore

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ResumeCheck:
    can_resume: bool
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"can_resume": self.can_resume, "reason": self.reason, **self.details}


@dataclass(slots=True)
class ResumeOutcome:
    resumed: bool
    check: ResumeCheck
    session: Session | None = None
    released_step: str | None = None


def check_time_condition(config: Any, now: datetime | None = None) -> ResumeCheck:
    if not isinstance(config, Mapping) or not config.get("resume_after"):
        return ResumeCheck(True, "no-time-set")
    resume_at = parse_timestamp(config.get("resume_after"))
    if resume_at is None:
        return ResumeCheck(False, "invalid-resume-time", {"resume_at": config.get("resume_after")})
    now = now or utcnow()
    if now >= resume_at:
        return ResumeCheck(True, "time-elapsed")
    remaining = math.ceil((resume_at - now).total_seconds())
    return ResumeCheck(
        False,
        "waiting-for-time",
        {"remaining_seconds": max(1, remaining), "resume_at": isoformat(resume_at)},
    )


def check_poll_condition(
    config: Any,
    runner: CommandRunner,
    *,
    timeout: float = 30.0,
    block_suspicious: bool = False,
    project: ProjectContext | None = None,
) -> ResumeCheck:
    if not isinstance(config, Mapping) or not config.get("command"):
        return ResumeCheck(False, "no-poll-command")
    command = str(config["command"])

    validation = validate_command(command)
    if validation.blocked:
        return ResumeCheck(False, "poll-command-blocked", {"error": validation.reason})
    if not validation.safe:
        if block_suspicious:
            return ResumeCheck(False, "poll-command-blocked", {"error": validation.reason})
        log.warning("Poll command may be unsafe (%s): %s", validation.reason, command)

    result = runner.run(command, timeout=timeout, cwd=project.root if project else None)
    if result.timed_out:
        return ResumeCheck(False, "poll-command-failed", {"error": f"timed out after {timeout}s"})
    if result.returncode != 0:
        return ResumeCheck(False, "poll-command-failed", {"error": result.summary()})

    value = result.stdout.strip()
    expected = str(config.get("expected_value", ""))
    if value == expected:
        return ResumeCheck(True, "poll-condition-met", {"value": value})
    return ResumeCheck(
        False,
        "poll-condition-not-met",
        {"current_value": value, "expected_value": expected},
    )


def check_manual_condition(config: Any) -> ResumeCheck:
    if not isinstance(config, Mapping):
        return ResumeCheck(False, "no-manual-config")
    if config.get("approved_at") and config.get("approved_by"):
        return ResumeCheck(True, "manually-approved", {"approved_by": config["approved_by"]})
    return ResumeCheck(False, "awaiting-approval", {"prompt": config.get("prompt")})


def check_file_condition(config: Any, project: ProjectContext) -> ResumeCheck:
    if not isinstance(config, Mapping) or not config.get("watch_path"):
        return ResumeCheck(False, "no-file-path")
    watch_path = str(config["watch_path"])
    path = project.resolve(watch_path)
    if not path.exists():
        return ResumeCheck(False, "file-not-found", {"watch_path": watch_path})

    expected = config.get("expected_content")
    if expected is None:
        return ResumeCheck(True, "file-exists")
    try:
        actual = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        return ResumeCheck(False, "file-parse-error", {"error": str(exc)})
    if actual == expected:
        return ResumeCheck(True, "file-content-matches")
    return ResumeCheck(
        False,
        "file-content-mismatch",
        {"expected": expected, "actual": actual},
    )


def wait_for_ci(command: str, expected_value: str = "completed") -> dict[str, Any]:
    return {
        "type": SuspensionType.CI_CD.value,
        "reason": f"Waiting for CI/CD: {command}",
        "resume_condition": {
            "type": ResumeConditionType.POLL.value,
            "poll": {
                "command": command,
                "expected_value": expected_value,
                "interval_seconds": 60,
                "max_attempts": 120,
            },
        },
    }


def rate_limit(seconds: int, now: datetime | None = None) -> dict[str, Any]:
    resume_at = (now or utcnow()) + timedelta(seconds=seconds)
    return {
        "type": SuspensionType.RATE_LIMIT.value,
        "reason": f"Rate limited for {seconds} seconds",
        "resume_condition": {
            "type": ResumeConditionType.TIME.value,
            "time": {"resume_after": isoformat(resume_at)},
        },
    }


def schedule(at: datetime | str) -> dict[str, Any]:
    if isinstance(at, str):
        parsed = parse_timestamp(at)
        if parsed is None:
            raise StepLedgerError(f"Invalid schedule time: {at}")
        at = parsed
    stamp = isoformat(at)
    return {
        "type": SuspensionType.SCHEDULED.value,
        "reason": f"Scheduled resume at: {stamp}",
        "resume_condition": {
            "type": ResumeConditionType.TIME.value,
            "time": {"resume_after": stamp},
        },
    }


def await_review(prompt: str) -> dict[str, Any]:
    return {
        "type": SuspensionType.HUMAN_REVIEW.value,
        "reason": f"Awaiting human review: {prompt}",
        "resume_condition": {
            "type": ResumeConditionType.MANUAL.value,
            "manual": {"prompt": prompt},
        },
    }


def long_running(prompt: str | None = None) -> dict[str, Any]:
    prompt = prompt or "Continue when ready"
    return {
        "type": SuspensionType.LONG_RUNNING.value,
        "reason": f"Long-running task: {prompt}",
        "resume_condition": {
            "type": ResumeConditionType.MANUAL.value,
            "manual": {"prompt": prompt},
        },
    }


def wait_for_file(watch_path: str, expected_content: Any = None) -> dict[str, Any]:
    file_config: dict[str, Any] = {"watch_path": watch_path}
    if expected_content is not None:
        file_config["expected_content"] = expected_content
    return {
        "type": SuspensionType.EXTERNAL_EVENT.value,
        "reason": f"Waiting for file: {watch_path}",
        "resume_condition": {
            "type": ResumeConditionType.FILE.value,
            "file": file_config,
        },
    }


class SuspensionController:
    def __init__(self, store: SessionStore, runner: CommandRunner | None = None) -> None:
        self.store = store
        self.runner = runner or CommandRunner()

    @property
    def project(self) -> ProjectContext:
        return self.store.context

    def suspend(self, request: Mapping[str, Any]) -> Session:
        try:
            suspension_type = SuspensionType(request.get("type"))
        except ValueError as exc:
            raise StepLedgerError(f"Unsupported suspension type: {request.get('type')}") from exc

        condition = request.get("resume_condition")
        if condition is not None:
            if not isinstance(condition, Mapping):
                raise StepLedgerError("resume_condition must be a mapping.")
            try:
                ResumeConditionType(condition.get("type"))
            except ValueError as exc:
                raise StepLedgerError(
                    f"Unsupported resume condition: {condition.get('type')}"
                ) from exc

        session = self.store.require()
        previous = session.suspension
        step = ledger.suspend_active_step(session)
        step_id = step.id if step else (previous.suspended_at_step if previous else None)
        notifications = request.get("notifications")
        session.suspension = Suspension(
            type=suspension_type.value,
            reason=str(request.get("reason") or f"Suspended: {suspension_type.value}"),
            suspended_at=isoformat(self.store.clock()),
            suspended_at_step=step_id,
            resume_condition=dict(condition) if condition is not None else None,
            notifications=(
                dict(notifications)
                if isinstance(notifications, Mapping)
                else dict(DEFAULT_NOTIFICATIONS)
            ),
        )
        log.info("Suspended %s at %s: %s", session.task_id, step_id, session.suspension.reason)
        return self.store.save(session)

    def is_suspended(self) -> bool:
        session = self.store.load()
        return session is not None and session.suspension is not None

    def check(self, suspension: Suspension | None) -> ResumeCheck:
        """Evaluate a resume condition; never raises."""
        if suspension is None or not suspension.resume_condition:
            return ResumeCheck(True, "no-condition")
        condition = suspension.resume_condition
        kind = condition.get("type")
        try:
            if kind == ResumeConditionType.TIME:
                return check_time_condition(condition.get("time"), self.store.clock())
            if kind == ResumeConditionType.POLL:
                settings = self.project.config.suspension
                return check_poll_condition(
                    condition.get("poll"),
                    self.runner,
                    timeout=float(settings.poll_timeout_seconds),
                    block_suspicious=settings.block_suspicious_commands,
                    project=self.project,
                )
            if kind == ResumeConditionType.MANUAL:
                return check_manual_condition(condition.get("manual"))
            if kind == ResumeConditionType.FILE:
                return check_file_condition(condition.get("file"), self.project)
        except Exception as exc:
            log.warning("Resume condition %s could not be evaluated: %s", kind, exc)
            return ResumeCheck(False, "condition-error", {"error": str(exc)})
        return ResumeCheck(False, f"unknown-condition-type: {kind}")

    def status(self) -> dict[str, Any] | None:
        session = self.store.load()
        if session is None or session.suspension is None:
            return None
        check = self.check(session.suspension)
        return {
            **session.suspension.to_dict(),
            "can_resume": check.can_resume,
            "resume_reason": check.reason,
            "condition_status": check.to_dict(),
            "task_id": session.task_id,
        }

    def resume(
        self,
        *,
        force: bool = False,
        approve: bool = False,
        approved_by: str | None = None,
    ) -> ResumeOutcome:
        session = self.store.load()
        if session is None:
            raise SessionNotFoundError("No active session.")
        suspension = session.suspension
        if suspension is None:
            return ResumeOutcome(False, ResumeCheck(False, "not-suspended"), session)

        condition = suspension.resume_condition or {}
        if approve and condition.get("type") == ResumeConditionType.MANUAL:
            manual = dict(condition.get("manual") or {})
            manual["approved_at"] = isoformat(self.store.clock())
            manual["approved_by"] = approved_by or "user"
            condition["manual"] = manual
            suspension.resume_condition = condition

        check = self.check(suspension)
        if not check.can_resume and not force:
            if approve:
                self.store.save(session)
            return ResumeOutcome(False, check, session)

        step_id = suspension.suspended_at_step
        session.suspension = None
        released = ledger.release_suspended_step(session, step_id)
        self.store.save(session)
        reason = "forced" if not check.can_resume else check.reason
        log.info("Resumed %s (%s)", session.task_id, reason)
        return ResumeOutcome(
            True,
            check,
            session,
            released_step=released.id if released else None,
        )
