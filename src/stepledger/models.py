from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

SESSION_VERSION = "2.0"


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(moment: datetime) -> str:
    return moment.replace(microsecond=0).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class StepStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    SUSPENDED = "suspended"


class StepType(StrEnum):
    ACCEPTANCE_CRITERIA = "acceptance-criteria"
    EXECUTION = "execution"
    QUALITY_GATE = "quality-gate"
    CUSTOM = "custom"


class SuspensionType(StrEnum):
    CI_CD = "ci-cd"
    SCHEDULED = "scheduled"
    RATE_LIMIT = "rate-limit"
    HUMAN_REVIEW = "human-review"
    EXTERNAL_EVENT = "external-event"
    LONG_RUNNING = "long-running"


class ResumeConditionType(StrEnum):
    TIME = "time"
    POLL = "poll"
    MANUAL = "manual"
    FILE = "file"


_LEGACY_STEP_TYPES = {"hybrid-execution": StepType.EXECUTION}

DEFAULT_NOTIFICATIONS: dict[str, Any] = {
    "on_suspend": True,
    "on_resume": True,
    "reminder_after_hours": 24,
}


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _coerce_status(value: Any) -> StepStatus:
    try:
        return StepStatus(value)
    except ValueError:
        return StepStatus.PENDING


def _coerce_type(value: Any, default: StepType) -> StepType:
    if isinstance(value, str) and value in _LEGACY_STEP_TYPES:
        return _LEGACY_STEP_TYPES[value]
    try:
        return StepType(value)
    except ValueError:
        return default


def canonical_step_id(index: int) -> str:
    return f"step-{index + 1:03d}"


@dataclass(slots=True)
class Step:
    id: str
    description: str
    type: StepType = StepType.CUSTOM
    status: StepStatus = StepStatus.PENDING
    priority: int = 1
    attempts: int = 0
    max_attempts: int = 5
    started_at: str | None = None
    completed_at: str | None = None
    last_attempt_at: str | None = None
    verification_proof: Any = None
    error: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_attempt_at": self.last_attempt_at,
            "verification_proof": self.verification_proof,
            "error": self.error,
            "metadata": dict(self.metadata),
        }


def normalize_step(raw: str | Mapping[str, Any], index: int, default_max_attempts: int = 5) -> Step:
    """Map a raw description or a step mapping onto a canonical ``Step``."""
    if isinstance(raw, str):
        return Step(
            id=canonical_step_id(index),
            type=StepType.ACCEPTANCE_CRITERIA,
            description=raw,
            priority=index + 1,
            max_attempts=default_max_attempts,
        )
    if not isinstance(raw, Mapping):
        return Step(
            id=canonical_step_id(index),
            description=str(raw) if raw is not None else "",
            priority=index + 1,
            max_attempts=default_max_attempts,
        )

    metadata = raw.get("metadata")
    return Step(
        id=str(raw.get("id") or canonical_step_id(index)),
        type=_coerce_type(raw.get("type"), StepType.CUSTOM),
        description=str(raw.get("description") or raw.get("action") or ""),
        status=_coerce_status(raw.get("status") or StepStatus.PENDING),
        priority=_as_int(raw.get("priority"), 0) or index + 1,
        attempts=max(0, _as_int(raw.get("attempts"))),
        max_attempts=_as_int(raw.get("max_attempts"), 0) or default_max_attempts,
        started_at=_as_optional_str(raw.get("started_at")),
        completed_at=_as_optional_str(raw.get("completed_at")),
        last_attempt_at=_as_optional_str(raw.get("last_attempt_at")),
        verification_proof=raw.get("verification_proof"),
        error=raw.get("error"),
        metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
    )


@dataclass(slots=True)
class Execution:
    current_step_index: int = 0
    iteration: int = 0
    total_retries: int = 0
    checkpoints_created: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> Execution:
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            current_step_index=max(0, _as_int(data.get("current_step_index"))),
            iteration=max(0, _as_int(data.get("iteration"))),
            total_retries=max(0, _as_int(data.get("total_retries"))),
            checkpoints_created=max(0, _as_int(data.get("checkpoints_created"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_step_index": self.current_step_index,
            "iteration": self.iteration,
            "total_retries": self.total_retries,
            "checkpoints_created": self.checkpoints_created,
        }


@dataclass(slots=True)
class Metrics:
    steps_completed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    tokens_saved: int = 0
    cost_saved: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> Metrics:
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            steps_completed=max(0, _as_int(data.get("steps_completed"))),
            steps_failed=max(0, _as_int(data.get("steps_failed"))),
            steps_skipped=max(0, _as_int(data.get("steps_skipped"))),
            tokens_saved=max(0, _as_int(data.get("tokens_saved"))),
            cost_saved=max(0.0, _as_float(data.get("cost_saved"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps_completed": self.steps_completed,
            "steps_failed": self.steps_failed,
            "steps_skipped": self.steps_skipped,
            "tokens_saved": self.tokens_saved,
            "cost_saved": self.cost_saved,
        }


@dataclass(slots=True)
class TaskQueue:
    enabled: bool = False
    tasks: list[str] = field(default_factory=list)
    current_index: int = 0
    source: str | None = None
    queued_at: str | None = None
    completed_tasks: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> TaskQueue:
        if not isinstance(data, Mapping):
            return cls()
        tasks = data.get("tasks")
        completed = data.get("completed_tasks")
        return cls(
            enabled=bool(data.get("enabled", False)),
            tasks=[str(item) for item in tasks] if isinstance(tasks, list) else [],
            current_index=max(0, _as_int(data.get("current_index"))),
            source=_as_optional_str(data.get("source")),
            queued_at=_as_optional_str(data.get("queued_at")),
            completed_tasks=(
                [str(item) for item in completed] if isinstance(completed, list) else []
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "tasks": list(self.tasks),
            "current_index": self.current_index,
            "source": self.source,
            "queued_at": self.queued_at,
            "completed_tasks": list(self.completed_tasks),
        }


@dataclass(slots=True)
class Suspension:
    type: str
    reason: str
    suspended_at: str
    suspended_at_step: str | None = None
    resume_condition: dict[str, Any] | None = None
    notifications: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_NOTIFICATIONS))

    @classmethod
    def from_dict(cls, data: Any) -> Suspension | None:
        if not isinstance(data, Mapping) or not data.get("type"):
            return None
        condition = data.get("resume_condition")
        notifications = data.get("notifications")
        return cls(
            type=str(data["type"]),
            reason=str(data.get("reason") or f"Suspended: {data['type']}"),
            suspended_at=str(data.get("suspended_at") or isoformat(utcnow())),
            suspended_at_step=_as_optional_str(data.get("suspended_at_step")),
            resume_condition=dict(condition) if isinstance(condition, Mapping) else None,
            notifications=(
                dict(notifications)
                if isinstance(notifications, Mapping)
                else dict(DEFAULT_NOTIFICATIONS)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "reason": self.reason,
            "suspended_at": self.suspended_at,
            "suspended_at_step": self.suspended_at_step,
            "resume_condition": self.resume_condition,
            "notifications": dict(self.notifications),
        }


_SESSION_KEYS = {
    "version",
    "session_id",
    "task_id",
    "task_type",
    "started_at",
    "updated_at",
    "steps",
    "execution",
    "suspension",
    "metrics",
    "task_queue",
    "status",
    "ended_at",
    "last_regression_check",
}


@dataclass(slots=True)
class Session:
    task_id: str
    task_type: str = "task"
    session_id: str = field(default_factory=lambda: f"sess-{uuid4().hex[:12]}")
    version: str = SESSION_VERSION
    started_at: str = field(default_factory=lambda: isoformat(utcnow()))
    updated_at: str = field(default_factory=lambda: isoformat(utcnow()))
    steps: list[Step] = field(default_factory=list)
    execution: Execution = field(default_factory=Execution)
    suspension: Suspension | None = None
    metrics: Metrics = field(default_factory=Metrics)
    task_queue: TaskQueue = field(default_factory=TaskQueue)
    status: str | None = None
    ended_at: str | None = None
    last_regression_check: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        task_id: str,
        task_type: str,
        steps: list[str | Mapping[str, Any]],
        *,
        default_max_attempts: int = 5,
        now: datetime | None = None,
    ) -> Session:
        stamp = isoformat(now or utcnow())
        return cls(
            task_id=task_id,
            task_type=task_type,
            started_at=stamp,
            updated_at=stamp,
            steps=[
                normalize_step(step, index, default_max_attempts)
                for index, step in enumerate(steps)
            ],
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, default_max_attempts: int = 5) -> Session:
        """Build a session from persisted JSON, defaulting malformed parts."""
        raw_steps = data.get("steps")
        steps: list[Step] = []
        if isinstance(raw_steps, list):
            steps = [
                normalize_step(item, index, default_max_attempts)
                for index, item in enumerate(raw_steps)
                if isinstance(item, (str, Mapping))
            ]
        regression = data.get("last_regression_check")
        return cls(
            task_id=str(data.get("task_id") or ""),
            task_type=str(data.get("task_type") or "task"),
            session_id=str(data.get("session_id") or f"sess-{uuid4().hex[:12]}"),
            version=str(data.get("version") or SESSION_VERSION),
            started_at=str(data.get("started_at") or isoformat(utcnow())),
            updated_at=str(data.get("updated_at") or isoformat(utcnow())),
            steps=steps,
            execution=Execution.from_dict(data.get("execution")),
            suspension=Suspension.from_dict(data.get("suspension")),
            metrics=Metrics.from_dict(data.get("metrics")),
            task_queue=TaskQueue.from_dict(data.get("task_queue")),
            status=_as_optional_str(data.get("status")),
            ended_at=_as_optional_str(data.get("ended_at")),
            last_regression_check=dict(regression) if isinstance(regression, Mapping) else None,
            extra={key: value for key, value in data.items() if key not in _SESSION_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "version": self.version,
                "session_id": self.session_id,
                "task_id": self.task_id,
                "task_type": self.task_type,
                "started_at": self.started_at,
                "updated_at": self.updated_at,
                "steps": [step.to_dict() for step in self.steps],
                "execution": self.execution.to_dict(),
                "suspension": self.suspension.to_dict() if self.suspension else None,
                "metrics": self.metrics.to_dict(),
                "task_queue": self.task_queue.to_dict(),
            }
        )
        if self.status is not None:
            payload["status"] = self.status
        if self.ended_at is not None:
            payload["ended_at"] = self.ended_at
        if self.last_regression_check is not None:
            payload["last_regression_check"] = self.last_regression_check
        return payload

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = isoformat(now or utcnow())
