from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from stepledger.context import ProjectContext
from stepledger.errors import SessionNotFoundError
from stepledger.models import Metrics, Session, StepStatus, isoformat, utcnow
from stepledger.state.lock import LockManager

log = logging.getLogger(__name__)

LearningHook = Callable[[dict[str, Any]], None]
StepInput = str | Mapping[str, Any]


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(serialized)
        handle.flush()
        os.fsync(handle.fileno())
        temp_path = handle.name
    try:
        os.replace(temp_path, path)
    except OSError:
        Path(temp_path).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        log.debug("Could not parse %s: %s", path, exc)
        return None


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def recompute_metrics(session: Session) -> Metrics:
    """Derive terminal-status counts from the steps themselves."""
    statuses = [step.status for step in session.steps]
    return Metrics(
        steps_completed=statuses.count(StepStatus.COMPLETED),
        steps_failed=statuses.count(StepStatus.FAILED),
        steps_skipped=statuses.count(StepStatus.SKIPPED),
        tokens_saved=session.metrics.tokens_saved,
        cost_saved=session.metrics.cost_saved,
    )


class SessionStore:
    """Persistence boundary for the active session and its archive."""

    def __init__(
        self,
        context: ProjectContext,
        *,
        learning_hook: LearningHook | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.context = context
        self.learning_hook = learning_hook
        self.clock = clock

    @property
    def session_path(self) -> Path:
        return self.context.session_path

    @property
    def history_path(self) -> Path:
        return self.context.history_path

    def lock(self) -> LockManager:
        return LockManager(self.session_path, self.context.config.locking)

    def exists(self) -> bool:
        return self.session_path.exists()

    def load(self) -> Session | None:
        raw = _read_json(self.session_path)
        if not isinstance(raw, dict):
            return None
        return Session.from_dict(
            raw, default_max_attempts=self.context.config.steps.default_max_attempts
        )

    def require(self) -> Session:
        session = self.load()
        if session is None:
            raise SessionNotFoundError("No active session.")
        return session

    def save(self, session: Session) -> Session:
        session.touch(self.clock())
        _write_json_atomic(self.session_path, session.to_dict())
        return session

    def _cleanup_legacy_session(self) -> None:
        legacy = self.context.legacy_session_path
        if not legacy.exists():
            return
        try:
            legacy.unlink()
            log.info("Removed deprecated %s", legacy.name)
        except OSError as exc:
            log.warning("Could not remove deprecated %s: %s", legacy.name, exc)

    def _create_unlocked(
        self, task_id: str, task_type: str, steps: Sequence[StepInput]
    ) -> Session:
        existing = self.load()
        if existing is not None and existing.task_id == task_id:
            return existing
        self._cleanup_legacy_session()
        session = Session.new(
            task_id,
            task_type,
            list(steps),
            default_max_attempts=self.context.config.steps.default_max_attempts,
            now=self.clock(),
        )
        return self.save(session)

    def create(
        self, task_id: str, task_type: str = "task", steps: Sequence[StepInput] = ()
    ) -> Session:
        """Create a session for ``task_id`` or return the one already active."""
        return self._create_unlocked(task_id, task_type, steps)

    async def create_locked(
        self, task_id: str, task_type: str = "task", steps: Sequence[StepInput] = ()
    ) -> Session:
        async with self.lock().hold():
            return self._create_unlocked(task_id, task_type, steps)

    def history(self) -> list[dict[str, Any]]:
        raw = _read_json(self.history_path)
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict)]

    def archive(self, status: str = "completed") -> Session | None:
        session = self.load()
        if session is None:
            return None

        session.status = status
        session.ended_at = isoformat(self.clock())
        session.metrics = recompute_metrics(session)
        payload = session.to_dict()

        history = self.history()
        history.append(payload)
        max_sessions = max(1, int(self.context.config.history.max_sessions))
        _write_json_atomic(self.history_path, history[-max_sessions:])

        self.session_path.unlink(missing_ok=True)

        if (
            status == "completed"
            and self.learning_hook is not None
            and self.context.config.history.learn_from_sessions
        ):
            try:
                self.learning_hook(payload)
            except Exception as exc:
                log.warning("Session learning hook failed for %s: %s", session.task_id, exc)
        return session

    def clear(self) -> bool:
        if not self.session_path.exists():
            return False
        self.session_path.unlink(missing_ok=True)
        return True

    def stats(self) -> dict[str, Any]:
        history = self.history()
        total = len(history)
        completed = sum(1 for item in history if item.get("status") == "completed")
        failed = sum(1 for item in history if item.get("status") == "failed")
        if not total:
            return {
                "total_sessions": 0,
                "completed": 0,
                "failed": 0,
                "cancelled": 0,
                "avg_steps": 0,
                "avg_tokens_saved": 0,
            }

        step_total = 0
        tokens_total = 0
        for item in history:
            steps = item.get("steps")
            step_total += len(steps) if isinstance(steps, list) else 0
            metrics = item.get("metrics")
            if isinstance(metrics, dict):
                tokens = metrics.get("tokens_saved", 0)
                if isinstance(tokens, (int, float)) and not isinstance(tokens, bool):
                    tokens_total += tokens
        return {
            "total_sessions": total,
            "completed": completed,
            "failed": failed,
            "cancelled": total - completed - failed,
            "avg_steps": _round_half_up(step_total / total * 10) / 10,
            "avg_tokens_saved": _round_half_up(tokens_total / total),
        }
