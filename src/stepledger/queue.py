from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stepledger.errors import StepLedgerError
from stepledger.models import TaskQueue, isoformat
from stepledger.state.store import SessionStore

log = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"\bwf-[a-f0-9]{3,8}(?:-\d{2})?\b", re.IGNORECASE)
RANGE_PATTERN = re.compile(r"(\d+)\s*[-–]\s*(\d+)")
COUNT_PATTERN = re.compile(r"(\d+)\s*(?:tasks?|stories?|features?)", re.IGNORECASE)
LIST_PATTERN = re.compile(r"\d+(?:\s*,\s*\d+)+")
ALL_PATTERN = re.compile(r"all\s+(?:ready\s+)?tasks?", re.IGNORECASE)

ReadyTask = str | Mapping[str, Any]


@dataclass(slots=True)
class AdvanceResult:
    advanced: bool
    queue_complete: bool
    next_task_id: str | None = None
    remaining: int = 0
    completed_tasks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "advanced": self.advanced,
            "queue_complete": self.queue_complete,
            "next_task_id": self.next_task_id,
            "remaining": self.remaining,
            "completed_tasks": list(self.completed_tasks),
        }


@dataclass(slots=True)
class Continuation:
    should_continue: bool
    reason: str | None = None
    should_prompt: bool = False
    next_task_id: str | None = None
    remaining: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"should_continue": self.should_continue}
        if self.reason:
            payload["reason"] = self.reason
        if self.should_prompt:
            payload["should_prompt"] = True
        if self.next_task_id:
            payload["next_task_id"] = self.next_task_id
            payload["remaining"] = self.remaining
        if self.message:
            payload["message"] = self.message
        return payload


class TaskQueueManager:
    """Sequences several task ids through the active session."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def init(self, task_ids: Sequence[str], source: str = "manual") -> TaskQueue:
        ids = [str(task_id) for task_id in task_ids if str(task_id).strip()]
        if not ids:
            raise StepLedgerError("A task queue needs at least one task id.")
        session = self.store.require()
        session.task_queue = TaskQueue(
            enabled=True,
            tasks=ids,
            current_index=0,
            source=source,
            queued_at=isoformat(self.store.clock()),
            completed_tasks=[],
        )
        if session.task_id != ids[0]:
            log.warning(
                "First queued task %s does not match the active session %s",
                ids[0],
                session.task_id,
            )
        self.store.save(session)
        return session.task_queue

    def status(self) -> dict[str, Any]:
        session = self.store.load()
        if session is None or not session.task_queue.enabled:
            return {
                "has_queue": False,
                "has_more_tasks": False,
                "current_task": session.task_id if session else None,
                "next_task": None,
                "remaining": 0,
                "completed": 0,
                "total": 0,
            }
        queue = session.task_queue
        remaining = max(0, len(queue.tasks) - queue.current_index - 1)
        return {
            "has_queue": True,
            "has_more_tasks": remaining > 0,
            "current_task": _at(queue.tasks, queue.current_index),
            "next_task": _at(queue.tasks, queue.current_index + 1) if remaining else None,
            "remaining": remaining,
            "completed": len(queue.completed_tasks),
            "total": len(queue.tasks),
            "source": queue.source,
        }

    def advance(self) -> AdvanceResult:
        """Mark the current task done and move the cursor; safe to repeat."""
        session = self.store.load()
        if session is None or not session.task_queue.enabled:
            return AdvanceResult(advanced=False, queue_complete=True)

        queue = session.task_queue
        current = _at(queue.tasks, queue.current_index)
        if current is not None and current not in queue.completed_tasks:
            queue.completed_tasks.append(current)

        if queue.current_index >= len(queue.tasks) - 1:
            self.store.save(session)
            return AdvanceResult(
                advanced=False,
                queue_complete=True,
                completed_tasks=list(queue.completed_tasks),
            )

        queue.current_index += 1
        self.store.save(session)
        return AdvanceResult(
            advanced=True,
            queue_complete=False,
            next_task_id=queue.tasks[queue.current_index],
            remaining=len(queue.tasks) - queue.current_index - 1,
            completed_tasks=list(queue.completed_tasks),
        )

    def clear(self) -> bool:
        session = self.store.load()
        if session is None:
            return False
        session.task_queue = TaskQueue(completed_tasks=list(session.task_queue.completed_tasks))
        self.store.save(session)
        return True

    def check_continuation(self) -> Continuation:
        settings = self.store.context.config.queue
        if not settings.enabled:
            return Continuation(False, reason="queue_disabled")

        status = self.status()
        if not status["has_queue"]:
            return Continuation(False, reason="no_queue")
        if not status["has_more_tasks"]:
            return Continuation(
                False,
                reason="queue_complete",
                message=f"All {status['total']} tasks completed.",
            )

        next_task = status["next_task"]
        remaining = status["remaining"]
        if settings.pause_between_tasks:
            return Continuation(
                False,
                should_prompt=True,
                next_task_id=next_task,
                remaining=remaining,
                message=f"Task complete. Next: {next_task} ({remaining} remaining). Continue?",
            )
        return Continuation(
            True,
            next_task_id=next_task,
            remaining=remaining,
            message=f"Task complete. Auto-continuing to: {next_task}",
        )


def _at(items: Sequence[str], index: int) -> str | None:
    return items[index] if 0 <= index < len(items) else None


def load_ready_tasks(path: Path) -> list[ReadyTask]:
    """Read the ``ready`` backlog written by the task planner, if any."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        log.warning("Could not read ready tasks from %s: %s", path, exc)
        return []
    ready = data.get("ready") if isinstance(data, Mapping) else data
    return list(ready) if isinstance(ready, list) else []


def _take_ready(ready: Sequence[ReadyTask], count: int) -> list[str]:
    entries: list[tuple[str, str]] = []
    for item in ready:
        if isinstance(item, Mapping):
            if item.get("id"):
                entries.append((str(item.get("priority") or "P2"), str(item["id"])))
        elif item:
            entries.append(("P2", str(item)))
    entries.sort(key=lambda entry: entry[0])
    return [task_id for _, task_id in entries[: max(0, count)]]


def parse_task_ids(text: str, ready: Sequence[ReadyTask] = (), max_tasks: int = 10) -> list[str]:
    """Turn a free-form request such as "story 1-3" into task ids.

    Explicit ids win. Ranges, counts, number lists and "all ready tasks"
    draw from ``ready`` in priority order, never more than ``max_tasks``.
    """
    explicit = TASK_ID_PATTERN.findall(text)
    if explicit:
        return [task_id.lower() for task_id in explicit]

    if match := RANGE_PATTERN.search(text):
        start, end = int(match.group(1)), int(match.group(2))
        return _take_ready(ready, min(end - start + 1, max_tasks))

    if match := COUNT_PATTERN.search(text):
        return _take_ready(ready, min(int(match.group(1)), max_tasks))

    if match := LIST_PATTERN.search(text):
        return _take_ready(ready, min(len(match.group(0).split(",")), max_tasks))

    if ALL_PATTERN.search(text):
        return _take_ready(ready, max_tasks)

    return []
