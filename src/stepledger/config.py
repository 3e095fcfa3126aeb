from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

RegressionPolicy = Literal["warn", "block"]

CONFIG_FILENAME = "stepledger.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    lint_command: str = "ruff check ."
    cli_command: str = "stepledger"


@dataclass(slots=True)
class StepsConfig:
    default_max_attempts: int = 5
    max_retries: int = 5
    max_iterations: int = 20
    max_duration_minutes: int = 120


@dataclass(slots=True)
class VerificationConfig:
    auto_infer: bool = True
    recheck_enabled: bool = True
    regression_policy: RegressionPolicy = "warn"
    suggest_browser_tests: bool = True
    fallback_to_manual: bool = True
    command_timeout_seconds: float = 60.0


@dataclass(slots=True)
class SuspensionConfig:
    poll_timeout_seconds: float = 30.0
    block_suspicious_commands: bool = False


@dataclass(slots=True)
class QueueConfig:
    enabled: bool = True
    pause_between_tasks: bool = False
    max_tasks: int = 10


@dataclass(slots=True)
class LockingConfig:
    stale_seconds: float = 30.0
    max_retries: int = 50
    backoff_seconds: float = 0.05
    max_backoff_seconds: float = 1.0
    max_reclaim_attempts: int = 3


@dataclass(slots=True)
class HistoryConfig:
    max_sessions: int = 50
    learn_from_sessions: bool = True


REGRESSION_POLICIES = ("warn", "block")


def _coerce(key: str, kind: str, value: Any) -> Any:
    if kind == "bool":
        if isinstance(value, bool):
            return value
        raise ValueError(f"{key} must be true or false, got {value!r}")
    if kind in ("int", "float"):
        if isinstance(value, bool):
            raise ValueError(f"{key} must be a number, got {value!r}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be a number, got {value!r}") from None
        if kind == "float":
            return number
        if not number.is_integer():
            raise ValueError(f"{key} must be a whole number, got {value!r}")
        return int(number)
    if kind == "RegressionPolicy":
        if value not in REGRESSION_POLICIES:
            choices = ", ".join(REGRESSION_POLICIES)
            raise ValueError(f"{key} must be one of {choices}, got {value!r}")
        return value
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def _section(name: str, cls: type, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"[{name}] must be a table")
    kinds = {item.name: str(item.type) for item in fields(cls)}
    values = {
        key: _coerce(f"{name}.{key}", kinds[key], value)
        for key, value in data.items()
        if key in kinds
    }
    return cls(**values)


@dataclass(slots=True)
class StepLedgerConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    steps: StepsConfig = field(default_factory=StepsConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    suspension: SuspensionConfig = field(default_factory=SuspensionConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    locking: LockingConfig = field(default_factory=LockingConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    @classmethod
    def default(cls) -> StepLedgerConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> StepLedgerConfig:
        return cls(
            project=_section("project", ProjectConfig, data.get("project")),
            steps=_section("steps", StepsConfig, data.get("steps")),
            verification=_section("verification", VerificationConfig, data.get("verification")),
            suspension=_section("suspension", SuspensionConfig, data.get("suspension")),
            queue=_section("queue", QueueConfig, data.get("queue")),
            locking=_section("locking", LockingConfig, data.get("locking")),
            history=_section("history", HistoryConfig, data.get("history")),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
                "cli_command": self.project.cli_command,
            },
            "steps": {
                "default_max_attempts": self.steps.default_max_attempts,
                "max_retries": self.steps.max_retries,
                "max_iterations": self.steps.max_iterations,
                "max_duration_minutes": self.steps.max_duration_minutes,
            },
            "verification": {
                "auto_infer": self.verification.auto_infer,
                "recheck_enabled": self.verification.recheck_enabled,
                "regression_policy": self.verification.regression_policy,
                "suggest_browser_tests": self.verification.suggest_browser_tests,
                "fallback_to_manual": self.verification.fallback_to_manual,
                "command_timeout_seconds": self.verification.command_timeout_seconds,
            },
            "suspension": {
                "poll_timeout_seconds": self.suspension.poll_timeout_seconds,
                "block_suspicious_commands": self.suspension.block_suspicious_commands,
            },
            "queue": {
                "enabled": self.queue.enabled,
                "pause_between_tasks": self.queue.pause_between_tasks,
                "max_tasks": self.queue.max_tasks,
            },
            "locking": {
                "stale_seconds": self.locking.stale_seconds,
                "max_retries": self.locking.max_retries,
                "backoff_seconds": self.locking.backoff_seconds,
                "max_backoff_seconds": self.locking.max_backoff_seconds,
                "max_reclaim_attempts": self.locking.max_reclaim_attempts,
            },
            "history": {
                "max_sessions": self.history.max_sessions,
                "learn_from_sessions": self.history.learn_from_sessions,
            },
        }

    def lookup(self, dotted_key: str) -> tuple[bool, Any]:
        """Resolve ``section.key`` against the serialized config."""
        value: Any = self.to_dict()
        for part in dotted_key.split("."):
            if not isinstance(value, dict) or part not in value:
                return False, None
            value = value[part]
        return True, value


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StepLedgerConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section, values in data.items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> StepLedgerConfig:
    if not path.exists():
        return StepLedgerConfig.default()
    return StepLedgerConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: StepLedgerConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
