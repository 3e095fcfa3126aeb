from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from stepledger.config import CONFIG_FILENAME, StepLedgerConfig, load_config

STATE_DIRNAME = ".workflow/state"
SESSION_FILE = "durable-session.json"
HISTORY_FILE = "durable-history.json"
LEGACY_SESSION_FILE = "hybrid-session.json"
READY_FILE = "ready.json"


@dataclass(slots=True)
class ProjectContext:
    """Resolved project root plus loaded configuration.

    Passed explicitly to every store operation so nothing in the engine
    depends on the current working directory or process-global caches.
    """

    root: Path
    config: StepLedgerConfig = field(default_factory=StepLedgerConfig.default)

    def __post_init__(self) -> None:
        self.root = Path(self.root).resolve()

    @classmethod
    def load(cls, root: Path, config_path: Path | None = None) -> ProjectContext:
        root = Path(root).resolve()
        if config_path is None:
            config_path = root / CONFIG_FILENAME
        elif not config_path.is_absolute():
            config_path = root / config_path
        return cls(root=root, config=load_config(config_path))

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIRNAME

    @property
    def session_path(self) -> Path:
        return self.state_dir / SESSION_FILE

    @property
    def history_path(self) -> Path:
        return self.state_dir / HISTORY_FILE

    @property
    def legacy_session_path(self) -> Path:
        return self.state_dir / LEGACY_SESSION_FILE

    @property
    def ready_path(self) -> Path:
        return self.state_dir / READY_FILE

    def resolve(self, path: str | Path) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate
