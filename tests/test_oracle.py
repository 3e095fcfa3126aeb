from pathlib import Path

from stepledger.config import StepLedgerConfig
from stepledger.context import ProjectContext
from stepledger.oracle import (
    FileExistsDetector,
    VerificationContext,
    VerificationOracle,
    infer_browser_test_flow,
)
from stepledger.shell import CommandResult


class FakeRunner:
    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.commands: list[str] = []

    def run(self, command: str, *, timeout: float, cwd: Path | None = None) -> CommandResult:
        self.commands.append(command)
        return CommandResult(command=command, returncode=self.returncode, stderr=self.stderr)


def _oracle(
    root: Path, runner: FakeRunner | None = None, config: StepLedgerConfig | None = None
) -> VerificationOracle:
    context = ProjectContext(root=root, config=config or StepLedgerConfig.default())
    return VerificationOracle(context, runner=runner or FakeRunner())


def test_file_existence(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "auth.py").write_text("", encoding="utf-8")
    oracle = _oracle(tmp_path)

    found = oracle.verify("Create file src/auth.py")
    missing = oracle.verify("file exists: src/missing.ts")

    assert found.passed is True
    assert found.verification == "file-exists"
    assert missing.passed is False
    assert "src/missing.ts" in missing.message


def test_symbol_presence(tmp_path: Path) -> None:
    (tmp_path / "auth.py").write_text("def login(user):\n    return user\n", encoding="utf-8")
    oracle = _oracle(tmp_path)

    present = oracle.verify("function login exists in auth.py")
    absent = oracle.verify("auth.py exports logout")

    assert present.passed is True
    assert present.verification == "function-exists"
    assert absent.passed is False


def test_component_search(tmp_path: Path) -> None:
    components = tmp_path / "src" / "components"
    components.mkdir(parents=True)
    (components / "LoginForm.tsx").write_text("", encoding="utf-8")
    oracle = _oracle(tmp_path)

    assert oracle.verify("component LoginForm renders").passed is True
    assert oracle.verify("component Navbar renders").passed is False


def test_cli_subcommand_runs_help(tmp_path: Path) -> None:
    runner = FakeRunner()
    oracle = _oracle(tmp_path, runner)

    result = oracle.verify("command status works")

    assert result.passed is True
    assert result.verification == "cli-works"
    assert runner.commands == ["stepledger status --help"]


def test_config_key_lookup(tmp_path: Path) -> None:
    oracle = _oracle(tmp_path)

    assert oracle.verify("config has steps.max_retries").passed is True
    assert oracle.verify("config has steps.nonexistent").passed is False


def test_integration_wiring(tmp_path: Path) -> None:
    (tmp_path / "app.py").write_text("from billing import charge\n", encoding="utf-8")
    oracle = _oracle(tmp_path)

    result = oracle.verify("billing integrated into app.py")

    assert result.passed is True
    assert result.verification == "integration"


def test_test_suite_prefers_supplied_results(tmp_path: Path) -> None:
    runner = FakeRunner(returncode=1, stderr="2 failed")
    oracle = _oracle(tmp_path, runner)

    supplied = oracle.verify("all tests pass", VerificationContext(test_results={"failed": 0}))
    executed = oracle.verify("all tests pass")

    assert supplied.passed is True
    assert executed.passed is False
    assert "2 failed" in executed.message
    assert runner.commands == ["pytest -q"]


def test_lint_clean(tmp_path: Path) -> None:
    oracle = _oracle(tmp_path)

    assert oracle.verify("lint passes").passed is True
    dirty = VerificationContext(lint_results={"errors": 3})
    assert oracle.verify("lint is clean", dirty).passed is False


def test_ui_descriptions_are_indeterminate_with_a_flow(tmp_path: Path) -> None:
    oracle = _oracle(tmp_path)

    result = oracle.verify("the login page renders")

    assert result.passed is None
    assert result.verification == "browser-test"
    assert result.suggested_flow is not None
    assert result.suggested_flow["type"] == "page"
    assert result.suggested_flow["target"] == "login"
    assert result.to_dict()["browser_test_suggested"] is True


def test_browser_flow_inference_for_components() -> None:
    flow = infer_browser_test_flow("The submit button works after login")

    assert flow["type"] == "component"
    assert flow["target"] == "submit"


def test_unrecognised_text_falls_back_to_manual(tmp_path: Path) -> None:
    oracle = _oracle(tmp_path)

    result = oracle.verify("the architecture feels right")

    assert result.passed is None
    assert result.verification == "manual"


def test_fallback_and_auto_inference_can_be_disabled(tmp_path: Path) -> None:
    strict = StepLedgerConfig.default()
    strict.verification.fallback_to_manual = False
    disabled = StepLedgerConfig.default()
    disabled.verification.auto_infer = False

    assert _oracle(tmp_path, config=strict).verify("vibes are good").passed is False
    assert _oracle(tmp_path, config=disabled).verify("lint passes").verification == "disabled"


def test_detector_order_can_be_customised(tmp_path: Path) -> None:
    context = ProjectContext(root=tmp_path)
    oracle = VerificationOracle(context, runner=FakeRunner(), detectors=[FileExistsDetector()])

    assert oracle.verify("lint passes").verification == "manual"
