import json
from pathlib import Path

from click.testing import CliRunner, Result

from stepledger.cli import cli
from stepledger.config import load_config


def _invoke(root: Path, *args: str) -> Result:
    return CliRunner().invoke(cli, ["--root", str(root), *args])


def test_init_writes_config(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "init")

    assert result.exit_code == 0, result.output
    assert (tmp_path / ".workflow" / "state").is_dir()
    config = load_config(tmp_path / "stepledger.toml")
    assert config.steps.max_retries == 5


def test_step_lifecycle_through_cli(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("hello\n", encoding="utf-8")

    started = _invoke(tmp_path, "start", "T1", "file exists: notes.md", "write docs")
    assert started.exit_code == 0, started.output
    assert "step-001 pending" in started.output

    nxt = _invoke(tmp_path, "next")
    assert json.loads(nxt.output)["id"] == "step-001"

    assert _invoke(tmp_path, "step", "start", "step-001").exit_code == 0
    assert _invoke(tmp_path, "step", "complete", "step-001", "--proof", "seen").exit_code == 0
    assert _invoke(tmp_path, "can-exit").exit_code == 1

    assert _invoke(tmp_path, "step", "skip", "step-002", "--reason", "later").exit_code == 0
    check = _invoke(tmp_path, "check")
    assert json.loads(check.output)["reason"] == "all-complete"
    assert _invoke(tmp_path, "can-exit").exit_code == 0

    status = _invoke(tmp_path, "status")
    payload = json.loads(status.output)
    assert payload["task_id"] == "T1"
    assert [step["status"] for step in payload["steps"]] == ["completed", "skipped"]

    archived = _invoke(tmp_path, "archive")
    assert "Archived T1 as completed" in archived.output
    stats = json.loads(_invoke(tmp_path, "stats").output)
    assert stats["total_sessions"] == 1
    assert stats["completed"] == 1


def test_errors_exit_with_code_one(tmp_path: Path) -> None:
    missing = _invoke(tmp_path, "step", "start", "step-001")
    assert missing.exit_code == 1
    assert "No active session" in missing.output

    _invoke(tmp_path, "start", "T1", "a")
    unknown = _invoke(tmp_path, "step", "complete", "step-042")
    assert unknown.exit_code == 1
    assert "Step not found" in unknown.output


def test_add_step_and_iterate(tmp_path: Path) -> None:
    _invoke(tmp_path, "start", "T1", "a")

    added = _invoke(tmp_path, "add-step", "b", "c")
    iterated = _invoke(tmp_path, "iterate")

    assert "step-003 pending" in added.output
    assert "Iteration 1" in iterated.output


def test_suspend_and_resume(tmp_path: Path) -> None:
    _invoke(tmp_path, "start", "T1", "a")
    _invoke(tmp_path, "step", "start", "step-001")

    suspended = _invoke(tmp_path, "suspend", "--rate-limit", "3600")
    assert suspended.exit_code == 0, suspended.output
    assert "Step: step-001" in suspended.output
    assert json.loads(_invoke(tmp_path, "check").output)["reason"] == "session-suspended"

    blocked = _invoke(tmp_path, "resume")
    assert blocked.exit_code == 1
    assert json.loads(blocked.output)["reason"] == "waiting-for-time"

    forced = _invoke(tmp_path, "resume", "--force")
    assert forced.exit_code == 0
    assert "step-001 is pending again" in forced.output


def test_review_suspension_resumes_on_approval(tmp_path: Path) -> None:
    _invoke(tmp_path, "start", "T1", "a")
    _invoke(tmp_path, "suspend", "--review", "check the migration")

    approved = _invoke(tmp_path, "resume", "--approve", "--by", "sam")

    assert approved.exit_code == 0, approved.output


def test_suspend_requires_a_type(tmp_path: Path) -> None:
    _invoke(tmp_path, "start", "T1", "a")

    result = _invoke(tmp_path, "suspend")

    assert result.exit_code == 2


def test_verify_reports_json_and_exit_code(tmp_path: Path) -> None:
    (tmp_path / "present.txt").write_text("x", encoding="utf-8")

    passed = _invoke(tmp_path, "verify", "file exists: present.txt")
    failed = _invoke(tmp_path, "verify", "file exists: absent.txt")

    assert passed.exit_code == 0
    assert json.loads(passed.output)["passed"] is True
    assert failed.exit_code == 1


def test_queue_commands(tmp_path: Path) -> None:
    _invoke(tmp_path, "start", "A", "a")

    queued = _invoke(tmp_path, "queue", "init", "A", "B")
    assert "Queued 2 task(s): A B" in queued.output
    assert _invoke(tmp_path, "queue", "continue").exit_code == 0

    advanced = json.loads(_invoke(tmp_path, "queue", "advance").output)
    assert advanced["next_task_id"] == "B"
    assert _invoke(tmp_path, "queue", "continue").exit_code == 1

    status = json.loads(_invoke(tmp_path, "queue", "status").output)
    assert status["current_task"] == "B"
    assert "Queue cleared." in _invoke(tmp_path, "queue", "clear").output


def test_queue_init_parses_free_text_against_ready_file(tmp_path: Path) -> None:
    _invoke(tmp_path, "start", "wf-a", "a")
    ready = tmp_path / ".workflow" / "state" / "ready.json"
    ready.write_text(
        json.dumps({"ready": [{"id": "wf-b", "priority": "P1"}, {"id": "wf-a", "priority": "P0"}]}),
        encoding="utf-8",
    )

    result = _invoke(tmp_path, "queue", "init", "--parse", "story 1-2")

    assert result.exit_code == 0, result.output
    assert "wf-a wf-b" in result.output


def test_clear_removes_session(tmp_path: Path) -> None:
    _invoke(tmp_path, "start", "T1", "a")

    assert "Session cleared." in _invoke(tmp_path, "clear").output
    assert "No active session." in _invoke(tmp_path, "status").output


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    (tmp_path / "stepledger.toml").write_text("[steps\n", encoding="utf-8")

    result = _invoke(tmp_path, "status")

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_badly_typed_config_value_is_reported(tmp_path: Path) -> None:
    (tmp_path / "stepledger.toml").write_text(
        "[locking]\nstale_seconds = \"soon\"\n", encoding="utf-8"
    )

    result = _invoke(tmp_path, "start", "T1", "a")

    assert result.exit_code == 1
    assert "Invalid configuration: locking.stale_seconds" in result.output
    assert not (tmp_path / ".workflow").exists()


def test_loop_commands_speak_criterion_ids(tmp_path: Path) -> None:
    assert "No active session." in _invoke(tmp_path, "loop", "status").output
    _invoke(tmp_path, "start", "T1", "a", "b")

    updated = _invoke(tmp_path, "loop", "update", "AC-1", "completed", "--result", "done")
    assert updated.exit_code == 0, updated.output
    assert "AC-1 -> step-001 completed" in updated.output

    view = json.loads(_invoke(tmp_path, "loop", "status").output)
    assert [item["id"] for item in view["acceptance_criteria"]] == ["AC-1", "AC-2"]
    assert view["acceptance_criteria"][0]["verification_result"] == "done"

    blocked = _invoke(tmp_path, "loop", "can-exit")
    assert blocked.exit_code == 1
    assert json.loads(blocked.output)["pending"] == 1

    _invoke(tmp_path, "loop", "update", "AC-2", "skipped")
    assert _invoke(tmp_path, "loop", "can-exit").exit_code == 0
