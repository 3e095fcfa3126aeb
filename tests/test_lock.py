import asyncio
import json
from pathlib import Path

import pytest

from stepledger.config import LockingConfig
from stepledger.errors import LockAcquisitionError
from stepledger.state.lock import LockManager, with_lock


def _settings(**overrides: float) -> LockingConfig:
    values = {
        "stale_seconds": 30.0,
        "max_retries": 4,
        "backoff_seconds": 0.0,
        "max_backoff_seconds": 0.01,
        "max_reclaim_attempts": 2,
    }
    values.update(overrides)
    return LockingConfig(**values)


def _plant_lock(target: Path, acquired_at: float) -> Path:
    lock_dir = target.with_name(f"{target.name}.lock")
    lock_dir.mkdir(parents=True)
    (lock_dir / "owner.json").write_text(
        json.dumps({"pid": 99999, "acquired_at": acquired_at}), encoding="utf-8"
    )
    return lock_dir


def test_acquire_and_release_roundtrip(tmp_path: Path) -> None:
    target = tmp_path / "state" / "session.json"
    manager = LockManager(target, _settings(), clock=lambda: 1000.0)

    asyncio.run(manager.acquire())

    assert manager.held is True
    assert manager.lock_dir.is_dir()
    owner = json.loads((manager.lock_dir / "owner.json").read_text(encoding="utf-8"))
    assert owner["acquired_at"] == 1000.0

    manager.release()

    assert manager.held is False
    assert not manager.lock_dir.exists()


def test_second_caller_fails_while_lock_is_fresh(tmp_path: Path) -> None:
    target = tmp_path / "session.json"
    first = LockManager(target, _settings(), clock=lambda: 1000.0)
    second = LockManager(target, _settings(), clock=lambda: 1005.0)

    asyncio.run(first.acquire())
    with pytest.raises(LockAcquisitionError):
        asyncio.run(second.acquire())

    first.release()
    asyncio.run(second.acquire())
    assert second.held is True
    second.release()


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    target = tmp_path / "session.json"
    _plant_lock(target, acquired_at=0.0)
    manager = LockManager(target, _settings(), clock=lambda: 100.0)

    assert manager.is_stale() is True
    asyncio.run(manager.acquire())

    assert manager.held is True
    owner = json.loads((manager.lock_dir / "owner.json").read_text(encoding="utf-8"))
    assert owner["acquired_at"] == 100.0
    manager.release()


def test_missing_owner_record_falls_back_to_directory_mtime(tmp_path: Path) -> None:
    target = tmp_path / "session.json"
    lock_dir = target.with_name("session.json.lock")
    lock_dir.mkdir()
    manager = LockManager(target, _settings())

    assert manager.acquired_at() == lock_dir.stat().st_mtime
    assert manager.is_stale() is False


class StubbornLock(LockManager):
    """A lock whose stale holder immediately re-creates it."""

    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.reclaims = 0

    def _reclaim(self) -> bool:
        self.reclaims += 1
        return True


def test_reclaim_attempts_are_bounded(tmp_path: Path) -> None:
    target = tmp_path / "session.json"
    _plant_lock(target, acquired_at=0.0)
    manager = StubbornLock(target, _settings(max_retries=6), clock=lambda: 100.0)

    with pytest.raises(LockAcquisitionError):
        asyncio.run(manager.acquire())

    assert manager.reclaims == 2


def test_with_lock_runs_callable_and_releases(tmp_path: Path) -> None:
    target = tmp_path / "session.json"

    result = asyncio.run(with_lock(target, lambda: "done", _settings()))

    assert result == "done"
    assert not target.with_name("session.json.lock").exists()


def test_hold_releases_on_error(tmp_path: Path) -> None:
    target = tmp_path / "session.json"
    manager = LockManager(target, _settings())

    async def _boom() -> None:
        async with manager.hold():
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(_boom())

    assert not manager.lock_dir.exists()


class SteppingClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_release_after_reclaim_leaves_the_new_holder_alone(tmp_path: Path) -> None:
    target = tmp_path / "session.json"
    clock = SteppingClock(1000.0)
    slow = LockManager(target, _settings(), clock=clock)
    fresh = LockManager(target, _settings(), clock=clock)
    third = LockManager(target, _settings(), clock=clock)

    assert slow.try_acquire() is True
    clock.now += 60
    asyncio.run(fresh.acquire())

    slow.release()

    assert slow.held is False
    assert fresh.held is True
    assert fresh.lock_dir.is_dir()
    assert third.try_acquire() is False

    fresh.release()
    assert third.try_acquire() is True
    third.release()


def test_only_one_of_two_stale_contenders_wins(tmp_path: Path) -> None:
    target = tmp_path / "session.json"
    _plant_lock(target, acquired_at=0.0)
    first = LockManager(target, _settings(), clock=lambda: 100.0)
    second = LockManager(target, _settings(), clock=lambda: 100.0)

    assert first.is_stale() and second.is_stale()
    assert first._reclaim() is True
    assert first.try_acquire() is True

    assert second._reclaim() is False
    assert second.try_acquire() is False

    owner = json.loads((first.lock_dir / "owner.json").read_text(encoding="utf-8"))
    assert owner["acquired_at"] == 100.0
    assert sorted(path.name for path in tmp_path.iterdir()) == ["session.json.lock"]
    first.release()
    assert not first.lock_dir.exists()
