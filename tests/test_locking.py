"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from suictl.locking import LockError, LockManager, LockTimeoutError


def test_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "suictl.lock"
    with manager.mutate_installation("install") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert data["purpose"] == "install"
        assert data["acquired_at"].endswith("Z")

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.mutate_installation("clean", timeout=0.2):
        pass
    assert lock_path.exists()


def test_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_installation("install"):
        with pytest.raises(LockTimeoutError):
            with manager.mutate_installation("switch", timeout=0.1):
                pass


def test_distinct_names_do_not_contend(tmp_path: Path) -> None:
    """Locks with different names are independent."""
    manager = LockManager(tmp_path / "run", default_timeout=0.2)

    with manager.acquire("alpha"):
        with manager.acquire("beta") as handle:
            assert handle.path.name == "beta.lock"


def test_lock_path_sanitises_names(tmp_path: Path) -> None:
    """Unsafe characters never escape the lock directory."""
    manager = LockManager(tmp_path / "run")

    path = manager.lock_path("../evil name")

    assert path.parent == tmp_path / "run"
    assert "/" not in path.name
    assert " " not in path.name


def test_unwritable_lock_directory_raises(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Failure to create the lock file surfaces as LockError."""
    manager = LockManager(tmp_path / "run")

    def fail_open(*args: object, **kwargs: object) -> int:
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(os, "open", fail_open)

    with pytest.raises(LockError):
        with manager.mutate_installation("install"):
            pass
