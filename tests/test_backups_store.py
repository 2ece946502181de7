"""Tests for the backup store and retention planning."""
from __future__ import annotations

import itertools
import os
import shutil
from pathlib import Path

import pytest

from suictl.artifacts import ArtifactKey, Environment
from suictl.backups import BackupError, BackupStore, BackupWriteFailed, RetentionPlan
from suictl.state import VersionRecord


def _payload(tmp_path: Path, label: str = "1.40.1") -> Path:
    payload = tmp_path / f"payload-{label}"
    payload.mkdir(parents=True, exist_ok=True)
    (payload / "sui").write_text(f"sui {label}\n", encoding="utf-8")
    (payload / "move-analyzer").write_text(f"move {label}\n", encoding="utf-8")
    os.chmod(payload / "sui", 0o600)
    return payload


def _seed(store: BackupStore, *names: str) -> None:
    for name in names:
        path = store.root / name
        path.mkdir(parents=True, exist_ok=True)
        (path / "sui").write_text(name, encoding="utf-8")


def test_put_copies_payload_under_canonical_name(tmp_path: Path) -> None:
    """put() promotes the payload and leaves no staging directories behind."""
    store = BackupStore(tmp_path / "backup")
    key = ArtifactKey.create("testnet-v1.40.1", "ubuntu", "x86_64")

    entry = store.put(key, _payload(tmp_path))

    assert entry.name == "sui-testnet-v1.40.1-ubuntu-x86_64"
    assert entry.path == store.path_for(key)
    assert (entry.path / "sui").read_text(encoding="utf-8") == "sui 1.40.1\n"
    assert (entry.path / "sui").stat().st_mode & 0o777 == 0o755
    assert store.exists(key)
    assert store.get(key) == entry
    assert [child.name for child in store.root.iterdir()] == [entry.name]


def test_put_replaces_existing_entry(tmp_path: Path) -> None:
    """A second put for the same key replaces the previous content."""
    store = BackupStore(tmp_path / "backup")
    key = ArtifactKey.create("testnet-v1.40.1", "ubuntu", "x86_64")
    store.put(key, _payload(tmp_path, "first"))

    entry = store.put(key, _payload(tmp_path, "second"))

    assert (entry.path / "sui").read_text(encoding="utf-8") == "sui second\n"
    assert [child.name for child in store.root.iterdir()] == [entry.name]


def test_put_failure_raises_write_failed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Copy errors surface as BackupWriteFailed and leave no entry."""
    store = BackupStore(tmp_path / "backup")
    key = ArtifactKey.create("testnet-v1.40.1", "ubuntu", "x86_64")

    def fail_copy(*args: object, **kwargs: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(shutil, "copytree", fail_copy)

    with pytest.raises(BackupWriteFailed) as excinfo:
        store.put(key, _payload(tmp_path))

    assert excinfo.value.context["key"] == key.encode()
    assert not store.exists(key)
    assert list(store.root.iterdir()) == []


def test_list_entries_keeps_unrecognised_names(tmp_path: Path) -> None:
    """Foreign directories are listed without a key; hidden and plain files are not."""
    store = BackupStore(tmp_path / "backup")
    _seed(store, "sui-testnet-v1.40.1-ubuntu-x86_64", "old-build", ".suictl-stage-x")
    (store.root / "notes.txt").write_text("hi", encoding="utf-8")

    entries = store.list_entries()

    assert [entry.name for entry in entries] == ["old-build", "sui-testnet-v1.40.1-ubuntu-x86_64"]
    assert entries[0].key is None
    assert entries[1].environment is Environment.TESTNET
    assert "environment" not in entries[0].to_dict()
    assert entries[1].to_dict()["tag"] == "testnet-v1.40.1"


def test_grouped_by_environment(tmp_path: Path) -> None:
    """Only well-formed entries are grouped."""
    store = BackupStore(tmp_path / "backup")
    _seed(
        store,
        "sui-testnet-v1.40.1-ubuntu-x86_64",
        "sui-testnet-v1.40.0-ubuntu-x86_64",
        "sui-mainnet-v1.39.0-ubuntu-x86_64",
        "garbage",
    )

    groups = store.grouped()

    assert set(groups) == {Environment.TESTNET, Environment.MAINNET}
    assert len(groups[Environment.TESTNET]) == 2
    assert BackupStore(tmp_path / "absent").grouped() == {}


def test_retention_keeps_latest_and_active(tmp_path: Path) -> None:
    """Latest by semantic version and the active build survive."""
    store = BackupStore(tmp_path / "backup")
    _seed(
        store,
        "sui-testnet-v1.9.0-ubuntu-x86_64",
        "sui-testnet-v1.10.0-ubuntu-x86_64",
        "sui-testnet-v1.8.0-ubuntu-x86_64",
        "sui-testnet-v1.7.0-ubuntu-x86_64",
    )
    active = VersionRecord(environment=Environment.TESTNET, version="1.8.0")

    plan = store.retention_plan("testnet", active)

    assert plan.latest is not None
    assert plan.latest.name == "sui-testnet-v1.10.0-ubuntu-x86_64"
    assert [entry.name for entry in plan.active] == ["sui-testnet-v1.8.0-ubuntu-x86_64"]
    assert sorted(entry.name for entry in plan.delete) == [
        "sui-testnet-v1.7.0-ubuntu-x86_64",
        "sui-testnet-v1.9.0-ubuntu-x86_64",
    ]
    assert plan.to_dict()["latest"] == "sui-testnet-v1.10.0-ubuntu-x86_64"


def test_retention_keeps_every_target_of_active_version(tmp_path: Path) -> None:
    """Active matches on (environment, version) regardless of platform/arch."""
    store = BackupStore(tmp_path / "backup")
    _seed(
        store,
        "sui-testnet-v1.40.1-ubuntu-x86_64",
        "sui-testnet-v1.39.0-ubuntu-x86_64",
        "sui-testnet-v1.39.0-ubuntu-aarch64",
        "sui-testnet-v1.38.0-ubuntu-x86_64",
    )
    active = VersionRecord(environment=Environment.TESTNET, version="1.39.0")

    plan = store.retention_plan(Environment.TESTNET, active)

    assert len(plan.active) == 2
    assert [entry.name for entry in plan.delete] == ["sui-testnet-v1.38.0-ubuntu-x86_64"]


def test_retention_ignores_active_from_other_environment(tmp_path: Path) -> None:
    """An active mainnet record protects nothing in testnet."""
    store = BackupStore(tmp_path / "backup")
    _seed(store, "sui-testnet-v1.40.1-ubuntu-x86_64", "sui-testnet-v1.39.0-ubuntu-x86_64")
    active = VersionRecord(environment=Environment.MAINNET, version="1.39.0")

    plan = store.retention_plan("testnet", active)

    assert plan.active == ()
    assert [entry.name for entry in plan.delete] == ["sui-testnet-v1.39.0-ubuntu-x86_64"]


def test_single_entry_is_untouched(tmp_path: Path) -> None:
    """Environments with one backup are never pruned."""
    store = BackupStore(tmp_path / "backup")
    _seed(store, "sui-devnet-v1.41.0-ubuntu-x86_64")

    plan = store.retention_plan("devnet", None)

    assert plan.is_empty
    assert plan.latest is not None
    assert store.retention_plan("mainnet", None) == RetentionPlan(
        environment=Environment.MAINNET, latest=None
    )


@pytest.mark.parametrize(
    "order",
    list(itertools.permutations(["1.2.0", "1.10.0", "1.3.5"])),
)
def test_retention_never_deletes_latest_or_active(tmp_path: Path, order: tuple[str, ...]) -> None:
    """Whatever order entries appear in, latest and active are protected."""
    store = BackupStore(tmp_path / "backup")
    _seed(store, *(f"sui-mainnet-v{version}-ubuntu-x86_64" for version in order))
    active = VersionRecord(environment=Environment.MAINNET, version=order[0])

    plan = store.retention_plan("mainnet", active)
    deleted = {entry.name for entry in plan.delete}

    assert "sui-mainnet-v1.10.0-ubuntu-x86_64" not in deleted
    assert f"sui-mainnet-v{order[0]}-ubuntu-x86_64" not in deleted
    assert len(plan.keep) + len(plan.delete) == 3


def test_apply_reaches_fixpoint(tmp_path: Path) -> None:
    """Applying a plan and re-planning yields nothing further to delete."""
    store = BackupStore(tmp_path / "backup")
    _seed(
        store,
        "sui-testnet-v1.40.1-ubuntu-x86_64",
        "sui-testnet-v1.40.0-ubuntu-x86_64",
        "sui-testnet-v1.39.0-ubuntu-x86_64",
        "sui-mainnet-v1.39.0-ubuntu-x86_64",
        "sui-mainnet-v1.38.0-ubuntu-x86_64",
    )
    active = VersionRecord(environment=Environment.TESTNET, version="1.39.0")

    plans = store.retention_plans(active)
    deleted = [entry.name for plan in plans for entry in store.apply(plan)]

    assert sorted(deleted) == [
        "sui-mainnet-v1.38.0-ubuntu-x86_64",
        "sui-testnet-v1.40.0-ubuntu-x86_64",
    ]
    assert all(plan.is_empty for plan in store.retention_plans(active))
    # Re-applying a stale plan skips entries that are already gone.
    assert store.apply(plans[0]) == []


def test_retention_plans_limited_to_environments(tmp_path: Path) -> None:
    """Only the requested environments are planned."""
    store = BackupStore(tmp_path / "backup")
    _seed(store, "sui-testnet-v1.40.1-ubuntu-x86_64", "sui-mainnet-v1.39.0-ubuntu-x86_64")

    plans = store.retention_plans(None, environments=["mainnet", "devnet"])

    assert [plan.environment for plan in plans] == [Environment.MAINNET]


def test_apply_refuses_protected_entries(tmp_path: Path) -> None:
    """A hand-built plan that deletes its own latest entry is rejected."""
    store = BackupStore(tmp_path / "backup")
    _seed(store, "sui-testnet-v1.40.1-ubuntu-x86_64", "sui-testnet-v1.40.0-ubuntu-x86_64")
    entries = store.grouped()[Environment.TESTNET]
    plan = RetentionPlan(
        environment=Environment.TESTNET,
        latest=entries[0],
        delete=tuple(entries),
    )

    with pytest.raises(BackupError):
        store.apply(plan)

    assert len(store.list_entries()) == 2
