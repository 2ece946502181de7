"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from suictl.logging import StructuredLogger


def _records(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_unusable_log_directory_disables_logging(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A log directory that cannot be created turns the logger into a no-op."""
    log_dir = tmp_path / "logs"
    real_mkdir = Path.mkdir

    def refuse(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("read-only /var/log")
        real_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", refuse)
    logger = StructuredLogger(log_dir)

    with logger.operation("status") as op:
        op.success("Reported status.")

    assert logger._enabled is False  # type: ignore[attr-defined]
    assert not log_dir.exists()


def test_write_failure_disables_later_writes(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """After one failed append the logger stops trying; commands still succeed."""
    logger = StructuredLogger(tmp_path / "logs")
    target = logger._operations_log_path  # type: ignore[attr-defined]
    real_open = Path.open
    attempts: list[Path] = []

    def disk_full(self: Path, *args: object, **kwargs: object) -> object:
        if self == target:
            attempts.append(self)
            raise OSError("No space left on device")
        return real_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", disk_full)

    for command in ("install", "clean"):
        with logger.operation(command) as op:
            op.success("ok")

    assert attempts == [target]
    assert logger._enabled is False  # type: ignore[attr-defined]


def test_warning_result_is_json_safe(tmp_path: Path) -> None:
    """Paths and arbitrary objects in args and context are stringified."""
    logger = StructuredLogger(tmp_path / "logs")

    class Opaque:
        def __str__(self) -> str:
            return "opaque"

    with logger.operation("clean", args={"backup_dir": Path("/opt/sui/backup")}) as op:
        op.warning(
            "Deleted with warnings.",
            warnings=("registry not updated",),
            changed=1,
            backups=("sui-testnet-v1.40.0-ubuntu-x86_64",),
            context={"path": Path("/opt/sui"), "handle": Opaque(), "keys": ("a", "b")},
        )

    (record,) = _records(logger._operations_log_path)  # type: ignore[attr-defined]
    assert record["args"] == {"backup_dir": "/opt/sui/backup"}
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["registry not updated"]
    assert result["errors"] == []
    assert result["backups"] == ["sui-testnet-v1.40.0-ubuntu-x86_64"]
    assert result["context"] == {"path": "/opt/sui", "handle": "opaque", "keys": ["a", "b"]}


def test_error_result_is_mirrored(tmp_path: Path) -> None:
    """Error results default their error list and are copied to errors.jsonl."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("status") as op:
        op.success("fine")
    with logger.operation("install") as op:
        op.error("Download failed.", rc=4, context={"status": 404})

    operations = _records(logger._operations_log_path)  # type: ignore[attr-defined]
    errors = _records(logger._errors_log_path)  # type: ignore[attr-defined]
    assert len(operations) == 2
    assert errors == [operations[1]]
    result = errors[0]["result"]
    assert result["errors"] == ["Download failed."]
    assert result["rc"] == 4
    assert result["context"] == {"status": 404}
    assert errors[0]["context"]["suictl_version"]


def test_operation_records_steps_and_lock_wait(tmp_path: Path) -> None:
    """Steps, lock wait and timing land in the operations log."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "install",
        args={"env": "testnet"},
        target={"kind": "installation"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("resolve.tag", detail="testnet-v1.40.1")
        op.add_step("confirm", status="info", detail="--yes")
        op.success("Installed.", changed=3)

    lines = logger._operations_log_path.read_text(encoding="utf-8").splitlines()  # type: ignore[attr-defined]
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["command"] == "install"
    assert record["args"] == {"env": "testnet"}
    assert record["target"] == {"kind": "installation"}
    assert record["lock_wait_ms"] == 12
    assert [step["name"] for step in record["steps"]] == ["resolve.tag", "confirm"]
    assert record["steps"][0]["detail"] == "testnet-v1.40.1"
    assert record["result"]["status"] == "success"
    assert record["duration_ms"] >= 0
    assert not logger._errors_log_path.exists()  # type: ignore[attr-defined]


def test_unhandled_exception_recorded_as_error(tmp_path: Path) -> None:
    """An exception escaping the scope is logged before propagating."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("switch"):
            raise RuntimeError("disk vanished")

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    assert record["result"]["status"] == "error"
    assert record["result"]["errors"] == ["disk vanished"]
    assert "RuntimeError" in record["result"]["message"]
