"""Structured operation logging for suictl.

Each CLI command runs inside :meth:`StructuredLogger.operation`, which yields an
:class:`OperationScope`. The scope collects the steps taken, the time spent
waiting on locks and a single result; when the scope exits one JSON record is
appended to ``operations.jsonl`` in the configured log directory. Error
results are mirrored to ``errors.jsonl`` so failures are easy to grep.

Logging is best effort: if the directory cannot be created or a write fails,
the logger disables itself and the command carries on.
"""
from __future__ import annotations

import json
import os
import pwd
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
ERRORS_LOG = "errors.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _actor() -> dict[str, object]:
    uid = os.getuid()
    try:
        user = pwd.getpwuid(uid).pw_name
    except KeyError:  # pragma: no cover - container without passwd entry
        user = str(uid)
    return {"uid": uid, "user": user, "pid": os.getpid()}


class OperationScope:
    """Mutable record for a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self._args = dict(args or {})
        self._target = dict(target or {})
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._lock_wait_ms: int | None = None
        self._started_at = _now_iso()
        self._started = time.monotonic()

    @property
    def result(self) -> dict[str, object] | None:
        """Return the recorded result (``None`` until one is set)."""
        return self._result

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a named step with its *status*."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self._steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self._lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            errors=list(errors) if errors else [message],
            backups=backups,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitise(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self._result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(self._args),
            "target": _sanitise(self._target),
            "actor": _actor(),
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": duration_ms,
            "lock_wait_ms": self._lock_wait_ms,
            "steps": list(self._steps),
            "result": self._result,
            "context": {"suictl_version": __version__},
        }


class StructuredLogger:
    """Append operation records to JSONL files under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unusable."""
        self.log_dir = log_dir.expanduser()
        self._operations_log_path = self.log_dir / OPERATIONS_LOG
        self._errors_log_path = self.log_dir / ERRORS_LOG
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(
                    f"{command} aborted: {type(exc).__name__}",
                    errors=[str(exc) or type(exc).__name__],
                )
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False) + "\n"
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line)
            result = record.get("result")
            if isinstance(result, Mapping) and result.get("status") == "error":
                with self._errors_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
