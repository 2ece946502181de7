"""Advisory file locks guarding mutating suictl commands.

suictl is designed for one operator running one command at a time. The
install location, backup tree and version record are shared between
invocations, so ``install``, ``update``, ``switch``, ``uninstall`` and
``clean`` serialise on ``<runtime_dir>/suictl.lock``. Read-only commands do
not lock.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "suictl"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock file cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock could not be acquired before the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire ``flock``-based locks under *root*."""

    def __init__(self, root: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.root = root.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in name)
        return self.root / f"{safe}.lock"

    @contextmanager
    def acquire(
        self,
        name: str,
        *,
        purpose: str | None = None,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold an exclusive lock on *name* for the duration of the block."""
        path = self.lock_path(name)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path, purpose)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def mutate_installation(
        self,
        purpose: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the global lock that serialises install/switch/clean commands."""
        with self.acquire(GLOBAL_LOCK_NAME, purpose=purpose, timeout=timeout) as handle:
            yield handle


def _write_metadata(fd: int, path: Path, purpose: str | None) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "purpose": purpose,
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    data = (json.dumps(payload) + "\n").encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
