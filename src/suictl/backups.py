"""Backup store for previously installed Sui builds.

Each backup is a directory under the backup root named by the canonical
:class:`~suictl.artifacts.ArtifactKey` (``sui-<tag>-<platform>-<arch>``) and
holding the extracted payload of that build. Entries are staged in a hidden
temporary directory inside the root and renamed into place only once the copy
is complete, so a half-written backup is never visible under its final name.
"""
from __future__ import annotations

import os
import secrets
import shutil
import tempfile
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from packaging.version import Version

from .artifacts import ArtifactKey, ArtifactKeyError, Environment
from .state.installation import VersionRecord

STAGING_PREFIX = ".suictl-stage-"
DISPLACED_PREFIX = ".suictl-old-"
PAYLOAD_MODE = 0o755


class BackupError(RuntimeError):
    """Raised when backup operations fail."""

    def __init__(self, message: str, *, context: Mapping[str, object] | None = None) -> None:
        """Store *message* plus structured *context* (key, path, ...)."""
        super().__init__(message)
        self.context = dict(context or {})


class BackupWriteFailed(BackupError):
    """Raised when a payload cannot be promoted into the backup store."""


@dataclass(frozen=True, slots=True)
class BackupEntry:
    """A directory in the backup root, with its parsed key when well formed."""

    name: str
    path: Path
    key: ArtifactKey | None = None

    @property
    def environment(self) -> Environment | None:
        """Return the environment embedded in the name, if it parsed."""
        return self.key.environment if self.key is not None else None

    def matches(self, record: VersionRecord | None) -> bool:
        """Return True when this entry backs *record*'s (environment, version)."""
        if record is None or self.key is None:
            return False
        return self.key.environment is record.environment and self.key.version == record.version

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "path": str(self.path)}
        if self.key is not None:
            payload.update(
                {
                    "environment": self.key.environment.value,
                    "version": self.key.version,
                    "tag": str(self.key.tag),
                    "platform": self.key.platform,
                    "arch": self.key.arch,
                }
            )
        return payload


@dataclass(frozen=True, slots=True)
class RetentionPlan:
    """Partition of one environment's backups into keep and delete sets."""

    environment: Environment
    latest: BackupEntry | None
    active: tuple[BackupEntry, ...] = ()
    delete: tuple[BackupEntry, ...] = ()

    @property
    def keep(self) -> tuple[BackupEntry, ...]:
        """Return the entries the plan protects (latest first, then active)."""
        kept: list[BackupEntry] = []
        if self.latest is not None:
            kept.append(self.latest)
        for entry in self.active:
            if entry not in kept:
                kept.append(entry)
        return tuple(kept)

    @property
    def is_empty(self) -> bool:
        """Return True when nothing would be deleted."""
        return not self.delete

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "environment": self.environment.value,
            "latest": self.latest.name if self.latest else None,
            "active": [entry.name for entry in self.active],
            "delete": [entry.name for entry in self.delete],
        }


@dataclass(slots=True)
class BackupStore:
    """Manage backup directories under *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = self.root.expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupWriteFailed(
                f"Failed to prepare backup root {self.root}: {exc}",
                context={"path": str(self.root)},
            ) from exc

    def path_for(self, key: ArtifactKey) -> Path:
        """Return the directory that holds (or would hold) *key*."""
        return self.root / key.encode()

    def exists(self, key: ArtifactKey) -> bool:
        """Return True when a backup for *key* is present."""
        return self.path_for(key).is_dir()

    def get(self, key: ArtifactKey) -> BackupEntry | None:
        """Return the entry for *key* if present."""
        path = self.path_for(key)
        if not path.is_dir():
            return None
        return BackupEntry(name=path.name, path=path, key=key)

    # Enumeration ---------------------------------------------------
    def list_entries(self) -> list[BackupEntry]:
        """Return every backup directory, sorted by name.

        Names that do not decode to an :class:`ArtifactKey` are still returned
        (with ``key=None``) so raw listings can show them.
        """
        if not self.root.is_dir():
            return []
        entries: list[BackupEntry] = []
        for child in sorted(self.root.iterdir(), key=lambda item: item.name):
            if child.name.startswith(".") or not child.is_dir():
                continue
            try:
                key: ArtifactKey | None = ArtifactKey.decode(child.name)
            except ArtifactKeyError:
                key = None
            entries.append(BackupEntry(name=child.name, path=child, key=key))
        return entries

    def grouped(self) -> dict[Environment, list[BackupEntry]]:
        """Return well-formed entries grouped by environment."""
        groups: dict[Environment, list[BackupEntry]] = defaultdict(list)
        for entry in self.list_entries():
            if entry.key is not None:
                groups[entry.key.environment].append(entry)
        return dict(groups)

    # Mutation ------------------------------------------------------
    def put(self, key: ArtifactKey, payload_dir: Path) -> BackupEntry:
        """Copy *payload_dir* into the store as *key*, replacing any prior entry."""
        self.ensure_root()
        final = self.path_for(key)
        context = {"key": key.encode(), "path": str(final)}
        displaced: Path | None = None
        try:
            staging_root = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=str(self.root)))
        except OSError as exc:
            raise BackupWriteFailed(
                f"Failed to stage backup for {key}: {exc}", context=context
            ) from exc

        try:
            staged = staging_root / key.encode()
            shutil.copytree(payload_dir, staged, symlinks=True)
            _normalise_permissions(staged)

            if final.exists():
                displaced = self.root / f"{DISPLACED_PREFIX}{secrets.token_hex(3)}-{final.name}"
                os.replace(final, displaced)
            try:
                os.replace(staged, final)
            except OSError:
                if displaced is not None:
                    os.replace(displaced, final)
                    displaced = None
                raise
        except OSError as exc:
            raise BackupWriteFailed(
                f"Failed to write backup {final}: {exc}", context=context
            ) from exc
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)
            if displaced is not None:
                shutil.rmtree(displaced, ignore_errors=True)

        return BackupEntry(name=final.name, path=final, key=key)

    # Retention -----------------------------------------------------
    def retention_plan(
        self,
        environment: Environment | str,
        active: VersionRecord | None,
    ) -> RetentionPlan:
        """Return which backups of *environment* to keep and which to delete.

        The highest version (ties broken by name) and every entry matching the
        *active* record are kept. Environments with at most one backup are
        never touched.
        """
        env = Environment.parse(environment)
        entries = self.grouped().get(env, [])
        if not entries:
            return RetentionPlan(environment=env, latest=None)

        latest = max(entries, key=_version_sort_key)
        active_entries = tuple(entry for entry in entries if entry.matches(active))
        if len(entries) <= 1:
            return RetentionPlan(environment=env, latest=latest, active=active_entries)

        delete = tuple(
            entry for entry in entries if entry != latest and entry not in active_entries
        )
        return RetentionPlan(
            environment=env,
            latest=latest,
            active=active_entries,
            delete=delete,
        )

    def retention_plans(
        self,
        active: VersionRecord | None,
        environments: Iterable[Environment | str] | None = None,
    ) -> list[RetentionPlan]:
        """Return one plan per environment that has backups."""
        selected = (
            [Environment.parse(item) for item in environments]
            if environments is not None
            else list(Environment)
        )
        groups = self.grouped()
        return [self.retention_plan(env, active) for env in selected if env in groups]

    def apply(self, plan: RetentionPlan) -> list[BackupEntry]:
        """Delete the entries in *plan*; already-missing entries are skipped."""
        protected = set(plan.keep)
        conflicts = [entry.name for entry in plan.delete if entry in protected]
        if conflicts:
            raise BackupError(
                "Retention plan would delete protected backups: " + ", ".join(conflicts),
                context={"environment": plan.environment.value},
            )

        deleted: list[BackupEntry] = []
        for entry in plan.delete:
            if not entry.path.exists():
                continue
            try:
                shutil.rmtree(entry.path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BackupError(
                    f"Failed to delete backup {entry.path}: {exc}",
                    context={"path": str(entry.path)},
                ) from exc
            deleted.append(entry)
        return deleted


def _version_sort_key(entry: BackupEntry) -> tuple[Version, str]:
    key = cast(ArtifactKey, entry.key)
    return (key.tag.semver, entry.name)


def _normalise_permissions(root: Path) -> None:
    """Make the staged payload owned by the installing user and executable."""
    uid, gid = os.getuid(), os.getgid()
    for path in [root, *root.rglob("*")]:
        if path.is_symlink():
            continue
        os.chown(path, uid, gid)
        os.chmod(path, PAYLOAD_MODE)


__all__ = [
    "BackupEntry",
    "BackupError",
    "BackupStore",
    "BackupWriteFailed",
    "RetentionPlan",
]
