"""The active installation: executables, activation symlink and version record.

An :class:`InstallationStore` is built once per invocation from the resolved
configuration and handed to the components that need the install location.
The version record lives next to the executables as ``.suictl-version``::

    environment=testnet
    version=1.40.1
"""
from __future__ import annotations

import fnmatch
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from ..artifacts import Environment, ReleaseTag

VERSION_RECORD_NAME = ".suictl-version"
PRIMARY_EXECUTABLE = "sui"
EXECUTABLE_PATTERNS: tuple[str, ...] = ("sui", "sui-*", "move*")


class InstallationError(RuntimeError):
    """Raised when the install location or version record cannot be used."""


@dataclass(frozen=True, slots=True)
class VersionRecord:
    """Which (environment, version) backs the active installation."""

    environment: Environment
    version: str

    @property
    def tag(self) -> ReleaseTag:
        """Return the release tag for this record."""
        return ReleaseTag(environment=self.environment, version=self.version)

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"environment": self.environment.value, "version": self.version}


def is_executable_name(name: str) -> bool:
    """Return True when *name* matches one of the managed executable patterns."""
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in EXECUTABLE_PATTERNS)


@dataclass(frozen=True)
class InstallationStore:
    """Paths that make up the active installation."""

    install_dir: Path
    symlink_path: Path
    backup_dir: Path | None = None

    def __post_init__(self) -> None:
        """Normalise paths after initialisation."""
        object.__setattr__(self, "install_dir", self.install_dir.expanduser())
        object.__setattr__(self, "symlink_path", self.symlink_path.expanduser())
        if self.backup_dir is not None:
            object.__setattr__(self, "backup_dir", self.backup_dir.expanduser())

    @property
    def primary_executable(self) -> Path:
        """Return the path of the active ``sui`` binary."""
        return self.install_dir / PRIMARY_EXECUTABLE

    @property
    def version_record_path(self) -> Path:
        """Return the version record location."""
        return self.install_dir / VERSION_RECORD_NAME

    # ------------------------------------------------------------------
    # Version record
    # ------------------------------------------------------------------
    def load_version_record(self) -> VersionRecord | None:
        """Return the persisted record, or ``None`` when absent or malformed.

        A record that exists but cannot be read raises :class:`InstallationError`.
        """
        path = self.version_record_path
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise InstallationError(f"Failed to read version record {path}: {exc}") from exc

        values: dict[str, str] = {}
        for line in text.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key.strip()] = value.strip()

        environment = values.get("environment", "")
        version = values.get("version", "").removeprefix("v")
        if not environment or not version:
            return None
        try:
            return VersionRecord(environment=Environment.parse(environment), version=version)
        except ValueError:
            return None

    def save_version_record(self, environment: Environment | str, version: str) -> VersionRecord:
        """Overwrite the version record with (*environment*, *version*)."""
        record = VersionRecord(
            environment=Environment.parse(environment),
            version=version.strip().removeprefix("v"),
        )
        self.install_dir.mkdir(parents=True, exist_ok=True)
        payload = f"environment={record.environment.value}\nversion={record.version}\n"
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.install_dir),
            prefix=f"{VERSION_RECORD_NAME}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_path, self.version_record_path)
            os.chmod(self.version_record_path, 0o644)
        finally:
            tmp_path.unlink(missing_ok=True)
        return record

    def clear_version_record(self) -> None:
        """Delete the version record if present."""
        self.version_record_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Executables and symlink
    # ------------------------------------------------------------------
    def installed_executables(self) -> list[Path]:
        """Return managed executables currently in the install location."""
        if not self.install_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.install_dir.iterdir()
            if is_executable_name(path.name) and (path.is_file() or path.is_symlink())
        )

    def symlink_target(self) -> Path | None:
        """Return where the activation symlink points, if it exists."""
        if not self.symlink_path.is_symlink():
            return None
        return Path(os.readlink(self.symlink_path))

    def link_primary(self) -> Path:
        """Point the activation symlink at the primary executable."""
        link = self.symlink_path
        link.parent.mkdir(parents=True, exist_ok=True)
        temp_link = link.with_name(f".{link.name}.suictl-tmp")
        if temp_link.exists() or temp_link.is_symlink():
            temp_link.unlink()
        temp_link.symlink_to(self.primary_executable)
        temp_link.replace(link)
        return link

    def unlink_primary(self) -> bool:
        """Remove the activation symlink; returns True if one was removed."""
        if self.symlink_path.is_symlink():
            self.symlink_path.unlink()
            return True
        return False

    def remove_installation(self) -> list[Path]:
        """Remove the install location, keeping a backup root nested inside it.

        When the backup root *is* the install location, every real directory
        in it is a backup entry and is kept; only files and links go.
        """
        if not self.install_dir.exists():
            return []
        shared_root = self._backup_root_is_install_dir()
        keep = self._nested_backup_child()
        if keep is None and not shared_root:
            shutil.rmtree(self.install_dir)
            return [self.install_dir]

        removed: list[Path] = []
        for child in sorted(self.install_dir.iterdir()):
            if child == keep:
                continue
            if shared_root and child.is_dir() and not child.is_symlink():
                continue
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
            removed.append(child)
        return removed

    def _backup_root_is_install_dir(self) -> bool:
        return (
            self.backup_dir is not None
            and self.backup_dir.resolve() == self.install_dir.resolve()
        )

    def _nested_backup_child(self) -> Path | None:
        """Return the install_dir child that contains the backup root, if any."""
        if self.backup_dir is None:
            return None
        install_dir = self.install_dir.resolve()
        backup_dir = self.backup_dir.resolve()
        if backup_dir == install_dir or install_dir not in backup_dir.parents:
            return None
        relative = backup_dir.relative_to(install_dir)
        return self.install_dir / relative.parts[0]


__all__ = [
    "EXECUTABLE_PATTERNS",
    "InstallationError",
    "InstallationStore",
    "PRIMARY_EXECUTABLE",
    "VERSION_RECORD_NAME",
    "VersionRecord",
    "is_executable_name",
]
