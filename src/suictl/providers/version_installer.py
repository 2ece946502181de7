"""Install, switch and uninstall Sui node builds."""
from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

import httpx

from ..archive import ArchiveError, extract_archive, locate_payload
from ..artifacts import (
    DEFAULT_DOWNLOAD_BASE,
    DEFAULT_REPOSITORY,
    ArtifactKey,
    ArtifactKeyError,
    Environment,
    ReleaseTag,
    download_url,
    parse_reference,
    resolve_tag,
)
from ..backups import BackupEntry, BackupStore
from ..state.installation import (
    PRIMARY_EXECUTABLE,
    InstallationError,
    InstallationStore,
    VersionRecord,
    is_executable_name,
)
from ..state.registry import StateRegistry, StateRegistryError
from .release_provider import ReleaseProvider

EXECUTABLE_MODE = 0o755
_WORKDIR_PREFIX = "suictl-"
_NEW_SUFFIX = ".suictl-new"


class VersionInstallError(RuntimeError):
    """Raised when installing or switching a Sui build fails."""

    def __init__(self, message: str, *, context: Mapping[str, object] | None = None) -> None:
        """Store *message* plus structured *context* (environment, tag, path, url)."""
        super().__init__(message)
        self.context = dict(context or {})


class DownloadFailed(VersionInstallError):
    """Raised when the archive download errors, answers non-2xx or is empty."""


class ExtractFailed(VersionInstallError):
    """Raised when the downloaded archive cannot be extracted."""


class MissingPrimaryExecutable(ExtractFailed):
    """Raised when an extracted archive has no ``sui`` executable."""


class ActivationFailedAfterBackup(VersionInstallError):
    """Raised when the backup was written but activating it failed.

    The backup named in ``context["backup"]`` is intact and can be restored
    with ``suictl switch``.
    """


class SwitchVerificationFailed(VersionInstallError):
    """Raised when a switch cannot confirm the executable and symlink exist."""


class UnresolvableBackupReference(VersionInstallError):
    """Raised when a switch target names neither a backup nor a release."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class InstallPlan:
    """Everything an install will do, computed without side effects."""

    key: ArtifactKey
    url: str
    backup_path: Path
    install_dir: Path
    symlink_path: Path
    replaces_backup: bool = False
    current: VersionRecord | None = None

    @property
    def tag(self) -> ReleaseTag:
        """Return the release tag being installed."""
        return self.key.tag

    @property
    def file_name(self) -> str:
        """Return the archive file name."""
        return self.key.file_name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "key": self.key.encode(),
            "tag": str(self.key.tag),
            "environment": self.key.environment.value,
            "version": self.key.version,
            "platform": self.key.platform,
            "arch": self.key.arch,
            "file_name": self.file_name,
            "url": self.url,
            "backup_path": str(self.backup_path),
            "install_dir": str(self.install_dir),
            "symlink_path": str(self.symlink_path),
            "replaces_backup": self.replaces_backup,
            "current": self.current.to_dict() if self.current else None,
        }


@dataclass(frozen=True, slots=True)
class VersionInstallResult:
    """Metadata describing a completed installation."""

    key: ArtifactKey
    url: str
    sha256: str
    size_bytes: int
    backup_path: Path
    install_dir: Path
    executables: tuple[Path, ...]
    installed_at: str
    warnings: tuple[str, ...] = ()

    @property
    def tag(self) -> ReleaseTag:
        """Return the installed release tag."""
        return self.key.tag

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "key": self.key.encode(),
            "tag": str(self.key.tag),
            "url": self.url,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "backup_path": str(self.backup_path),
            "install_dir": str(self.install_dir),
            "executables": [path.name for path in self.executables],
            "installed_at": self.installed_at,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class SwitchPlan:
    """How a switch target will be satisfied."""

    reference: str
    source: Literal["backup", "download"]
    key: ArtifactKey
    entry: BackupEntry | None = None
    install: InstallPlan | None = None
    current: VersionRecord | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "reference": self.reference,
            "source": self.source,
            "key": self.key.encode(),
            "backup_path": str(self.entry.path) if self.entry else None,
            "install": self.install.to_dict() if self.install else None,
            "current": self.current.to_dict() if self.current else None,
        }


@dataclass(frozen=True, slots=True)
class SwitchResult:
    """Outcome of a completed switch."""

    key: ArtifactKey
    source: Literal["backup", "download"]
    record: VersionRecord
    executables: tuple[Path, ...]
    switched_at: str
    install: VersionInstallResult | None = None
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "key": self.key.encode(),
            "source": self.source,
            "record": self.record.to_dict(),
            "executables": [path.name for path in self.executables],
            "switched_at": self.switched_at,
            "install": self.install.to_dict() if self.install else None,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class InstallationStatus:
    """Snapshot of the active installation."""

    record: VersionRecord | None
    install_dir: Path
    symlink_path: Path
    symlink_target: Path | None
    executables: tuple[Path, ...] = field(default_factory=tuple)

    @property
    def installed(self) -> bool:
        """Return True when a version record and the primary executable exist."""
        return self.record is not None and any(
            path.name == PRIMARY_EXECUTABLE for path in self.executables
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "installed": self.installed,
            "record": self.record.to_dict() if self.record else None,
            "install_dir": str(self.install_dir),
            "symlink_path": str(self.symlink_path),
            "symlink_target": str(self.symlink_target) if self.symlink_target else None,
            "executables": [path.name for path in self.executables],
        }


class VersionInstaller:
    """Own the active installation and the install/switch workflows.

    This is the only writer of the install location and the version record;
    backups are written through the :class:`BackupStore`.
    """

    def __init__(
        self,
        *,
        store: InstallationStore,
        backups: BackupStore,
        releases: ReleaseProvider,
        registry: StateRegistry | None = None,
        client: httpx.Client | None = None,
        download_base: str = DEFAULT_DOWNLOAD_BASE,
        repository: str = DEFAULT_REPOSITORY,
        platform: str = "ubuntu",
        arch: str = "x86_64",
        work_root: Path | None = None,
    ) -> None:
        """Wire the installer to its stores, release source and HTTP client."""
        self.store = store
        self.backups = backups
        self.releases = releases
        self.registry = registry
        self.client = client
        self.download_base = download_base
        self.repository = repository
        self.platform = platform
        self.arch = arch
        self.work_root = work_root.expanduser() if work_root is not None else None

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------
    def plan_install(
        self,
        environment: Environment | str,
        version: str | None = None,
        platform: str | None = None,
        arch: str | None = None,
    ) -> InstallPlan:
        """Resolve the artifact an install would fetch, without side effects."""
        tag = resolve_tag(environment, version, self.releases.latest_version)
        key = ArtifactKey.create(tag, platform or self.platform, arch or self.arch)
        return self._plan_for_key(key)

    def install(
        self,
        environment: Environment | str,
        version: str | None = None,
        platform: str | None = None,
        arch: str | None = None,
    ) -> VersionInstallResult:
        """Download, back up and activate the requested build."""
        return self.apply_install(self.plan_install(environment, version, platform, arch))

    def apply_install(self, plan: InstallPlan) -> VersionInstallResult:
        """Carry out *plan*: download, extract, back up, activate, record."""
        key = plan.key
        context: dict[str, object] = {
            "environment": key.environment.value,
            "tag": str(key.tag),
            "url": plan.url,
        }
        workdir = self._make_workdir(key)
        try:
            archive = workdir / key.file_name
            size_bytes, sha256 = self._download(plan.url, archive, context)

            staging = workdir / "extract"
            try:
                extract_archive(archive, staging)
            except ArchiveError as exc:
                raise ExtractFailed(str(exc), context={**context, "path": str(archive)}) from exc
            payload = locate_payload(staging)
            if payload is None:
                raise MissingPrimaryExecutable(
                    f"Archive {key.file_name} does not contain the '{PRIMARY_EXECUTABLE}' "
                    "executable.",
                    context={**context, "path": str(staging)},
                )

            entry = self.backups.put(key, payload)
            context["backup"] = str(entry.path)
            try:
                executables = self._activate(payload)
                self.store.link_primary()
                self.store.save_version_record(key.environment, key.version)
            except (OSError, InstallationError) as exc:
                raise ActivationFailedAfterBackup(
                    f"Backup {entry.name} was written but activation failed: {exc}. "
                    f"Restore with `suictl switch {entry.name}`.",
                    context=context,
                ) from exc
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        installed_at = _now_iso()
        warnings = self._record_artifact(
            key,
            {
                "url": plan.url,
                "sha256": sha256,
                "size_bytes": size_bytes,
                "installed_at": installed_at,
                "last_activated_at": installed_at,
            },
        )
        return VersionInstallResult(
            key=key,
            url=plan.url,
            sha256=sha256,
            size_bytes=size_bytes,
            backup_path=entry.path,
            install_dir=self.store.install_dir,
            executables=tuple(executables),
            installed_at=installed_at,
            warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    # Switch
    # ------------------------------------------------------------------
    def plan_switch(
        self,
        reference: str,
        *,
        platform: str | None = None,
        arch: str | None = None,
    ) -> SwitchPlan:
        """Decide whether *reference* is restored from a backup or downloaded."""
        name = reference.strip()
        current = self.store.load_version_record()

        try:
            key: ArtifactKey | None = ArtifactKey.decode(name)
        except ArtifactKeyError:
            key = None

        if key is None:
            parsed = parse_reference(name)
            if parsed is None:
                raise UnresolvableBackupReference(
                    f"'{reference}' names neither a backup nor a release "
                    "(expected e.g. sui-testnet-v1.40.0-ubuntu-x86_64).",
                    context={"reference": reference, "backup_dir": str(self.backups.root)},
                )
            entry = self._find_backup(
                parsed.environment,
                parsed.version,
                parsed.platform or platform,
                parsed.arch or arch,
            )
            if entry is not None and entry.key is not None:
                key = entry.key
            else:
                key = ArtifactKey.create(
                    parsed.tag,
                    parsed.platform or platform or self.platform,
                    parsed.arch or arch or self.arch,
                )

        entry = self.backups.get(key)
        if entry is not None:
            return SwitchPlan(
                reference=reference,
                source="backup",
                key=key,
                entry=entry,
                current=current,
            )
        return SwitchPlan(
            reference=reference,
            source="download",
            key=key,
            install=self._plan_for_key(key),
            current=current,
        )

    def switch_to(
        self,
        reference: str | SwitchPlan,
        *,
        confirm: Callable[[SwitchPlan], bool] | None = None,
    ) -> SwitchResult | None:
        """Make *reference* the active installation.

        Backups are restored directly. When only a release can satisfy the
        reference, *confirm* is asked first and ``None`` is returned if it
        declines (or is not supplied).
        """
        plan = reference if isinstance(reference, SwitchPlan) else self.plan_switch(reference)

        if plan.source == "download":
            if plan.install is None:
                raise VersionInstallError(
                    f"Switch plan for {plan.key} has no download to perform.",
                    context={"reference": plan.reference},
                )
            if confirm is None or not confirm(plan):
                return None
            installed = self.apply_install(plan.install)
            record = self._verify_active(plan.key)
            return SwitchResult(
                key=plan.key,
                source="download",
                record=record,
                executables=installed.executables,
                switched_at=installed.installed_at,
                install=installed,
                warnings=installed.warnings,
            )

        entry = plan.entry
        if entry is None:
            raise VersionInstallError(
                f"Switch plan for {plan.key} names no backup to restore.",
                context={"reference": plan.reference},
            )
        context = {
            "environment": plan.key.environment.value,
            "tag": str(plan.key.tag),
            "path": str(entry.path),
        }
        if not (entry.path / PRIMARY_EXECUTABLE).is_file():
            raise SwitchVerificationFailed(
                f"Backup {entry.name} does not contain the '{PRIMARY_EXECUTABLE}' executable.",
                context=context,
            )

        try:
            executables = self._activate(entry.path)
            self.store.save_version_record(plan.key.environment, plan.key.version)
            self.store.link_primary()
        except (OSError, InstallationError) as exc:
            raise VersionInstallError(
                f"Failed to restore backup {entry.name}: {exc}", context=context
            ) from exc

        record = self._verify_active(plan.key)
        switched_at = _now_iso()
        warnings = self._record_artifact(plan.key, {"last_activated_at": switched_at})
        return SwitchResult(
            key=plan.key,
            source="backup",
            record=record,
            executables=tuple(executables),
            switched_at=switched_at,
            warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    # Uninstall / status
    # ------------------------------------------------------------------
    def uninstall(self) -> list[Path]:
        """Remove the install location and activation symlink; keep backups."""
        try:
            removed = self.store.remove_installation()
            if self.store.unlink_primary():
                removed.append(self.store.symlink_path)
        except OSError as exc:
            raise VersionInstallError(
                f"Failed to remove installation: {exc}",
                context={"path": str(self.store.install_dir)},
            ) from exc
        return removed

    def status(self) -> InstallationStatus:
        """Return the version record, symlink target and executables."""
        return InstallationStatus(
            record=self.store.load_version_record(),
            install_dir=self.store.install_dir,
            symlink_path=self.store.symlink_path,
            symlink_target=self.store.symlink_target(),
            executables=tuple(self.store.installed_executables()),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _plan_for_key(self, key: ArtifactKey) -> InstallPlan:
        return InstallPlan(
            key=key,
            url=download_url(
                key.tag,
                key.platform,
                key.arch,
                base=self.download_base,
                repository=self.repository,
            ),
            backup_path=self.backups.path_for(key),
            install_dir=self.store.install_dir,
            symlink_path=self.store.symlink_path,
            replaces_backup=self.backups.exists(key),
            current=self.store.load_version_record(),
        )

    def _find_backup(
        self,
        environment: Environment,
        version: str,
        platform: str | None,
        arch: str | None,
    ) -> BackupEntry | None:
        """Return the backup for (environment, version), preferring the target."""
        candidates = [
            entry
            for entry in self.backups.grouped().get(environment, [])
            if entry.key is not None and entry.key.version == version
        ]
        wanted_platform = platform or self.platform
        wanted_arch = arch or self.arch
        for entry in candidates:
            key = entry.key
            if key is not None and key.platform == wanted_platform and key.arch == wanted_arch:
                return entry
        if platform is None and arch is None and len(candidates) == 1:
            return candidates[0]
        return None

    def _make_workdir(self, key: ArtifactKey) -> Path:
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)
        try:
            return Path(
                tempfile.mkdtemp(
                    prefix=f"{_WORKDIR_PREFIX}{key.encode()}-",
                    dir=str(self.work_root) if self.work_root is not None else None,
                )
            )
        except OSError as exc:
            raise DownloadFailed(
                f"Failed to create a temporary directory: {exc}",
                context={"tag": str(key.tag)},
            ) from exc

    def _download(
        self, url: str, destination: Path, context: Mapping[str, object]
    ) -> tuple[int, str]:
        """Stream *url* into *destination*; return the byte count and SHA-256."""
        client = self.client
        owns_client = client is None
        if client is None:
            client = httpx.Client(headers={"User-Agent": "suictl"})

        size = 0
        digest = hashlib.sha256()
        try:
            with client.stream("GET", url, follow_redirects=True) as response:
                if not response.is_success:
                    raise DownloadFailed(
                        f"Download of {destination.name} failed with HTTP "
                        f"{response.status_code}.",
                        context={**context, "status": response.status_code},
                    )
                with destination.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
        except httpx.HTTPError as exc:
            raise DownloadFailed(
                f"Download of {destination.name} failed: {exc}", context=context
            ) from exc
        except OSError as exc:
            raise DownloadFailed(
                f"Failed to write {destination}: {exc}", context=context
            ) from exc
        finally:
            if owns_client:
                client.close()

        if size == 0:
            raise DownloadFailed(
                f"Download of {destination.name} returned an empty file.", context=context
            )
        return size, digest.hexdigest()

    def _activate(self, source_dir: Path) -> list[Path]:
        """Replace the managed executables in the install location with *source_dir*'s.

        New files are copied in under temporary names first, so the window in
        which the install location mixes two versions is limited to the final
        renames.
        """
        install_dir = self.store.install_dir
        install_dir.mkdir(parents=True, exist_ok=True)
        incoming = [
            path
            for path in sorted(source_dir.iterdir())
            if is_executable_name(path.name) and path.is_file()
        ]
        staged: list[tuple[Path, Path]] = []
        try:
            for source in incoming:
                temp_path = install_dir / f".{source.name}{_NEW_SUFFIX}"
                shutil.copy2(source, temp_path)
                os.chmod(temp_path, EXECUTABLE_MODE)
                staged.append((temp_path, install_dir / source.name))

            incoming_names = {source.name for source in incoming}
            for existing in self.store.installed_executables():
                if existing.name not in incoming_names:
                    existing.unlink()

            for temp_path, final in staged:
                os.replace(temp_path, final)
        finally:
            for temp_path, _ in staged:
                temp_path.unlink(missing_ok=True)
        return [final for _, final in staged]

    def _verify_active(self, key: ArtifactKey) -> VersionRecord:
        """Check the post-conditions of an activation."""
        context = {"environment": key.environment.value, "tag": str(key.tag)}
        primary = self.store.primary_executable
        if not primary.is_file():
            raise SwitchVerificationFailed(
                f"Primary executable {primary} is missing after switching to {key}.",
                context={**context, "path": str(primary)},
            )
        target = self.store.symlink_target()
        if target is None or target != primary:
            raise SwitchVerificationFailed(
                f"Activation symlink {self.store.symlink_path} does not point at {primary}.",
                context={**context, "path": str(self.store.symlink_path)},
            )
        record = self.store.load_version_record()
        if record is None or record.environment is not key.environment or (
            record.version != key.version
        ):
            raise SwitchVerificationFailed(
                f"Version record does not reflect {key.tag} after switching.",
                context={**context, "path": str(self.store.version_record_path)},
            )
        return record

    def _record_artifact(self, key: ArtifactKey, fields: Mapping[str, object]) -> list[str]:
        """Upsert registry metadata for *key*; failures become warnings."""
        if self.registry is None:
            return []
        entry: dict[str, object] = {
            "key": key.encode(),
            "environment": key.environment.value,
            "version": key.version,
            "platform": key.platform,
            "arch": key.arch,
        }
        entry.update(fields)
        try:
            self.registry.upsert_artifact(entry)
        except (OSError, StateRegistryError) as exc:
            return [f"Failed to update artifact registry: {exc}"]
        return []


__all__ = [
    "ActivationFailedAfterBackup",
    "DownloadFailed",
    "ExtractFailed",
    "InstallPlan",
    "InstallationStatus",
    "MissingPrimaryExecutable",
    "SwitchPlan",
    "SwitchResult",
    "SwitchVerificationFailed",
    "UnresolvableBackupReference",
    "VersionInstallError",
    "VersionInstallResult",
    "VersionInstaller",
]
