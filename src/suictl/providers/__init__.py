"""Provider interfaces for suictl."""
from __future__ import annotations

from .release_provider import (
    NoReleasesFound,
    ReleaseListingError,
    ReleaseProvider,
    ReleaseProviderError,
)
from .version_installer import (
    ActivationFailedAfterBackup,
    DownloadFailed,
    ExtractFailed,
    InstallPlan,
    MissingPrimaryExecutable,
    SwitchPlan,
    SwitchResult,
    SwitchVerificationFailed,
    UnresolvableBackupReference,
    VersionInstaller,
    VersionInstallError,
    VersionInstallResult,
)

__all__ = [
    "ActivationFailedAfterBackup",
    "DownloadFailed",
    "ExtractFailed",
    "InstallPlan",
    "MissingPrimaryExecutable",
    "NoReleasesFound",
    "ReleaseListingError",
    "ReleaseProvider",
    "ReleaseProviderError",
    "SwitchPlan",
    "SwitchResult",
    "SwitchVerificationFailed",
    "UnresolvableBackupReference",
    "VersionInstallError",
    "VersionInstallResult",
    "VersionInstaller",
]
