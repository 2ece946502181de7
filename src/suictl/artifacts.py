"""Release tag and artifact identity helpers.

Every archive published for the Sui node binary is addressed by the tuple
``(tag, platform, arch)``. The same tuple names the downloaded tarball
(``sui-<tag>-<platform>-<arch>.tgz``) and the backup directory that keeps a
copy of the extracted payload (``sui-<tag>-<platform>-<arch>``). This module
owns the single encode/decode pair for that name so no other module needs to
pattern-match directory names on its own.
"""
from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from packaging.version import Version

ARTIFACT_PREFIX = "sui"
ARCHIVE_SUFFIX = ".tgz"
DEFAULT_DOWNLOAD_BASE = "https://github.com"
DEFAULT_REPOSITORY = "MystenLabs/sui"

SUPPORTED_TARGETS: dict[str, tuple[str, ...]] = {
    "ubuntu": ("x86_64", "aarch64"),
    "macos": ("x86_64", "arm64"),
    "windows": ("x86_64",),
}
PLATFORMS: tuple[str, ...] = tuple(SUPPORTED_TARGETS)
ARCHITECTURES: tuple[str, ...] = ("x86_64", "aarch64", "arm64")


class ArtifactKeyError(ValueError):
    """Raised when a tag, key or target cannot be parsed or validated."""


class Environment(str, Enum):
    """Deployment networks with their own release streams."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    DEVNET = "devnet"

    def __str__(self) -> str:
        return self.value

    @property
    def prefix(self) -> str:
        """Return the release-tag prefix for this environment."""
        return f"{self.value}-"

    @classmethod
    def parse(cls, value: str | Environment) -> Environment:
        """Return the environment named by *value* (case-insensitive)."""
        if isinstance(value, Environment):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ArtifactKeyError(f"Unknown environment '{value}'. Allowed: {allowed}.")


ENVIRONMENTS: tuple[str, ...] = tuple(member.value for member in Environment)

_ENV_ALTERNATION = "|".join(ENVIRONMENTS)
_TAG_PATTERN = re.compile(
    rf"^(?P<environment>{_ENV_ALTERNATION})-v(?P<version>\d+\.\d+\.\d+)$"
)
_KEY_PATTERN = re.compile(
    rf"^{ARTIFACT_PREFIX}-(?P<tag>(?:{_ENV_ALTERNATION})-v\d+\.\d+\.\d+)"
    r"-(?P<platform>[a-z0-9]+)-(?P<arch>[a-z0-9_]+)$"
)
_REFERENCE_PATTERN = re.compile(
    rf"(?P<environment>{_ENV_ALTERNATION})-v?(?P<version>\d+\.\d+\.\d+)"
    r"(?:-(?P<platform>[a-z0-9]+)-(?P<arch>[a-z0-9_]+))?"
)


def validate_target(platform: str, arch: str) -> tuple[str, str]:
    """Return the normalised ``(platform, arch)`` pair or raise ArtifactKeyError."""
    platform_value = platform.strip().lower()
    arch_value = arch.strip().lower()
    if platform_value not in SUPPORTED_TARGETS:
        allowed = ", ".join(PLATFORMS)
        raise ArtifactKeyError(f"Unsupported platform '{platform}'. Allowed: {allowed}.")
    supported = SUPPORTED_TARGETS[platform_value]
    if arch_value not in supported:
        allowed = ", ".join(supported)
        raise ArtifactKeyError(
            f"Unsupported architecture '{arch}' for {platform_value}. Allowed: {allowed}."
        )
    return platform_value, arch_value


@dataclass(frozen=True, slots=True)
class ReleaseTag:
    """Canonical release identifier ``<environment>-v<major>.<minor>.<patch>``."""

    environment: Environment
    version: str

    def __str__(self) -> str:
        return f"{self.environment.value}-v{self.version}"

    @property
    def semver(self) -> Version:
        """Return the parsed version for ordering."""
        return Version(self.version)

    @classmethod
    def parse(cls, text: str, *, environment: Environment | str | None = None) -> ReleaseTag:
        """Parse *text*, optionally checking it belongs to *environment*."""
        match = _TAG_PATTERN.match(text.strip())
        if match is None:
            raise ArtifactKeyError(
                f"Malformed release tag '{text}'. Expected <environment>-v<X.Y.Z>."
            )
        tag = cls(
            environment=Environment.parse(match.group("environment")),
            version=match.group("version"),
        )
        if environment is not None and tag.environment is not Environment.parse(environment):
            raise ArtifactKeyError(
                f"Release tag '{text}' does not belong to environment '{environment}'."
            )
        return tag


@dataclass(frozen=True, slots=True)
class ArtifactKey:
    """Identity of one downloadable (and backed-up) build."""

    tag: ReleaseTag
    platform: str
    arch: str

    def __str__(self) -> str:
        return self.encode()

    @property
    def environment(self) -> Environment:
        """Return the environment embedded in the tag."""
        return self.tag.environment

    @property
    def version(self) -> str:
        """Return the semantic version without the leading ``v``."""
        return self.tag.version

    @property
    def file_name(self) -> str:
        """Return the release asset file name."""
        return f"{self.encode()}{ARCHIVE_SUFFIX}"

    def encode(self) -> str:
        """Return the canonical ``sui-<tag>-<platform>-<arch>`` name."""
        return f"{ARTIFACT_PREFIX}-{self.tag}-{self.platform}-{self.arch}"

    @classmethod
    def create(
        cls,
        tag: ReleaseTag | str,
        platform: str,
        arch: str,
    ) -> ArtifactKey:
        """Build a validated key from loose inputs."""
        release_tag = tag if isinstance(tag, ReleaseTag) else ReleaseTag.parse(tag)
        platform_value, arch_value = validate_target(platform, arch)
        return cls(tag=release_tag, platform=platform_value, arch=arch_value)

    @classmethod
    def decode(cls, name: str) -> ArtifactKey:
        """Parse a canonical key name, rejecting anything malformed."""
        candidate = name.strip()
        if candidate.endswith(ARCHIVE_SUFFIX):
            candidate = candidate[: -len(ARCHIVE_SUFFIX)]
        match = _KEY_PATTERN.match(candidate)
        if match is None:
            raise ArtifactKeyError(
                f"Malformed artifact name '{name}'. "
                "Expected sui-<environment>-v<X.Y.Z>-<platform>-<arch>."
            )
        return cls.create(match.group("tag"), match.group("platform"), match.group("arch"))


@dataclass(frozen=True, slots=True)
class BackupReference:
    """Loosely parsed switch target (environment/version, maybe platform/arch)."""

    environment: Environment
    version: str
    platform: str | None = None
    arch: str | None = None

    @property
    def tag(self) -> ReleaseTag:
        """Return the release tag implied by the reference."""
        return ReleaseTag(environment=self.environment, version=self.version)


def parse_reference(text: str) -> BackupReference | None:
    """Recover environment/version from a name that is not a canonical key.

    Accepts strings such as ``testnet-v1.40.0``, ``sui-testnet-v1.40.0`` or
    ``testnet-1.40.0-ubuntu-x86_64``. Returns ``None`` when nothing usable is
    found.
    """
    match = _REFERENCE_PATTERN.search(text.strip().lower())
    if match is None:
        return None
    platform = match.group("platform")
    arch = match.group("arch")
    if platform is not None and arch is not None:
        try:
            platform, arch = validate_target(platform, arch)
        except ArtifactKeyError:
            platform = arch = None
    return BackupReference(
        environment=Environment.parse(match.group("environment")),
        version=match.group("version"),
        platform=platform,
        arch=arch,
    )


def artifact_file_name(tag: ReleaseTag | str, platform: str, arch: str) -> str:
    """Return ``sui-<tag>-<platform>-<arch>.tgz``."""
    return ArtifactKey.create(tag, platform, arch).file_name


def download_url(
    tag: ReleaseTag | str,
    platform: str,
    arch: str,
    *,
    base: str = DEFAULT_DOWNLOAD_BASE,
    repository: str = DEFAULT_REPOSITORY,
) -> str:
    """Return the release asset URL for the given artifact."""
    key = ArtifactKey.create(tag, platform, arch)
    return f"{base.rstrip('/')}/{repository.strip('/')}/releases/download/{key.tag}/{key.file_name}"


def resolve_tag(
    environment: Environment | str,
    version: str | None,
    latest: Callable[[Environment], ReleaseTag],
) -> ReleaseTag:
    """Turn a user supplied version (or ``None``) into a concrete release tag.

    A version already carrying the ``<environment>-`` prefix is used verbatim;
    a bare ``v1.40.1`` or ``1.40.1`` gets the prefix prepended. When *version*
    is empty, *latest* resolves the newest release for the environment.
    """
    env = Environment.parse(environment)
    if version is None or not version.strip():
        return latest(env)

    value = version.strip()
    if value.startswith(env.prefix):
        return ReleaseTag.parse(value, environment=env)
    for other in Environment:
        if other is not env and value.startswith(other.prefix):
            raise ArtifactKeyError(
                f"Version '{value}' belongs to {other.value}, not {env.value}."
            )
    if not value.startswith("v"):
        value = f"v{value}"
    return ReleaseTag.parse(f"{env.prefix}{value}", environment=env)


__all__ = [
    "ARCHITECTURES",
    "ENVIRONMENTS",
    "PLATFORMS",
    "SUPPORTED_TARGETS",
    "ArtifactKey",
    "ArtifactKeyError",
    "BackupReference",
    "Environment",
    "ReleaseTag",
    "artifact_file_name",
    "download_url",
    "parse_reference",
    "resolve_tag",
    "validate_target",
]
