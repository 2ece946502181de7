"""Configuration loader for suictl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/suictl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SUICTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SUICTL_DEFAULTS__ENVIRONMENT=mainnet
    export SUICTL_RELEASES__LIST_LIMIT=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load suictl configuration. Install with "
        "`pip install suictl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .artifacts import (
    DEFAULT_DOWNLOAD_BASE,
    DEFAULT_REPOSITORY,
    ENVIRONMENTS,
    ArtifactKeyError,
    validate_target,
)

ENV_PREFIX = "SUICTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RELEASES_FILE_ENV_VAR = f"{ENV_PREFIX}RELEASES_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    RELEASES_FILE_ENV_VAR,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DefaultsConfig:
    """Selectors used when the operator does not pass them explicitly."""

    environment: str = "testnet"
    platform: str = "ubuntu"
    arch: str = "x86_64"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"environment": self.environment, "platform": self.platform, "arch": self.arch}


@dataclass(frozen=True)
class ReleasesConfig:
    """Release listing and download host settings."""

    repository: str = DEFAULT_REPOSITORY
    api_url: str = f"https://api.github.com/repos/{DEFAULT_REPOSITORY}/releases"
    download_base: str = DEFAULT_DOWNLOAD_BASE
    per_page: int = 100
    max_pages: int = 1
    list_limit: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "repository": self.repository,
            "api_url": self.api_url,
            "download_base": self.download_base,
            "per_page": self.per_page,
            "max_pages": self.max_pages,
            "list_limit": self.list_limit,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for suictl."""

    config_file: Path
    install_dir: Path
    backup_dir: Path
    symlink_path: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    defaults: DefaultsConfig
    releases: ReleasesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "backup_dir": str(self.backup_dir),
            "symlink_path": str(self.symlink_path),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "defaults": self.defaults.to_dict(),
            "releases": self.releases.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/suictl/config.yml",
    "install_dir": "/opt/sui",
    "backup_dir": None,  # derived from install_dir when absent
    "symlink_path": "/usr/local/bin/sui",
    "state_dir": "/var/lib/suictl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/suictl",
    "runtime_dir": "/run/suictl",
    "lock_timeout": 30.0,
    "defaults": {
        "environment": "testnet",
        "platform": "ubuntu",
        "arch": "x86_64",
    },
    "releases": {
        "repository": DEFAULT_REPOSITORY,
        "api_url": None,  # derived from repository when absent
        "download_base": DEFAULT_DOWNLOAD_BASE,
        "per_page": 100,
        "max_pages": 1,
        "list_limit": 5,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_DEFAULTS_KEYS = {"environment", "platform", "arch"}
ALLOWED_RELEASES_KEYS = {
    "repository",
    "api_url",
    "download_base",
    "per_page",
    "max_pages",
    "list_limit",
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    resolved_env = dict(os.environ if env is None else env)
    if config_file:
        config_path = Path(config_file)
    else:
        config_path = Path(resolved_env.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))

    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    layers = (
        _load_yaml_file(config_path),
        _build_env_overrides(resolved_env),
        dict(overrides or {}),
    )
    for layer in layers:
        _deep_merge(merged, layer)
    merged["config_file"] = str(config_path)

    _validate_structure(merged)
    return _build_app_config(merged)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _positive(lock_timeout, "lock_timeout", default=30.0, kind=float)

    defaults = raw.get("defaults")
    if defaults is not None:
        defaults_map = _as_dict(defaults, "defaults")
        unknown = set(defaults_map.keys()) - ALLOWED_DEFAULTS_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown defaults configuration keys: {joined}.")
        environment = defaults_map.get("environment")
        if environment is not None and str(environment).lower() not in ENVIRONMENTS:
            allowed = ", ".join(ENVIRONMENTS)
            raise ConfigError(
                f"Unsupported default environment '{environment}'. Allowed: {allowed}."
            )

    releases = raw.get("releases")
    if releases is not None:
        releases_map = _as_dict(releases, "releases")
        unknown = set(releases_map.keys()) - ALLOWED_RELEASES_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown releases configuration keys: {joined}.")
        repository = releases_map.get("repository")
        if repository is not None and "/" not in str(repository).strip("/"):
            raise ConfigError(
                f"releases.repository must look like '<owner>/<repo>'. Got {repository!r}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_dir = _to_path(raw.get("install_dir"))
    backup_dir_value = raw.get("backup_dir")
    backup_dir = _to_path(backup_dir_value) if backup_dir_value else install_dir / "backup"
    if backup_dir.resolve() == install_dir.resolve():
        raise ConfigError(
            f"backup_dir must not be the install directory itself ({install_dir}); "
            "use a subdirectory such as its default, <install_dir>/backup."
        )
    symlink_path = _to_path(raw.get("symlink_path"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _positive(raw.get("lock_timeout"), "lock_timeout", default=30.0, kind=float)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    defaults_mapping = _as_dict(raw.get("defaults"), "defaults")
    environment = str(defaults_mapping.get("environment", "testnet")).strip().lower()
    try:
        platform, arch = validate_target(
            str(defaults_mapping.get("platform", "ubuntu")),
            str(defaults_mapping.get("arch", "x86_64")),
        )
    except ArtifactKeyError as exc:
        raise ConfigError(f"Invalid defaults target: {exc}") from exc
    defaults = DefaultsConfig(environment=environment, platform=platform, arch=arch)

    releases_mapping = _as_dict(raw.get("releases"), "releases")
    repository = str(releases_mapping.get("repository") or DEFAULT_REPOSITORY).strip("/")
    api_url_value = releases_mapping.get("api_url")
    api_url = (
        str(api_url_value)
        if api_url_value
        else f"https://api.github.com/repos/{repository}/releases"
    )
    releases = ReleasesConfig(
        repository=repository,
        api_url=api_url,
        download_base=str(releases_mapping.get("download_base") or DEFAULT_DOWNLOAD_BASE),
        per_page=_positive(releases_mapping.get("per_page"), "releases.per_page", default=100),
        max_pages=_positive(releases_mapping.get("max_pages"), "releases.max_pages", default=1),
        list_limit=_positive(releases_mapping.get("list_limit"), "releases.list_limit", default=5),
    )

    return AppConfig(
        config_file=config_file,
        install_dir=install_dir,
        backup_dir=backup_dir,
        symlink_path=symlink_path,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        defaults=defaults,
        releases=releases,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``SUICTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    tree: dict[str, object] = {}
    for key, value in sorted(env.items()):
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        parts = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not parts:
            continue
        *parents, leaf = parts
        node: MutableMapping[str, object] = tree
        for part in parents:
            child = node.setdefault(part, {})
            if not isinstance(child, MutableMapping):
                raise ConfigError(f"{key} conflicts with the scalar override for {part}.")
            node = cast(MutableMapping[str, object], child)
        node[leaf] = _coerce_value(value)
    return tree


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, key))
        else:
            target[key] = value


def _coerce_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _to_path(value: object) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path, got {value!r}.")


def _positive(value: object | None, label: str, *, default: float, kind: type = int) -> Any:
    """Return *value* as a positive ``int`` or ``float`` (per *kind*)."""
    if value is None:
        return kind(default)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = kind(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    if not all(isinstance(key, str) for key in value):
        raise ConfigError(f"Mapping {label} must use string keys.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "DefaultsConfig",
    "ReleasesConfig",
    "RELEASES_FILE_ENV_VAR",
    "load_config",
]
