"""Helpers for interacting with the suictl state registry.

The registry directory (``/var/lib/suictl/registry`` by default) stores YAML
artifacts. ``artifacts.yml`` records install metadata (source URL, checksum,
timestamps) for every ArtifactKey that was downloaded, so ``suictl list`` can
report where a backup came from. Files are written atomically.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage suictl state. Install with `pip install suictl`."
    ) from exc

ARTIFACTS_FILE = "artifacts.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_artifacts(self) -> Mapping[str, object]:
        """Return the contents of ``artifacts.yml`` (empty mapping if missing)."""
        value = self.read(ARTIFACTS_FILE, default={"artifacts": []})
        return value if isinstance(value, Mapping) else {"artifacts": []}

    def write_artifacts(self, artifacts: Iterable[object]) -> None:
        """Persist artifact entries to ``artifacts.yml``."""
        self.write(ARTIFACTS_FILE, {"artifacts": list(artifacts)})

    # Artifact helpers -------------------------------------------------
    def list_artifacts(self) -> list[dict[str, Any]]:
        """Return all normalised artifact entries."""
        return _load_artifact_entries(self.read_artifacts())

    def get_artifact(self, key: str) -> dict[str, Any] | None:
        """Return the registry entry for *key* if present."""
        normalized_key = key.strip()
        if not normalized_key:
            raise StateRegistryError("Artifact key must be a non-empty string.")

        for entry in self.list_artifacts():
            if entry.get("key") == normalized_key:
                return deepcopy(entry)
        return None

    def upsert_artifact(self, entry: Mapping[str, object]) -> None:
        """Add or update an artifact registry entry."""
        normalized_entry = _normalize_artifact_entry(entry)
        artifacts = self.list_artifacts()
        to_store: list[dict[str, Any]] = []
        replaced = False

        for existing in artifacts:
            if existing.get("key") == normalized_entry["key"]:
                merged = dict(existing)
                merged.update(normalized_entry)
                to_store.append(merged)
                replaced = True
            else:
                to_store.append(existing)

        if not replaced:
            to_store.append(normalized_entry)

        self.write_artifacts(to_store)

    def remove_artifacts(self, keys: Iterable[str]) -> int:
        """Remove entries for *keys*; returns how many were dropped."""
        targets = {key.strip() for key in keys if key.strip()}
        if not targets:
            return 0
        artifacts = self.list_artifacts()
        filtered = [entry for entry in artifacts if entry.get("key") not in targets]
        removed = len(artifacts) - len(filtered)
        if removed:
            self.write_artifacts(filtered)
        return removed


def _load_artifact_entries(raw: Mapping[str, object]) -> list[dict[str, Any]]:
    """Return a normalised list of artifact entries from the registry mapping."""
    entries: list[dict[str, Any]] = []
    raw_entries = raw.get("artifacts", [])

    if isinstance(raw_entries, list):
        for item in raw_entries:
            if isinstance(item, Mapping):
                try:
                    entries.append(_normalize_artifact_entry(item))
                except StateRegistryError:
                    continue
    return entries


_STRING_FIELDS = (
    "environment",
    "version",
    "platform",
    "arch",
    "url",
    "sha256",
    "installed_at",
    "last_activated_at",
)


def _normalize_artifact_entry(entry: Mapping[str, object]) -> dict[str, Any]:
    """Validate and normalise an artifact registry entry."""
    if not isinstance(entry, Mapping):
        raise StateRegistryError("Artifact entry must be a mapping.")

    key_raw = entry.get("key")
    key = str(key_raw).strip() if key_raw is not None else ""
    if not key:
        raise StateRegistryError("Artifact entry missing 'key'.")

    normalized: dict[str, Any] = {"key": key}
    for field_name in _STRING_FIELDS:
        value = entry.get(field_name)
        if value is not None:
            normalized[field_name] = str(value)

    size = entry.get("size_bytes")
    if size is not None:
        try:
            normalized["size_bytes"] = int(str(size))
        except ValueError as exc:
            raise StateRegistryError("Artifact entry 'size_bytes' must be an integer.") from exc

    return normalized


__all__ = ["ARTIFACTS_FILE", "StateRegistry", "StateRegistryError"]
