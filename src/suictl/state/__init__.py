"""State helpers for suictl."""
from __future__ import annotations

from .installation import (
    EXECUTABLE_PATTERNS,
    PRIMARY_EXECUTABLE,
    InstallationError,
    InstallationStore,
    VersionRecord,
    is_executable_name,
)
from .registry import StateRegistry, StateRegistryError

__all__ = [
    "EXECUTABLE_PATTERNS",
    "PRIMARY_EXECUTABLE",
    "InstallationError",
    "InstallationStore",
    "StateRegistry",
    "StateRegistryError",
    "VersionRecord",
    "is_executable_name",
]
