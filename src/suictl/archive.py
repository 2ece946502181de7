"""Archive helpers shared by the install and switch workflows."""
from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from .state.installation import PRIMARY_EXECUTABLE


class ArchiveError(RuntimeError):
    """Raised when a release archive cannot be unpacked."""


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Extract the gzip tarball at *archive_path* into *destination*."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to extract release archives.")

    destination.mkdir(parents=True, exist_ok=True)
    cmd = [tar_bin, "-xzf", str(archive_path), "-C", str(destination), "--no-same-owner"]
    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise ArchiveError(f"Failed to extract {archive_path.name}: {message}")


def locate_payload(extraction_dir: Path, primary: str = PRIMARY_EXECUTABLE) -> Path | None:
    """Return the directory holding *primary* inside *extraction_dir*.

    Release tarballs place the executables at the archive root; a single
    wrapping directory is tolerated. Returns ``None`` when the primary
    executable is absent.
    """
    if (extraction_dir / primary).is_file():
        return extraction_dir
    candidates = [item for item in extraction_dir.iterdir() if item.is_dir()]
    if len(candidates) == 1 and (candidates[0] / primary).is_file():
        return candidates[0]
    return None


__all__ = [
    "PRIMARY_EXECUTABLE",
    "ArchiveError",
    "extract_archive",
    "locate_payload",
]
