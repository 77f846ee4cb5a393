"""
Filesystem and naming helpers used by the finalization workflow.
"""

from __future__ import annotations

import hashlib
import re
import shutil
from pathlib import Path

# Trailing page number of a master file name: 000012345_0007.tif -> 7
_PAGE_NUM_PATTERN = re.compile(r"_(\d+)\.[^.]+$")


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def unit_directory_name(unit_id: int) -> str:
    """Zero-padded directory name used for a unit everywhere on disk."""
    return f"{unit_id:09d}"


def master_file_pattern(unit_id: int) -> re.Pattern[str]:
    """Naming convention every master file of a unit must match."""
    return re.compile(rf"^{unit_id:09d}_\w{{4,}}\.tif$")


def page_number(filename: str) -> int:
    """
    Extract the page sequence number from a master file name.

    Returns 0 when the name carries no numeric suffix.
    """
    match = _PAGE_NUM_PATTERN.search(filename)
    if not match:
        return 0
    return int(match.group(1))


def md5_checksum(path: Path) -> str:
    """MD5 hex digest of a file, read in chunks."""
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(8 * 1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def copy_file(src: Path, dest: Path) -> str:
    """
    Copy a file and return the MD5 checksum of the copy.

    Args:
        src: Source file
        dest: Destination file (parent directory must exist)

    Returns:
        MD5 hex digest of the destination file
    """
    shutil.copyfile(src, dest)
    return md5_checksum(dest)


def move_replacing(src: Path, dest: Path) -> None:
    """Move ``src`` to ``dest``, removing anything already at ``dest``."""
    if dest.exists():
        shutil.rmtree(dest, ignore_errors=True)
    ensure_directory(dest.parent)
    shutil.move(str(src), str(dest))
