"""
Long-term archival storage for master files.

Files live under ``<archive root>/<9-digit unit id>/<filename>``; every write
returns the MD5 checksum of the archived copy so callers can verify it
against the source.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .errors import ArchiveError
from .utils import copy_file, ensure_directory, master_file_pattern, md5_checksum, unit_directory_name

logger = logging.getLogger(__name__)


class ArchiveStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def unit_dir(self, unit_id: int) -> Path:
        return self.root / unit_directory_name(unit_id)

    def path_for(self, unit_id: int, filename: str) -> Path:
        return self.unit_dir(unit_id) / filename

    def put(self, source: Path, unit_id: int, filename: str) -> str:
        """
        Copy a file into the archive.

        Returns:
            MD5 checksum of the archived copy

        Raises:
            ArchiveError: If the copy fails
        """
        target = self.path_for(unit_id, filename)
        try:
            ensure_directory(target.parent)
            checksum = copy_file(Path(source), target)
        except OSError as exc:
            raise ArchiveError(f"unable to archive {source} to {target}: {exc}") from exc
        logger.info(f"{filename} archived to {target}. MD5 checksum [{checksum}]")
        return checksum

    def remove(self, unit_id: int, filename: str) -> None:
        target = self.path_for(unit_id, filename)
        if not target.exists():
            raise ArchiveError(f"no archive found for {filename}")
        try:
            target.unlink()
        except OSError as exc:
            raise ArchiveError(f"unable to remove {filename} from archive: {exc}") from exc
        logger.info(f"Archived file {target} was removed")

    def rename(self, unit_id: int, old_name: str, new_name: str, expected_md5: str) -> None:
        """
        Rename an archived file, verifying its checksum first.

        Raises:
            ArchiveError: If the file is missing or its checksum differs
        """
        source = self.path_for(unit_id, old_name)
        if not source.exists():
            raise ArchiveError(f"no archive found for {old_name}")
        actual = md5_checksum(source)
        if expected_md5 and actual != expected_md5:
            raise ArchiveError(
                f"archived {old_name} checksum {actual} does not match expected {expected_md5}"
            )
        target = self.path_for(unit_id, new_name)
        try:
            source.rename(target)
        except OSError as exc:
            raise ArchiveError(f"unable to rename {old_name}: {exc}") from exc
        logger.info(f"Archived file {source} renamed to {target}")

    def copy_out(self, unit_id: int, filename: str, dest_dir: Path) -> Path:
        """Copy an archived file into a working directory."""
        source = self.path_for(unit_id, filename)
        if not source.exists():
            raise ArchiveError(f"{filename} not found in archive {self.unit_dir(unit_id)}")
        dest = ensure_directory(Path(dest_dir)) / filename
        copy_file(source, dest)
        return dest

    def tif_files(self, unit_id: int) -> List[Path]:
        """Archived master files of a unit that follow the naming convention."""
        unit_dir = self.unit_dir(unit_id)
        if not unit_dir.is_dir():
            return []
        pattern = master_file_pattern(unit_id)
        return sorted(p for p in unit_dir.rglob("*.tif") if p.is_file() and pattern.match(p.name))
