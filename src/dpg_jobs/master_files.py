"""
Maintenance jobs for the master files of a finalized unit.

- DeleteMasterFiles removes master files, their archived tifs and IIIF
  derivatives, then renames the remaining files to close page gaps
- RenumberMasterFiles sets sequential page titles
- DeaccessionMasterFile withdraws one master file from the archive and IIIF
  while keeping its record
"""

from __future__ import annotations

import logging
from typing import List

from .archive_store import ArchiveStore
from .database import JobDatabase, utcnow
from .errors import ArchiveError, IiifError, NotFoundError, UnitStateError
from .iiif_store import IiifStore
from .job_manager import JobManager
from .models import JobStatus, MasterFile, Originator
from .utils import page_number

logger = logging.getLogger(__name__)


def _numeric_title(title: str) -> int:
    """Page number held in a title, or -1 when the title is not a plain number."""
    try:
        number = int(title)
    except ValueError:
        return -1
    return number if str(number) == title else -1


class MasterFileService:
    """
    Starts master file maintenance jobs.

    Args:
        database: Digitization records and job statuses
        jobs: Job manager the work logs through
        archive: Long-term archive holding the master tifs
        iiif: Store for IIIF derivatives
    """

    def __init__(self, database: JobDatabase, jobs: JobManager, archive: ArchiveStore, iiif: IiifStore) -> None:
        self.database = database
        self.jobs = jobs
        self.archive = archive
        self.iiif = iiif

    # --- delete -------------------------------------------------------------

    def start_delete(self, unit_id: int, filenames: List[str]) -> JobStatus:
        """
        Start a "DeleteMasterFiles" job.

        Raises:
            NotFoundError: If the unit does not exist
            ValueError: If no filenames were given
            UnitStateError: If the unit has been published to the DL
        """
        unit = self.database.get_unit(unit_id)
        if unit is None:
            raise NotFoundError(f"unit {unit_id} not found")
        if not filenames:
            raise ValueError("no filenames")
        if unit.date_dl_deliverables_ready is not None:
            raise UnitStateError("Cannot delete from units that have been published")

        targets = sorted(filenames)
        job = self.jobs.create("DeleteMasterFiles", Originator.unit(unit_id))
        self.jobs.log_info(job, f"These masterfiles will be removed {targets}")
        self.jobs.run_detached(job, lambda: self._delete(job, unit_id, targets))
        return job

    def _delete(self, job: JobStatus, unit_id: int, targets: List[str]) -> None:
        self.jobs.log_info(job, "Load unit and masterfiles")
        by_name = {mf.filename: mf for mf in self.database.list_master_files(unit_id)}
        for filename in targets:
            master_file = by_name.get(filename)
            if master_file is None:
                self.jobs.log_error(job, f"Master file {filename} not found in unit {unit_id}")
                continue
            self.jobs.log_info(job, f"Delete {filename}")
            if master_file.deaccessioned_at is None:
                self._withdraw(job, master_file)
            self.jobs.log_info(job, f"Removing master file and image tech metadata for {filename}")
            self.database.delete_master_file(master_file.id)

        self._close_gaps(job, unit_id)
        self.database.update_unit(unit_id, master_files_count=len(self.database.list_master_files(unit_id)))
        self.jobs.done(job)

    def _close_gaps(self, job: JobStatus, unit_id: int) -> None:
        """Rename the remaining master files so their page numbers run 1..n."""
        self.jobs.log_info(job, "Updating remaining master files to correct page number gaps")
        change_title = True
        for expected, master_file in enumerate(self.database.list_master_files(unit_id), start=1):
            title_page = _numeric_title(master_file.title)
            if title_page < 0:
                change_title = False

            page = page_number(master_file.filename)
            if page == 0:
                self.jobs.log_error(job, f"Skipping rename of masterfile with invalid filename {master_file.filename}")
                continue
            if page <= expected:
                continue

            new_name = f"{unit_id:09d}_{expected:04d}.tif"
            self.jobs.log_info(job, f"Update MF filename from {master_file.filename} to {new_name}")
            fields = {"filename": new_name}
            if change_title and title_page != expected:
                fields["title"] = str(expected)
            self.database.update_master_file(master_file.id, **fields)

            if master_file.deaccessioned_at is None:
                try:
                    self.archive.rename(unit_id, master_file.filename, new_name, master_file.md5)
                except ArchiveError as exc:
                    self.jobs.log_error(job, f"Unable to rename archived {master_file.filename}: {exc}")

    # --- renumber -----------------------------------------------------------

    def start_renumber(self, unit_id: int, filenames: List[str], start_num: int) -> JobStatus:
        """
        Start a "RenumberMasterFiles" job.

        Raises:
            NotFoundError: If the unit does not exist
            ValueError: If no filenames were given
        """
        if self.database.get_unit(unit_id) is None:
            raise NotFoundError(f"unit {unit_id} not found")
        if not filenames:
            raise ValueError("no filenames")

        targets = sorted(filenames)
        job = self.jobs.create("RenumberMasterFiles", Originator.unit(unit_id))
        self.jobs.log_info(job, f"These masterfiles will be renamed {targets} starting at page {start_num}")
        self.jobs.run_detached(job, lambda: self._renumber(job, unit_id, targets, start_num))
        return job

    def _renumber(self, job: JobStatus, unit_id: int, targets: List[str], start_num: int) -> None:
        by_name = {mf.filename: mf for mf in self.database.list_master_files(unit_id)}
        for number, filename in enumerate(targets, start=start_num):
            master_file = by_name.get(filename)
            if master_file is None:
                self.jobs.log_error(job, f"Master file {filename} not found in unit {unit_id}")
                continue
            self.jobs.log_info(job, f"MasterFile {filename} renumber from {master_file.title} to {number}")
            self.database.update_master_file(master_file.id, title=str(number))
        self.jobs.done(job)

    # --- deaccession --------------------------------------------------------

    def start_deaccession(self, master_file_id: int, compute_id: str, note: str) -> JobStatus:
        """
        Start a "DeaccessionMasterFile" job.

        Raises:
            NotFoundError: If the master file does not exist
            ValueError: If the computing ID is not a staff member
            UnitStateError: If the master file is already deaccessioned
        """
        master_file = self.database.get_master_file(master_file_id)
        if master_file is None:
            raise NotFoundError(f"master file {master_file_id} not found")
        if not self.database.is_staff_member(compute_id):
            raise ValueError(f"{compute_id} is not a valid computing ID")
        if master_file.deaccessioned_at is not None:
            raise UnitStateError(f"master file {master_file.filename} is already deaccessioned")

        job = self.jobs.create("DeaccessionMasterFile", Originator.master_file(master_file_id))
        self.jobs.log_info(job, f"User {compute_id} begins to deaccession masterfile {master_file.filename}")
        self.jobs.run_detached(job, lambda: self._deaccession(job, master_file, compute_id, note))
        return job

    def _deaccession(self, job: JobStatus, master_file: MasterFile, compute_id: str, note: str) -> None:
        now = utcnow()
        self.database.update_master_file(
            master_file.id,
            deaccessioned_at=now,
            deaccessioned_by=compute_id,
            deaccession_note=note,
        )
        self._withdraw(job, master_file)

        if master_file.date_dl_ingest is not None:
            self.jobs.log_info(job, "File was published to DL; flagging for removal")
            self.database.update_master_file(master_file.id, date_dl_update=now)
            if master_file.metadata_id is not None:
                self.database.update_metadata(master_file.metadata_id, date_dl_update=now)

        self.jobs.log_info(job, f"masterfile {master_file.filename} deaccessioned by {compute_id}")
        self.jobs.done(job)

    def _withdraw(self, job: JobStatus, master_file: MasterFile) -> None:
        """Remove the archived tif and the IIIF derivative; failures are logged, not fatal."""
        self.jobs.log_info(job, f"Remove archived file {master_file.filename}")
        try:
            self.archive.remove(master_file.unit_id, master_file.filename)
        except ArchiveError as exc:
            self.jobs.log_error(job, str(exc))
        try:
            self.iiif.remove(master_file.pid)
        except (IiifError, ValueError) as exc:
            self.jobs.log_error(job, f"Unable to unpublish IIIF resource for master file {master_file.id}: {exc}")
