"""
Unit finalization.

Finalization takes the scanned images of an approved unit from its staging
directory and turns them into master files: QA of the unit settings and the
staged files, master file and tech metadata creation, IIIF derivatives,
archival copies, OCR, publication to Virgo and patron deliverables.

The workflow runs as a "FinalizeUnit" job. Each phase either returns or
raises ``FinalizationError``; the first failure sets the unit to ``error``,
fails the job and tells the unit's project (if any). A unit in ``error`` may
be finalized again, and every per-file step checks what is already done so
the retry only repeats the missing work.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .archive_store import ArchiveStore
from .database import JobDatabase, utcnow
from .deliverables import PatronDeliverables
from .errors import (
    ArchiveError,
    DeliverableError,
    ExtractionError,
    FinalizationError,
    IiifError,
    NotFoundError,
    OrderQAError,
    PersistenceError,
    PublishError,
    RequestError,
    UnitStateError,
)
from .iiif_store import IiifStore
from .job_manager import JobManager
from .marc import MarcService
from .models import (
    DIGITAL_COLLECTION_BUILDING,
    JobStatus,
    MasterFile,
    Originator,
    Unit,
    UnitStatus,
)
from .ocr import OcrService
from .orders import OrderService
from .projects import ProjectTracker, processing_minutes
from .publish import EXTERNAL_METADATA, PUBLISHABLE_TYPES, SIRSI_METADATA, VirgoPublisher
from .tech_metadata import ExifToolExtractor, invalid_reason
from .utils import (
    ensure_directory,
    master_file_pattern,
    md5_checksum,
    move_replacing,
    page_number,
    unit_directory_name,
)

logger = logging.getLogger(__name__)

JOB_NAME = "FinalizeUnit"
PUBLIC_DOMAIN_CUTOFF_YEAR = 1923
DEFAULT_AVAILABILITY_POLICY = 1
IGNORED_FILES = {".DS_Store"}

ImportItem = Tuple[MasterFile, Path]


class Finalizer:
    """
    Runs unit finalization jobs.

    Args:
        database: Digitization records and job statuses
        jobs: Job manager the workflow logs through
        orders: Order bookkeeping
        archive: Long-term archive for master files
        iiif: Store for IIIF derivatives
        extractor: Reads tech and embedded metadata from images
        marc: Catalog lookups (publication year, shelf location)
        ocr: OCR request service
        publisher: Virgo publication
        deliverables: Patron deliverable builder
        projects: Workflow project tracker
        processing_dir: Root of the processing area
        min_file_size: Smallest acceptable master file, in bytes
        iiif_batch_size: Master files per IIIF publish batch
        iiif_max_workers: IIIF batches run at the same time
    """

    def __init__(
        self,
        database: JobDatabase,
        jobs: JobManager,
        orders: OrderService,
        archive: ArchiveStore,
        iiif: IiifStore,
        extractor: ExifToolExtractor,
        marc: MarcService,
        ocr: OcrService,
        publisher: VirgoPublisher,
        deliverables: PatronDeliverables,
        projects: ProjectTracker,
        processing_dir: Path,
        min_file_size: int = 1024 * 1024,
        iiif_batch_size: int = 10,
        iiif_max_workers: int = 4,
    ) -> None:
        self.database = database
        self.jobs = jobs
        self.orders = orders
        self.archive = archive
        self.iiif = iiif
        self.extractor = extractor
        self.marc = marc
        self.ocr = ocr
        self.publisher = publisher
        self.deliverables = deliverables
        self.projects = projects
        self.processing_dir = Path(processing_dir)
        self.min_file_size = min_file_size
        self.iiif_batch_size = max(1, iiif_batch_size)
        self.iiif_max_workers = max(1, iiif_max_workers)

    def staging_dir(self, unit_id: int) -> Path:
        return self.processing_dir / "finalization" / unit_directory_name(unit_id)

    def start(self, unit_id: int) -> JobStatus:
        """
        Claim a unit for finalization and start the background job.

        The unit moves to ``finalizing`` with a single conditional update, so
        two concurrent requests for the same unit cannot both start.

        Returns:
            The running FinalizeUnit job

        Raises:
            NotFoundError: If the unit does not exist
            UnitStateError: If the unit is a reorder, is already finalizing
                or has not been approved
            PersistenceError: If the job status cannot be created
        """
        unit = self.database.get_unit(unit_id)
        if unit is None:
            raise NotFoundError(f"unit {unit_id} not found")
        if unit.reorder:
            raise UnitStateError("Unit is a re-order and should not be finalized")
        if unit.unit_status == UnitStatus.FINALIZING:
            raise UnitStateError("Unit is already finalizing")
        if unit.unit_status not in (UnitStatus.APPROVED, UnitStatus.ERROR):
            raise UnitStateError("Unit has not been approved")

        prior_status = unit.unit_status
        if not self.database.claim_unit_for_finalization(unit_id, prior_status):
            raise UnitStateError("Unit is already finalizing")
        try:
            job = self.jobs.create(JOB_NAME, Originator.unit(unit_id))
        except PersistenceError:
            self.database.set_unit_status(unit_id, prior_status)
            raise

        action = "restarts" if prior_status == UnitStatus.ERROR else "begins"
        self.jobs.log_info(job, f"Unit {unit_id} {action} finalization")
        self.jobs.run_detached(
            job,
            lambda: self.run(job, unit, prior_status),
            on_crash=lambda message: self.fail_unit(job, unit_id, message),
        )
        return job

    def run(self, job: JobStatus, unit: Unit, prior_status: UnitStatus) -> None:
        """Execute every phase in order; the first phase failure fails the unit."""
        try:
            self._finalize(job, unit, prior_status)
        except FinalizationError as exc:
            self.fail_unit(job, unit.id, str(exc))

    def _finalize(self, job: JobStatus, unit: Unit, prior_status: UnitStatus) -> None:
        self.jobs.log_info(job, "Check for presence of finalization directory")
        src_dir = self.staging_dir(unit.id)
        if not src_dir.is_dir():
            raise FinalizationError(f"Finalization directory {src_dir} does not exist.")

        if prior_status == UnitStatus.APPROVED:
            self.database.update_order(unit.order_id, date_finalization_begun=utcnow())
            self.jobs.log_info(job, f"Date Finalization Begun updated for order {unit.order_id}")
        unit.unit_status = UnitStatus.FINALIZING
        self.jobs.log_info(job, "Status set to finalizing")

        self.qa_unit(job, unit)
        tif_files = self.qa_filesystem(job, unit, src_dir)
        self.import_images(job, unit, src_dir, tif_files)

        # OCR reads the archived tifs and must finish before deliverables are built
        if unit.ocr_master_files:
            self._request_ocr(job, unit)

        if unit.include_in_dl:
            self._publish(job, unit)

        if unit.needs_patron_deliverables:
            self._patron_deliverables(job, unit)

        self.complete(job, unit.id)
        self.cleanup(job, unit.id)
        self.jobs.done(job)

    def fail_unit(self, job: JobStatus, unit_id: int, message: str) -> None:
        """Set the unit to error, fail the job and report the failure to the unit's project."""
        self.database.set_unit_status(unit_id, UnitStatus.ERROR)
        self.jobs.log_fatal(job, message)

        try:
            project = self.projects.lookup(unit_id)
        except (RequestError, ValueError, sqlite3.Error) as exc:
            self.jobs.log_error(job, f"Project lookup failed: {exc}")
            return
        if project is None:
            return

        logger.info(f"Project [{project.id}] FAILED finalization")
        mins = processing_minutes(job.started_at, job.ended_at)
        try:
            self.projects.finalization_failed(project.id, job.error or message, mins, job.id)
        except RequestError as exc:
            self.jobs.log_error(job, f"Unable fail project {project.id}: {exc.message}")

    # --- QA ---------------------------------------------------------------

    def qa_unit(self, job: JobStatus, unit: Unit) -> None:
        """
        Check the unit settings needed by finalization.

        Every problem is logged as an error before the phase fails, so one run
        reports all of them. May auto-publish the unit and auto-approve its
        order as side effects.

        Raises:
            FinalizationError: If any check failed
        """
        self.jobs.log_info(job, "QA unit data")

        self.jobs.log_info(job, "Verify metadata")
        metadata = unit.metadata
        if unit.metadata_id is None or metadata is None:
            raise FinalizationError("Unit is not assigned to a metadata record")

        self.jobs.log_info(job, "Verify DL settings")
        if not unit.include_in_dl and not unit.reorder:
            self.auto_publish(job, unit)

        failed = False
        self.jobs.log_info(job, "Verify availability policy")
        if unit.include_in_dl and metadata.availability_policy_id is None and metadata.type != EXTERNAL_METADATA:
            self.jobs.log_error(job, "Availability policy must be set for all units flagged for inclusion in the DL")
            failed = True

        self.jobs.log_info(job, "Verify intended use")
        if unit.intended_use_id is None or unit.intended_use is None:
            self.jobs.log_error(
                job,
                "Unit has no intended use.  All units that participate in this workflow must have an intended use.",
            )
            failed = True

        self.jobs.log_info(job, "Verify OCR settings")
        if metadata.ocr_hint_id is None:
            self.jobs.log_error(job, f"Unit metadata {metadata.id} has no OCR Hint. This is a required setting.")
            failed = True
        elif unit.ocr_master_files:
            if metadata.ocr_hint is None or not metadata.ocr_hint.ocr_candidate:
                self.jobs.log_error(
                    job, "Unit is flagged to perform OCR, but the metadata setting indicates OCR is not possible."
                )
                failed = True
            if not metadata.ocr_language_hint:
                self.jobs.log_error(
                    job,
                    f"Unit is flagged to perform OCR, but the required language hint for metadata "
                    f"{metadata.id} is not set",
                )
                failed = True

        if unit.include_in_dl and unit.throw_away:
            self.jobs.log_error(job, "Throw away units cannot be flagged for publication to the DL.")
            failed = True

        self.jobs.log_info(job, "Verify order status")
        order = unit.order
        if order is not None and order.date_order_approved is None:
            self.jobs.log_info(
                job,
                f"Order {order.id} is not marked as approved. Since this unit is undergoing finalization, "
                f"the workflow has automatically changed the status to approved.",
            )
            now = utcnow()
            try:
                self.database.update_order(order.id, order_status="approved", date_order_approved=now)
            except sqlite3.Error as exc:
                self.jobs.log_error(job, f"Unable to approve order: {exc}")
                failed = True
            else:
                order.order_status = "approved"
                order.date_order_approved = now

        if failed:
            raise FinalizationError("Unit has failed the QA Unit Data Processor")
        self.jobs.log_info(job, "Unit QA tests passed")

    def auto_publish(self, job: Optional[JobStatus], unit: Unit) -> bool:
        """
        Flag a public domain unit for inclusion in the DL.

        Only complete scans of catalog (Sirsi) records that are neither
        manuscripts nor personal items qualify, and only when the catalog
        gives a publication year before 1923.

        Returns:
            True if the unit was flagged
        """
        self.jobs.log_info(job, "Checking unit for auto-publish")
        metadata = unit.metadata
        if not unit.complete_scan:
            self.jobs.log_info(job, "Unit is not a complete scan and cannot be auto-published")
            return False
        if metadata is None:
            return False
        if metadata.is_manuscript or metadata.is_personal_item:
            self.jobs.log_info(job, "Unit is for a manuscript or personal item and cannot be auto-published")
            return False
        if metadata.type != SIRSI_METADATA:
            self.jobs.log_info(job, "Unit metadata is not from Sirsi and cannot be auto-published")
            return False

        pub_year = self.marc.publication_year(metadata)
        if pub_year == 0 or pub_year >= PUBLIC_DOMAIN_CUTOFF_YEAR:
            self.jobs.log_info(job, "Unit has no date or a date after 1923 and cannot be auto-published")
            return False

        self.jobs.log_info(job, "Unit is a candidate for auto-publishing")
        if metadata.availability_policy_id is None:
            self.database.update_metadata(metadata.id, availability_policy_id=DEFAULT_AVAILABILITY_POLICY)
            metadata.availability_policy_id = DEFAULT_AVAILABILITY_POLICY
        self.database.update_unit(unit.id, include_in_dl=True)
        unit.include_in_dl = True
        return True

    def qa_filesystem(self, job: JobStatus, unit: Unit, src_dir: Path) -> List[Path]:
        """
        Check the staged files of a unit.

        The staging directory must hold correctly named tifs numbered from 1
        without gaps, none smaller than the minimum size, and nothing besides
        tifs and transcription ``.txt`` files.

        Returns:
            Paths of the master file tifs, sorted by name

        Raises:
            FinalizationError: If any check failed
        """
        self.jobs.log_info(job, "QA filesystem")
        pattern = master_file_pattern(unit.id)
        failed = False
        tif_files: List[Path] = []

        for path in sorted(src_dir.rglob("*")):
            if not path.is_file() or path.name in IGNORED_FILES:
                continue
            if path.suffix == ".tif":
                if pattern.match(path.name):
                    tif_files.append(path)
                else:
                    self.jobs.log_error(job, f"Incorrectly named .tif file found: {path}")
                    failed = True
                if path.stat().st_size < self.min_file_size:
                    self.jobs.log_error(
                        job,
                        f"{path} filesize is less than {self.min_file_size} and is very likely an incorrect file.",
                    )
                    failed = True
            elif path.suffix != ".txt":
                self.jobs.log_error(job, f"Unexpected file found: {path}")
                failed = True

        if not tif_files:
            self.jobs.log_error(job, f"No .tif files found in {src_dir}")
            failed = True

        tif_files.sort(key=lambda p: p.name)
        for expected, path in enumerate(tif_files, start=1):
            if page_number(path.name) != expected:
                self.jobs.log_error(job, f"Out of sequence .tif file found: {path.name}")
                failed = True

        if failed:
            raise FinalizationError("Unit has failed the Filesystem QA")
        self.jobs.log_info(job, "Filesystem QA tests passed")
        return tif_files

    # --- import -----------------------------------------------------------

    def import_images(self, job: JobStatus, unit: Unit, src_dir: Path, tif_files: Sequence[Path]) -> int:
        """
        Create master files for the staged tifs, publish them to IIIF, archive
        them and build their patron deliverables.

        Returns:
            Number of master files imported

        Raises:
            FinalizationError: If any file cannot be imported
        """
        self.jobs.log_info(job, f"Import images from {src_dir}")
        if unit.throw_away:
            self.jobs.log_info(job, "This unit is a throw away and will not be archived.")

        call_number = ""
        location = ""
        if unit.needs_patron_deliverables:
            self.jobs.log_info(job, "This unit requires patron deliverables. Setting up working directories.")
            assemble_dir = ensure_directory(self.deliverables.assemble_dir(unit.id))
            self.jobs.log_info(job, f"Deliverables will be generated in {assemble_dir}")
            if unit.metadata is not None and unit.metadata.type == SIRSI_METADATA:
                call_number = unit.metadata.call_number
                location = self.marc.location(unit.metadata) or ""

        items = [self._load_master_file(job, unit, path) for path in tif_files]
        self._publish_to_iiif(job, items)

        deliverable_format = unit.intended_use.deliverable_format if unit.intended_use else ""
        for master_file, path in items:
            if not unit.throw_away and unit.date_archived is None and master_file.date_archived is None:
                self._archive(job, unit, master_file, path)

            if unit.needs_patron_deliverables and deliverable_format != "pdf":
                try:
                    self.deliverables.create_file_deliverable(
                        job, unit, master_file, path, call_number=call_number, location=location
                    )
                except DeliverableError as exc:
                    raise FinalizationError(f"Create patron deliverable failed: {exc}") from exc

            self._attach_transcription(job, master_file, path)

        count = len(items)
        self.jobs.log_info(job, f"{count} master files ingested")
        archived_at = unit.date_archived or utcnow()
        self.database.update_unit(unit.id, master_files_count=count, date_archived=archived_at)
        unit.master_files_count = count
        unit.date_archived = archived_at
        self.orders.check_archive_complete(job, unit.order_id)

        self.jobs.log_info(job, "Images for Unit successfully imported.")
        return count

    def _load_master_file(self, job: JobStatus, unit: Unit, path: Path) -> ImportItem:
        self.jobs.log_info(job, f"Import {path}")
        try:
            embedded = self.extractor.embedded(path)
        except ExtractionError as exc:
            raise FinalizationError(f"Unable to read metadata from {path.name}: {exc}") from exc

        master_file = self.database.find_master_file(path.name)
        if master_file is None:
            self.jobs.log_info(job, f"Create new master file {path.name}")
            component_id = None
            if unit.metadata is not None and unit.metadata.is_manuscript and embedded.component_id:
                self.jobs.log_info(job, f"Link master file {path.name} to component {embedded.component_id}")
                component_id = embedded.component_id
            master_file = self.database.create_master_file(
                MasterFile(
                    id=0,
                    unit_id=unit.id,
                    filename=path.name,
                    metadata_id=unit.metadata_id,
                    component_id=component_id,
                    title=embedded.title,
                    description=embedded.description,
                    filesize=path.stat().st_size,
                    md5=md5_checksum(path),
                )
            )
            self.jobs.log_info(job, f"Master file {path.name} created")
        else:
            self.jobs.log_info(job, f"Master file {path.name} already exists")
            if not master_file.pid:
                master_file.pid = f"tsm:{master_file.id}"
                self.database.update_master_file(master_file.id, pid=master_file.pid)

        if master_file.tech_meta is None:
            self.jobs.log_info(job, "Create image tech metadata")
            try:
                tech_meta = self.extractor.extract(path)
                master_file.tech_meta = self.database.create_tech_meta(master_file.id, tech_meta)
            except ExtractionError as exc:
                self.jobs.log_error(job, f"Unable to create image tech metadata: {exc}")
        else:
            self.jobs.log_info(job, "Image tech metadata already exists")

        if master_file.tech_meta is None:
            raise FinalizationError(f"{master_file.pid} has no tech metadata; unable to publish {path.name}")
        reason = invalid_reason(master_file.tech_meta)
        if reason:
            raise FinalizationError(f"{master_file.pid} {reason}; skipping further processing")
        return master_file, path

    def _publish_to_iiif(self, job: JobStatus, items: Sequence[ImportItem]) -> None:
        """Publish derivatives in batches, waiting for every batch before returning."""
        batches = [items[i:i + self.iiif_batch_size] for i in range(0, len(items), self.iiif_batch_size)]
        if not batches:
            return
        self.jobs.log_info(job, f"Publish {len(items)} master files to IIIF in {len(batches)} batches")
        with ThreadPoolExecutor(max_workers=self.iiif_max_workers, thread_name_prefix="iiif") as pool:
            futures = [pool.submit(self._publish_batch, job, batch) for batch in batches]
            wait(futures)

        errors = [str(exc) for exc in (f.exception() for f in futures) if exc is not None]
        if errors:
            raise FinalizationError(f"IIIF publish failed: {errors[0]}")

    def _publish_batch(self, job: JobStatus, batch: Sequence[ImportItem]) -> None:
        failure: Optional[Exception] = None
        for master_file, path in batch:
            try:
                image_format = master_file.tech_meta.image_format if master_file.tech_meta else ""
                if self.iiif.publish(path, master_file.pid, image_format, overwrite=False):
                    self.jobs.log_info(job, f"{master_file.pid} published to IIIF")
                else:
                    self.jobs.log_info(job, f"{master_file.pid} already exists in IIIF")
            except IiifError as exc:
                self.jobs.log_error(job, f"Unable to publish {master_file.filename} to IIIF: {exc}")
                failure = failure or exc
        if failure is not None:
            raise failure

    def _archive(self, job: JobStatus, unit: Unit, master_file: MasterFile, path: Path) -> None:
        self.jobs.log_info(job, f"Archive {path.name}")
        try:
            archive_md5 = self.archive.put(path, unit.id, master_file.filename)
        except ArchiveError as exc:
            raise FinalizationError(f"Archive failed: {exc}") from exc
        archived_at = utcnow()
        self.database.update_master_file(master_file.id, date_archived=archived_at)
        master_file.date_archived = archived_at
        if archive_md5 != master_file.md5:
            self.jobs.log_error(job, f"Archive MD5 does not match source MD5 for {master_file.filename}")

    def _attach_transcription(self, job: JobStatus, master_file: MasterFile, path: Path) -> None:
        text_path = path.with_suffix(".txt")
        if not text_path.exists():
            return
        self.jobs.log_info(job, f"Add transcription text for {master_file.filename}")
        try:
            text = text_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            self.jobs.log_error(job, f"Unable to read txt file {text_path}: {exc}")
            return
        self.database.update_master_file(master_file.id, transcription_text=text)
        master_file.transcription_text = text

    # --- optional phases --------------------------------------------------

    def _request_ocr(self, job: JobStatus, unit: Unit) -> None:
        metadata = unit.metadata
        lang = metadata.ocr_language_hint if metadata else ""
        try:
            self.ocr.request(job, metadata.pid if metadata else "", lang, unit_id=unit.id)
        except (RequestError, TimeoutError) as exc:
            self.jobs.log_error(job, f"Unable to request OCR: {exc}")

    def _publish(self, job: JobStatus, unit: Unit) -> None:
        if unit.metadata_id is None:
            return
        # reload; auto-publish may have set the availability policy
        metadata = self.database.get_metadata(unit.metadata_id)
        if metadata is None:
            return
        if metadata.type not in PUBLISHABLE_TYPES:
            self.jobs.log_error(
                job,
                f"Unit is flagged for inclusion in DL, but metadata {metadata.id} type {metadata.type} is not supported",
            )
            return
        try:
            self.publisher.publish(job, metadata)
        except (PublishError, RequestError) as exc:
            self.jobs.log_error(job, f"Publish to Virgo failed: {exc}")

    def _patron_deliverables(self, job: JobStatus, unit: Unit) -> None:
        if unit.date_patron_deliverables_ready is None:
            deliverable_format = unit.intended_use.deliverable_format if unit.intended_use else ""
            if deliverable_format == "pdf":
                try:
                    self.deliverables.create_patron_pdf(job, unit)
                except DeliverableError as exc:
                    raise FinalizationError(f"Unable to create patron PDF: {exc}") from exc
            else:
                try:
                    master_files = self.database.list_master_files(unit.id)
                    self.deliverables.zip_patron_deliverables(job, unit, master_files)
                except (DeliverableError, OSError) as exc:
                    raise FinalizationError(f"Unable to create patron ZIP: {exc}") from exc

            ready_at = utcnow()
            self.database.update_unit(unit.id, date_patron_deliverables_ready=ready_at)
            unit.date_patron_deliverables_ready = ready_at
            self.jobs.log_info(job, "All patron deliverables created")
        else:
            self.jobs.log_info(job, "Patron deliverables already generated")

        try:
            self.orders.check_ready_for_delivery(job, unit.order_id)
        except (NotFoundError, OrderQAError) as exc:
            raise FinalizationError(str(exc)) from exc

    # --- completion -------------------------------------------------------

    def complete(self, job: JobStatus, unit_id: int) -> None:
        """
        Finish the unit: directly when it has no project, otherwise after the
        finalized unit passes validation and the project is told it is done.

        Raises:
            FinalizationError: If the unit or project cannot be loaded or the
                unit fails validation
        """
        self.jobs.log_info(job, "Unit finished finalization; reloading details")
        unit = self.database.get_unit(unit_id)
        if unit is None:
            raise FinalizationError(f"error looking up finalized unit {unit_id}")

        try:
            project = self.projects.lookup(unit_id)
        except (RequestError, ValueError, sqlite3.Error) as exc:
            raise FinalizationError(f"error looking up project: {exc}") from exc

        if project is None:
            self.jobs.log_info(job, "Set unit status to done")
            self.database.set_unit_status(unit_id, UnitStatus.DONE)
            return

        self.jobs.log_info(job, "Unit is associated with a project; validating finalized unit")
        mins = processing_minutes(job.started_at)
        reason = self.validate_finalized_unit(unit)
        if reason:
            raise FinalizationError(reason)

        self.jobs.log_info(job, "Unit finished finalization")
        self.database.set_unit_status(unit_id, UnitStatus.DONE)
        try:
            self.projects.finalization_succeeded(project.id, mins)
        except RequestError as exc:
            self.jobs.log_error(job, f"finish project {project.id} failed: {exc.message}")

        logger.info(f"project {project.id} finalization minutes: {mins}")
        self.jobs.log_info(job, f"Total finalization minutes: {mins}")

    def validate_finalized_unit(self, unit: Unit) -> Optional[str]:
        """
        Check the end state of a finalized unit.

        Returns:
            The first problem found, or None if the unit is complete
        """
        master_files = self.database.list_master_files(unit.id)
        if not unit.throw_away:
            if unit.date_archived is None:
                return "Unit was not archived"
            tif_count = len(self.archive.tif_files(unit.id))
            if tif_count == 0:
                return "No tif files found in archive"
            if tif_count != len(master_files):
                return f"MasterFile / tif count mismatch. {tif_count} tif files vs {len(master_files)} MasterFiles"

        for master_file in master_files:
            if master_file.metadata_id is None:
                return f"Masterfile {master_file.filename} missing desc metadata"
            if master_file.tech_meta is None:
                return f"Masterfile {master_file.filename} missing desc tech metadata"

        if unit.intended_use_id == DIGITAL_COLLECTION_BUILDING:
            if unit.include_in_dl and unit.date_dl_deliverables_ready is None:
                return "DL deliverables ready date not set"
        elif unit.date_patron_deliverables_ready is None:
            return "Patron deliverables ready date not set"
        return None

    def cleanup(self, job: JobStatus, unit_id: int) -> None:
        """Remove working files and move the unit's directories to ready_to_delete."""
        unit_dir = unit_directory_name(unit_id)
        self.jobs.log_info(job, f"Cleaning up unit {unit_dir} directories")
        shutil.rmtree(self.deliverables.assemble_dir(unit_id), ignore_errors=True)

        ready_to_delete = self.processing_dir / "ready_to_delete"
        src_dir = self.staging_dir(unit_id)
        del_dir = ready_to_delete / unit_dir
        self.jobs.log_info(job, f"Moving {src_dir} to {del_dir}")
        try:
            move_replacing(src_dir, del_dir)
        except OSError as exc:
            self.jobs.log_error(job, f"Unable to move working file to {del_dir}: {exc}")

        scan_dir = self.processing_dir / "scan" / unit_dir
        if scan_dir.exists():
            del_dir = ready_to_delete / "from_scan" / unit_dir
            self.jobs.log_info(job, f"Moving {scan_dir} to {del_dir}")
            try:
                move_replacing(scan_dir, del_dir)
            except OSError as exc:
                self.jobs.log_error(job, f"Unable to move scan directory: {exc}")
