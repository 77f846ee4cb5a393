"""
Service wiring and the short-lived jobs behind the HTTP endpoints.

``build_services`` turns the runtime configuration into the collaborators
every job needs. ``Services`` then exposes one ``start_*`` method per
endpoint that starts work: each validates its request synchronously (so a
bad request never creates a job), creates the job and hands the work to the
job manager.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional

from omegaconf import DictConfig

from .archive_store import ArchiveStore
from .database import JobDatabase, utcnow
from .deliverables import PatronDeliverables
from .errors import ArchiveError, DeliverableError, NotFoundError, OrderQAError, PublishError, RequestError
from .finalization import Finalizer
from .http_client import ServiceClient
from .iiif_store import IiifStore
from .job_manager import JobManager
from .marc import MarcService
from .master_files import MasterFileService
from .models import ComponentHealth, JobStatus, MasterFile, Originator, Unit
from .ocr import OcrService, PendingOcrRegistry
from .orders import OrderService
from .projects import ProjectTracker, make_project_tracker
from .publish import PUBLISHABLE_TYPES, SIRSI_METADATA, VirgoPublisher
from .tech_metadata import ExifToolExtractor
from .utils import ensure_directory, md5_checksum, unit_directory_name

logger = logging.getLogger(__name__)

OCR_UNIT = "unit"
OCR_MASTER_FILE = "masterfile"
COPY_ALL = "all"


@dataclass
class Services:
    config: DictConfig
    database: JobDatabase
    jobs: JobManager
    client: ServiceClient
    archive: ArchiveStore
    iiif: IiifStore
    ocr_registry: PendingOcrRegistry
    ocr: OcrService
    orders: OrderService
    publisher: VirgoPublisher
    projects: ProjectTracker
    marc: MarcService
    deliverables: PatronDeliverables
    master_files: MasterFileService
    finalizer: Finalizer

    @property
    def processing_dir(self) -> Path:
        return Path(self.config.directories.processing)

    def health(self) -> Dict[str, ComponentHealth]:
        status = {"jobservice": ComponentHealth(healthy=True), "database": ComponentHealth(healthy=True)}
        try:
            self.database.ping()
        except sqlite3.Error as exc:
            status["database"] = ComponentHealth(healthy=False, message=str(exc))
        return status

    def shutdown(self) -> None:
        self.jobs.shutdown(wait=False)
        self.client.close()

    # --- OCR ----------------------------------------------------------------

    def start_ocr(self, item_type: str, item_id: int) -> JobStatus:
        """
        Start an "OCR" job for a unit or a single master file.

        Raises:
            ValueError: If the item type is not unit or masterfile
        """
        if item_type not in (OCR_UNIT, OCR_MASTER_FILE):
            raise ValueError(f"{item_type} is not a supported ocr type")
        logger.info(f"request for OCR on {item_type}:{item_id}")
        if item_type == OCR_UNIT:
            job = self.jobs.create("OCR", Originator.unit(item_id))
            self.jobs.run_detached(job, partial(self._ocr_unit, job, item_id))
        else:
            job = self.jobs.create("OCR", Originator.master_file(item_id))
            self.jobs.run_detached(job, partial(self._ocr_master_file, job, item_id))
        return job

    def _ocr_unit(self, job: JobStatus, unit_id: int) -> None:
        unit = self.database.get_unit(unit_id)
        if unit is None or unit.metadata is None:
            self.jobs.log_fatal(job, f"Unable to load unit {unit_id}")
            return
        self.jobs.log_info(job, "Requesting OCR for unit")
        try:
            self.ocr.request(job, unit.metadata.pid, unit.metadata.ocr_language_hint, unit_id=unit.id)
        except (RequestError, TimeoutError) as exc:
            self.jobs.log_error(job, f"Unable to request unit OCR: {exc}")
        self.jobs.done(job)

    def _ocr_master_file(self, job: JobStatus, master_file_id: int) -> None:
        self.jobs.log_info(job, "Requesting OCR for master file")
        master_file = self.database.get_master_file(master_file_id)
        metadata = None
        if master_file is not None and master_file.metadata_id is not None:
            metadata = self.database.get_metadata(master_file.metadata_id)
        if master_file is None or metadata is None:
            self.jobs.log_error(job, f"Unable to request masterfile OCR: master file {master_file_id} not found")
        else:
            try:
                self.ocr.request(job, master_file.pid, metadata.ocr_language_hint)
            except (RequestError, TimeoutError) as exc:
                self.jobs.log_error(job, f"Unable to request masterfile OCR: {exc}")
        self.jobs.done(job)

    def ocr_callback(self, job_id: int, status: str, message: str) -> None:
        """Record an OCR callback; the pending wait is released even for unknown jobs."""
        logger.info(f"received ocr done callback for job {job_id}")
        try:
            job: Optional[JobStatus] = self.jobs.get(job_id)
        except NotFoundError:
            logger.error(f"unable to get job status {job_id}")
            job = None
        self.ocr.handle_callback(job, job_id, status, message)

    # --- Virgo --------------------------------------------------------------

    def start_publish(self, metadata_id: int) -> JobStatus:
        """
        Start a "PublishToVirgo" job.

        Raises:
            NotFoundError: If the metadata record does not exist
            ValueError: If the record type cannot be published
        """
        metadata = self.database.get_metadata(metadata_id)
        if metadata is None:
            raise NotFoundError(f"metadata {metadata_id} not found")
        if metadata.type not in PUBLISHABLE_TYPES:
            raise ValueError(f"this metadata is [{metadata.type}] and not a candidate for publication")

        job = self.jobs.create("PublishToVirgo", Originator.metadata(metadata_id))
        self.jobs.log_info(job, f"Publish metadata {metadata_id} to Virgo")

        def work() -> None:
            try:
                self.publisher.publish(job, metadata)
            except (PublishError, RequestError) as exc:
                self.jobs.log_fatal(job, f"Publication failed: {exc}")
                return
            self.jobs.done(job)

        self.jobs.run_detached(job, work)
        return job

    # --- orders -------------------------------------------------------------

    def check_order(self, order_id: int) -> JobStatus:
        """
        Start a "CheckOrderReadyForDelivery" job.

        Raises:
            NotFoundError: If the order does not exist
        """
        if self.database.get_order(order_id) is None:
            raise NotFoundError(f"order {order_id} not found")
        job = self.jobs.create("CheckOrderReadyForDelivery", Originator.order(order_id))
        self.jobs.log_info(job, f"Start CheckOrderReadyForDelivery for order {order_id}")

        def work() -> None:
            try:
                self.orders.check_ready_for_delivery(job, order_id)
            except (NotFoundError, OrderQAError) as exc:
                self.jobs.log_fatal(job, str(exc))
                return
            self.jobs.done(job)

        self.jobs.run_detached(job, work)
        return job

    # --- archive copies -----------------------------------------------------

    def copy_from_archive(
        self,
        unit_id: int,
        compute_id: str,
        filename: str = "",
        files: Optional[List[str]] = None,
    ) -> JobStatus:
        """
        Copy archived master files to ``<processing>/from_archive/<computeID>/<unit>``.

        ``filename`` is a single master file name or "all" for every master
        file of the unit; ``files`` is a list of names. The copy runs in the
        background.

        Raises:
            NotFoundError: If the unit does not exist
            ValueError: If the computing ID is unknown or nothing was requested
        """
        unit = self.database.get_unit(unit_id)
        if unit is None:
            raise NotFoundError(f"unit {unit_id} not found")
        if not self.database.is_staff_member(compute_id):
            raise ValueError(f"{compute_id} is not a valid computing ID")
        files = files or []
        if not filename and not files:
            raise ValueError("missing files and filename in request")

        job = self.jobs.create("CopyArchivedFilesToProduction", Originator.unit(unit_id))
        self.jobs.log_info(job, "Starting process to download master files from the archive...")
        dest_dir = self.processing_dir / "from_archive" / compute_id / unit_directory_name(unit_id)
        self.jobs.run_detached(job, lambda: self._copy(job, unit_id, compute_id, filename, files, dest_dir))
        return job

    def _copy(
        self,
        job: JobStatus,
        unit_id: int,
        compute_id: str,
        filename: str,
        files: List[str],
        dest_dir: Path,
    ) -> None:
        self.jobs.log_info(job, f"Ensure download destination directory {dest_dir} exists")
        try:
            ensure_directory(dest_dir)
        except OSError as exc:
            self.jobs.log_fatal(job, f"Unable to create download directory {dest_dir}: {exc}")
            return
        master_files = {mf.filename: mf for mf in self.database.list_master_files(unit_id)}

        if filename.lower() == COPY_ALL:
            self.jobs.log_info(job, f"{compute_id} requests to download all master files from unit {unit_id}")
            self._copy_all(job, unit_id, master_files, dest_dir)
        elif filename:
            self.jobs.log_info(job, f"{compute_id} requests to download {filename} from unit {unit_id}")
            if self._copy_one(job, unit_id, master_files.get(filename), filename, dest_dir):
                self.jobs.done(job)
        else:
            self.jobs.log_info(job, f"{compute_id} requests to download {len(files)} master files from unit {unit_id}")
            self._copy_list(job, unit_id, master_files, files, dest_dir)

    def _copy_all(self, job: JobStatus, unit_id: int, master_files: Dict[str, MasterFile], dest_dir: Path) -> None:
        for name in sorted(master_files):
            master_file = master_files[name]
            if master_file.deaccessioned_at is not None:
                self.jobs.log_info(job, f"Skipping deaccessioned file {name}")
                continue
            if not self._copy_one(job, unit_id, master_file, name, dest_dir):
                return
        self.jobs.log_info(job, f"Masterfiles from unit {unit_id} copied to {dest_dir}")
        self.jobs.done(job)

    def _copy_list(
        self,
        job: JobStatus,
        unit_id: int,
        master_files: Dict[str, MasterFile],
        files: List[str],
        dest_dir: Path,
    ) -> None:
        for name in files:
            self.jobs.log_info(job, f"Downloading {name} from unit {unit_id}")
            if not self._copy_one(job, unit_id, master_files.get(name), name, dest_dir):
                return
        self.jobs.log_info(job, f"{len(files)} Masterfiles from unit {unit_id} copied to {dest_dir}")
        self.jobs.done(job)

    def _copy_one(
        self,
        job: JobStatus,
        unit_id: int,
        master_file: Optional[MasterFile],
        filename: str,
        dest_dir: Path,
    ) -> bool:
        if master_file is None:
            self.jobs.log_fatal(job, f"Unable to find master file {filename} in unit {unit_id}")
            return False
        if master_file.deaccessioned_at is not None:
            self.jobs.log_fatal(job, f"Master file {filename} has been deaccessioned and cannot be downloaded")
            return False
        self.jobs.log_info(job, f"Copying {filename} from archive directory {unit_directory_name(unit_id)}")
        try:
            copied = self.archive.copy_out(unit_id, filename, dest_dir)
        except (ArchiveError, OSError) as exc:
            self.jobs.log_fatal(job, f"Unable to copy {filename}: {exc}")
            return False
        if md5_checksum(copied) != md5_checksum(self.archive.path_for(unit_id, filename)):
            self.jobs.log_error(job, f"MD5 checksum does not match on copied file {copied}")
        self.jobs.log_info(job, f"Masterfile {filename} copied to {dest_dir}")
        return True

    # --- patron deliverables ------------------------------------------------

    def start_deliverables(self, unit_id: int) -> JobStatus:
        """
        Start a "CreatePatronDeliverables" job that rebuilds a unit's patron
        deliverables from its staged or archived master files.

        Raises:
            NotFoundError: If the unit does not exist
            ValueError: If the unit has no patron deliverable format
        """
        unit = self.database.get_unit(unit_id)
        if unit is None:
            raise NotFoundError(f"unit {unit_id} not found")
        if unit.intended_use is None or not unit.needs_patron_deliverables:
            raise ValueError(f"unit {unit_id} does not have patron deliverables")

        job = self.jobs.create("CreatePatronDeliverables", Originator.unit(unit_id))
        self.jobs.log_info(job, f"Loading target unit {unit_id}")
        self.jobs.run_detached(job, lambda: self._create_deliverables(job, unit))
        return job

    def _create_deliverables(self, job: JobStatus, unit: Unit) -> None:
        if unit.intended_use.deliverable_format == "pdf":
            try:
                self.deliverables.create_patron_pdf(job, unit)
            except DeliverableError as exc:
                self.jobs.log_fatal(job, f"Unable to create patron PDF deliverable: {exc}")
                return
        elif not self._zip_deliverables(job, unit):
            return

        self.database.update_unit(unit.id, date_patron_deliverables_ready=utcnow())
        self.jobs.log_info(job, "Deliverables created. Date deliverables ready has been updated.")
        self.jobs.done(job)

    def _zip_deliverables(self, job: JobStatus, unit: Unit) -> bool:
        self.jobs.log_info(job, "Unit requires the creation of zipped patron deliverables.")
        master_files = [mf for mf in self.database.list_master_files(unit.id) if mf.deaccessioned_at is None]
        if not master_files:
            self.jobs.log_fatal(job, f"Unit {unit.id} has no master files")
            return False

        image_dir = self.processing_dir / "finalization" / unit_directory_name(unit.id)
        restored: List[Path] = []
        try:
            for mf in master_files:
                if not (image_dir / mf.filename).exists():
                    restored.append(self.archive.copy_out(unit.id, mf.filename, image_dir))
            if restored:
                self.jobs.log_info(job, f"Copied {len(restored)} master files from the archive to {image_dir}")

            call_number = ""
            location = ""
            if unit.metadata is not None and unit.metadata.type == SIRSI_METADATA:
                call_number = unit.metadata.call_number
                location = self.marc.location(unit.metadata) or ""

            for mf in master_files:
                self.deliverables.create_file_deliverable(
                    job, unit, mf, image_dir / mf.filename, call_number=call_number, location=location
                )
            self.deliverables.zip_patron_deliverables(job, unit, master_files)
        except (ArchiveError, DeliverableError, OSError) as exc:
            self.jobs.log_fatal(job, f"Deliverable creation failed: {exc}")
            return False
        finally:
            self.jobs.log_info(job, "Cleaning up working directories")
            for path in restored:
                path.unlink(missing_ok=True)
            shutil.rmtree(self.deliverables.assemble_dir(unit.id), ignore_errors=True)
        return True

    # --- master file maintenance --------------------------------------------

    def start_delete_master_files(self, unit_id: int, filenames: List[str]) -> JobStatus:
        return self.master_files.start_delete(unit_id, filenames)

    def start_renumber_master_files(self, unit_id: int, filenames: List[str], start_num: int) -> JobStatus:
        return self.master_files.start_renumber(unit_id, filenames, start_num)

    def start_deaccession(self, master_file_id: int, compute_id: str, note: str) -> JobStatus:
        return self.master_files.start_deaccession(master_file_id, compute_id, note)

    # --- finalization -------------------------------------------------------

    def start_finalization(self, unit_id: int) -> JobStatus:
        """
        Raises:
            NotFoundError: If the unit does not exist
            UnitStateError: If the unit cannot be finalized now
        """
        return self.finalizer.start(unit_id)


def build_services(config: DictConfig) -> Services:
    """Create every collaborator from the runtime configuration."""
    database = JobDatabase(Path(config.database.path))
    jobs = JobManager(database, max_workers=config.jobs.max_workers)
    client = ServiceClient(timeout=float(config.http.timeout_seconds))

    processing_dir = ensure_directory(Path(config.directories.processing))
    archive = ArchiveStore(ensure_directory(Path(config.directories.archive)))
    delivery_dir = ensure_directory(Path(config.directories.delivery))

    iiif = IiifStore(config.iiif.bucket, Path(config.iiif.staging_dir))
    registry = PendingOcrRegistry()
    ocr = OcrService(
        client,
        jobs,
        registry,
        ocr_url=config.ocr.url,
        service_url=config.service_url,
        timeout=float(config.ocr.poll_timeout_seconds),
    )
    orders = OrderService(database, jobs)
    publisher = VirgoPublisher(
        database,
        jobs,
        client,
        manifest_url=config.iiif.manifest_url,
        reindex_url=config.reindex_url,
        xml_reindex_url=config.xml_reindex_url,
    )
    projects = make_project_tracker(config, database, client)
    deliverables = PatronDeliverables(
        jobs,
        client,
        processing_dir,
        delivery_dir,
        pdf_url=config.pdf.url,
        poll_interval=float(config.pdf.poll_interval_seconds),
        max_polls=config.pdf.max_polls,
    )
    marc = MarcService(client, config.tracksys_api_url)
    finalizer = Finalizer(
        database=database,
        jobs=jobs,
        orders=orders,
        archive=archive,
        iiif=iiif,
        extractor=ExifToolExtractor(),
        marc=marc,
        ocr=ocr,
        publisher=publisher,
        deliverables=deliverables,
        projects=projects,
        processing_dir=processing_dir,
        min_file_size=config.qa.min_file_size,
        iiif_batch_size=config.iiif.batch_size,
        iiif_max_workers=config.iiif.max_workers,
    )
    return Services(
        config=config,
        database=database,
        jobs=jobs,
        client=client,
        archive=archive,
        iiif=iiif,
        ocr_registry=registry,
        ocr=ocr,
        orders=orders,
        publisher=publisher,
        projects=projects,
        marc=marc,
        deliverables=deliverables,
        master_files=MasterFileService(database, jobs, archive, iiif),
        finalizer=finalizer,
    )

