"""
Patron deliverables: per-image JPEG/TIFF renditions bundled into zip files,
or a single PDF built by the remote PDF service.

Renditions are assembled in ``<processing>/finalization/tmp/<unit>`` and the
finished zips are written to ``<delivery>/order_<order id>/``.
"""

from __future__ import annotations

import hashlib
import logging
import subprocess
import time
import zipfile
from pathlib import Path
from typing import Callable, List, Optional

from .errors import DeliverableError, RequestError
from .http_client import ServiceClient
from .job_manager import JobManager
from .models import JobStatus, MasterFile, Unit
from .utils import copy_file, ensure_directory, unit_directory_name

logger = logging.getLogger(__name__)

MAX_ZIP_SIZE = 2 * 1024 * 1024 * 1024
MAX_TITLE_LENGTH = 145
# web publication and online exhibit uses never get a watermark
NO_WATERMARK_USES = (103, 109)
PRIVATE_STUDY_USES = (104, 106)
CLASSROOM_USE = 100

PRIVATE_STUDY_NOTICE = (
    "This single copy was produced for the purposes of private study, scholarship, or research "
    "pursuant to 17 USC § 107 and/or 108.\nCopyright and other legal restrictions may apply to "
    "further uses. Special Collections, University of Virginia Library."
)
CLASSROOM_NOTICE = (
    "This single copy was produced for the purposes of classroom teaching pursuant to 17 USC § 107 "
    "(fair use).\nCopyright and other legal restrictions may apply to further uses. Special "
    "Collections, University of Virginia Library."
)


def deliverable_name(filename: str, deliverable_format: str) -> str:
    stem = Path(filename).stem
    return f"{stem}.jpg" if deliverable_format == "jpeg" else f"{stem}.tif"


def pdf_token(metadata_pid: str, unit_id: int) -> str:
    return hashlib.md5(f"{metadata_pid}.unit{unit_id}".encode("utf-8")).hexdigest()


class PatronDeliverables:
    """
    Builds patron deliverables for a unit.

    Args:
        jobs: Job manager events are logged through
        client: HTTP client used for the PDF service
        processing_dir: Root of the processing area
        delivery_dir: Root of the patron delivery area
        pdf_url: Base URL of the PDF service
        poll_interval: Seconds between PDF status checks
        max_polls: Status checks before PDF generation is abandoned
    """

    def __init__(
        self,
        jobs: JobManager,
        client: ServiceClient,
        processing_dir: Path,
        delivery_dir: Path,
        pdf_url: str,
        poll_interval: float = 15.0,
        max_polls: int = 960,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.jobs = jobs
        self.client = client
        self.processing_dir = Path(processing_dir)
        self.delivery_dir = Path(delivery_dir)
        self.pdf_url = pdf_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep

    def assemble_dir(self, unit_id: int) -> Path:
        return self.processing_dir / "finalization" / "tmp" / unit_directory_name(unit_id)

    def order_dir(self, order_id: int) -> Path:
        return self.delivery_dir / f"order_{order_id}"

    def create_file_deliverable(
        self,
        job: JobStatus,
        unit: Unit,
        master_file: MasterFile,
        source: Path,
        call_number: str = "",
        location: str = "",
    ) -> Path:
        """
        Produce the JPEG or TIFF rendition of one master file.

        Existing renditions are kept, so a retried finalization only builds
        what is missing.

        Raises:
            DeliverableError: If the intended use is unusable or ImageMagick fails
        """
        self.jobs.log_info(job, f"Create patron deliverable for {master_file.filename}")
        intended_use = unit.intended_use
        if intended_use is None:
            raise DeliverableError(f"unit {unit.id} has no intended use")
        desired_res = intended_use.deliverable_resolution
        actual_res = master_file.tech_meta.resolution if master_file.tech_meta else 0
        width = master_file.tech_meta.width if master_file.tech_meta else 0
        if desired_res == "300" and actual_res == 0:
            raise DeliverableError("actual_resolution is required when desired_resolution is specified")
        resample = int(desired_res) if desired_res.isdigit() else 0

        add_notice = False
        if intended_use.deliverable_format == "jpeg":
            is_personal = bool(unit.metadata and unit.metadata.is_personal_item)
            if is_personal or unit.remove_watermark or intended_use.id in NO_WATERMARK_USES:
                self.jobs.log_info(
                    job,
                    f"Patron deliverable is a jpg file and will NOT have a watermark; personal_item: "
                    f"{is_personal}, remove_watermark: {unit.remove_watermark}, use_id: {intended_use.id}",
                )
            else:
                add_notice = True
                self.jobs.log_info(job, "Patron deliverable is a jpg file and will have a watermark")
        elif intended_use.deliverable_format == "tiff":
            self.jobs.log_info(job, "Patron deliverable is a tif file and will NOT have a watermark")
        else:
            raise DeliverableError(f"unknown deliverable format {intended_use.deliverable_format}")

        dest_dir = ensure_directory(self.assemble_dir(unit.id))
        dest = dest_dir / deliverable_name(master_file.filename, intended_use.deliverable_format)
        if dest.exists():
            self.jobs.log_info(job, f"Deliverable already exists at {dest}")
            return dest

        if intended_use.deliverable_format == "tiff" and desired_res in ("", "Highest Possible"):
            copy_file(Path(source), dest)
            return dest

        command: List[str] = ["magick", f"{source}[0]"]
        if add_notice:
            notice = self._legal_notice(unit, call_number, location)
            point_size = max(width * 0.015, 22)
            command += [
                "-bordercolor", "lightgray", "-border", "0x10",
                "-pointsize", f"{point_size:.2f}", "-size", f"{width}x",
                "-background", "lightgray", "-gravity", "center",
                f"caption:{notice}",
                "-gravity", "Center", "-append",
                "-bordercolor", "lightgray", "-border", "30x20",
            ]
        if resample > 0:
            command += ["-resample", str(resample)]
        command.append(str(dest))

        self.jobs.log_info(job, " ".join(command))
        try:
            subprocess.run(command, check=True, capture_output=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            output = getattr(exc, "stderr", b"") or b""
            logger.error(f"convert command failed: {exc} - {output.decode(errors='replace')}")
            raise DeliverableError(f"unable to create {dest.name}: {exc}") from exc
        self.jobs.log_info(job, f"Patron deliverable created at {dest}")
        return dest

    def _legal_notice(self, unit: Unit, call_number: str, location: str) -> str:
        title = unit.metadata.title if unit.metadata else ""
        notice = f"Title: {title[:MAX_TITLE_LENGTH]}\n"
        if call_number:
            notice += f"Call Number: {call_number}\n"
        if location:
            notice += f"Location: {location}\n"
        if unit.intended_use_id in PRIVATE_STUDY_USES:
            notice += PRIVATE_STUDY_NOTICE
        elif unit.intended_use_id == CLASSROOM_USE:
            notice += CLASSROOM_NOTICE
        return notice

    def zip_patron_deliverables(self, job: JobStatus, unit: Unit, master_files: List[MasterFile]) -> List[Path]:
        """
        Bundle the unit's renditions into ``<unit>_<n>.zip`` files of at most 2GB.

        When OCR was requested the transcriptions are added as ``<unit>.txt``.
        """
        self.jobs.log_info(job, f"Zipping deliverables for unit {unit.id}")
        delivery = ensure_directory(self.order_dir(unit.order_id))
        assemble = self.assemble_dir(unit.id)
        deliverable_format = unit.intended_use.deliverable_format if unit.intended_use else ""

        entries = [assemble / deliverable_name(mf.filename, deliverable_format) for mf in master_files]
        if unit.ocr_master_files:
            ocr_file = ensure_directory(assemble) / f"{unit.id}.txt"
            self.jobs.log_info(job, f"OCR was requested for this unit; writing OCR results to {ocr_file}")
            with ocr_file.open("w", encoding="utf-8") as handle:
                for mf in master_files:
                    handle.write(f"{mf.filename}\n{mf.transcription_text}\n")
            entries.append(ocr_file)

        zips: List[Path] = []
        archive: Optional[zipfile.ZipFile] = None
        try:
            for entry in entries:
                if archive is None or Path(archive.filename).stat().st_size > MAX_ZIP_SIZE:
                    if archive is not None:
                        archive.close()
                        self.jobs.log_info(job, f"Zip 2GB max filesize exceeded; creating zip #{len(zips) + 1}")
                    zip_path = delivery / f"{unit.id}_{len(zips) + 1}.zip"
                    zip_path.unlink(missing_ok=True)
                    self.jobs.log_info(job, f"Create {zip_path}...")
                    archive = zipfile.ZipFile(zip_path, "w")
                    zips.append(zip_path)
                self.jobs.log_info(job, f"Add {entry.name} to {zips[-1]}")
                archive.write(entry, arcname=entry.name)
                archive.fp.flush()
        finally:
            if archive is not None:
                archive.close()
        return zips

    def create_patron_pdf(self, job: JobStatus, unit: Unit) -> Path:
        """
        Have the PDF service render the unit, then zip the PDF for delivery.

        Raises:
            DeliverableError: If the PDF service fails or never finishes
        """
        if unit.metadata is None:
            raise DeliverableError(f"unit {unit.id} has no metadata")
        self.jobs.log_info(job, "Unit requires the creation of PDF patron deliverables.")
        assemble = ensure_directory(self.assemble_dir(unit.id))
        pdf_path = assemble / f"{unit.id}.pdf"
        pdf_path.unlink(missing_ok=True)

        pid = unit.metadata.pid
        token = pdf_token(pid, unit.id)
        request_url = f"{self.pdf_url}/{pid}"
        self.jobs.log_info(job, f"Request PDF with {request_url}?unit={unit.id}&embed=1")
        try:
            self.client.get(request_url, params={"unit": unit.id, "embed": 1, "token": token})
        except RequestError as exc:
            raise DeliverableError(f"pdf request failed: {exc}") from exc

        self.jobs.log_info(job, "PDF generate started; poll for status")
        self._await_pdf(pid, token)
        self.jobs.log_info(job, "PDF generation is done")

        download_url = f"{self.pdf_url}/{pid}/download"
        self.jobs.log_info(job, f"Download PDF from {download_url} to {pdf_path}")
        try:
            self.client.download(download_url, pdf_path, params={"token": token})
        except RequestError as exc:
            raise DeliverableError(f"pdf download failed: {exc}") from exc

        delivery = ensure_directory(self.order_dir(unit.order_id))
        zip_path = delivery / f"{unit.id}.zip"
        zip_path.unlink(missing_ok=True)
        self.jobs.log_info(job, f"Zip PDF to {zip_path}")
        with zipfile.ZipFile(zip_path, "w") as archive:
            archive.write(pdf_path, arcname=pdf_path.name)
        self.jobs.log_info(job, "Zip deliverable of PDF created.")
        return zip_path

    def _await_pdf(self, pid: str, token: str) -> None:
        status_url = f"{self.pdf_url}/{pid}/status"
        for _ in range(self.max_polls):
            self._sleep(self.poll_interval)
            try:
                status = self.client.get(status_url, params={"token": token}).decode("utf-8").strip()
            except RequestError as exc:
                raise DeliverableError(f"status check failed: {exc}") from exc
            if status == "READY":
                return
            if status == "FAILED":
                raise DeliverableError("PDF generation failed")
        raise DeliverableError(f"PDF generation not finished after {self.max_polls} status checks")
