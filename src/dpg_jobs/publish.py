"""
Publication of finalized units to Virgo, the library discovery system.

Publishing refreshes the IIIF manifest, stamps DL ingest/update dates on the
metadata and its master files, asks the matching reindex service to pick
the record up and marks the unit's DL deliverables ready.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .database import JobDatabase, utcnow
from .errors import PublishError, RequestError
from .http_client import ServiceClient
from .job_manager import JobManager
from .models import JobStatus, MasterFile, Metadata, Unit

logger = logging.getLogger(__name__)

SIRSI_METADATA = "SirsiMetadata"
XML_METADATA = "XmlMetadata"
EXTERNAL_METADATA = "ExternalMetadata"
PUBLISHABLE_TYPES = (SIRSI_METADATA, XML_METADATA)


class VirgoPublisher:
    def __init__(
        self,
        database: JobDatabase,
        jobs: JobManager,
        client: ServiceClient,
        manifest_url: str,
        reindex_url: str,
        xml_reindex_url: str,
    ) -> None:
        self.database = database
        self.jobs = jobs
        self.client = client
        self.manifest_url = manifest_url.rstrip("/")
        self.reindex_url = reindex_url.rstrip("/")
        self.xml_reindex_url = xml_reindex_url.rstrip("/")

    def publish(self, job: Optional[JobStatus], metadata: Metadata) -> None:
        """
        Publish a metadata record according to its type.

        Raises:
            PublishError: If the record cannot be published
        """
        if metadata.type == SIRSI_METADATA:
            self.publish_sirsi(job, metadata)
        elif metadata.type == XML_METADATA:
            self.publish_xml(job, metadata)
        else:
            raise PublishError(f"metadata {metadata.id} type {metadata.type} is not a candidate for publication")

    def publish_sirsi(self, job: Optional[JobStatus], metadata: Metadata) -> None:
        self.jobs.log_info(job, "Publish Sirsi metadata to Virgo")
        if not metadata.catalog_key:
            raise PublishError(f"metadata {metadata.id} is missing a catalog key")
        if metadata.availability_policy_id is None:
            raise PublishError(f"metadata {metadata.id} is missing availability policy")

        unit = self._single_dl_unit(job, metadata)
        if unit is None:
            raise PublishError(f"no unit of metadata {metadata.id} is flagged for inclusion in the DL")
        self.jobs.log_info(job, f"Unit {unit.id} will be published to DL")

        self._refresh_manifest(job, metadata)
        self._stamp_metadata(job, metadata)
        master_files = self.database.list_master_files(unit.id)
        self._stamp_master_files(master_files)

        self.jobs.log_info(job, f"Call the reindex service for {metadata.id} - {metadata.catalog_key}")
        try:
            self.client.put(f"{self.reindex_url}/api/reindex/{metadata.catalog_key}")
        except RequestError as exc:
            raise PublishError(f"{metadata.catalog_key} reindex request failed {exc}") from exc
        self.jobs.log_info(job, f"{metadata.catalog_key} reindex request successful")

        self._mark_ready(job, unit)
        self.jobs.log_info(job, f"Unit and {len(master_files)} master files have been published to the DL")

    def publish_xml(self, job: Optional[JobStatus], metadata: Metadata) -> None:
        self.jobs.log_info(job, f"Call the XML reindex service for {metadata.pid}")
        unit = self._single_dl_unit(job, metadata)
        if unit is not None:
            master_files = self.database.master_files_for_metadata(metadata.id, unit_id=unit.id)
        else:
            # metadata written for individual master files after ingest has no
            # unit link; find the one DL unit through the master files instead
            self.jobs.log_info(job, f"No units found for metadata {metadata.id}, looking for master files")
            unit, master_files = self._unit_from_master_files(metadata)
        self.jobs.log_info(job, f"{len(master_files)} masterfiles from unit {unit.id} will be published to DL")

        self._refresh_manifest(job, metadata)
        self._stamp_metadata(job, metadata)
        self._stamp_master_files(master_files)

        try:
            self.client.put(f"{self.xml_reindex_url}/{metadata.id}")
        except RequestError as exc:
            raise PublishError(f"XML {metadata.pid} reindex request failed {exc}") from exc

        self._mark_ready(job, unit)
        self.jobs.log_info(job, f"XML {metadata.pid} reindex request successful")

    def _single_dl_unit(self, job: Optional[JobStatus], metadata: Metadata) -> Optional[Unit]:
        self.jobs.log_info(job, "Find the single unit flagged for inclusion in DL")
        unit_ids = self.database.list_dl_units(metadata.id)
        if len(unit_ids) > 1:
            raise PublishError("too many units flagged for publication")
        if not unit_ids:
            return None
        return self.database.get_unit(unit_ids[0])

    def _unit_from_master_files(self, metadata: Metadata):
        unit: Optional[Unit] = None
        selected: List[MasterFile] = []
        for master_file in self.database.master_files_for_metadata(metadata.id):
            candidate = unit if unit and unit.id == master_file.unit_id else self.database.get_unit(master_file.unit_id)
            if candidate is None or not candidate.include_in_dl:
                continue
            if unit is not None and unit.id != candidate.id:
                raise PublishError("too many units flagged for publication")
            unit = candidate
            selected.append(master_file)
        if unit is None:
            raise PublishError("no units suitable for publication")
        return unit, selected

    def _refresh_manifest(self, job: Optional[JobStatus], metadata: Metadata) -> None:
        url = f"{self.manifest_url}/pid/{metadata.pid}"
        self.jobs.log_info(job, f"Generating IIIF manifest with {url}?refresh=true")
        try:
            self.client.get(url, params={"refresh": "true"})
        except RequestError as exc:
            raise PublishError(f"Unable to generate IIIF manifest: {exc}") from exc
        self.jobs.log_info(job, "IIIF manifest successfully generated")

    def _stamp_metadata(self, job: Optional[JobStatus], metadata: Metadata) -> None:
        now = utcnow()
        if metadata.date_dl_ingest is None:
            self.jobs.log_info(job, f"Set DateDlIngest for metadata record {metadata.id}")
            self.database.update_metadata(metadata.id, date_dl_ingest=now)
            metadata.date_dl_ingest = now
        else:
            self.jobs.log_info(job, f"Set DateDlUpdate for metadata record {metadata.id}")
            self.database.update_metadata(metadata.id, date_dl_update=now)
            metadata.date_dl_update = now

    def _stamp_master_files(self, master_files: List[MasterFile]) -> None:
        now = utcnow()
        for master_file in master_files:
            if master_file.date_dl_ingest is None:
                self.database.update_master_file(master_file.id, date_dl_ingest=now)
            else:
                self.database.update_master_file(master_file.id, date_dl_update=now)
        logger.info(f"DL dates stamped on {len(master_files)} master files")

    def _mark_ready(self, job: Optional[JobStatus], unit: Unit) -> None:
        if unit.date_dl_deliverables_ready is None:
            self.jobs.log_info(job, "Set date unit deliverables ready")
            self.database.update_unit(unit.id, date_dl_deliverables_ready=utcnow())
