from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    RUNNING = "running"
    FINISHED = "finished"
    FAILURE = "failure"


class EventLevel(IntEnum):
    # WARNING is part of the stored enumeration but nothing writes it
    INFO = 0
    WARNING = 1
    ERROR = 2
    FATAL = 3


class OriginatorType(str, Enum):
    UNIT = "Unit"
    METADATA = "Metadata"
    ORDER = "Order"
    MASTER_FILE = "MasterFile"
    STAFF_MEMBER = "StaffMember"


@dataclass(frozen=True)
class Originator:
    """The entity whose request started a job, e.g. ``Originator(OriginatorType.UNIT, 42)``."""

    type: OriginatorType
    id: int

    @classmethod
    def unit(cls, unit_id: int) -> "Originator":
        return cls(OriginatorType.UNIT, unit_id)

    @classmethod
    def metadata(cls, metadata_id: int) -> "Originator":
        return cls(OriginatorType.METADATA, metadata_id)

    @classmethod
    def order(cls, order_id: int) -> "Originator":
        return cls(OriginatorType.ORDER, order_id)

    @classmethod
    def master_file(cls, master_file_id: int) -> "Originator":
        return cls(OriginatorType.MASTER_FILE, master_file_id)


@dataclass
class JobStatus:
    """
    In-memory copy of one job_statuses row.

    The database row is authoritative; JobManager keeps this copy in step
    with every transition it performs.
    """

    id: int
    originator: Originator
    name: str
    status: JobState = JobState.RUNNING
    failures: int = 0
    error: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def ended(self) -> bool:
        return self.ended_at is not None

    def to_view(self) -> "JobStatusView":
        return JobStatusView(
            id=self.id,
            name=self.name,
            status=self.status,
            failures=self.failures,
            error=self.error,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


@dataclass
class JobEvent:
    id: int
    job_status_id: int
    level: EventLevel
    text: str
    created_at: datetime


class JobStatusView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    status: JobState
    failures: int
    error: str = ""
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")


class JobEventView(BaseModel):
    level: str
    text: str
    created_at: datetime


class OcrRequest(BaseModel):
    type: str
    id: int


class OcrCallback(BaseModel):
    status: str
    message: str = ""


class ArchiveCopyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    compute_id: str = Field(alias="computeID")
    filename: str = ""
    files: List[str] = Field(default_factory=list)


class MasterFileListRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filenames: List[str] = Field(default_factory=list)
    start_num: int = Field(default=1, alias="startNum")


class DeaccessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    compute_id: str = Field(alias="computeID")
    note: str = ""


class ComponentHealth(BaseModel):
    healthy: bool
    message: Optional[str] = None


# --- digitization records -------------------------------------------------

DIGITAL_COLLECTION_BUILDING = 110


class UnitStatus(str, Enum):
    UNAPPROVED = "unapproved"
    APPROVED = "approved"
    FINALIZING = "finalizing"
    ERROR = "error"
    DONE = "done"
    CANCELED = "canceled"


@dataclass
class OcrHint:
    id: int
    name: str
    ocr_candidate: bool


@dataclass
class IntendedUse:
    id: int
    deliverable_format: str = ""
    deliverable_resolution: str = ""


@dataclass
class Metadata:
    id: int
    pid: str
    type: str
    title: str = ""
    catalog_key: str = ""
    call_number: str = ""
    barcode: str = ""
    is_personal_item: bool = False
    is_manuscript: bool = False
    availability_policy_id: Optional[int] = None
    ocr_hint_id: Optional[int] = None
    ocr_hint: Optional[OcrHint] = None
    ocr_language_hint: str = ""
    date_dl_ingest: Optional[datetime] = None
    date_dl_update: Optional[datetime] = None


@dataclass
class Order:
    id: int
    order_status: str = ""
    fee: Optional[float] = None
    customer_academic_status_id: int = 0
    date_fee_paid: Optional[datetime] = None
    date_order_approved: Optional[datetime] = None
    date_customer_notified: Optional[datetime] = None
    date_finalization_begun: Optional[datetime] = None
    date_archiving_complete: Optional[datetime] = None
    date_patron_deliverables_complete: Optional[datetime] = None


@dataclass
class Unit:
    id: int
    order_id: int
    unit_status: UnitStatus
    metadata_id: Optional[int] = None
    metadata: Optional[Metadata] = None
    order: Optional[Order] = None
    intended_use_id: Optional[int] = None
    intended_use: Optional[IntendedUse] = None
    include_in_dl: bool = False
    remove_watermark: bool = False
    reorder: bool = False
    complete_scan: bool = False
    throw_away: bool = False
    ocr_master_files: bool = False
    staff_notes: str = ""
    master_files_count: int = 0
    date_archived: Optional[datetime] = None
    date_patron_deliverables_ready: Optional[datetime] = None
    date_dl_deliverables_ready: Optional[datetime] = None

    @property
    def needs_patron_deliverables(self) -> bool:
        return self.intended_use_id != DIGITAL_COLLECTION_BUILDING


@dataclass
class ImageTechMeta:
    image_format: str = ""
    width: int = 0
    height: int = 0
    resolution: int = 0
    color_space: str = ""
    depth: int = 0
    compression: str = ""
    color_profile: str = ""
    equipment: str = ""
    software: str = ""
    model: str = ""
    capture_date: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class MasterFile:
    id: int
    unit_id: int
    filename: str
    pid: str = ""
    metadata_id: Optional[int] = None
    component_id: Optional[int] = None
    title: str = ""
    description: str = ""
    filesize: int = 0
    md5: str = ""
    transcription_text: str = ""
    date_archived: Optional[datetime] = None
    date_dl_ingest: Optional[datetime] = None
    date_dl_update: Optional[datetime] = None
    deaccessioned_at: Optional[datetime] = None
    deaccessioned_by: Optional[str] = None
    deaccession_note: str = ""
    tech_meta: Optional[ImageTechMeta] = None


@dataclass
class EmbeddedMetadata:
    """Descriptive fields captured in the IPTC headers of a scanned image."""

    title: str
    description: str = ""
    component_id: int = 0
    box: str = ""
    folder: str = ""


@dataclass
class Project:
    id: int
    unit_id: int
    workflow: str = ""
    current_step: str = ""
    finished: bool = False
    last_error: str = ""
