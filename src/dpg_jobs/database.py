"""
SQLite persistence for job statuses, events and the digitization records
the finalization workflow reads and updates.

Every public method opens its own short-lived connection, so the database
object can be shared freely between request handlers and background tasks.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import PersistenceError
from .models import (
    DIGITAL_COLLECTION_BUILDING,
    EventLevel,
    ImageTechMeta,
    IntendedUse,
    JobEvent,
    JobState,
    JobStatus,
    MasterFile,
    Metadata,
    OcrHint,
    Order,
    Originator,
    OriginatorType,
    Project,
    Unit,
    UnitStatus,
)

# Default database path
DEFAULT_DB_PATH = Path("data/dpg_jobs.db")

# Columns that may be changed through the generic update helpers
UNIT_COLUMNS = {
    "unit_status", "include_in_dl", "master_files_count", "date_archived",
    "date_patron_deliverables_ready", "date_dl_deliverables_ready", "staff_notes",
}
ORDER_COLUMNS = {
    "order_status", "date_order_approved", "date_finalization_begun",
    "date_archiving_complete", "date_patron_deliverables_complete",
}
METADATA_COLUMNS = {"availability_policy_id", "date_dl_ingest", "date_dl_update"}
MASTER_FILE_COLUMNS = {
    "pid", "filename", "title", "date_archived", "transcription_text", "date_dl_ingest",
    "date_dl_update", "deaccessioned_at", "deaccessioned_by", "deaccession_note",
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS job_statuses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        originator_type TEXT NOT NULL,
        originator_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        failures INTEGER NOT NULL DEFAULT 0,
        error TEXT NOT NULL DEFAULT '',
        started_at TEXT NOT NULL,
        ended_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_status_id INTEGER NOT NULL REFERENCES job_statuses(id),
        level INTEGER NOT NULL,
        text TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_job ON events(job_status_id, id)",
    """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY,
        order_status TEXT NOT NULL DEFAULT 'requested',
        fee REAL,
        customer_academic_status_id INTEGER NOT NULL DEFAULT 0,
        date_fee_paid TEXT,
        date_order_approved TEXT,
        date_customer_notified TEXT,
        date_finalization_begun TEXT,
        date_archiving_complete TEXT,
        date_patron_deliverables_complete TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS intended_uses (
        id INTEGER PRIMARY KEY,
        description TEXT NOT NULL DEFAULT '',
        deliverable_format TEXT NOT NULL DEFAULT '',
        deliverable_resolution TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ocr_hints (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        ocr_candidate INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metadata (
        id INTEGER PRIMARY KEY,
        pid TEXT NOT NULL,
        type TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        catalog_key TEXT NOT NULL DEFAULT '',
        call_number TEXT NOT NULL DEFAULT '',
        barcode TEXT NOT NULL DEFAULT '',
        is_personal_item INTEGER NOT NULL DEFAULT 0,
        is_manuscript INTEGER NOT NULL DEFAULT 0,
        availability_policy_id INTEGER,
        ocr_hint_id INTEGER REFERENCES ocr_hints(id),
        ocr_language_hint TEXT NOT NULL DEFAULT '',
        date_dl_ingest TEXT,
        date_dl_update TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS units (
        id INTEGER PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES orders(id),
        metadata_id INTEGER REFERENCES metadata(id),
        intended_use_id INTEGER REFERENCES intended_uses(id),
        unit_status TEXT NOT NULL DEFAULT 'unapproved',
        include_in_dl INTEGER NOT NULL DEFAULT 0,
        remove_watermark INTEGER NOT NULL DEFAULT 0,
        reorder INTEGER NOT NULL DEFAULT 0,
        complete_scan INTEGER NOT NULL DEFAULT 0,
        throw_away INTEGER NOT NULL DEFAULT 0,
        ocr_master_files INTEGER NOT NULL DEFAULT 0,
        staff_notes TEXT NOT NULL DEFAULT '',
        master_files_count INTEGER NOT NULL DEFAULT 0,
        date_archived TEXT,
        date_patron_deliverables_ready TEXT,
        date_dl_deliverables_ready TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS master_files (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        unit_id INTEGER NOT NULL REFERENCES units(id),
        metadata_id INTEGER REFERENCES metadata(id),
        component_id INTEGER,
        pid TEXT NOT NULL DEFAULT '',
        filename TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        filesize INTEGER NOT NULL DEFAULT 0,
        md5 TEXT NOT NULL DEFAULT '',
        transcription_text TEXT NOT NULL DEFAULT '',
        date_archived TEXT,
        date_dl_ingest TEXT,
        date_dl_update TEXT,
        deaccessioned_at TEXT,
        deaccessioned_by TEXT,
        deaccession_note TEXT NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_master_files_unit ON master_files(unit_id)",
    """
    CREATE TABLE IF NOT EXISTS image_tech_meta (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        master_file_id INTEGER NOT NULL UNIQUE REFERENCES master_files(id),
        image_format TEXT NOT NULL DEFAULT '',
        width INTEGER NOT NULL DEFAULT 0,
        height INTEGER NOT NULL DEFAULT 0,
        resolution INTEGER NOT NULL DEFAULT 0,
        color_space TEXT NOT NULL DEFAULT '',
        depth INTEGER NOT NULL DEFAULT 0,
        compression TEXT NOT NULL DEFAULT '',
        color_profile TEXT NOT NULL DEFAULT '',
        equipment TEXT NOT NULL DEFAULT '',
        software TEXT NOT NULL DEFAULT '',
        model TEXT NOT NULL DEFAULT '',
        capture_date TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staff_members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        computing_id TEXT NOT NULL UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS projects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        unit_id INTEGER NOT NULL UNIQUE REFERENCES units(id),
        workflow TEXT NOT NULL DEFAULT '',
        current_step TEXT NOT NULL DEFAULT '',
        finished_at TEXT,
        total_duration_mins INTEGER NOT NULL DEFAULT 0,
        last_error TEXT NOT NULL DEFAULT ''
    )
    """,
]


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _serialize_datetime(value)
    if isinstance(value, bool):
        return int(value)
    return value


class JobDatabase:
    """
    SQLite database for job and digitization records.

    Thread-safe: SQLite handles concurrent access with WAL mode, and every
    state transition is a single statement or a single transaction.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path
        _ensure_db_dir(db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def ping(self) -> None:
        """Raise sqlite3.Error if the database cannot be queried."""
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()

    # --- job statuses -------------------------------------------------------

    def create_job_status(self, name: str, originator: Originator) -> JobStatus:
        """
        Persist a new running job.

        Raises:
            PersistenceError: If the row cannot be written
        """
        started_at = utcnow()
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO job_statuses (
                        originator_type, originator_id, name, status,
                        failures, error, started_at
                    ) VALUES (?, ?, ?, ?, 0, '', ?)
                    """,
                    (
                        originator.type.value,
                        originator.id,
                        name,
                        JobState.RUNNING.value,
                        _serialize_datetime(started_at),
                    ),
                )
                job_id = cursor.lastrowid
        except sqlite3.Error as exc:
            raise PersistenceError(f"unable to create {name} job status: {exc}") from exc

        return JobStatus(
            id=job_id,
            originator=originator,
            name=name,
            started_at=started_at,
        )

    def get_job_status(self, job_id: int) -> Optional[JobStatus]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM job_statuses WHERE id = ?", (job_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def add_event(self, job_id: int, level: EventLevel, text: str) -> None:
        with self._get_connection() as conn:
            self._insert_event(conn, job_id, level, text)

    def add_error(self, job_id: int, text: str) -> int:
        """
        Append an Error event and bump the failure counter in one transaction.

        Returns:
            The job's failure count after the increment
        """
        with self._get_connection() as conn:
            self._insert_event(conn, job_id, EventLevel.ERROR, text)
            conn.execute(
                "UPDATE job_statuses SET failures = failures + 1 WHERE id = ?",
                (job_id,),
            )
            row = conn.execute(
                "SELECT failures FROM job_statuses WHERE id = ?", (job_id,)
            ).fetchone()
        return row["failures"] if row else 0

    def end_job(
        self,
        job_id: int,
        status: JobState,
        level: EventLevel,
        text: str,
        error: str = "",
    ) -> Optional[datetime]:
        """
        Perform a terminal transition if the job has not already ended.

        The terminal event is only written when this call wins the
        transition.

        Returns:
            The new ended_at timestamp, or None if the job had already ended
        """
        ended_at = utcnow()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE job_statuses SET status = ?, error = ?, ended_at = ?
                WHERE id = ? AND ended_at IS NULL
                """,
                (status.value, error, _serialize_datetime(ended_at), job_id),
            )
            if cursor.rowcount == 0:
                return None
            self._insert_event(conn, job_id, level, text)
        return ended_at

    def list_events(self, job_id: int) -> List[JobEvent]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE job_status_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [
            JobEvent(
                id=row["id"],
                job_status_id=row["job_status_id"],
                level=EventLevel(row["level"]),
                text=row["text"],
                created_at=_deserialize_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def _insert_event(self, conn: sqlite3.Connection, job_id: int, level: EventLevel, text: str) -> None:
        conn.execute(
            "INSERT INTO events (job_status_id, level, text, created_at) VALUES (?, ?, ?, ?)",
            (job_id, int(level), text, _serialize_datetime(utcnow())),
        )

    def _row_to_job(self, row: sqlite3.Row) -> JobStatus:
        return JobStatus(
            id=row["id"],
            originator=Originator(OriginatorType(row["originator_type"]), row["originator_id"]),
            name=row["name"],
            status=JobState(row["status"]),
            failures=row["failures"],
            error=row["error"],
            started_at=_deserialize_datetime(row["started_at"]),
            ended_at=_deserialize_datetime(row["ended_at"]),
        )

    # --- units, orders and metadata -----------------------------------------

    def get_unit(self, unit_id: int) -> Optional[Unit]:
        """Load a unit along with its metadata, order and intended use."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM units WHERE id = ?", (unit_id,)).fetchone()
            if not row:
                return None
            unit = self._row_to_unit(row)
            if unit.metadata_id is not None:
                unit.metadata = self._load_metadata(conn, unit.metadata_id)
            unit.order = self._load_order(conn, unit.order_id)
            if unit.intended_use_id is not None:
                use = conn.execute(
                    "SELECT * FROM intended_uses WHERE id = ?", (unit.intended_use_id,)
                ).fetchone()
                if use:
                    unit.intended_use = IntendedUse(
                        id=use["id"],
                        deliverable_format=use["deliverable_format"],
                        deliverable_resolution=use["deliverable_resolution"],
                    )
        return unit

    def get_order(self, order_id: int) -> Optional[Order]:
        with self._get_connection() as conn:
            return self._load_order(conn, order_id)

    def get_metadata(self, metadata_id: int) -> Optional[Metadata]:
        with self._get_connection() as conn:
            return self._load_metadata(conn, metadata_id)

    def claim_unit_for_finalization(self, unit_id: int, prior_status: UnitStatus) -> bool:
        """
        Move a unit to finalizing only if it is still in ``prior_status``.

        Returns:
            True if this call made the transition
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE units SET unit_status = ?
                WHERE id = ? AND unit_status = ? AND reorder = 0
                """,
                (UnitStatus.FINALIZING.value, unit_id, prior_status.value),
            )
            return cursor.rowcount > 0

    def set_unit_status(self, unit_id: int, status: UnitStatus) -> None:
        self.update_unit(unit_id, unit_status=status.value)

    def update_unit(self, unit_id: int, **fields: Any) -> None:
        self._update("units", UNIT_COLUMNS, unit_id, fields)

    def update_order(self, order_id: int, **fields: Any) -> None:
        self._update("orders", ORDER_COLUMNS, order_id, fields)

    def update_metadata(self, metadata_id: int, **fields: Any) -> None:
        self._update("metadata", METADATA_COLUMNS, metadata_id, fields)

    def count_unarchived_units(self, order_id: int) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS cnt FROM units
                WHERE order_id = ? AND unit_status != ? AND date_archived IS NULL
                """,
                (order_id, UnitStatus.CANCELED.value),
            ).fetchone()
        return row["cnt"]

    def count_units_missing_patron_deliverables(self, order_id: int) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS cnt FROM units
                WHERE order_id = ? AND unit_status != ?
                AND (intended_use_id IS NULL OR intended_use_id != ?)
                AND date_patron_deliverables_ready IS NULL
                """,
                (order_id, UnitStatus.CANCELED.value, DIGITAL_COLLECTION_BUILDING),
            ).fetchone()
        return row["cnt"]

    def list_dl_units(self, metadata_id: int) -> List[int]:
        """IDs of the units of a metadata record flagged for inclusion in the DL."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id FROM units WHERE metadata_id = ? AND include_in_dl = 1 ORDER BY id",
                (metadata_id,),
            ).fetchall()
        return [row["id"] for row in rows]

    def is_staff_member(self, computing_id: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM staff_members WHERE computing_id = ? AND is_active = 1",
                (computing_id,),
            ).fetchone()
        return row is not None

    def _update(self, table: str, allowed: Iterable[str], row_id: int, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"cannot update {table} columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        updates = [f"{column} = ?" for column in fields]
        values = [_db_value(value) for value in fields.values()]
        values.append(row_id)
        with self._get_connection() as conn:
            conn.execute(
                f"UPDATE {table} SET {', '.join(updates)} WHERE id = ?",
                values,
            )

    def _load_order(self, conn: sqlite3.Connection, order_id: int) -> Optional[Order]:
        row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if not row:
            return None
        return Order(
            id=row["id"],
            order_status=row["order_status"],
            fee=row["fee"],
            customer_academic_status_id=row["customer_academic_status_id"],
            date_fee_paid=_deserialize_datetime(row["date_fee_paid"]),
            date_order_approved=_deserialize_datetime(row["date_order_approved"]),
            date_customer_notified=_deserialize_datetime(row["date_customer_notified"]),
            date_finalization_begun=_deserialize_datetime(row["date_finalization_begun"]),
            date_archiving_complete=_deserialize_datetime(row["date_archiving_complete"]),
            date_patron_deliverables_complete=_deserialize_datetime(
                row["date_patron_deliverables_complete"]
            ),
        )

    def _load_metadata(self, conn: sqlite3.Connection, metadata_id: int) -> Optional[Metadata]:
        row = conn.execute("SELECT * FROM metadata WHERE id = ?", (metadata_id,)).fetchone()
        if not row:
            return None
        metadata = Metadata(
            id=row["id"],
            pid=row["pid"],
            type=row["type"],
            title=row["title"],
            catalog_key=row["catalog_key"],
            call_number=row["call_number"],
            barcode=row["barcode"],
            is_personal_item=bool(row["is_personal_item"]),
            is_manuscript=bool(row["is_manuscript"]),
            availability_policy_id=row["availability_policy_id"],
            ocr_hint_id=row["ocr_hint_id"],
            ocr_language_hint=row["ocr_language_hint"],
            date_dl_ingest=_deserialize_datetime(row["date_dl_ingest"]),
            date_dl_update=_deserialize_datetime(row["date_dl_update"]),
        )
        if metadata.ocr_hint_id is not None:
            hint = conn.execute(
                "SELECT * FROM ocr_hints WHERE id = ?", (metadata.ocr_hint_id,)
            ).fetchone()
            if hint:
                metadata.ocr_hint = OcrHint(
                    id=hint["id"], name=hint["name"], ocr_candidate=bool(hint["ocr_candidate"])
                )
        return metadata

    def _row_to_unit(self, row: sqlite3.Row) -> Unit:
        return Unit(
            id=row["id"],
            order_id=row["order_id"],
            unit_status=UnitStatus(row["unit_status"]),
            metadata_id=row["metadata_id"],
            intended_use_id=row["intended_use_id"],
            include_in_dl=bool(row["include_in_dl"]),
            remove_watermark=bool(row["remove_watermark"]),
            reorder=bool(row["reorder"]),
            complete_scan=bool(row["complete_scan"]),
            throw_away=bool(row["throw_away"]),
            ocr_master_files=bool(row["ocr_master_files"]),
            staff_notes=row["staff_notes"],
            master_files_count=row["master_files_count"],
            date_archived=_deserialize_datetime(row["date_archived"]),
            date_patron_deliverables_ready=_deserialize_datetime(row["date_patron_deliverables_ready"]),
            date_dl_deliverables_ready=_deserialize_datetime(row["date_dl_deliverables_ready"]),
        )

    # --- master files -------------------------------------------------------

    def find_master_file(self, filename: str) -> Optional[MasterFile]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM master_files WHERE filename = ? LIMIT 1", (filename,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_master_file(conn, row)

    def get_master_file(self, master_file_id: int) -> Optional[MasterFile]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM master_files WHERE id = ?", (master_file_id,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_master_file(conn, row)

    def list_master_files(self, unit_id: int) -> List[MasterFile]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM master_files WHERE unit_id = ? ORDER BY filename",
                (unit_id,),
            ).fetchall()
            return [self._row_to_master_file(conn, row) for row in rows]

    def create_master_file(self, master_file: MasterFile) -> MasterFile:
        """Insert a master file and assign its ``tsm:<id>`` PID."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO master_files (
                    unit_id, metadata_id, component_id, filename, title,
                    description, filesize, md5
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    master_file.unit_id,
                    master_file.metadata_id,
                    master_file.component_id,
                    master_file.filename,
                    master_file.title,
                    master_file.description,
                    master_file.filesize,
                    master_file.md5,
                ),
            )
            master_file.id = cursor.lastrowid
            master_file.pid = f"tsm:{master_file.id}"
            conn.execute(
                "UPDATE master_files SET pid = ? WHERE id = ?",
                (master_file.pid, master_file.id),
            )
        return master_file

    def master_files_for_metadata(self, metadata_id: int, unit_id: Optional[int] = None) -> List[MasterFile]:
        """Master files described by a metadata record, optionally limited to one unit."""
        sql = "SELECT * FROM master_files WHERE metadata_id = ?"
        params: List[Any] = [metadata_id]
        if unit_id is not None:
            sql += " AND unit_id = ?"
            params.append(unit_id)
        with self._get_connection() as conn:
            rows = conn.execute(sql + " ORDER BY filename", params).fetchall()
            return [self._row_to_master_file(conn, row) for row in rows]

    def update_master_file(self, master_file_id: int, **fields: Any) -> None:
        self._update("master_files", MASTER_FILE_COLUMNS, master_file_id, fields)

    def delete_master_file(self, master_file_id: int) -> None:
        """Remove a master file and its image tech metadata."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM image_tech_meta WHERE master_file_id = ?", (master_file_id,))
            conn.execute("DELETE FROM master_files WHERE id = ?", (master_file_id,))

    def create_tech_meta(self, master_file_id: int, meta: ImageTechMeta) -> ImageTechMeta:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO image_tech_meta (
                    master_file_id, image_format, width, height, resolution,
                    color_space, depth, compression, color_profile, equipment,
                    software, model, capture_date
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    master_file_id,
                    meta.image_format,
                    meta.width,
                    meta.height,
                    meta.resolution,
                    meta.color_space,
                    meta.depth,
                    meta.compression,
                    meta.color_profile,
                    meta.equipment,
                    meta.software,
                    meta.model,
                    _serialize_datetime(meta.capture_date),
                ),
            )
            meta.id = cursor.lastrowid
        return meta

    def _row_to_master_file(self, conn: sqlite3.Connection, row: sqlite3.Row) -> MasterFile:
        master_file = MasterFile(
            id=row["id"],
            unit_id=row["unit_id"],
            filename=row["filename"],
            pid=row["pid"],
            metadata_id=row["metadata_id"],
            component_id=row["component_id"],
            title=row["title"],
            description=row["description"],
            filesize=row["filesize"],
            md5=row["md5"],
            transcription_text=row["transcription_text"],
            date_archived=_deserialize_datetime(row["date_archived"]),
            date_dl_ingest=_deserialize_datetime(row["date_dl_ingest"]),
            date_dl_update=_deserialize_datetime(row["date_dl_update"]),
            deaccessioned_at=_deserialize_datetime(row["deaccessioned_at"]),
            deaccessioned_by=row["deaccessioned_by"],
            deaccession_note=row["deaccession_note"],
        )
        tech = conn.execute(
            "SELECT * FROM image_tech_meta WHERE master_file_id = ?", (master_file.id,)
        ).fetchone()
        if tech:
            master_file.tech_meta = ImageTechMeta(
                id=tech["id"],
                image_format=tech["image_format"],
                width=tech["width"],
                height=tech["height"],
                resolution=tech["resolution"],
                color_space=tech["color_space"],
                depth=tech["depth"],
                compression=tech["compression"],
                color_profile=tech["color_profile"],
                equipment=tech["equipment"],
                software=tech["software"],
                model=tech["model"],
                capture_date=_deserialize_datetime(tech["capture_date"]),
            )
        return master_file

    # --- projects -----------------------------------------------------------

    def get_unit_project(self, unit_id: int) -> Optional[Project]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE unit_id = ? LIMIT 1", (unit_id,)
            ).fetchone()
        if not row:
            return None
        return Project(
            id=row["id"],
            unit_id=row["unit_id"],
            workflow=row["workflow"],
            current_step=row["current_step"],
            finished=row["finished_at"] is not None,
            last_error=row["last_error"],
        )

    def finish_project(self, project_id: int, processing_mins: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE projects SET finished_at = ?, last_error = '',
                total_duration_mins = total_duration_mins + ?
                WHERE id = ?
                """,
                (_serialize_datetime(utcnow()), processing_mins, project_id),
            )

    def fail_project(self, project_id: int, reason: str, processing_mins: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE projects SET last_error = ?,
                total_duration_mins = total_duration_mins + ?
                WHERE id = ?
                """,
                (reason, processing_mins, project_id),
            )
