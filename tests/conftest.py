"""
Pytest configuration and fixtures for DPG Jobs tests.
"""

import os
import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
TEST_ROOT = Path(tempfile.mkdtemp(prefix="dpg_jobs_test_"))
os.environ["DPG_DATABASE__PATH"] = str(TEST_ROOT / "jobs.db")
os.environ["DPG_DIRECTORIES__PROCESSING"] = str(TEST_ROOT / "work")
os.environ["DPG_DIRECTORIES__ARCHIVE"] = str(TEST_ROOT / "archive")
os.environ["DPG_DIRECTORIES__DELIVERY"] = str(TEST_ROOT / "delivery")
os.environ["DPG_IIIF__STAGING_DIR"] = str(TEST_ROOT / "iiif_stage")
os.environ["DPG_PROJECTS__MODE"] = "database"
os.environ["DPG_SERVICE_URL"] = "http://jobs.test"

from dpg_jobs.database import JobDatabase  # noqa: E402
from dpg_jobs.job_manager import JobManager  # noqa: E402
from dpg_jobs.main import app, services  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def test_root():
    """Remove the shared test directory after the session."""
    yield TEST_ROOT
    services.jobs.shutdown(wait=True)
    shutil.rmtree(TEST_ROOT, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def db(tmp_path):
    """A fresh database per test."""
    return JobDatabase(tmp_path / "test.db")


@pytest.fixture
def jobs(db):
    """Job manager over the per-test database; waits for background work on teardown."""
    manager = JobManager(db, max_workers=2)
    yield manager
    manager.shutdown(wait=True)


class Seeder:
    """Inserts digitization records with sensible defaults."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _insert(self, table: str, **values):
        columns = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute(f"INSERT OR REPLACE INTO {table} ({columns}) VALUES ({marks})", tuple(values.values()))
            conn.commit()
        finally:
            conn.close()

    def order(self, order_id=1, **values):
        self._insert("orders", id=order_id, **values)
        return order_id

    def intended_use(self, use_id=110, deliverable_format="", deliverable_resolution=""):
        self._insert(
            "intended_uses",
            id=use_id,
            deliverable_format=deliverable_format,
            deliverable_resolution=deliverable_resolution,
        )
        return use_id

    def ocr_hint(self, hint_id=1, name="Modern Font", ocr_candidate=1):
        self._insert("ocr_hints", id=hint_id, name=name, ocr_candidate=ocr_candidate)
        return hint_id

    def metadata(self, metadata_id=1, **values):
        defaults = {
            "pid": f"tsb:{metadata_id}",
            "type": "SirsiMetadata",
            "title": "Annual report",
            "catalog_key": "u12345",
            "barcode": "X000123",
            "ocr_hint_id": 1,
            "ocr_language_hint": "eng",
        }
        defaults.update(values)
        self._insert("metadata", id=metadata_id, **defaults)
        return metadata_id

    def unit(self, unit_id=1, **values):
        defaults = {
            "order_id": 1,
            "metadata_id": 1,
            "intended_use_id": 110,
            "unit_status": "approved",
        }
        defaults.update(values)
        self._insert("units", id=unit_id, **defaults)
        return unit_id

    def project(self, unit_id=1, project_id=1):
        self._insert("projects", id=project_id, unit_id=unit_id, workflow="Standard", current_step="Finalize")
        return project_id

    def staff_member(self, computing_id):
        self._insert("staff_members", computing_id=computing_id)

    def master_file(self, master_file_id, unit_id=1, filename="", **values):
        filename = filename or f"{unit_id:09d}_{master_file_id:04d}.tif"
        self._insert(
            "master_files",
            id=master_file_id,
            unit_id=unit_id,
            pid=f"tsm:{master_file_id}",
            filename=filename,
            **values,
        )
        return filename

    def standard_unit(self, unit_id=1, **unit_values):
        """Order, intended use, OCR hint, metadata and an approved unit."""
        self.order(order_status="requested")
        self.intended_use(110)
        self.ocr_hint()
        self.metadata()
        return self.unit(unit_id, **unit_values)


@pytest.fixture
def seed(db):
    """Seeder for the per-test database."""
    return Seeder(db.db_path)


@pytest.fixture
def app_seed():
    """Seeder for the database the app under test uses."""
    return Seeder(services.database.db_path)
