"""
Tests for unit finalization.

Collaborators that reach outside the process (IIIF bucket, exiftool,
catalog, OCR, Virgo) are replaced with fakes; the archive, orders and
database are real and live in the test's temporary directory.
"""

import time
import zipfile

import pytest

from dpg_jobs.archive_store import ArchiveStore
from dpg_jobs.deliverables import PatronDeliverables
from dpg_jobs.errors import (
    DeliverableError,
    ExtractionError,
    FinalizationError,
    IiifError,
    NotFoundError,
    PublishError,
    RequestError,
    UnitStateError,
)
from dpg_jobs.finalization import Finalizer
from dpg_jobs.models import (
    EmbeddedMetadata,
    EventLevel,
    ImageTechMeta,
    JobState,
    Originator,
    UnitStatus,
)
from dpg_jobs.orders import OrderService
from dpg_jobs.projects import DatabaseProjectTracker


class FakeIiif:
    def __init__(self):
        self.published = []

    def publish(self, source, pid, image_format, overwrite=False):
        self.published.append(pid)
        return True


class FakeExtractor:
    def __init__(self, tech=None, crash=False):
        self.tech = tech or ImageTechMeta(image_format="TIFF", width=2000, height=3000, resolution=400, color_space="RGB")
        self.crash = crash

    def extract(self, path):
        return ImageTechMeta(**vars(self.tech))

    def embedded(self, path):
        if self.crash:
            raise RuntimeError("exiftool vanished")
        return EmbeddedMetadata(title=f"Page {path.stem[-1]}", description="scan")


class BrokenExtractor(FakeExtractor):
    def embedded(self, path):
        raise ExtractionError(f"missing required Headline in tif metadata for {path}")


class FakeMarc:
    def __init__(self, year=0):
        self.year = year

    def publication_year(self, metadata):
        return self.year

    def location(self, metadata):
        return None


class FakeOcr:
    def __init__(self):
        self.requests = []

    def request(self, job, pid, lang, unit_id=None):
        self.requests.append((pid, lang, unit_id))


class FakePublisher:
    def __init__(self):
        self.published = []

    def publish(self, job, metadata):
        self.published.append(metadata.id)


class UnavailableOcr(FakeOcr):
    def request(self, job, pid, lang, unit_id=None):
        raise RequestError(503, "unavailable")


class RejectingPublisher(FakePublisher):
    def publish(self, job, metadata):
        raise PublishError(f"unable to publish {metadata.pid}")


class BrokenIiif(FakeIiif):
    def publish(self, source, pid, image_format, overwrite=False):
        raise IiifError(f"unable to upload {pid}")


class CountingArchive(ArchiveStore):
    def __init__(self, root):
        super().__init__(root)
        self.puts = []

    def put(self, source, unit_id, filename):
        self.puts.append(filename)
        return super().put(source, unit_id, filename)


class FlakyDeliverables(PatronDeliverables):
    """Fails the first rendition of page two, then behaves."""

    failed = False

    def create_file_deliverable(self, job, unit, master_file, source, call_number="", location=""):
        if master_file.filename.endswith("_0002.tif") and not self.failed:
            self.failed = True
            raise DeliverableError("convert ran out of disk")
        return super().create_file_deliverable(job, unit, master_file, source, call_number, location)


def patron_deliverables(jobs, processing_dir, tmp_path, cls=PatronDeliverables):
    return cls(jobs, None, processing_dir, tmp_path / "delivery", "http://pdf.test")


@pytest.fixture
def processing_dir(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def archive(tmp_path):
    return ArchiveStore(tmp_path / "archive")


@pytest.fixture
def iiif():
    return FakeIiif()


@pytest.fixture
def make_finalizer(db, jobs, archive, iiif, processing_dir, tmp_path):
    def factory(extractor=None, marc=None, ocr=None, publisher=None, deliverables=None, store=None, bucket=None):
        return Finalizer(
            database=db,
            jobs=jobs,
            orders=OrderService(db, jobs),
            archive=store or archive,
            iiif=bucket or iiif,
            extractor=extractor or FakeExtractor(),
            marc=marc or FakeMarc(),
            ocr=ocr or FakeOcr(),
            publisher=publisher or FakePublisher(),
            deliverables=deliverables or patron_deliverables(jobs, processing_dir, tmp_path),
            projects=DatabaseProjectTracker(db),
            processing_dir=processing_dir,
            min_file_size=16,
            iiif_batch_size=2,
            iiif_max_workers=2,
        )

    return factory


def stage_files(processing_dir, unit_id, names, size=64):
    staging = processing_dir / "finalization" / f"{unit_id:09d}"
    staging.mkdir(parents=True, exist_ok=True)
    for name in names:
        (staging / name).write_bytes(b"x" * size)
    return staging


def finish(jobs):
    """Wait for every background job to complete."""
    jobs.shutdown(wait=True)


def wait_for_end(jobs, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while jobs.get(job_id).ended_at is None:
        if time.monotonic() > deadline:
            pytest.fail(f"job {job_id} did not end within {timeout}s")
        time.sleep(0.05)


class TestPreconditions:
    """Finalization requests rejected before any job is created."""

    def test_unknown_unit(self, make_finalizer):
        with pytest.raises(NotFoundError):
            make_finalizer().start(42)

    def test_reorder_rejected(self, db, seed, make_finalizer):
        seed.standard_unit(reorder=1)
        with pytest.raises(UnitStateError, match="re-order"):
            make_finalizer().start(1)
        assert db.get_job_status(1) is None

    def test_already_finalizing_rejected(self, db, seed, make_finalizer):
        seed.standard_unit(unit_status="finalizing")
        with pytest.raises(UnitStateError, match="already finalizing"):
            make_finalizer().start(1)
        assert db.get_job_status(1) is None

    def test_unapproved_rejected(self, db, seed, make_finalizer):
        seed.standard_unit(unit_status="unapproved")
        with pytest.raises(UnitStateError):
            make_finalizer().start(1)
        assert db.get_unit(1).unit_status == UnitStatus.UNAPPROVED

    def test_claim_is_exclusive(self, db, seed):
        seed.standard_unit()
        assert db.claim_unit_for_finalization(1, UnitStatus.APPROVED) is True
        assert db.claim_unit_for_finalization(1, UnitStatus.APPROVED) is False
        assert db.get_unit(1).unit_status == UnitStatus.FINALIZING


class TestQaUnit:
    """Tests for the unit data QA phase."""

    def test_aggregate_failure(self, db, jobs, seed, make_finalizer):
        """Every problem is logged before one aggregate failure is raised."""
        seed.standard_unit(intended_use_id=None, ocr_master_files=1)
        seed.metadata(ocr_hint_id=None)
        job = jobs.create("FinalizeUnit", Originator.unit(1))

        with pytest.raises(FinalizationError, match="QA Unit Data Processor"):
            make_finalizer().qa_unit(job, db.get_unit(1))

        errors = [e for e in jobs.events(job.id) if e.level == EventLevel.ERROR]
        assert len(errors) >= 2
        assert any("intended use" in e.text for e in errors)
        assert any("OCR Hint" in e.text for e in errors)
        stored = jobs.get(job.id)
        assert stored.status == JobState.RUNNING
        assert stored.failures == len(errors)

    def test_missing_metadata_fails_immediately(self, db, jobs, seed, make_finalizer):
        seed.standard_unit(metadata_id=None)
        job = jobs.create("FinalizeUnit", Originator.unit(1))

        with pytest.raises(FinalizationError, match="not assigned to a metadata record"):
            make_finalizer().qa_unit(job, db.get_unit(1))

    def test_throw_away_cannot_be_published(self, db, jobs, seed, make_finalizer):
        seed.standard_unit(include_in_dl=1, throw_away=1)
        seed.metadata(availability_policy_id=1)
        job = jobs.create("FinalizeUnit", Originator.unit(1))

        with pytest.raises(FinalizationError):
            make_finalizer().qa_unit(job, db.get_unit(1))
        assert any("Throw away" in e.text for e in jobs.events(job.id))

    def test_order_is_auto_approved(self, db, jobs, seed, make_finalizer):
        seed.standard_unit()
        job = jobs.create("FinalizeUnit", Originator.unit(1))

        make_finalizer().qa_unit(job, db.get_unit(1))

        order = db.get_order(1)
        assert order.order_status == "approved"
        assert order.date_order_approved is not None


class TestAutoPublish:
    """Tests for public domain auto-publication."""

    @pytest.mark.parametrize("year,expected", [(1922, True), (1923, False), (0, False)])
    def test_publication_year_boundary(self, db, jobs, seed, make_finalizer, year, expected):
        seed.standard_unit(complete_scan=1)
        unit = db.get_unit(1)

        flagged = make_finalizer(marc=FakeMarc(year)).auto_publish(None, unit)

        assert flagged is expected
        assert db.get_unit(1).include_in_dl is expected
        expected_policy = 1 if expected else None
        assert db.get_metadata(1).availability_policy_id == expected_policy

    def test_manuscripts_are_not_published(self, db, seed, make_finalizer):
        seed.standard_unit(complete_scan=1)
        seed.metadata(is_manuscript=1)

        assert make_finalizer(marc=FakeMarc(1850)).auto_publish(None, db.get_unit(1)) is False

    def test_partial_scans_are_not_published(self, db, seed, make_finalizer):
        seed.standard_unit(complete_scan=0)

        assert make_finalizer(marc=FakeMarc(1850)).auto_publish(None, db.get_unit(1)) is False


class TestQaFilesystem:
    """Tests for the staged file QA phase."""

    def test_valid_files(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit()
        staging = stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0002.tif", "000000001_0001.txt"])
        (staging / ".DS_Store").write_bytes(b"")
        job = jobs.create("FinalizeUnit", Originator.unit(1))

        tifs = make_finalizer().qa_filesystem(job, db.get_unit(1), staging)

        assert [p.name for p in tifs] == ["000000001_0001.tif", "000000001_0002.tif"]

    def test_all_problems_reported(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit()
        staging = stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0003.tif", "notes.doc", "bad.tif"])
        (staging / "000000001_0004.tif").write_bytes(b"x")
        job = jobs.create("FinalizeUnit", Originator.unit(1))

        with pytest.raises(FinalizationError, match="Filesystem QA"):
            make_finalizer().qa_filesystem(job, db.get_unit(1), staging)

        texts = [e.text for e in jobs.events(job.id) if e.level == EventLevel.ERROR]
        assert any("Incorrectly named .tif file found" in t for t in texts)
        assert any("Unexpected file found" in t for t in texts)
        assert any("Out of sequence" in t for t in texts)
        assert any("filesize is less than" in t for t in texts)

    def test_no_tifs(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit()
        staging = stage_files(processing_dir, 1, [])
        job = jobs.create("FinalizeUnit", Originator.unit(1))

        with pytest.raises(FinalizationError):
            make_finalizer().qa_filesystem(job, db.get_unit(1), staging)
        assert any("No .tif files found" in e.text for e in jobs.events(job.id))


class TestFinalize:
    """End-to-end finalization runs."""

    def test_unit_without_project_is_done(self, db, jobs, seed, make_finalizer, processing_dir, archive, iiif):
        seed.standard_unit()
        stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0002.tif", "000000001_0003.tif"])
        (processing_dir / "finalization" / "000000001" / "000000001_0002.txt").write_text("page two text")

        job = make_finalizer().start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FINISHED, stored.error
        unit = db.get_unit(1)
        assert unit.unit_status == UnitStatus.DONE
        assert unit.master_files_count == 3
        assert unit.date_archived is not None

        master_files = db.list_master_files(1)
        assert [mf.pid for mf in master_files] == [f"tsm:{mf.id}" for mf in master_files]
        assert all(mf.tech_meta is not None for mf in master_files)
        assert master_files[1].transcription_text == "page two text"
        assert sorted(iiif.published) == sorted(mf.pid for mf in master_files)
        assert len(archive.tif_files(1)) == 3

        order = db.get_order(1)
        assert order.date_finalization_begun is not None
        assert order.date_archiving_complete is not None

        assert not (processing_dir / "finalization" / "000000001").exists()
        assert (processing_dir / "ready_to_delete" / "000000001" / "000000001_0001.tif").exists()

    def test_patron_deliverables(self, db, jobs, seed, make_finalizer, processing_dir, tmp_path):
        """A patron unit gets a zip of full resolution tiffs and its order is checked for delivery."""
        seed.standard_unit(intended_use_id=101)
        seed.intended_use(101, deliverable_format="tiff", deliverable_resolution="Highest Possible")
        seed.project()
        stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0002.tif"])

        job = make_finalizer().start(1)
        finish(jobs)

        assert jobs.get(job.id).status == JobState.FINISHED, jobs.get(job.id).error
        unit = db.get_unit(1)
        assert unit.unit_status == UnitStatus.DONE
        assert unit.date_patron_deliverables_ready is not None
        zip_path = tmp_path / "delivery" / "order_1" / "1_1.zip"
        with zipfile.ZipFile(zip_path) as archive:
            assert archive.namelist() == ["000000001_0001.tif", "000000001_0002.tif"]
        assert db.get_order(1).date_patron_deliverables_complete is not None
        assert db.get_unit_project(1).finished is True
        assert not (processing_dir / "finalization" / "tmp" / "000000001").exists()

    def test_unpaid_order_fails_finalization(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit(intended_use_id=101)
        seed.intended_use(101, deliverable_format="tiff", deliverable_resolution="Highest Possible")
        seed.order(1, order_status="approved", date_order_approved="2024-01-01T00:00:00+00:00", fee=40.0)
        stage_files(processing_dir, 1, ["000000001_0001.tif"])

        job = make_finalizer().start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert stored.error == "Order has an unpaid fee."
        assert db.get_unit(1).unit_status == UnitStatus.ERROR

    def test_project_is_finished(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit()
        seed.project()
        stage_files(processing_dir, 1, ["000000001_0001.tif"])

        job = make_finalizer().start(1)
        finish(jobs)

        assert jobs.get(job.id).status == JobState.FINISHED
        assert db.get_unit(1).unit_status == UnitStatus.DONE
        assert db.get_unit_project(1).finished is True

    def test_project_validation_failure(self, db, jobs, seed, make_finalizer, processing_dir):
        """A unit flagged for the DL with no DL deliverables date fails validation once."""
        seed.standard_unit(include_in_dl=1)
        seed.metadata(availability_policy_id=1)
        seed.project()
        stage_files(processing_dir, 1, ["000000001_0001.tif"])
        publisher = FakePublisher()

        job = make_finalizer(publisher=publisher).start(1)
        finish(jobs)

        assert publisher.published == [1]
        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert stored.error == "DL deliverables ready date not set"
        assert db.get_unit(1).unit_status == UnitStatus.ERROR
        project = db.get_unit_project(1)
        assert project.finished is False
        assert project.last_error == f"Job {job.id}: DL deliverables ready date not set"

    def test_missing_staging_directory(self, db, jobs, seed, make_finalizer):
        seed.standard_unit()
        seed.project()

        job = make_finalizer().start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert "does not exist" in stored.error
        assert db.get_unit(1).unit_status == UnitStatus.ERROR
        assert "does not exist" in db.get_unit_project(1).last_error

    def test_filesystem_failure_stops_import(self, db, jobs, seed, make_finalizer, processing_dir, archive, iiif):
        """Nothing is archived or published once the filesystem QA fails."""
        seed.standard_unit()
        stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0003.tif"])

        job = make_finalizer().start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert stored.error == "Unit has failed the Filesystem QA"
        assert iiif.published == []
        assert not archive.unit_dir(1).exists()
        assert db.list_master_files(1) == []
        assert db.get_unit(1).unit_status == UnitStatus.ERROR

    def test_unreadable_image_is_fatal(self, db, jobs, seed, make_finalizer, processing_dir, iiif):
        seed.standard_unit()
        stage_files(processing_dir, 1, ["000000001_0001.tif"])

        job = make_finalizer(extractor=BrokenExtractor()).start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert "Unable to read metadata" in stored.error
        assert iiif.published == []

    def test_cmyk_image_is_fatal(self, db, jobs, seed, make_finalizer, processing_dir, iiif):
        seed.standard_unit()
        stage_files(processing_dir, 1, ["000000001_0001.tif"])
        extractor = FakeExtractor(tech=ImageTechMeta(image_format="TIFF", width=10, height=10, color_space="CMYK"))

        job = make_finalizer(extractor=extractor).start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert "unsupported colorspace" in stored.error
        assert iiif.published == []

    def test_crash_fails_job_and_unit(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit()
        stage_files(processing_dir, 1, ["000000001_0001.tif"])

        job = make_finalizer(extractor=FakeExtractor(crash=True)).start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert "FinalizeUnit failed unexpectedly" in stored.error
        assert db.get_unit(1).unit_status == UnitStatus.ERROR

    def test_retry_after_error(self, db, jobs, seed, make_finalizer, processing_dir):
        """A failed unit can be finalized again once the problem is fixed."""
        seed.standard_unit()
        staging = stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0003.tif"])
        finalizer = make_finalizer()
        first = finalizer.start(1)
        wait_for_end(jobs, first.id)
        assert jobs.get(first.id).status == JobState.FAILURE
        assert db.get_unit(1).unit_status == UnitStatus.ERROR
        begun = db.get_order(1).date_finalization_begun
        assert begun is not None

        (staging / "000000001_0003.tif").rename(staging / "000000001_0002.tif")
        second = finalizer.start(1)
        finish(jobs)

        assert jobs.get(second.id).status == JobState.FINISHED
        assert db.get_unit(1).unit_status == UnitStatus.DONE
        assert db.get_order(1).date_finalization_begun == begun
        assert any("restarts finalization" in e.text for e in jobs.events(second.id))

    def test_ocr_requested_after_import(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit(ocr_master_files=1)
        stage_files(processing_dir, 1, ["000000001_0001.tif"])
        ocr = FakeOcr()

        job = make_finalizer(ocr=ocr).start(1)
        finish(jobs)

        assert jobs.get(job.id).status == JobState.FINISHED
        assert ocr.requests == [("tsb:1", "eng", 1)]

    def test_ocr_request_failure_is_not_fatal(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit(ocr_master_files=1)
        stage_files(processing_dir, 1, ["000000001_0001.tif"])

        job = make_finalizer(ocr=UnavailableOcr()).start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FINISHED, stored.error
        assert stored.failures == 1
        assert db.get_unit(1).unit_status == UnitStatus.DONE
        errors = [e.text for e in jobs.events(job.id) if e.level == EventLevel.ERROR]
        assert errors == ["Unable to request OCR: 503:unavailable"]

    def test_publish_failure_is_not_fatal(self, db, jobs, seed, make_finalizer, processing_dir):
        seed.standard_unit(include_in_dl=1)
        seed.metadata(availability_policy_id=1)
        stage_files(processing_dir, 1, ["000000001_0001.tif"])

        job = make_finalizer(publisher=RejectingPublisher()).start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FINISHED, stored.error
        assert db.get_unit(1).unit_status == UnitStatus.DONE
        assert any(
            e.text.startswith("Publish to Virgo failed") for e in jobs.events(job.id) if e.level == EventLevel.ERROR
        )

    def test_iiif_failure_is_fatal(self, db, jobs, seed, make_finalizer, processing_dir, archive):
        """Nothing is archived when a derivative cannot be published."""
        seed.standard_unit()
        stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0002.tif"])

        job = make_finalizer(bucket=BrokenIiif()).start(1)
        finish(jobs)

        stored = jobs.get(job.id)
        assert stored.status == JobState.FAILURE
        assert stored.error.startswith("IIIF publish failed")
        assert db.get_unit(1).unit_status == UnitStatus.ERROR
        assert not archive.unit_dir(1).exists()

    def test_retry_resumes_partial_import(self, db, jobs, seed, make_finalizer, processing_dir, tmp_path):
        """A retry after a failure partway through import neither duplicates nor re-archives files."""
        seed.standard_unit(intended_use_id=101)
        seed.intended_use(101, deliverable_format="tiff", deliverable_resolution="Highest Possible")
        stage_files(processing_dir, 1, ["000000001_0001.tif", "000000001_0002.tif"])
        store = CountingArchive(tmp_path / "archive")
        finalizer = make_finalizer(
            store=store,
            deliverables=patron_deliverables(jobs, processing_dir, tmp_path, cls=FlakyDeliverables),
        )

        first = finalizer.start(1)
        wait_for_end(jobs, first.id)
        stored = jobs.get(first.id)
        assert stored.status == JobState.FAILURE
        assert "convert ran out of disk" in stored.error
        assert db.get_unit(1).unit_status == UnitStatus.ERROR

        second = finalizer.start(1)
        finish(jobs)

        assert jobs.get(second.id).status == JobState.FINISHED, jobs.get(second.id).error
        assert db.get_unit(1).unit_status == UnitStatus.DONE
        assert [mf.filename for mf in db.list_master_files(1)] == ["000000001_0001.tif", "000000001_0002.tif"]
        assert store.puts == ["000000001_0001.tif", "000000001_0002.tif"]
        assert (tmp_path / "delivery" / "order_1" / "1_1.zip").exists()
