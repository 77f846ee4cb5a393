"""
Tests for patron deliverables.

Only the paths that avoid ImageMagick are exercised: full resolution TIFF
copies, zip bundling and the PDF service conversation.
"""

import zipfile

import httpx
import pytest

from dpg_jobs.deliverables import PatronDeliverables, deliverable_name, pdf_token
from dpg_jobs.errors import DeliverableError
from dpg_jobs.http_client import ServiceClient
from dpg_jobs.models import ImageTechMeta, IntendedUse, MasterFile, Metadata, Originator, Unit, UnitStatus


def make_unit(fmt="tiff", resolution="Highest Possible", use_id=101, **values):
    return Unit(
        id=7,
        order_id=3,
        unit_status=UnitStatus.FINALIZING,
        metadata_id=1,
        metadata=Metadata(id=1, pid="tsb:1", type="SirsiMetadata", title="Annual report"),
        intended_use_id=use_id,
        intended_use=IntendedUse(id=use_id, deliverable_format=fmt, deliverable_resolution=resolution),
        **values,
    )


def make_master_file(n, text=""):
    return MasterFile(
        id=n,
        unit_id=7,
        filename=f"000000007_{n:04d}.tif",
        pid=f"tsm:{n}",
        transcription_text=text,
        tech_meta=ImageTechMeta(image_format="TIFF", width=100, height=100, resolution=400),
    )


@pytest.fixture
def builder(jobs, tmp_path):
    def factory(handler=None):
        client = ServiceClient(transport=httpx.MockTransport(handler)) if handler else None
        return PatronDeliverables(
            jobs,
            client,
            tmp_path / "work",
            tmp_path / "delivery",
            "http://pdf.test",
            poll_interval=0,
            max_polls=3,
            sleep=lambda seconds: None,
        )

    return factory


class TestNames:
    def test_deliverable_name(self):
        assert deliverable_name("000000007_0001.tif", "jpeg") == "000000007_0001.jpg"
        assert deliverable_name("000000007_0001.tif", "tiff") == "000000007_0001.tif"

    def test_pdf_token_is_stable(self):
        assert pdf_token("tsb:1", 7) == pdf_token("tsb:1", 7)
        assert pdf_token("tsb:1", 7) != pdf_token("tsb:1", 8)


class TestFileDeliverable:
    """Tests for per-master-file renditions."""

    def test_full_resolution_tiff_is_copied(self, builder, jobs, tmp_path):
        source = tmp_path / "000000007_0001.tif"
        source.write_bytes(b"tiff bytes")
        job = jobs.create("FinalizeUnit", Originator.unit(7))
        deliverables = builder()

        dest = deliverables.create_file_deliverable(job, make_unit(), make_master_file(1), source)

        assert dest == deliverables.assemble_dir(7) / "000000007_0001.tif"
        assert dest.read_bytes() == b"tiff bytes"

    def test_existing_rendition_is_kept(self, builder, jobs, tmp_path):
        source = tmp_path / "000000007_0001.tif"
        source.write_bytes(b"new")
        deliverables = builder()
        existing = deliverables.assemble_dir(7) / "000000007_0001.tif"
        existing.parent.mkdir(parents=True)
        existing.write_bytes(b"old")

        deliverables.create_file_deliverable(None, make_unit(), make_master_file(1), source)

        assert existing.read_bytes() == b"old"

    def test_unknown_format(self, builder, tmp_path):
        with pytest.raises(DeliverableError, match="unknown deliverable format"):
            builder().create_file_deliverable(None, make_unit(fmt="gif"), make_master_file(1), tmp_path / "x.tif")

    def test_resolution_requires_tech_meta(self, builder, tmp_path):
        master_file = make_master_file(1)
        master_file.tech_meta = None
        with pytest.raises(DeliverableError, match="actual_resolution"):
            builder().create_file_deliverable(None, make_unit(resolution="300"), master_file, tmp_path / "x.tif")


class TestLegalNotice:
    def test_private_study_notice(self, builder):
        notice = builder()._legal_notice(make_unit(fmt="jpeg", use_id=104), "MSS 123", "SC-STKS")
        assert notice.startswith("Title: Annual report\nCall Number: MSS 123\nLocation: SC-STKS\n")
        assert "private study" in notice

    def test_classroom_notice(self, builder):
        notice = builder()._legal_notice(make_unit(fmt="jpeg", use_id=100), "", "")
        assert "Call Number" not in notice
        assert "classroom teaching" in notice


class TestZip:
    """Tests for zip bundling."""

    def test_zip_with_ocr_text(self, builder, jobs):
        deliverables = builder()
        unit = make_unit(ocr_master_files=True)
        master_files = [make_master_file(1, "page one"), make_master_file(2, "page two")]
        assemble = deliverables.assemble_dir(7)
        assemble.mkdir(parents=True)
        for mf in master_files:
            (assemble / mf.filename).write_bytes(b"img")
        job = jobs.create("FinalizeUnit", Originator.unit(7))

        zips = deliverables.zip_patron_deliverables(job, unit, master_files)

        assert [z.name for z in zips] == ["7_1.zip"]
        assert zips[0].parent == deliverables.order_dir(3)
        with zipfile.ZipFile(zips[0]) as archive:
            assert archive.namelist() == ["000000007_0001.tif", "000000007_0002.tif", "7.txt"]
            text = archive.read("7.txt").decode("utf-8")
        assert text == "000000007_0001.tif\npage one\n000000007_0002.tif\npage two\n"


class TestPdf:
    """Tests for the PDF service conversation."""

    def test_pdf_ready(self, builder, jobs):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if request.url.path.endswith("/status"):
                return httpx.Response(200, text="READY")
            if request.url.path.endswith("/download"):
                return httpx.Response(200, content=b"%PDF-1.4")
            return httpx.Response(200, text="ok")

        job = jobs.create("FinalizeUnit", Originator.unit(7))
        zip_path = builder(handler).create_patron_pdf(job, make_unit(fmt="pdf"))

        assert calls == ["/tsb:1", "/tsb:1/status", "/tsb:1/download"]
        assert zip_path.name == "7.zip"
        with zipfile.ZipFile(zip_path) as archive:
            assert archive.read("7.pdf") == b"%PDF-1.4"

    def test_pdf_failed(self, builder):
        def handler(request):
            if request.url.path.endswith("/status"):
                return httpx.Response(200, text="FAILED")
            return httpx.Response(200, text="ok")

        with pytest.raises(DeliverableError, match="PDF generation failed"):
            builder(handler).create_patron_pdf(None, make_unit(fmt="pdf"))

    def test_pdf_never_ready(self, builder):
        def handler(request):
            if request.url.path.endswith("/status"):
                return httpx.Response(200, text="RUNNING")
            return httpx.Response(200, text="ok")

        with pytest.raises(DeliverableError, match="after 3 status checks"):
            builder(handler).create_patron_pdf(None, make_unit(fmt="pdf"))

    def test_pdf_request_rejected(self, builder):
        with pytest.raises(DeliverableError, match="pdf request failed"):
            builder(lambda request: httpx.Response(500, text="down")).create_patron_pdf(None, make_unit(fmt="pdf"))
