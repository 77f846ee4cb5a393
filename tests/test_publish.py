"""
Tests for publication to Virgo.
"""

import httpx
import pytest

from dpg_jobs.errors import PublishError
from dpg_jobs.http_client import ServiceClient
from dpg_jobs.models import Originator
from dpg_jobs.publish import VirgoPublisher


class Recorder:
    def __init__(self, status=200):
        self.status = status
        self.requests = []

    def __call__(self, request):
        self.requests.append((request.method, request.url.path))
        return httpx.Response(self.status, text="ok")


@pytest.fixture
def make_publisher(db, jobs):
    def factory(handler):
        return VirgoPublisher(
            db,
            jobs,
            ServiceClient(transport=httpx.MockTransport(handler)),
            manifest_url="http://iiifman.test",
            reindex_url="http://virgo.test",
            xml_reindex_url="http://xml.test/reindex",
        )

    return factory


class TestSirsi:
    """Tests for publishing catalog records."""

    def test_publish(self, db, jobs, seed, make_publisher):
        seed.standard_unit(include_in_dl=1)
        seed.metadata(availability_policy_id=1)
        seed.master_file(11)
        recorder = Recorder()
        job = jobs.create("PublishToVirgo", Originator.metadata(1))

        make_publisher(recorder).publish(job, db.get_metadata(1))

        assert recorder.requests == [
            ("GET", "/pid/tsb:1"),
            ("PUT", "/api/reindex/u12345"),
        ]
        assert db.get_metadata(1).date_dl_ingest is not None
        assert db.get_master_file(11).date_dl_ingest is not None
        assert db.get_unit(1).date_dl_deliverables_ready is not None

    def test_republish_sets_update_dates(self, db, seed, make_publisher):
        seed.standard_unit(include_in_dl=1)
        seed.metadata(availability_policy_id=1, date_dl_ingest="2020-01-01T00:00:00+00:00")
        seed.master_file(11, date_dl_ingest="2020-01-01T00:00:00+00:00")

        make_publisher(Recorder()).publish(None, db.get_metadata(1))

        assert db.get_metadata(1).date_dl_update is not None
        assert db.get_master_file(11).date_dl_update is not None

    def test_missing_availability_policy(self, db, seed, make_publisher):
        seed.standard_unit(include_in_dl=1)
        with pytest.raises(PublishError, match="availability policy"):
            make_publisher(Recorder()).publish(None, db.get_metadata(1))

    def test_no_dl_unit(self, db, seed, make_publisher):
        seed.standard_unit()
        seed.metadata(availability_policy_id=1)
        with pytest.raises(PublishError, match="flagged for inclusion"):
            make_publisher(Recorder()).publish(None, db.get_metadata(1))

    def test_too_many_dl_units(self, db, seed, make_publisher):
        seed.standard_unit(include_in_dl=1)
        seed.unit(2, include_in_dl=1)
        seed.metadata(availability_policy_id=1)
        with pytest.raises(PublishError, match="too many units"):
            make_publisher(Recorder()).publish(None, db.get_metadata(1))

    def test_manifest_failure(self, db, seed, make_publisher):
        seed.standard_unit(include_in_dl=1)
        seed.metadata(availability_policy_id=1)
        with pytest.raises(PublishError, match="Unable to generate IIIF manifest"):
            make_publisher(Recorder(status=500)).publish(None, db.get_metadata(1))
        assert db.get_unit(1).date_dl_deliverables_ready is None


class TestXml:
    """Tests for publishing XML records."""

    def test_publish_through_unit(self, db, seed, make_publisher):
        seed.standard_unit(include_in_dl=1)
        seed.metadata(type="XmlMetadata")
        seed.master_file(11, metadata_id=1)
        recorder = Recorder()

        make_publisher(recorder).publish(None, db.get_metadata(1))

        assert ("PUT", "/reindex/1") in recorder.requests
        assert db.get_unit(1).date_dl_deliverables_ready is not None

    def test_publish_through_master_files(self, db, seed, make_publisher):
        """Item level XML metadata finds its unit through the master files."""
        seed.standard_unit(include_in_dl=1)
        seed.metadata(2, type="XmlMetadata", pid="tsb:2")
        seed.master_file(12, metadata_id=2)

        make_publisher(Recorder()).publish(None, db.get_metadata(2))

        assert db.get_master_file(12).date_dl_ingest is not None
        assert db.get_unit(1).date_dl_deliverables_ready is not None


def test_unpublishable_type(db, seed, make_publisher):
    seed.standard_unit()
    seed.metadata(type="ExternalMetadata")
    with pytest.raises(PublishError, match="not a candidate"):
        make_publisher(Recorder()).publish(None, db.get_metadata(1))
