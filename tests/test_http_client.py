"""
Tests for the shared HTTP client.
"""

import httpx
import pytest

from dpg_jobs.errors import RequestError
from dpg_jobs.http_client import ServiceClient


def make_client(handler):
    return ServiceClient(timeout=5.0, transport=httpx.MockTransport(handler))


class TestSend:
    """Tests for ServiceClient.send."""

    def test_success_returns_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"hello")

        client = make_client(handler)
        assert client.get("http://svc.test/thing", params={"a": "1"}) == b"hello"
        assert seen[0].url.params["a"] == "1"
        assert seen[0].headers["User-Agent"] == "DPG_Jobs"

    def test_created_is_success(self):
        client = make_client(lambda request: httpx.Response(201, content=b"made"))
        assert client.post_json("http://svc.test/things", {"x": 1}) == b"made"

    def test_error_status_raises(self):
        client = make_client(lambda request: httpx.Response(404, text="no such thing"))

        with pytest.raises(RequestError) as exc_info:
            client.put("http://svc.test/thing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "no such thing"
        assert str(exc_info.value) == "404:no such thing"

    def test_timeout_is_408(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RequestError) as exc_info:
            make_client(handler).get("http://svc.test/slow")
        assert exc_info.value.status_code == 408

    def test_refused_connection_is_503(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RequestError) as exc_info:
            make_client(handler).get("http://svc.test/down")
        assert exc_info.value.status_code == 503


class TestDownload:
    """Tests for streaming downloads."""

    def test_download_writes_body(self, tmp_path):
        client = make_client(lambda request: httpx.Response(200, content=b"%PDF-1.4 data"))
        dest = tmp_path / "out.pdf"

        written = client.download("http://svc.test/pdf", dest)

        assert written == len(b"%PDF-1.4 data")
        assert dest.read_bytes() == b"%PDF-1.4 data"

    def test_download_error_status(self, tmp_path):
        client = make_client(lambda request: httpx.Response(500, text="broken"))

        with pytest.raises(RequestError) as exc_info:
            client.download("http://svc.test/pdf", tmp_path / "out.pdf")
        assert exc_info.value.status_code == 500
