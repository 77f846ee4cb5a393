"""
Tests for MARC publication year parsing.
"""

import httpx
import pytest

from dpg_jobs.http_client import ServiceClient
from dpg_jobs.marc import MarcService, extract_year_from_260c, roman_to_int, year_from_marc_xml
from dpg_jobs.models import Metadata

MARC_XML = b"""<?xml version="1.0"?>
<collection xmlns="http://www.loc.gov/MARC21/slim">
  <record>
    <datafield tag="245" ind1="1" ind2="0"><subfield code="a">Annual report</subfield></datafield>
    <datafield tag="260" ind1=" " ind2=" ">
      <subfield code="a">Richmond :</subfield>
      <subfield code="c">[1901]</subfield>
    </datafield>
    <datafield tag="999" ind1=" " ind2=" ">
      <subfield code="i">X000999</subfield>
      <subfield code="l">ALD-STKS</subfield>
    </datafield>
    <datafield tag="999" ind1=" " ind2=" ">
      <subfield code="i">X000123</subfield>
      <subfield code="l">SC-STKS</subfield>
    </datafield>
  </record>
</collection>
"""


@pytest.mark.parametrize(
    "numeral,expected",
    [("MDCCCXC", 1890), ("MCMIV", 1904), ("XIV", 14), ("", 0)],
)
def test_roman_to_int(numeral, expected):
    assert roman_to_int(numeral) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("1901.", "1901"),
        ("[1901]", "1901"),
        ("19--", "1999"),
        ("189-?", "1899"),
        ("1890-1910", "1910"),
        ("1890-95", "1895"),
        ("c1885", "1885"),
        ("printed in the year MDCCCXC", "1890"),
        ("", ""),
    ],
)
def test_extract_year_from_260c(raw, expected):
    assert extract_year_from_260c(raw) == expected


class TestMarcXml:
    def test_year_from_first_260c(self):
        assert year_from_marc_xml(MARC_XML) == 1901

    def test_no_260(self):
        xml = b"<collection><record><datafield tag='245'><subfield code='a'>x</subfield></datafield></record></collection>"
        assert year_from_marc_xml(xml) == 0


class TestMarcService:
    """Tests for catalog lookups through the metadata API."""

    def make_service(self, handler):
        return MarcService(ServiceClient(transport=httpx.MockTransport(handler)), "http://tracksys.test/")

    def test_publication_year(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, content=MARC_XML)

        metadata = Metadata(id=1, pid="tsb:1", type="SirsiMetadata", barcode="X000123")
        assert self.make_service(handler).publication_year(metadata) == 1901
        assert seen[0].path == "/api/metadata/tsb:1"
        assert seen[0].params["type"] == "marc"

    def test_publication_year_on_error_is_zero(self):
        service = self.make_service(lambda request: httpx.Response(500, text="down"))
        metadata = Metadata(id=1, pid="tsb:1", type="SirsiMetadata")
        assert service.publication_year(metadata) == 0

    def test_location_matches_barcode(self):
        service = self.make_service(lambda request: httpx.Response(200, content=MARC_XML))
        metadata = Metadata(id=1, pid="tsb:1", type="SirsiMetadata", barcode="X000123")
        assert service.location(metadata) == "SC-STKS"

    def test_location_unknown_barcode(self):
        service = self.make_service(lambda request: httpx.Response(200, content=MARC_XML))
        metadata = Metadata(id=1, pid="tsb:1", type="SirsiMetadata", barcode="NOPE")
        assert service.location(metadata) is None
