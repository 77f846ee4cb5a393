"""
MARC lookups against the TrackSys metadata API.

Only the publication year is needed; it decides whether a catalog item is
old enough to be published to the digital library automatically.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Optional

from .errors import RequestError
from .http_client import ServiceClient
from .models import Metadata

logger = logging.getLogger(__name__)

_BRACKETS = re.compile(r"([\[\]()]|\.$)")
_SPACES = re.compile(r"\s+")
_ROMAN_VALUES = {"I": 1, "V": 5, "X": 10, "L": 50, "C": 100, "D": 500, "M": 1000}


def roman_to_int(numeral: str) -> int:
    total = 0
    previous = 0
    for char in reversed(numeral):
        value = _ROMAN_VALUES.get(char, 0)
        if value < previous:
            total -= value
        else:
            total += value
            previous = value
    return total


def extract_year_from_260c(raw: str) -> str:
    """
    Best-effort publication year from a MARC 260$c value.

    Handles "1901.", "[19--]" (century, latest year used), "189-?" (decade),
    ranges such as "1890-1910" or "1890-95" (latest year used), free text
    containing a four digit year and roman numerals.
    """
    year = _SPACES.sub(" ", _BRACKETS.sub("", raw))
    if year == "":
        return ""

    if re.match(r"^\d{4}.0", year):
        return year.split(".")[0]
    if re.match(r"^\d{2}--", year):
        return year[0:2] + "99"
    if re.match(r"^\d{3}-", year):
        return year[0:3] + "9"
    if re.match(r"^\d{4}\s*-\s*\d{4}", year):
        return year.split("-")[1].strip()[0:4]
    if re.match(r"^\d{4}\s*-\s*\d{2}", year):
        first, second = year.split("-", 1)
        return first.strip()[0:2] + second.strip()[0:2]

    stripped = re.sub(r"[^0-9 ]", "", year)
    found = ""
    for part in stripped.split(" "):
        if re.match(r"^\d{4}", part):
            found = part
    if found:
        return found

    latest = 0
    for part in re.sub(r"[^IVXLCDM ]", "", year).split(" "):
        value = roman_to_int(part)
        if value > 1500 and value > latest:
            latest = value
    if latest:
        return str(latest)

    return year.split(" ")[0]


def year_from_marc_xml(xml_text: bytes) -> int:
    """Publication year from the first 260$c of a MARCXML collection, or 0."""
    root = ET.fromstring(xml_text)
    for field in root.iter():
        if not field.tag.endswith("datafield") or field.get("tag") != "260":
            continue
        for sub in field:
            if sub.tag.endswith("subfield") and sub.get("code") == "c":
                year = extract_year_from_260c(sub.text or "")
                if year:
                    try:
                        return int(year)
                    except ValueError:
                        return 0
    return 0


class MarcService:
    def __init__(self, client: ServiceClient, api_url: str) -> None:
        self.client = client
        self.api_url = api_url.rstrip("/")

    def fetch(self, metadata: Metadata) -> bytes:
        return self.client.get(f"{self.api_url}/api/metadata/{metadata.pid}", params={"type": "marc"})

    def publication_year(self, metadata: Metadata) -> int:
        """Publication year of a catalog record; 0 when it cannot be determined."""
        logger.info(f"get publication date from marc for pid [{metadata.pid}] barcode [{metadata.barcode}]")
        try:
            payload = self.fetch(metadata)
            return year_from_marc_xml(payload)
        except RequestError as exc:
            logger.error(f"get marc metadata for {metadata.pid} failed: {exc}")
        except ET.ParseError as exc:
            logger.error(f"unable to parse marc metadata for {metadata.pid}: {exc}")
        return 0

    def location(self, metadata: Metadata) -> Optional[str]:
        """Shelf location (999$l) of the copy matching the metadata barcode."""
        try:
            root = ET.fromstring(self.fetch(metadata))
        except (RequestError, ET.ParseError) as exc:
            logger.error(f"get marc location for {metadata.pid} failed: {exc}")
            return None
        for field in root.iter():
            if not field.tag.endswith("datafield") or field.get("tag") != "999":
                continue
            matched = False
            for sub in field:
                code = sub.get("code")
                if code == "i" and sub.text == metadata.barcode:
                    matched = True
                if code == "l" and matched:
                    return sub.text
        return None
