"""
Image metadata extraction with exiftool.
"""

from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ExtractionError
from .models import EmbeddedMetadata, ImageTechMeta

logger = logging.getLogger(__name__)

UNSUPPORTED_COLOR_SPACES = ("CMYK",)


def _run_exiftool(*args: str) -> Dict[str, Any]:
    command = ["exiftool", "-json", *args]
    try:
        result = subprocess.run(command, check=True, capture_output=True)
        parsed = json.loads(result.stdout)
    except (OSError, subprocess.CalledProcessError, json.JSONDecodeError) as exc:
        raise ExtractionError(f"exiftool failed for {args[-1]}: {exc}") from exc
    if not parsed:
        raise ExtractionError(f"no metadata returned for {args[-1]}")
    return parsed[0]


def _uint(data: Dict[str, Any], name: str) -> int:
    value = data.get(name)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return 0


def _depth(data: Dict[str, Any]) -> int:
    samples = data.get("SamplesPerPixel")
    if not isinstance(samples, (int, float)):
        return 0
    bits = data.get("BitsPerSample")
    if isinstance(bits, str):
        # multi-channel values come back as "8 8 8"
        try:
            bits = float(bits.split(" ")[0])
        except ValueError:
            return 0
    if not isinstance(bits, (int, float)):
        return 0
    return int(bits * samples)


def _date(data: Dict[str, Any], name: str) -> Optional[datetime]:
    value = data.get(name)
    if not value:
        return None
    try:
        return datetime.strptime(str(value), "%Y:%m:%d")
    except ValueError:
        return None


def _text(data: Dict[str, Any], name: str) -> str:
    value = data.get(name)
    return "" if value is None else str(value)


def invalid_reason(meta: ImageTechMeta) -> Optional[str]:
    """Why an image cannot be processed further, or None if it can."""
    if meta.width == 0 or meta.height == 0:
        return "has invalid tech metadata and is likely corrupt"
    if meta.color_space.strip() in UNSUPPORTED_COLOR_SPACES:
        return f"has unsupported colorspace {meta.color_space}"
    return None


class ExifToolExtractor:
    """Reads technical and embedded descriptive metadata from image files."""

    def extract(self, path: Path) -> ImageTechMeta:
        """
        Read technical metadata for an image.

        Raises:
            ExtractionError: If exiftool cannot read the file
        """
        data = _run_exiftool(str(path))
        meta = ImageTechMeta(
            image_format=_text(data, "FileType"),
            width=_uint(data, "ImageWidth"),
            height=_uint(data, "ImageHeight"),
            depth=_depth(data),
            resolution=_uint(data, "XResolution"),
            compression=_text(data, "Compression"),
            color_profile=_text(data, "ProfileDescription"),
            equipment=_text(data, "Make"),
            software=_text(data, "Software"),
            model=_text(data, "Model"),
            capture_date=_date(data, "DateCreated"),
        )
        color_space = _text(data, "ColorSpace")
        if color_space == "Uncalibrated" or not color_space:
            color_space = _text(data, "ColorMode") or _text(data, "ColorSpaceData") or color_space
        meta.color_space = color_space
        logger.info(f"{path} tech metadata: {meta}")
        return meta

    def embedded(self, path: Path) -> EmbeddedMetadata:
        """
        Read the IPTC title, description, component and box/folder fields.

        Raises:
            ExtractionError: If exiftool fails or the required headline is missing
        """
        data = _run_exiftool(
            "-iptc:OwnerID",
            "-iptc:headline",
            "-iptc:caption-abstract",
            "-iptc:ContentLocationName",
            "-iptc:Keywords",
            str(path),
        )
        if data.get("Headline") is None:
            raise ExtractionError(f"missing required Headline in tif metadata for {path}")
        component_id = 0
        try:
            component_id = int(str(data.get("OwnerID") or 0))
        except ValueError:
            logger.warning(f"{path} has a non-numeric OwnerID: {data.get('OwnerID')}")
        return EmbeddedMetadata(
            title=_text(data, "Headline"),
            description=_text(data, "Caption-Abstract"),
            component_id=component_id,
            box=_text(data, "Keywords"),
            folder=_text(data, "ContentLocationName"),
        )
