"""
IIIF derivative storage.

Master files are converted to JPEG 2000 with ImageMagick, staged locally and
uploaded to the IIIF S3 bucket under a key derived from the master file PID:
``tsm:123456`` is stored as ``tsm/12/34/56/123456.jp2``.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import IiifError
from .utils import ensure_directory

logger = logging.getLogger(__name__)

JP2_OPTIONS = "jp2:rate=50 jp2:progression-order=RPCL jp2:number-resolutions=7"
MISSING_KEY_CODES = ("404", "NoSuchKey", "NotFound")


@dataclass(frozen=True)
class IiifLocation:
    file_name: str
    bucket_prefix: str

    @property
    def key(self) -> str:
        return f"{self.bucket_prefix}/{self.file_name}"


def iiif_location(pid: str) -> IiifLocation:
    """Derive the bucket prefix and JP2 file name for a master file PID."""
    namespace, _, base = pid.partition(":")
    if not base:
        raise ValueError(f"malformed master file pid: {pid}")
    parts: List[str] = [base[i:i + 2] for i in range(0, len(base), 2)]
    return IiifLocation(file_name=f"{base}.jp2", bucket_prefix="/".join([namespace, *parts]))


def convert_to_jp2(source: Path, dest: Path) -> None:
    """
    Compress the first page of a tif into a JPEG 2000 file.

    Raises:
        IiifError: If ImageMagick fails
    """
    command = ["magick", f"{source}[0]", "-define", JP2_OPTIONS, str(dest)]
    logger.info(f"Compressing {source} to {dest}: {' '.join(command)}")
    start = time.monotonic()
    try:
        subprocess.run(command, check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        stderr = getattr(exc, "stderr", b"") or b""
        raise IiifError(f"jp2 conversion of {source} failed: {exc} {stderr.decode(errors='replace')}".strip()) from exc
    size_mb = source.stat().st_size / 1_000_000
    logger.info(f"...compression complete; tif size {size_mb:.2f}M, elapsed time {time.monotonic() - start:.2f} seconds")


class IiifStore:
    """
    IIIF bucket access.

    Args:
        bucket: Name of the IIIF S3 bucket
        staging_dir: Local directory for JP2 files awaiting upload
        client: Optional pre-built S3 client (created lazily otherwise)
    """

    def __init__(self, bucket: str, staging_dir: Path, client=None) -> None:
        self.bucket = bucket
        self.staging_dir = Path(staging_dir)
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def exists(self, pid: str) -> bool:
        key = iiif_location(pid).key
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in MISSING_KEY_CODES:
                return False
            raise IiifError(f"unable to check for existence of {pid}: {exc}") from exc
        except BotoCoreError as exc:
            raise IiifError(f"unable to check for existence of {pid}: {exc}") from exc
        return True

    def publish(self, source: Path, pid: str, image_format: str, overwrite: bool = False) -> bool:
        """
        Generate and upload the JP2 derivative for a master file.

        Args:
            source: Path of the master file image
            pid: Master file PID
            image_format: Format reported by the tech metadata (tiff or jp2)
            overwrite: Replace an existing derivative

        Returns:
            True if a derivative was uploaded, False if one already existed

        Raises:
            IiifError: If the format is unsupported or conversion/upload fails
        """
        file_type = image_format.lower()
        if file_type not in ("tiff", "jp2"):
            raise IiifError(f"unsupported image format for {pid}: {image_format}")

        location = iiif_location(pid)
        if self.exists(pid):
            logger.info(f"{pid} already has a JP2k file on S3: {self.bucket}/{location.key}")
            if not overwrite:
                return False
            logger.info("Existing file will be overwritten")

        staged = ensure_directory(self.staging_dir) / location.file_name
        try:
            if file_type == "jp2":
                shutil.copyfile(source, staged)
            else:
                convert_to_jp2(Path(source), staged)
            self._upload(staged, location.key)
        finally:
            staged.unlink(missing_ok=True)
        logger.info(f"{pid} has been published to IIIF")
        return True

    def remove(self, pid: str) -> None:
        key = iiif_location(pid).key
        logger.info(f"Removing {pid} published to IIIF as {key}")
        try:
            self._get_client().delete_objects(
                Bucket=self.bucket, Delete={"Objects": [{"Key": key}]}
            )
        except (BotoCoreError, ClientError) as exc:
            raise IiifError(f"unable to remove {key}: {exc}") from exc

    def _upload(self, staged: Path, key: str) -> None:
        logger.info(f"Upload staged jp2 file {staged} to S3 IIIF bucket {self.bucket}:{key}")
        try:
            self._get_client().upload_file(str(staged), self.bucket, key)
        except (BotoCoreError, ClientError) as exc:
            raise IiifError(f"upload of {key} failed: {exc}") from exc

