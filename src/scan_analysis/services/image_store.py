"""
Image artifact storage.

Scan images are referenced by a string key that is one of:

* ``s3://bucket/key`` - an object in S3
* ``http://...`` or ``https://...`` - a (usually presigned) URL
* anything else - a path relative to the local image root
"""

import base64
import binascii
import io
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from ..utils.error_handler import (
    ErrorType, RetryConfig, StorageError, classify_aws_error, retry_with_backoff
)

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 30

FORMAT_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
    "BMP": "image/bmp",
    "GIF": "image/gif",
}


def split_s3_uri(uri: str) -> Tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""
    parsed = urlparse(uri)
    bucket, key = parsed.netloc, parsed.path.lstrip("/")
    if not bucket or not key:
        raise StorageError(f"Malformed S3 reference: {uri}")
    return bucket, key


def detect_content_type(data: bytes) -> str:
    """Sniff the image format; DICOM and unknown payloads fall back to octet-stream."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return FORMAT_CONTENT_TYPES.get(img.format, "application/octet-stream")
    except (UnidentifiedImageError, OSError):
        return "application/octet-stream"


def artifact_filename(image_key: str) -> str:
    """Best-effort filename for an artifact reference, without query strings."""
    name = urlparse(image_key).path.rsplit("/", 1)[-1]
    return name or "scan.jpg"


class ImageStore:
    """Reads scan images and writes analysis output images."""

    def __init__(
        self,
        local_root: str = "./data/images",
        output_bucket: Optional[str] = None,
        region_name: str = "us-east-1",
        s3_client=None,
        http_session: Optional[requests.Session] = None,
    ):
        self.local_root = Path(local_root)
        self.output_bucket = output_bucket or None
        self.region_name = region_name
        self._s3_client = s3_client
        self.http = http_session or requests.Session()

    @property
    def s3_client(self):
        if self._s3_client is None:
            self._s3_client = boto3.client('s3', region_name=self.region_name)
        return self._s3_client

    def read_image_artifact(self, image_key: str) -> bytes:
        """
        Read the bytes of a stored image.

        Raises:
            StorageError: If the artifact is missing or unreadable.
        """
        if not image_key:
            raise StorageError("Scan image reference is empty")

        if image_key.startswith("s3://"):
            bucket, key = split_s3_uri(image_key)
            return self._read_s3(bucket, key)

        if image_key.startswith(("http://", "https://")):
            return self._read_url(image_key)

        return self._read_local(image_key)

    def _read_s3(self, bucket: str, key: str) -> bytes:
        try:
            return self._get_object(bucket, key)
        except (ClientError, BotoCoreError) as e:
            error_type = classify_aws_error(e)
            logger.error(f"S3 error reading image {bucket}/{key}: {e}")
            raise StorageError(f"Failed to read image from S3: {bucket}/{key}", error_type) from e

    @retry_with_backoff(RetryConfig(max_attempts=3, initial_delay=0.5, max_delay=5.0))
    def _get_object(self, bucket: str, key: str) -> bytes:
        response = self.s3_client.get_object(Bucket=bucket, Key=key)
        return response['Body'].read()

    def _read_url(self, url: str) -> bytes:
        try:
            response = self.http.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch image {url}: {e}")
            raise StorageError(f"Failed to fetch image: {e}", ErrorType.TRANSIENT) from e

        if response.status_code != 200:
            raise StorageError(
                f"Failed to fetch image: {response.status_code} {response.reason}",
                ErrorType.TRANSIENT if response.status_code >= 500 else ErrorType.PERMANENT
            )
        return response.content

    def _resolve_local(self, image_key: str) -> Path:
        root = self.local_root.resolve()
        path = (root / image_key.lstrip("/")).resolve()
        if root != path and root not in path.parents:
            raise StorageError(f"Image path escapes the image root: {image_key}")
        return path

    def _read_local(self, image_key: str) -> bytes:
        path = self._resolve_local(image_key)
        try:
            return path.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read local image {path}: {e}")
            raise StorageError(f"Image not found: {image_key}") from e

    def write_output_artifact(
        self,
        scan_id: str,
        analysis_type: str,
        image_index: int,
        name: str,
        encoded_image: str,
    ) -> str:
        """
        Store a base64 encoded output image produced by the inference service.

        Returns:
            The reference of the stored artifact (S3 URI or local key).
        """
        try:
            data = base64.b64decode(encoded_image.split(",", 1)[-1], validate=True)
        except (binascii.Error, ValueError) as e:
            raise StorageError(f"Output image {name} is not valid base64") from e

        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        key = f"analysis-outputs/{scan_id}/{analysis_type}/{image_index}/{timestamp}-{name}.png"

        if self.output_bucket:
            try:
                self.s3_client.put_object(
                    Bucket=self.output_bucket,
                    Key=key,
                    Body=data,
                    ContentType=detect_content_type(data),
                    Metadata={
                        'scan-id': scan_id,
                        'analysis-type': analysis_type,
                        'output-name': name,
                    }
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(f"S3 error storing output image {key}: {e}")
                raise StorageError(f"Failed to store output image {name}", classify_aws_error(e)) from e

            uri = f"s3://{self.output_bucket}/{key}"
        else:
            path = self._resolve_local(key)
            try:
                os.makedirs(path.parent, exist_ok=True)
                path.write_bytes(data)
            except OSError as e:
                raise StorageError(f"Failed to store output image {name}: {e}") from e
            uri = key

        logger.info(f"Stored output image {name} for scan {scan_id} at {uri}")
        return uri
