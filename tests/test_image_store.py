"""
Tests for reading scan images and writing analysis output images.
"""

import base64
from unittest.mock import MagicMock

import boto3
import pytest
import requests
from moto import mock_aws

from scan_analysis.services.image_store import (
    ImageStore, artifact_filename, detect_content_type, split_s3_uri
)
from scan_analysis.utils.error_handler import ErrorType, StorageError

from conftest import FakeHTTPResponse, png_bytes


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS Credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def s3(aws_credentials):
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket="scan-images")
        client.create_bucket(Bucket="analysis-outputs")
        yield client


class TestHelpers:

    def test_split_s3_uri(self):
        assert split_s3_uri("s3://scan-images/uploads/a/brain.png") == ("scan-images", "uploads/a/brain.png")

    def test_split_s3_uri_malformed(self):
        with pytest.raises(StorageError):
            split_s3_uri("s3://bucket-only")

    def test_detect_content_type(self):
        assert detect_content_type(png_bytes()) == "image/png"
        assert detect_content_type(b"DICM not really an image") == "application/octet-stream"

    def test_artifact_filename(self):
        assert artifact_filename("https://cdn.test/scans/brain.png?X-Amz-Signature=abc") == "brain.png"
        assert artifact_filename("scans/chest.png") == "chest.png"
        assert artifact_filename("s3://bucket/") == "scan.jpg"


class TestReadImageArtifact:

    def test_read_local(self, image_store):
        assert image_store.read_image_artifact("scans/brain.png") == png_bytes()

    def test_read_local_missing(self, image_store):
        with pytest.raises(StorageError) as exc_info:
            image_store.read_image_artifact("scans/missing.png")
        assert "missing.png" in str(exc_info.value)

    def test_read_local_rejects_path_escape(self, image_store):
        with pytest.raises(StorageError):
            image_store.read_image_artifact("../../etc/passwd")

    def test_read_empty_reference(self, image_store):
        with pytest.raises(StorageError):
            image_store.read_image_artifact("")

    def test_read_s3(self, s3):
        s3.put_object(Bucket="scan-images", Key="uploads/brain.png", Body=png_bytes())
        store = ImageStore(s3_client=s3)

        assert store.read_image_artifact("s3://scan-images/uploads/brain.png") == png_bytes()

    def test_read_s3_missing_key_is_permanent(self, s3):
        store = ImageStore(s3_client=s3)

        with pytest.raises(StorageError) as exc_info:
            store.read_image_artifact("s3://scan-images/uploads/nothing.png")
        assert exc_info.value.error_type == ErrorType.PERMANENT

    def test_read_url(self):
        session = MagicMock()
        session.get.return_value = FakeHTTPResponse(200, content=b"image-bytes")
        store = ImageStore(http_session=session)

        assert store.read_image_artifact("https://cdn.test/brain.png") == b"image-bytes"
        session.get.assert_called_once_with("https://cdn.test/brain.png", timeout=30)

    def test_read_url_not_found(self):
        session = MagicMock()
        session.get.return_value = FakeHTTPResponse(404, reason="Not Found")
        store = ImageStore(http_session=session)

        with pytest.raises(StorageError) as exc_info:
            store.read_image_artifact("https://cdn.test/brain.png")
        assert exc_info.value.error_type == ErrorType.PERMANENT

    def test_read_url_connection_error(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        store = ImageStore(http_session=session)

        with pytest.raises(StorageError) as exc_info:
            store.read_image_artifact("http://cdn.test/brain.png")
        assert exc_info.value.error_type == ErrorType.TRANSIENT


class TestWriteOutputArtifact:

    def test_write_local(self, image_store, image_root):
        encoded = base64.b64encode(png_bytes()).decode()

        key = image_store.write_output_artifact("scan-1", "brain_tumor", 0, "combined_image", encoded)

        assert key.startswith("analysis-outputs/scan-1/brain_tumor/0/")
        assert key.endswith("-combined_image.png")
        assert (image_root / key).read_bytes() == png_bytes()

    def test_write_accepts_data_uri(self, image_store, image_root):
        encoded = "data:image/png;base64," + base64.b64encode(png_bytes()).decode()

        key = image_store.write_output_artifact("scan-1", "ct_to_mri", 0, "ct_to_mri", encoded)

        assert (image_root / key).read_bytes() == png_bytes()

    def test_write_rejects_invalid_base64(self, image_store):
        with pytest.raises(StorageError):
            image_store.write_output_artifact("scan-1", "brain_tumor", 0, "combined_image", "not base64!!")

    def test_write_s3(self, s3):
        store = ImageStore(output_bucket="analysis-outputs", s3_client=s3)
        encoded = base64.b64encode(png_bytes()).decode()

        uri = store.write_output_artifact("scan-1", "lung_tumor", 2, "combined_image", encoded)

        assert uri.startswith("s3://analysis-outputs/analysis-outputs/scan-1/lung_tumor/2/")
        _, key = split_s3_uri(uri)
        stored = s3.get_object(Bucket="analysis-outputs", Key=key)
        assert stored["Body"].read() == png_bytes()
        assert stored["ContentType"] == "image/png"
        assert stored["Metadata"] == {
            "scan-id": "scan-1", "analysis-type": "lung_tumor", "output-name": "combined_image",
        }

    def test_write_s3_missing_bucket(self, s3):
        store = ImageStore(output_bucket="no-such-bucket", s3_client=s3)
        encoded = base64.b64encode(png_bytes()).decode()

        with pytest.raises(StorageError):
            store.write_output_artifact("scan-1", "lung_tumor", 0, "combined_image", encoded)
