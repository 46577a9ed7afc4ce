"""
Shared fixtures for the scan analysis test suite.
"""

import io
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import pytest
from celery import states
from PIL import Image

from scan_analysis.config import AppConfig
from scan_analysis.models.database import ScanPriority, ScanType, utcnow
from scan_analysis.pipeline import build_pipeline
from scan_analysis.services.dispatcher import TaskDispatcher, WorkItem
from scan_analysis.services.image_store import ImageStore
from scan_analysis.services.inference_client import InferenceClient
from scan_analysis.services.record_store import RecordStore
from scan_analysis.utils.database import db_manager

ADMIN = {"username": "admin", "name": "Admin User", "role": "administrator"}
CLINICIAN = {"username": "demo", "name": "Demo User", "role": "healthcare_professional"}


def png_bytes(size=(8, 8), color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeHTTPResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code: int = 200, payload: Any = None, content: bytes = b"",
                 reason: str = "OK"):
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.reason = reason

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeInferenceSession:
    """Routes POSTs by URL path to canned responses and records every call."""

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self.calls: List[Dict[str, Any]] = []

    def route(self, path: str, payload: Any = None, status_code: int = 200,
              error: Optional[Exception] = None) -> None:
        self.routes[path] = (payload, status_code, error)

    def post(self, url, timeout=None, **kwargs):
        path = urlparse(url).path
        self.calls.append({"path": path, "timeout": timeout, **kwargs})

        payload, status_code, error = self.routes.get(path, ({"detail": "Not Found"}, 404, None))
        if error is not None:
            raise error
        return FakeHTTPResponse(status_code, payload)

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["path"] == path]


class InlineDispatcher(TaskDispatcher):
    """Records published tasks instead of sending them; run_pending executes them in order."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.sent: List[WorkItem] = []
        self.revoked: List[str] = []

    def _send(self, item: WorkItem) -> None:
        self.sent.append(item)

    def _state(self, task_id: str) -> str:
        return states.PENDING

    def _revoke(self, task_id: str) -> None:
        self.revoked.append(task_id)
        self.sent = [item for item in self.sent if item.run_id != task_id]

    def run_pending(self) -> int:
        processed = 0
        while self.sent:
            self.run_item(self.sent.pop(0))
            processed += 1
        return processed


@pytest.fixture
def database():
    """Fresh in-memory SQLite database per test."""
    db_manager.configure("sqlite://")
    db_manager.create_tables()
    yield db_manager
    db_manager.drop_tables()


@pytest.fixture
def store(database):
    return RecordStore(database)


@pytest.fixture
def image_root(tmp_path):
    root = tmp_path / "images"
    (root / "scans").mkdir(parents=True)
    (root / "scans" / "brain.png").write_bytes(png_bytes())
    (root / "scans" / "chest.png").write_bytes(png_bytes(color=(10, 10, 10)))
    return root


@pytest.fixture
def image_store(image_root):
    return ImageStore(local_root=str(image_root))


@pytest.fixture
def inference_session():
    return FakeInferenceSession()


@pytest.fixture
def inference_client(inference_session):
    return InferenceClient("http://inference.test", session=inference_session)


@pytest.fixture
def app_config():
    return AppConfig(
        inference_base_url="http://inference.test",
        enable_llm_report=False,
        worker_count=1,
        worker_queue_size=10,
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        celery_always_eager=False,
        processing_timeout_seconds=900,
        jwt_secret_key="test-secret",
    )


@pytest.fixture
def dispatcher(app_config):
    return InlineDispatcher(queue_size=app_config.worker_queue_size)


@pytest.fixture
def pipeline(app_config, database, image_store, inference_client, dispatcher):
    return build_pipeline(
        app_config,
        manager=database,
        image_store=image_store,
        inference_client=inference_client,
        dispatcher=dispatcher,
    )


@pytest.fixture
def make_scan(store):
    """Factory creating pending scans; ``age_seconds`` backdates creation."""
    def factory(scan_type=ScanType.MRI, body_part="Brain", priority=ScanPriority.MEDIUM,
                image_keys=("scans/brain.png",), age_seconds=0, created_by="demo", notes=None):
        created_at = utcnow() - timedelta(seconds=age_seconds)
        return store.create_scan(
            scan_type=scan_type,
            body_part=body_part,
            image_keys=list(image_keys),
            priority=priority,
            created_by=created_by,
            notes=notes,
            created_at=created_at,
        )
    return factory


@pytest.fixture
def admin():
    return dict(ADMIN)


@pytest.fixture
def clinician():
    return dict(CLINICIAN)
