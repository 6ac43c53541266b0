import pytest
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import Mock
from uuid import UUID, uuid4

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.cache import IdentityCache
from core.config import BackendMode, BackendSettings
from core.models import AttachmentKind, PublishPayload
from providers.local_store import AttachmentPrivacyMap, InMemorySessionStore, LocalAttachment
from services.feed_store import FeedStore
from services.publish_queue import PublishQueue


@dataclass
class RecordedCall:
    method: str
    path: str
    query: Optional[List[tuple]] = None
    json_body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


class FakeTransport:
    """
    In-memory stand-in for HTTPTransport.

    `responder(call)` decides each outcome: return bytes for a 2xx body or
    raise to simulate a failure. Every call is recorded in order.
    """

    def __init__(self, configured: bool = True, responder: Optional[Callable] = None):
        self.base_url = "https://backend.test" if configured else None
        self.responder = responder or (lambda call: b"")
        self.calls: List[RecordedCall] = []
        self.uploads: List[tuple] = []
        self.signed_requests: List[tuple] = []
        self.fetched: List[str] = []
        self.fetch_body = b"media-bytes"

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def request(self, path, method="GET", query=None, json_body=None, body=None, headers=None):
        call = RecordedCall(
            method=method,
            path=path,
            query=list(query) if query is not None else None,
            json_body=json_body,
            headers=dict(headers or {}),
        )
        self.calls.append(call)
        return self.responder(call)

    async def upload_object(self, bucket, path, data, content_type="application/octet-stream"):
        call = RecordedCall(method="UPLOAD", path=f"{bucket}/{path}")
        self.calls.append(call)
        self.responder(call)
        self.uploads.append((bucket, path, data, content_type))

    async def create_signed_object_url(self, bucket, path, ttl_seconds):
        self.signed_requests.append((bucket, path, ttl_seconds))
        return f"{self.base_url}/storage/v1/object/sign/{bucket}/{path}?token=t{len(self.signed_requests)}"

    async def fetch_absolute(self, url):
        self.fetched.append(url)
        return self.fetch_body

    async def close(self):
        pass

    def calls_for(self, method: str) -> List[RecordedCall]:
        return [call for call in self.calls if call.method == method]


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def queue_file(tmp_path) -> Path:
    return tmp_path / "publish_queue_v2.json"


@pytest.fixture
def publish_queue(queue_file) -> PublishQueue:
    return PublishQueue(queue_file)


@pytest.fixture
def feed_store() -> FeedStore:
    return FeedStore()


@pytest.fixture
def identity_cache() -> IdentityCache:
    return IdentityCache()


@pytest.fixture
def privacy_map(tmp_path) -> AttachmentPrivacyMap:
    return AttachmentPrivacyMap(tmp_path / "attachment_privacy.json")


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def owner_id() -> str:
    return "owner-1"


@pytest.fixture
def post_id() -> UUID:
    return UUID("11111111-2222-3333-4444-555555555555")


@pytest.fixture
def session_id() -> UUID:
    return UUID("aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee")


@pytest.fixture
def sample_payload(post_id, session_id) -> PublishPayload:
    """A fully populated public publish payload."""
    return PublishPayload(
        id=post_id,
        session_ref=session_id,
        title="Scales warmup",
        duration_seconds=1800,
        activity_type="core:0",
        activity_detail="C major",
        instrument_label="Piano",
        mood=4,
        effort=3,
        is_public=True,
        notes="Felt good",
        notes_are_private=False,
    )


@pytest.fixture
def make_attachment(tmp_path):
    """Create an attachment file on disk and return its LocalAttachment."""

    def _make(session_id: UUID, name: str = "take.m4a", kind=AttachmentKind.AUDIO, data=b"audio"):
        file_path = tmp_path / f"{uuid4().hex}-{name}"
        file_path.write_bytes(data)
        return LocalAttachment(
            id=uuid4(), session_id=session_id, kind=kind, file_path=file_path, display_name=name
        )

    return _make


@pytest.fixture
def test_settings(tmp_path) -> BackendSettings:
    return BackendSettings(
        mode=BackendMode.BACKEND_PREVIEW,
        base_url="https://backend.test",
        api_key="anon-key",
        owner_user_id="owner-1",
        data_dir=tmp_path / "data",
    )


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    for name in (
        "BACKEND_MODE",
        "BACKEND_BASE_URL",
        "BACKEND_API_KEY",
        "BACKEND_ACCESS_TOKEN",
        "BACKEND_OWNER_USER_ID",
        "LOCAL_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock()
    logger.info = Mock()
    logger.error = Mock()
    logger.warning = Mock()
    logger.debug = Mock()
    return logger
