import pytest
import json
from fastapi import status
from fastapi.testclient import TestClient

from conftest import FakeTransport
from api.dependencies import ServiceContainer, open_queue
from core.cache import DecodedMediaCache, IdentityCache, SignedURLCache
from core.config import BackendMode, SessionTokenStore
from core.exceptions import HTTPStatusError
from core.models import DirectoryIdentity
from main import app
from services.directory_service import AccountDirectoryService, LOOKUP_PATH
from services.feed_service import FeedService
from services.feed_store import FeedStore
from services.media_service import MediaService
from services.publish_engine import PublishEngine


def default_responder(call):
    if call.path == LOOKUP_PATH:
        ids = call.json_body.user_ids
        return json.dumps([{"user_id": i, "display_name": f"Name {i}"} for i in ids]).encode()
    if call.method == "GET":
        return b"[]"
    return b""


@pytest.fixture
def transport():
    return FakeTransport(responder=default_responder)


@pytest.fixture
def container(test_settings, transport, session_store, privacy_map):
    identity_cache = IdentityCache()
    feed_store = FeedStore()
    queue = open_queue(test_settings.queue_file)
    engine = PublishEngine(
        queue=queue,
        transport=transport,
        session_store=session_store,
        privacy=privacy_map,
        feed_store=feed_store,
        mode=test_settings.mode,
        owner_user_id=test_settings.owner_user_id,
    )
    directory = AccountDirectoryService(transport, cache=identity_cache, consumer=feed_store)
    return ServiceContainer(
        settings=test_settings,
        tokens=SessionTokenStore(),
        transport=transport,
        identity_cache=identity_cache,
        feed_store=feed_store,
        queue=queue,
        engine=engine,
        directory=directory,
        feed=FeedService(transport, feed_store, directory, test_settings.owner_user_id),
        media=MediaService(transport, SignedURLCache(), DecodedMediaCache()),
    )


@pytest.fixture
def test_client(container):
    """Client for the app with its container swapped for one built on fakes."""
    app.state.container = container
    client = TestClient(app)
    yield client
    del app.state.container


def payload_json(sample_payload, **changes):
    return json.loads(sample_payload.model_copy(update=changes).model_dump_json())


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_endpoint(self, test_client):
        response = test_client.get("/healthcheck")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "X-Correlation-ID" in response.headers
        assert "X-Process-Time" in response.headers

    def test_correlation_id_is_echoed(self, test_client):
        response = test_client.get("/healthcheck", headers={"X-Correlation-ID": "req-abc"})
        assert response.headers["X-Correlation-ID"] == "req-abc"

    def test_sync_monitoring(self, test_client, container, post_id):
        container.queue.enqueue_stub(post_id)
        container.queue.record_failure(post_id, "HTTP 500")

        data = test_client.get("/monitoring/sync").json()

        assert data["status"] == "degraded"
        assert data["mode"] == "backend_preview"
        assert data["network_enabled"] is True
        assert data["queue"] == {"depth": 1, "failing": 1, "max_attempts": 1}

    def test_cache_stats(self, test_client):
        data = test_client.get("/monitoring/cache/stats").json()
        assert set(data) == {"signed_urls", "decoded_media", "identity"}


class TestPublishEndpoints:
    """Test publish and sync control endpoints."""

    def test_publish_flushes(self, test_client, container, transport, sample_payload):
        response = test_client.post("/publish", json=payload_json(sample_payload))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["queued"] is False
        assert data["report"]["published"] == 1
        assert [c.method for c in transport.calls] == ["POST", "PATCH", "PATCH"]

    def test_publish_in_local_mode_stays_queued(self, test_client, container, sample_payload):
        container.engine.set_mode(BackendMode.LOCAL_SIMULATION)

        data = test_client.post("/publish", json=payload_json(sample_payload)).json()

        assert data["queued"] is True
        assert data["report"]["skipped"] is True
        items = test_client.get("/sync/queue").json()
        assert items["count"] == 1
        assert items["items"][0]["id"] == str(sample_payload.id)

    def test_publish_with_should_publish_false_unpublishes(self, test_client, transport, sample_payload):
        response = test_client.post(
            "/publish", params={"should_publish": "false"}, json=payload_json(sample_payload)
        )
        assert response.json()["report"] is None
        assert transport.calls_for("DELETE")

    def test_unpublish(self, test_client, transport, post_id):
        response = test_client.delete(f"/publish/{post_id}")
        assert response.json() == {"post_id": str(post_id), "remote_deleted": True}
        assert transport.calls_for("DELETE")[0].query == [("id", f"eq.{post_id}")]

    def test_flush_and_clear_queue(self, test_client, container, post_id):
        container.engine.set_mode(BackendMode.LOCAL_SIMULATION)
        container.queue.enqueue_stub(post_id)

        report = test_client.post("/sync/flush").json()
        assert report["skipped"] is True
        assert report["remaining"] == 1

        assert test_client.delete("/sync/queue").json() == {"removed": 1}
        assert test_client.get("/sync/queue").json()["count"] == 0

    def test_invalid_payload_rejected(self, test_client):
        response = test_client.post("/publish", json={"title": "missing id"})
        assert response.status_code == 422


class TestDirectoryEndpoints:
    """Test directory endpoints."""

    def test_resolve(self, test_client):
        response = test_client.get("/directory/resolve", params=[("ids", "u2"), ("ids", "u1")])
        data = response.json()
        assert list(data) == ["u2", "u1"]
        assert data["u1"]["display_name"] == "Name u1"

    def test_resolve_error_is_mapped(self, test_client, transport):
        def responder(call):
            raise HTTPStatusError(500, b"down")

        transport.responder = responder
        response = test_client.get("/directory/resolve", params={"ids": "u1"})

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.json()["error"]["code"] == "HTTP_ERROR"

    def test_search_blank(self, test_client, transport):
        assert test_client.get("/directory/search", params={"q": " "}).json() == []
        assert transport.calls == []

    def test_upsert_self(self, test_client):
        response = test_client.put(
            "/directory/self",
            json={"user_id": "me", "display_name": "Ann", "account_handle": "@Ann"},
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["account_id"] == "ann"

    def test_upsert_self_empty_name(self, test_client):
        response = test_client.put("/directory/self", json={"user_id": "me", "display_name": ""})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_update_avatar(self, test_client, transport):
        response = test_client.put(
            "/directory/self/avatar", json={"user_id": "me", "avatar_key": "me/a.jpg"}
        )
        assert response.json() == {"user_id": "me", "avatar_key": "me/a.jpg"}
        assert transport.calls[0].method == "PATCH"


class TestFeedEndpoints:
    """Test feed and session endpoints."""

    def test_feed_and_state(self, test_client):
        data = test_client.get("/feed", params={"scope": "mine"}).json()
        assert data == {"scope": "mine", "count": 0, "posts": [], "authors": {}}

        state = test_client.get("/feed/state").json()
        assert state["scope"] == "mine"
        assert state["is_fetching"] is False

    def test_bad_scope(self, test_client):
        response = test_client.get("/feed", params={"scope": "friends"})
        assert response.status_code == 422

    def test_sign_out_keeps_identities(self, test_client, container):
        container.feed_store.merge_directory_accounts({"u1": DirectoryIdentity(user_id="u1")})
        container.feed_store.record_sync_error("x")

        data = test_client.post("/session/sign-out").json()

        assert data == {"status": "signed_out", "directory_accounts": 1}
        assert container.feed_store.state.last_sync_error is None

    def test_sign_out_then_resolve_uses_cache(self, test_client, transport):
        test_client.get("/directory/resolve", params={"ids": "u1"})
        test_client.post("/session/sign-out")

        data = test_client.get("/directory/resolve", params={"ids": "u1"}).json()

        assert data["u1"]["display_name"] == "Name u1"
        assert len([c for c in transport.calls if c.path == LOOKUP_PATH]) == 1


class TestMediaEndpoints:
    """Test media endpoints."""

    def test_signed_url(self, test_client, transport):
        response = test_client.get(
            "/media/signed-url", params={"bucket": "attachments", "path": "u/p/a.jpg"}
        )
        data = response.json()
        assert data["url"].startswith("https://backend.test/storage/v1/object/sign/attachments/")
        assert transport.signed_requests == [("attachments", "u/p/a.jpg", 60)]


class TestApiKey:
    """Test the optional local API key."""

    def test_key_required_when_configured(self, test_client, monkeypatch):
        monkeypatch.setenv("LOCAL_API_KEY", "secret")

        assert test_client.get("/sync/queue").status_code == status.HTTP_401_UNAUTHORIZED
        ok = test_client.get("/sync/queue", headers={"X-API-Key": "secret"})
        assert ok.status_code == status.HTTP_200_OK
        assert test_client.get("/healthcheck").status_code == status.HTTP_200_OK
