import pytest
from pathlib import Path
from unittest.mock import AsyncMock

from core.config import (
    BackendMode,
    BackendSettings,
    SessionTokenStore,
    load_settings,
)
from core.exceptions import ConfigurationError


class TestBackendMode:
    """Test backend mode parsing and gating."""

    def test_network_enabled_modes(self):
        assert BackendMode.LOCAL_SIMULATION.is_network_enabled is False
        assert BackendMode.BACKEND_PREVIEW.is_network_enabled is True
        assert BackendMode.BACKEND_LIVE.is_network_enabled is True

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (None, BackendMode.LOCAL_SIMULATION),
            ("", BackendMode.LOCAL_SIMULATION),
            ("backend_live", BackendMode.BACKEND_LIVE),
            (" BACKEND_PREVIEW ", BackendMode.BACKEND_PREVIEW),
            ("staging", BackendMode.LOCAL_SIMULATION),
        ],
    )
    def test_parse(self, raw, expected):
        assert BackendMode.parse(raw) is expected

    def test_display_title(self):
        assert BackendMode.BACKEND_LIVE.display_title == "Backend Live"


class TestBackendSettings:
    """Test settings validation and loading."""

    def test_local_mode_needs_nothing(self):
        assert BackendSettings().validate() is True

    def test_network_mode_collects_every_problem(self):
        settings = BackendSettings(mode=BackendMode.BACKEND_LIVE, media_cache_size=0)
        with pytest.raises(ConfigurationError) as exc_info:
            settings.validate()
        problems = exc_info.value.details["problems"]
        assert len(problems) == 3
        assert any("BACKEND_BASE_URL" in p for p in problems)
        assert any("BACKEND_API_KEY" in p for p in problems)
        assert any("MEDIA_CACHE_SIZE" in p for p in problems)

    def test_non_http_base_url_rejected(self):
        settings = BackendSettings(
            mode=BackendMode.BACKEND_PREVIEW, base_url="ftp://x", api_key="k"
        )
        with pytest.raises(ConfigurationError):
            settings.validate()

    def test_file_locations(self, tmp_path):
        settings = BackendSettings(data_dir=tmp_path)
        assert settings.queue_file == tmp_path / "publish_queue_v2.json"
        assert settings.privacy_file == tmp_path / "attachment_privacy.json"

    def test_is_configured(self):
        assert BackendSettings(base_url="https://b", api_key="k").is_configured is True
        assert BackendSettings(base_url="https://b").is_configured is False

    def test_summary_masks_secrets(self):
        summary = BackendSettings(api_key="secret", access_token="tok").summary()
        assert summary["api_key"] == "•••"
        assert summary["access_token"] == "•••"
        assert "secret" not in str(summary)

    def test_with_overrides(self):
        settings = BackendSettings().with_overrides(mode=BackendMode.BACKEND_LIVE)
        assert settings.mode is BackendMode.BACKEND_LIVE

    def test_load_settings_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BACKEND_MODE", "backend_preview")
        monkeypatch.setenv("BACKEND_BASE_URL", "https://backend.test")
        monkeypatch.setenv("BACKEND_API_KEY", "anon")
        monkeypatch.setenv("BACKEND_OWNER_USER_ID", "  owner-1 ")
        monkeypatch.setenv("SYNC_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("SIGNED_URL_TTL_SECONDS", "120")

        settings = load_settings()

        assert settings.mode is BackendMode.BACKEND_PREVIEW
        assert settings.owner_user_id == "owner-1"
        assert settings.data_dir == Path(tmp_path)
        assert settings.signed_url_ttl_seconds == 120
        assert settings.media_cache_size == 256

    def test_load_settings_bad_integer(self, monkeypatch):
        monkeypatch.setenv("MEDIA_CACHE_SIZE", "lots")
        with pytest.raises(ConfigurationError):
            load_settings()


class TestSessionTokenStore:
    """Test the bearer token holder."""

    @pytest.mark.asyncio
    async def test_refresh_without_refresher(self):
        assert await SessionTokenStore().refresh() is False

    @pytest.mark.asyncio
    async def test_refresh_replaces_token(self):
        store = SessionTokenStore(access_token="old", refresher=AsyncMock(return_value="new"))
        assert await store.refresh() is True
        assert store.access_token == "new"

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_token(self):
        store = SessionTokenStore(
            access_token="old", refresher=AsyncMock(side_effect=RuntimeError("offline"))
        )
        assert await store.refresh() is False
        assert store.access_token == "old"

    @pytest.mark.asyncio
    async def test_refresh_returning_none(self):
        store = SessionTokenStore(access_token="old", refresher=AsyncMock(return_value=None))
        assert await store.refresh() is False
        assert store.access_token == "old"

    def test_clear(self):
        store = SessionTokenStore(access_token="tok")
        store.clear()
        assert store.access_token is None
