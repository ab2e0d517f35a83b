"""Tests for the HTTP surface and settings loading."""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import RecordingTransport, make_provider, openai_reply, openai_store
from weblm.app import create_app
from weblm.config import load_settings
from weblm.session_store import SessionStore


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("WEBLM_DATA_DIR", str(tmp_path / "data"))
    return load_settings()


@pytest.fixture
def client(settings):
    transport = RecordingTransport([httpx.Response(200, json=openai_reply("pong"))])
    provider = make_provider(transport, openai_store())
    sessions = SessionStore()
    session_id = sessions.create("s1")
    sessions.add_message(session_id, "user", "hello there")
    app = create_app(settings=settings, provider=provider, session_store=sessions)
    with TestClient(app) as test_client:
        yield test_client


class TestHubRoute:
    def test_config_is_loaded_on_startup(self, client):
        response = client.post("/api/hub/GET_LLM_CONFIG", json={})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["config"]["model_type"] == "openai"
        assert body["config"]["config"]["has_api_key"] is True

    def test_unknown_kind_is_not_a_server_error(self, client):
        response = client.post("/api/hub/NOPE", json={"payload": {}})

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_chat_goes_through_provider(self, client):
        response = client.post(
            "/api/hub/CHAT",
            json={"payload": {"messages": [{"role": "user", "content": "ping"}]}, "window_id": 1},
        )

        assert response.json() == {"success": True, "response": "pong", "status_text": ""}

    def test_panel_state_is_per_window(self, client):
        client.post("/api/hub/SIDE_PANEL_OPENED", json={"window_id": 5, "context_id": "panel-5"})

        assert client.get("/api/panel/5").json()["is_open"] is True
        assert client.get("/api/panel/6").json()["is_open"] is False
        assert client.get("/api/panel/-1").status_code == 400

    def test_page_relay_without_page_context(self, client):
        response = client.post("/api/hub/GET_PAGE_TEXT", json={"window_id": 2})

        assert response.json()["success"] is False


class TestSessionRoutes:
    def test_list_and_fetch(self, client):
        summaries = client.get("/api/sessions").json()

        assert summaries[0]["session_id"] == "s1"
        assert summaries[0]["title"] == "hello there"

        detail = client.get("/api/sessions/s1").json()
        assert detail["session_id"] == "s1"
        assert [message["content"] for message in detail["messages"]] == ["hello there"]

    def test_unknown_session_is_empty(self, client):
        assert client.get("/api/sessions/missing").json() == {"session_id": "missing", "messages": []}


class TestSettings:
    def test_defaults(self, settings, tmp_path):
        assert settings.data_dir == tmp_path / "data"
        assert settings.settings_path == tmp_path / "data" / "settings.json"
        assert settings.feature_ttl == 1.5
        assert settings.panel_poll_interval == 2.0
        assert settings.chunk_limit == 180
        assert settings.page_text_limit == 5000

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("WEBLM_CHUNK_LIMIT", "120")
        monkeypatch.setenv("WEBLM_MAX_SESSIONS", "3")

        settings = load_settings()

        assert settings.chunk_limit == 120
        assert settings.max_sessions == 3

    def test_invalid_number_raises(self, monkeypatch):
        monkeypatch.setenv("WEBLM_VOICE_WAIT", "soon")

        with pytest.raises(ValueError):
            load_settings()

    def test_data_dir_is_created(self, settings):
        create_app(settings=settings, provider=make_provider(RecordingTransport([]), openai_store()))

        assert settings.data_dir.is_dir()
