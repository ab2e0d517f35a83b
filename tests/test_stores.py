"""Tests for the settings and conversation stores."""

from __future__ import annotations

import itertools
import json
from types import SimpleNamespace

import pytest

from weblm.session_store import DEFAULT_TITLE, SessionStore
from weblm.settings_store import InMemorySettingsStore, JsonFileSettingsStore


class TestSettingsStores:
    @pytest.mark.asyncio
    async def test_in_memory_get_set_remove(self):
        store = InMemorySettingsStore({"a": 1})

        await store.set({"b": 2})
        await store.remove(["a", "missing"])

        assert await store.get(["a", "b", "c"]) == {"b": 2}

    @pytest.mark.asyncio
    async def test_json_file_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "settings.json"
        store = JsonFileSettingsStore(path)

        await store.set({"modelType": "qwen", "enableScreenshot": False})

        reloaded = JsonFileSettingsStore(path)
        assert await reloaded.get(["modelType", "enableScreenshot"]) == {
            "modelType": "qwen",
            "enableScreenshot": False,
        }

        await reloaded.remove(["modelType"])
        assert json.loads(path.read_text(encoding="utf-8")) == {"enableScreenshot": False}

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")

        assert await JsonFileSettingsStore(path).get(["modelType"]) == {}


class TestSessionStore:
    def test_first_user_message_becomes_title(self):
        store = SessionStore()
        session_id = store.create()

        store.add_message(session_id, "user", "What does this page say?\nsecond line")
        store.add_message(session_id, "assistant", "It explains widgets.", meta={"status_text": "note"})

        summary = store.list_sessions()[0]
        assert summary.title == "What does this page say?"
        messages = store.get_messages(session_id)
        assert [message.role for message in messages] == ["user", "assistant"]
        assert messages[1].meta == {"status_text": "note"}

    def test_create_keeps_existing_history(self):
        store = SessionStore()
        store.create("s1")
        store.add_message("s1", "user", "hi")

        assert store.create("s1") == "s1"
        assert len(store.get_messages("s1")) == 1

    def test_reset_clears_history_and_title(self):
        store = SessionStore()
        store.create("s1")
        store.add_message("s1", "user", "hi")

        store.reset("s1")

        assert store.get_messages("s1") == []
        assert store.list_sessions()[0].title == DEFAULT_TITLE

    def test_destroy(self):
        store = SessionStore()
        store.create("s1")

        assert store.destroy("s1") is True
        assert store.destroy("s1") is False
        assert store.list_sessions() == []

    def test_oldest_sessions_are_pruned(self, monkeypatch):
        ticks = itertools.count(1)
        monkeypatch.setattr("weblm.session_store.time", SimpleNamespace(time=lambda: float(next(ticks))))
        store = SessionStore(max_sessions=2)
        for session_id in ("a", "b", "c"):
            store.create(session_id)
            store.add_message(session_id, "user", session_id)

        assert {summary.session_id for summary in store.list_sessions()} == {"b", "c"}
        assert store.get_messages("a") == []

    def test_persists_to_disk(self, tmp_path):
        path = tmp_path / "sessions.json"
        store = SessionStore(path)
        store.create("s1")
        store.add_message("s1", "user", "hello")

        reloaded = SessionStore(path)

        assert [message.content for message in reloaded.get_messages("s1")] == ["hello"]
        assert reloaded.list_sessions()[0].title == "hello"
