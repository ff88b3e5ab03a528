"""
Tests for key-value stores and the session store
"""

import json

import pytest

from page_companion.queries import JsonFileStore, MemoryStore, SessionStore, StorageError
from page_companion.queries.results import SearchResult, SearchResultLog
from page_companion.queries.types import Session


class TestJsonFileStore:
    """Tests for JsonFileStore"""

    def test_set_get_remove(self, tmp_path):
        store = JsonFileStore(tmp_path / "nested" / "storage.json")
        assert store.get(["tab_1"]) == {}

        store.set({"tab_1": {"answer": "a"}, "tab_2": {"answer": "b"}})
        assert store.get(["tab_1", "missing"]) == {"tab_1": {"answer": "a"}}
        assert sorted(store.keys()) == ["tab_1", "tab_2"]

        store.remove(["tab_1"])
        assert store.keys() == ["tab_2"]
        assert json.loads((tmp_path / "nested" / "storage.json").read_text()) == {"tab_2": {"answer": "b"}}

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFileStore(tmp_path / "storage.json")
        store.set({"a": 1})
        store.set({"b": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["storage.json"]

    def test_corrupt_file_raises_storage_error(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text("{not json")
        with pytest.raises(StorageError):
            JsonFileStore(path).get(["tab_1"])

    def test_non_object_file_raises_storage_error(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text("[1, 2]")
        with pytest.raises(StorageError):
            JsonFileStore(path).keys()


class TestMemoryStore:
    def test_values_are_copied(self):
        store = MemoryStore()
        value = {"list": [1]}
        store.set({"k": value})
        value["list"].append(2)
        fetched = store.get(["k"])["k"]
        fetched["list"].append(3)
        assert store.get(["k"]) == {"k": {"list": [1]}}


class TestSessionStore:
    """Tests for SessionStore"""

    def test_record_format(self):
        kv = MemoryStore()
        sessions = SessionStore(kv, default_model="gemini")
        log = SearchResultLog([SearchResult(id="1", content="c", timestamp=2)])
        sessions.save(7, Session(tab_id=7, current_model_id="perplexity", summary="s", search_results=log))

        assert kv.get(["tab_7"])["tab_7"] == {
            "summary": "s",
            "searchResults": [{"id": "1", "content": "c", "timestamp": 2}],
            "darkMode": False,
            "currentModel": "perplexity",
        }

    def test_save_overwrites_whole_record(self):
        kv = MemoryStore({"tab_1": {"answer": "old", "extra": "field", "currentModel": "gemini"}})
        sessions = SessionStore(kv, default_model="gemini")
        sessions.save(1, Session(tab_id=1, current_model_id="gemini"))
        record = kv.get(["tab_1"])["tab_1"]
        assert "answer" not in record
        assert "extra" not in record

    def test_load_missing_and_existing(self):
        kv = MemoryStore({"tab_3": {"answer": "kept", "darkMode": True, "searchResults": []}})
        sessions = SessionStore(kv, default_model="gemini")
        assert sessions.load(4) is None
        session = sessions.load(3)
        assert session.answer == "kept"
        assert session.dark_mode is True
        assert session.current_model_id == "gemini"
        assert session.is_summarized is False

    def test_load_rejects_non_object_record(self):
        sessions = SessionStore(MemoryStore({"tab_1": "garbage"}), default_model="gemini")
        with pytest.raises(StorageError):
            sessions.load(1)

    def test_prune_and_delete(self):
        kv = MemoryStore({"tab_1": {}, "tab_2": {}, "tab_10": {}, "tabs": {}, "tab_x": {}})
        sessions = SessionStore(kv, default_model="gemini")
        assert sessions.tab_ids() == [1, 2, 10]

        assert sessions.prune([2]) == [1, 10]
        assert sessions.tab_ids() == [2]
        sessions.delete(2)
        assert sorted(kv.keys()) == ["tab_x", "tabs"]
