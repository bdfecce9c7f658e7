"""
Tests for cookie jar persistence.
"""

import json

import pytest

from core.cookie_jar import CookieJar
from core.errors import PersistenceWriteFailed
from core.jar_store import CookieJarStore


class TestCookieJarStore:
    def test_missing_file_is_empty(self, tmp_path):
        store = CookieJarStore(tmp_path / "cookies.json")
        assert store.read() == {}

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "cookies.json"
        path.write_text("{not json", encoding="utf-8")
        assert CookieJarStore(path).read() == {}

    def test_non_object_is_empty(self, tmp_path):
        path = tmp_path / "cookies.json"
        path.write_text('["a=1"]', encoding="utf-8")
        assert CookieJarStore(path).read() == {}

    def test_save_writes_snapshot(self, tmp_path):
        path = tmp_path / "nested" / "cookies.json"
        jar = CookieJar()
        jar.merge("default", ["reddit_session=tok; Path=/", "loid=1"])

        CookieJarStore(path).save(jar)

        assert json.loads(path.read_text(encoding="utf-8")) == {
            "default": ["reddit_session=tok", "loid=1"],
        }
        assert not (tmp_path / "nested" / "cookies.json.tmp").exists()

    def test_load_into_restores_sessions(self, tmp_path):
        path = tmp_path / "cookies.json"
        path.write_text(json.dumps({"alice": ["a=1"], "bob": ["b=2", "c=3"]}), encoding="utf-8")

        jar = CookieJar()
        total = CookieJarStore(path).load_into(jar)

        assert total == 3
        assert jar.to_header_value("bob") == "b=2; c=3"

    def test_write_failure_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = CookieJarStore(blocker / "cookies.json")

        with pytest.raises(PersistenceWriteFailed):
            store.write({"s": ["a=1"]})
