"""
Tests for the per-session cookie jar.
"""

import random
import threading

import pytest

from core.cookie_jar import CookieJar, CookiePair, parse_cookie_pair


# ── parse_cookie_pair ────────────────────────────────────────────────────────


class TestParseCookiePair:
    def test_attributes_dropped(self):
        pair = parse_cookie_pair("token_v2=abc; Path=/; Domain=.reddit.com; Secure; HttpOnly")
        assert pair == CookiePair("token_v2", "abc")

    def test_value_with_equals(self):
        pair = parse_cookie_pair("a=b=c=; Path=/")
        assert pair == CookiePair("a", "b=c=")

    def test_empty_value_accepted(self):
        assert parse_cookie_pair("a=") == CookiePair("a", "")

    def test_no_equals_ignored(self):
        assert parse_cookie_pair("Secure") is None

    def test_empty_name_ignored(self):
        assert parse_cookie_pair("=value") is None

    def test_empty_string(self):
        assert parse_cookie_pair("") is None

    def test_whitespace_trimmed(self):
        assert parse_cookie_pair("  loid = 123 ; Path=/") == CookiePair("loid", "123")


# ── CookieJar ────────────────────────────────────────────────────────────────


class TestCookieJarMerge:
    def test_new_session_is_empty(self):
        jar = CookieJar()
        assert jar.get("fresh") == []
        assert jar.to_header_value("fresh") == ""

    def test_update_keeps_position(self):
        jar = CookieJar()
        jar.merge("s", ["a=1", "b=2", "c=3"])
        jar.merge("s", ["b=20"])
        assert jar.to_header_value("s") == "a=1; b=20; c=3"

    def test_new_names_appended(self):
        jar = CookieJar()
        jar.merge("s", ["a=1"])
        jar.merge("s", ["z=9", "b=2"])
        assert [p.name for p in jar.get("s")] == ["a", "z", "b"]

    def test_duplicate_in_same_batch_last_wins(self):
        jar = CookieJar()
        jar.merge("s", ["a=1", "a=2"])
        assert jar.get("s") == [CookiePair("a", "2")]

    def test_malformed_entries_skipped(self):
        jar = CookieJar()
        accepted = jar.merge("s", ["Secure", "=x", "ok=1"])
        assert accepted == 1
        assert jar.to_header_value("s") == "ok=1"

    def test_sessions_isolated(self):
        jar = CookieJar()
        jar.merge("alice", ["a=1"])
        jar.merge("bob", ["a=2"])
        assert jar.to_header_value("alice") == "a=1"
        assert jar.to_header_value("bob") == "a=2"

    def test_get_returns_copy(self):
        jar = CookieJar()
        jar.merge("s", ["a=1"])
        jar.get("s").append(CookiePair("b", "2"))
        assert len(jar.get("s")) == 1

    def test_matches_dict_model_on_random_sequences(self):
        rng = random.Random(1234)
        names = ["a", "b", "c", "d", "e"]
        for _ in range(50):
            jar = CookieJar()
            model = {}
            for _ in range(rng.randint(1, 6)):
                batch = [f"{rng.choice(names)}={rng.randint(0, 99)}" for _ in range(rng.randint(1, 5))]
                jar.merge("s", batch)
                for raw in batch:
                    name, value = raw.split("=", 1)
                    model[name] = value

            pairs = jar.get("s")
            assert [(p.name, p.value) for p in pairs] == list(model.items())
            assert len({p.name for p in pairs}) == len(pairs)

    def test_header_reparses_to_same_pairs(self):
        jar = CookieJar()
        jar.merge("s", ["a=1; Path=/", "b=x=y", "c="])
        header = jar.to_header_value("s")
        reparsed = [parse_cookie_pair(part) for part in header.split("; ")]
        assert reparsed == jar.get("s")

    def test_concurrent_merges(self):
        jar = CookieJar()

        def worker(index):
            for i in range(100):
                jar.merge("s", [f"k{index}_{i}=v"])

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(jar.get("s")) == 400


class TestCookieJarMisc:
    def test_set_and_remove(self):
        jar = CookieJar()
        jar.set("s", "reddit_session", "tok")
        assert jar.to_header_value("s") == "reddit_session=tok"
        assert jar.remove("s", "reddit_session") is True
        assert jar.remove("s", "reddit_session") is False
        assert jar.to_header_value("s") == ""

    def test_snapshot_and_load(self):
        jar = CookieJar()
        jar.merge("alice", ["a=1", "b=2"])
        jar.merge("bob", ["c=3"])

        restored = CookieJar()
        total = restored.load(jar.snapshot())

        assert total == 3
        assert restored.snapshot() == {"alice": ["a=1", "b=2"], "bob": ["c=3"]}

    def test_load_skips_non_list_sessions(self):
        jar = CookieJar()
        total = jar.load({"good": ["a=1"], "bad": "a=1"})
        assert total == 1
        assert jar.sessions() == ["good"]

    @pytest.mark.parametrize("session_count", [0, 1, 3])
    def test_len_counts_sessions(self, session_count):
        jar = CookieJar()
        for n in range(session_count):
            jar.merge(f"s{n}", ["a=1"])
        assert len(jar) == session_count

    def test_empty_jar_is_truthy(self):
        jar = CookieJar()
        assert len(jar) == 0
        assert jar
        assert (jar or CookieJar()) is jar
