"""
tests/test_store.py — Document Store Tests
============================================
Single-path reads/writes, compare-and-update semantics, child listings and
range queries on the SQLite-backed store.
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import create_engine

from playstake.database.models import Base
from playstake.database.store import SqlDocumentStore, join, parent_of
from playstake.engine.errors import StateConflictError, ValidationError


class TestPaths:
    def test_parent_of(self):
        assert parent_of("users/u1/wallet") == "users/u1"
        assert parent_of("challenges") == ""

    def test_join_strips_slashes(self):
        assert join("users/", "/u1", "wallet") == "users/u1/wallet"


class TestReadWrite:
    def test_get_missing_returns_none(self, store):
        assert store.get("nothing/here") is None

    def test_set_then_get(self, store):
        store.set("a/b", {"x": 1})
        assert store.get("a/b") == {"x": 1}

    def test_set_overwrites(self, store):
        store.set("a/b", {"x": 1})
        store.set("a/b", {"y": 2})
        assert store.get("a/b") == {"y": 2}

    def test_update_merges(self, store):
        store.set("a/b", {"x": 1, "y": 1})
        store.update("a/b", {"y": 2, "z": 3})
        assert store.get("a/b") == {"x": 1, "y": 2, "z": 3}

    def test_returned_values_are_copies(self, store):
        store.set("a/b", {"items": [1]})
        value = store.get("a/b")
        value["items"].append(2)
        assert store.get("a/b") == {"items": [1]}

    def test_push_returns_ordered_keys(self, store):
        keys = [store.push("log", {"n": n}) for n in range(5)]
        assert keys == sorted(keys)
        assert [v["n"] for v in store.children("log").values()] == [0, 1, 2, 3, 4]


class TestTransaction:
    def test_creates_when_absent(self, store):
        result = store.transaction("counter", lambda cur: {"n": (cur or {"n": 0})["n"] + 1})
        assert result == {"n": 1}
        assert store.get("counter") == {"n": 1}

    def test_updater_exception_aborts(self, store):
        store.set("w", {"amount": 10})

        def updater(current):
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            store.transaction("w", updater)
        assert store.get("w") == {"amount": 10}

    def test_lost_race_reruns_updater(self, store):
        """A write sneaking in between read and write forces a re-run."""
        store.set("counter", {"n": 0})
        calls = []

        def updater(current):
            calls.append(current["n"])
            if len(calls) == 1:
                store.set("counter", {"n": 100})
            return {"n": current["n"] + 1}

        assert store.transaction("counter", updater) == {"n": 101}
        assert calls == [0, 100]

    def test_gives_up_after_max_retries(self, db_engine):
        store = SqlDocumentStore(db_engine, max_retries=3)
        store.set("hot", {"n": 0})

        def updater(current):
            store.set("hot", {"n": current["n"] + 10})
            return {"n": -1}

        with pytest.raises(StateConflictError):
            store.transaction("hot", updater)

    def test_concurrent_increments_are_not_lost(self, tmp_path):
        # File-backed so each thread gets its own connection.
        engine = create_engine(f"sqlite:///{tmp_path / 'store.db'}")
        Base.metadata.create_all(engine)
        store = SqlDocumentStore(engine, max_retries=200)
        store.set("counter", {"n": 0})

        def worker():
            for _ in range(10):
                store.transaction("counter", lambda cur: {"n": cur["n"] + 1})

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("counter") == {"n": 40}


class TestListing:
    @pytest.fixture(autouse=True)
    def _seed(self, store):
        store.set("idx/u1/c1", {"createdAt": "2026-01-01T00:00:00+00:00", "status": "pending"})
        store.set("idx/u1/c2", {"createdAt": "2026-01-03T00:00:00+00:00", "status": "accepted"})
        store.set("idx/u1/c3", {"createdAt": "2026-01-02T00:00:00+00:00", "status": "pending"})
        store.set("idx/u1/c4", {"status": "broken"})
        store.set("idx/u2/c1", {"createdAt": "2026-01-01T00:00:00+00:00"})

    def test_children_only_direct(self, store):
        assert set(store.children("idx/u1")) == {"c1", "c2", "c3", "c4"}
        assert store.children("idx") == {}

    def test_query_orders_by_field(self, store):
        keys = [k for k, _ in store.query("idx/u1", order_by="createdAt")]
        assert keys == ["c1", "c3", "c2"]

    def test_query_descending_with_limit(self, store):
        keys = [k for k, _ in store.query("idx/u1", order_by="createdAt", descending=True, limit=2)]
        assert keys == ["c2", "c3"]

    def test_query_range(self, store):
        rows = store.query(
            "idx/u1",
            order_by="createdAt",
            start_at="2026-01-02",
            end_at="2026-01-02T23:59:59",
        )
        assert [k for k, _ in rows] == ["c3"]

    def test_scan_covers_all_descendants(self, store):
        paths = set(store.scan("idx"))
        assert paths == {"idx/u1/c1", "idx/u1/c2", "idx/u1/c3", "idx/u1/c4", "idx/u2/c1"}
