"""Tests for the write-once output store."""

from __future__ import annotations

import pytest

from relayci.errors import DuplicateOutputError, MissingOutputError
from relayci.graph import RUN_SCOPE
from relayci.outputs import OutputStore
from tests.conftest import Background


class TestOutputStore:
    def test_visible_after_commit(self):
        store = OutputStore()
        store.put("build", "bin", "out/app")
        with pytest.raises(KeyError):
            store.peek("build", "bin")
        store.commit("build")
        assert store.get("build", "bin") == "out/app"
        assert store.snapshot() == {"build": {"bin": "out/app"}}

    def test_values_are_strings(self):
        store = OutputStore()
        store.put("build", "count", 3)
        store.commit("build")
        assert store.get("build", "count") == "3"

    def test_write_once(self):
        store = OutputStore()
        store.put("build", "bin", "a")
        with pytest.raises(DuplicateOutputError) as exc:
            store.put("build", "bin", "b")
        assert (exc.value.stage, exc.value.key) == ("build", "bin")

    def test_reader_blocks_until_commit(self):
        store = OutputStore()
        reader = Background(store.get, "build", "bin", consumer="pack", timeout=5)
        store.put("build", "bin", "out/app")
        store.commit("build")
        assert reader.join() == "out/app"

    def test_discarded_producer_publishes_nothing(self):
        store = OutputStore()
        store.put("build", "bin", "partial")
        store.discard("build")
        with pytest.raises(MissingOutputError):
            store.get("build", "bin")

    def test_missing_key_after_success(self):
        store = OutputStore()
        store.commit("build")
        with pytest.raises(MissingOutputError):
            store.get("build", "bin", timeout=1)

    def test_timeout(self):
        store = OutputStore()
        with pytest.raises(TimeoutError):
            store.get("build", "bin", consumer="pack", timeout=0.05)

    def test_close_wakes_readers(self):
        store = OutputStore()
        reader = Background(store.get, "build", "bin")
        store.close()
        with pytest.raises(MissingOutputError):
            reader.join()

    def test_run_scope_published_immediately(self):
        store = OutputStore()
        store.put(RUN_SCOPE, "release_tag", "v1.3.0")
        assert store.peek(RUN_SCOPE, "release_tag") == "v1.3.0"
        with pytest.raises(DuplicateOutputError):
            store.put(RUN_SCOPE, "release_tag", "v1.4.0")

    def test_restore(self):
        store = OutputStore()
        store.restore("build", {"bin": "out/app"})
        assert store.get("build", "bin", timeout=0) == "out/app"
        with pytest.raises(DuplicateOutputError):
            store.put("build", "bin", "again")
