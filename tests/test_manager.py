"""Tests for MemoryManager lifecycle, persistence and status."""

from __future__ import annotations

import json
import time

import pytest

from memroute.config import IndexConfig, MemrouteConfig
from memroute.embeddings import HashEmbedder
from memroute.errors import DimensionMismatchError
from memroute.manager import MemoryManager

from conftest import _EPHEMERAL_CLIENT, DIM, unique_collection


def _open(config: MemrouteConfig, collection: str) -> MemoryManager:
    return MemoryManager(
        config, embedder=HashEmbedder(DIM), _client=_EPHEMERAL_CLIENT, _collection_name=collection
    )


class TestLifecycle:
    def test_flush_completes_every_index_and_checkpoints(self, manager: MemoryManager, config):
        manager.add_memory("JWT tokens expire after 24 hours")
        manager.index_turn("s1", 0, "hi", "hello")
        manager.update_policy("What is 2 + 2?", 2, True)
        assert not manager.status()["complete"]

        manager.flush()
        status = manager.status()
        assert status["complete"]
        assert status["indexes"]["memory"]["nodes"] == 1
        for name in ("memory", "session", "policy"):
            assert (config.index_dir / f"{name}.json").exists()

    def test_background_maintenance(self, tmp_path):
        config = MemrouteConfig(data_dir=str(tmp_path), dimension=DIM, index=IndexConfig(tick_interval=0.01))
        with _open(config, unique_collection()) as manager:
            for i in range(15):
                manager.add_memory(f"note number {i}")
            deadline = time.monotonic() + 10
            while not manager.status()["complete"] and time.monotonic() < deadline:
                time.sleep(0.01)
            assert manager.status()["complete"]
        snapshot = json.loads((config.index_dir / "memory.json").read_text())
        assert len(snapshot["nodes"]) == 15

    def test_reopen_recovers_unindexed_writes(self, config):
        collection = unique_collection()
        first = _open(config, collection)
        first.add_memory("alpha note")
        first.flush()
        first.add_memory("beta note")
        first.close()

        second = _open(config, collection)
        try:
            stats = second.status()["indexes"]["memory"]
            assert stats["nodes"] == 1
            assert stats["pending"] == 1
            second.flush()
            assert second.status()["indexes"]["memory"]["nodes"] == 2
            assert second.search("beta note", top_k=1)[0].content == "beta note"
        finally:
            second.close()

    def test_full_queue_links_on_write(self, tmp_path):
        config = MemrouteConfig(
            data_dir=str(tmp_path), dimension=DIM, index=IndexConfig(max_pending=0, checkpoint_every=1)
        )
        manager = _open(config, unique_collection())
        try:
            manager.add_memory("hello world")
            stats = manager.status()["indexes"]["memory"]
            assert stats["nodes"] == 1
            assert stats["pending"] == 0
            assert (config.index_dir / "memory.json").exists()
        finally:
            manager.close()

    def test_unwritable_index_dir_does_not_fail_writes_or_close(self, tmp_path, caplog):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        config = MemrouteConfig(
            data_dir=str(blocker), dimension=DIM, index=IndexConfig(max_pending=0, checkpoint_every=1)
        )
        manager = _open(config, unique_collection())
        manager.start()

        manager.add_memory("hello world")
        assert manager.count() == 1
        assert "Checkpoint of index memory failed" in caplog.text

        manager.close()
        assert all(ns.index._thread is None for ns in manager.namespaces.values())
        for name in ("memory", "session", "policy"):
            assert f"Checkpoint of index {name} failed" in caplog.text

    def test_embedder_dimension_mismatch(self, config):
        with pytest.raises(DimensionMismatchError):
            MemoryManager(config, embedder=HashEmbedder(DIM // 2), _client=_EPHEMERAL_CLIENT)


class TestStatus:
    def test_status_counts_segments_per_namespace(self, manager: MemoryManager):
        from memroute.models import Usage

        manager.add_memory("one")
        manager.add_memory("two")
        manager.record_cost("m", Usage(1, 1, 0.0), 5.0)
        status = manager.status()
        assert status["segments"]["memory"] == 2
        assert status["segments"]["cost"] == 1
        assert status["segments"]["session"] == 0
        assert status["indexes"]["memory"]["pending"] == 2
        assert status["dimension"] == DIM
        json.dumps(status)
