"""Tests for the first-run notes migration."""

from __future__ import annotations

import dataclasses

import pytest

from memroute.bootstrap import bootstrap_memory, marker_key, migrated_suffix
from memroute.collection import SemanticNamespace
from memroute.embeddings import HashEmbedder
from memroute.errors import EmbeddingFailedError
from memroute.manager import MemoryManager
from memroute.models import MarkerMetadata, MemoryMetadata
from memroute.store import SegmentStore

from conftest import _EPHEMERAL_CLIENT, DIM, make_namespace, unique_collection

NOTES = """\
# Project notes

## Auth
JWT tokens expire after 24 hours.

## Database
We run PostgreSQL 15.

## Deployment
Deploy with docker compose.
"""


@pytest.fixture()
def notes_file(tmp_path):
    path = tmp_path / "MEMORY.md"
    path.write_text(NOTES, encoding="utf-8")
    return path


class TestBootstrap:
    def test_imports_sections_and_writes_marker(self, memory_namespace: SemanticNamespace, notes_file):
        imported = bootstrap_memory(memory_namespace, notes_file)
        # The title line before the first "## " heading is an entry of its own.
        assert imported == 4
        assert memory_namespace.count() == 4
        assert memory_namespace.index.pending_count() == 4

        marker = memory_namespace.store.read(marker_key("memory-md"))
        assert isinstance(marker.metadata, MarkerMetadata)
        assert marker.metadata.indexed == 4
        assert marker.metadata.source == str(notes_file)

        contents = {s.content for s in memory_namespace.store.scan("memory/")}
        assert "## Database\nWe run PostgreSQL 15." in contents
        for segment in memory_namespace.store.scan("memory/"):
            assert segment.metadata.tags == ["migrated"]

    def test_second_run_is_a_no_op(self, memory_namespace: SemanticNamespace, notes_file):
        bootstrap_memory(memory_namespace, notes_file)
        assert bootstrap_memory(memory_namespace, notes_file) == 0
        assert memory_namespace.count() == 4

    def test_migrated_memories_are_searchable(self, memory_namespace: SemanticNamespace, notes_file):
        bootstrap_memory(memory_namespace, notes_file)
        results = memory_namespace.search("How long do JWT tokens last?", 1)
        assert "JWT tokens expire" in results[0].content

    def test_missing_source_writes_no_marker(self, memory_namespace: SemanticNamespace, tmp_path):
        assert bootstrap_memory(memory_namespace, tmp_path / "nope.md") == 0
        assert not memory_namespace.store.exists(marker_key("memory-md"))

    def test_blank_source_writes_no_marker(self, memory_namespace: SemanticNamespace, tmp_path):
        path = tmp_path / "MEMORY.md"
        path.write_text("  \n\n ", encoding="utf-8")
        assert bootstrap_memory(memory_namespace, path) == 0
        assert not memory_namespace.store.exists(marker_key("memory-md"))

    def test_rerun_after_crash_skips_written_sections(self, memory_namespace: SemanticNamespace, notes_file):
        section = "## Database\nWe run PostgreSQL 15."
        memory_namespace.add(migrated_suffix(section), section, MemoryMetadata(tags=["migrated"]))

        assert bootstrap_memory(memory_namespace, notes_file) == 3
        assert memory_namespace.count() == 4
        marker = memory_namespace.store.read(marker_key("memory-md"))
        assert marker.metadata.skipped == 1

    def test_paragraph_fallback(self, memory_namespace: SemanticNamespace, tmp_path):
        path = tmp_path / "notes.md"
        path.write_text("First fact.\n\nSecond fact.\n\n\nThird fact.\n", encoding="utf-8")
        assert bootstrap_memory(memory_namespace, path, name="notes") == 3
        assert memory_namespace.store.exists(marker_key("notes"))

    def test_failed_batch_is_skipped(self, segment_store: SegmentStore, tmp_path):
        class FailingBatchEmbedder(HashEmbedder):
            def embed_batch(self, texts):
                raise EmbeddingFailedError("provider down")

        namespace = make_namespace(segment_store, "memory", FailingBatchEmbedder(DIM))
        path = tmp_path / "notes.md"
        path.write_text("one\n\ntwo\n", encoding="utf-8")

        assert bootstrap_memory(namespace, path) == 0
        assert namespace.count() == 0
        assert segment_store.read(marker_key("memory-md")).metadata.skipped == 2

    def test_batches_of_ten(self, segment_store: SegmentStore, tmp_path):
        class CountingEmbedder(HashEmbedder):
            batches: list[int] = []

            def embed_batch(self, texts):
                self.batches.append(len(texts))
                return super().embed_batch(texts)

        embedder = CountingEmbedder(DIM)
        embedder.batches = []
        namespace = make_namespace(segment_store, "memory", embedder)
        path = tmp_path / "notes.md"
        path.write_text("\n\n".join(f"fact number {i}" for i in range(23)), encoding="utf-8")

        assert bootstrap_memory(namespace, path) == 23
        assert embedder.batches == [10, 10, 3]


def test_manager_runs_configured_migration(config, embedder, notes_file):
    cfg = dataclasses.replace(config, migration_source=str(notes_file))
    manager = MemoryManager(
        cfg, embedder=embedder, _client=_EPHEMERAL_CLIENT, _collection_name=unique_collection()
    )
    try:
        assert manager.count() == 4
        assert manager.status()["segments"]["system"] == 1
    finally:
        manager.close()
