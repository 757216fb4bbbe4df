"""Tests for SemanticNamespace: write-then-enqueue, graph search and scan fallback."""

from __future__ import annotations

import pytest

from memroute.collection import SemanticNamespace, cosine_similarity
from memroute.config import IndexConfig
from memroute.embeddings import HashEmbedder
from memroute.errors import DimensionMismatchError, DuplicateKeyError, EmbeddingFailedError
from memroute.index import ProgressiveIndex
from memroute.models import MemoryMetadata
from memroute.store import SegmentStore

from conftest import DIM, make_namespace


class FailingEmbedder(HashEmbedder):
    def embed(self, text):
        raise EmbeddingFailedError("provider down")


class TestAdd:
    def test_add_writes_and_enqueues(self, memory_namespace: SemanticNamespace):
        segment = memory_namespace.add("a", "hello world", MemoryMetadata())
        assert segment.key == "memory/a"
        assert memory_namespace.store.exists("memory/a")
        assert memory_namespace.index.pending_count() == 1
        assert not memory_namespace.index.is_complete()

    def test_failed_embed_leaves_no_segment(self, segment_store: SegmentStore):
        namespace = make_namespace(segment_store, "memory", FailingEmbedder(DIM))
        with pytest.raises(EmbeddingFailedError):
            namespace.add("a", "hello")
        assert not segment_store.exists("memory/a")
        assert namespace.index.pending_count() == 0

    def test_duplicate_key_is_not_enqueued_twice(self, memory_namespace: SemanticNamespace):
        memory_namespace.add("a", "hello")
        with pytest.raises(DuplicateKeyError):
            memory_namespace.add("a", "hello again")
        assert memory_namespace.index.pending_count() == 1

    def test_embedder_dimension_must_match_store(self, segment_store: SegmentStore):
        with pytest.raises(DimensionMismatchError):
            SemanticNamespace("memory", segment_store, HashEmbedder(DIM // 2), ProgressiveIndex("memory", DIM))


class TestSearch:
    def _fill(self, namespace: SemanticNamespace) -> None:
        namespace.add("jwt", "JWT tokens expire after 24 hours", MemoryMetadata(tags=["auth"]))
        namespace.add("db", "The database runs PostgreSQL 15 on port 5432", MemoryMetadata(tags=["db"]))
        namespace.add("deploy", "Deploy the service with docker compose", MemoryMetadata(tags=["ops"]))

    def test_scan_search_before_index_catches_up(self, memory_namespace: SemanticNamespace):
        self._fill(memory_namespace)
        assert not memory_namespace.index.is_complete()
        results = memory_namespace.search("How long do JWT tokens last?", 3)
        assert results[0].key == "memory/jwt"
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)

    def test_graph_search_matches_scan(self, memory_namespace: SemanticNamespace):
        self._fill(memory_namespace)
        scan = memory_namespace.search("How long do JWT tokens last?", 3)
        memory_namespace.index.drain()
        assert memory_namespace.index.is_complete()
        graph = memory_namespace.search("How long do JWT tokens last?", 3)
        assert [r.key for r in graph] == [r.key for r in scan]
        assert [r.score for r in graph] == pytest.approx([r.score for r in scan])

    def test_where_filter(self, memory_namespace: SemanticNamespace):
        self._fill(memory_namespace)
        memory_namespace.index.drain()
        results = memory_namespace.search("JWT tokens", 5, where={"tags": "db"})
        assert [r.key for r in results] == ["memory/db"]

    def test_search_by_vector(self, memory_namespace: SemanticNamespace):
        self._fill(memory_namespace)
        vector = memory_namespace.embedder.embed("Deploy the service with docker compose")
        results = memory_namespace.search(vector=vector, k=1)
        assert results[0].key == "memory/deploy"
        assert results[0].score == pytest.approx(1.0)

    def test_equal_scores_order_by_key(self, memory_namespace: SemanticNamespace):
        memory_namespace.add("b", "same text")
        memory_namespace.add("a", "same text")
        assert [r.key for r in memory_namespace.search("same text", 2)] == ["memory/a", "memory/b"]
        memory_namespace.index.drain()
        assert [r.key for r in memory_namespace.search("same text", 2)] == ["memory/a", "memory/b"]

    def test_empty_namespace(self, memory_namespace: SemanticNamespace):
        assert memory_namespace.search("anything", 5) == []

    def test_search_needs_query_or_vector(self, memory_namespace: SemanticNamespace):
        with pytest.raises(ValueError):
            memory_namespace.search(k=3)


class TestRecover:
    def test_recover_requeues_segments_missing_from_graph(self, segment_store: SegmentStore):
        first = make_namespace(segment_store, "memory")
        first.add("a", "alpha")
        first.add("b", "beta")

        # A fresh index over the same store knows nothing about them.
        reopened = make_namespace(segment_store, "memory")
        assert reopened.recover() == 2
        assert reopened.index.pending_count() == 2
        reopened.index.drain()
        assert len(reopened.index) == 2
        assert reopened.recover() == 0

    def test_backpressure_keeps_every_write_indexed(self, segment_store: SegmentStore):
        namespace = make_namespace(segment_store, "memory", index_config=IndexConfig(max_pending=1))
        for i in range(4):
            namespace.add(str(i), f"note number {i}")
        assert namespace.index.pending_count() + len(namespace.index) == 4


def test_cosine_similarity_of_zero_vector():
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
