"""
Shared pytest fixtures for memroute tests.

Uses ChromaDB in ephemeral (in-memory) mode and the offline hash embedder
so that tests run fast without network access or model downloads.
"""

from __future__ import annotations

import uuid

import chromadb
import pytest

from memroute.collection import SemanticNamespace
from memroute.config import IndexConfig, MemrouteConfig
from memroute.embeddings import HashEmbedder
from memroute.index import ProgressiveIndex
from memroute.manager import MemoryManager
from memroute.store import SegmentStore

DIM = 384

# A single shared EphemeralClient instance for the test session.
# Each fixture call creates a uniquely named collection so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


def unique_collection() -> str:
    return f"test_{uuid.uuid4().hex}"


def make_namespace(
    store: SegmentStore,
    name: str,
    embedder: HashEmbedder | None = None,
    index_config: IndexConfig | None = None,
) -> SemanticNamespace:
    """Namespace with an in-memory (non-checkpointed) index."""
    index = ProgressiveIndex(name, store.dimension, config=index_config)
    return SemanticNamespace(name, store, embedder or HashEmbedder(store.dimension), index)


@pytest.fixture()
def embedder() -> HashEmbedder:
    return HashEmbedder(DIM)


@pytest.fixture()
def segment_store() -> SegmentStore:
    """In-memory SegmentStore in its own collection."""
    return SegmentStore(dimension=DIM, collection_name=unique_collection(), _client=_EPHEMERAL_CLIENT)


@pytest.fixture()
def memory_namespace(segment_store: SegmentStore, embedder: HashEmbedder) -> SemanticNamespace:
    return make_namespace(segment_store, "memory", embedder)


@pytest.fixture()
def config(tmp_path) -> MemrouteConfig:
    return MemrouteConfig(data_dir=str(tmp_path), dimension=DIM)


@pytest.fixture()
def manager(config: MemrouteConfig, embedder: HashEmbedder) -> MemoryManager:
    """MemoryManager on an ephemeral collection; index checkpoints go to tmp_path."""
    mgr = MemoryManager(
        config,
        embedder=embedder,
        _client=_EPHEMERAL_CLIENT,
        _collection_name=unique_collection(),
    )
    yield mgr
    mgr.close()
