"""
Segment store: durable keyed storage of (key, optional vector, metadata,
content) on top of a ChromaDB collection.

Chroma is used as a keyed document store here.  Vectors are always supplied
by the caller, so the collection's embedding function is never invoked.
Segments without an embedding carry a zero placeholder vector and a
``has_embedding=False`` flag; they come back with ``embedding=None``.

Each record's Chroma metadata holds a few flat fields used for filtering
(``ns``, ``kind``, ``has_embedding``) and the full typed metadata as one
JSON document under ``meta``.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Iterator

import chromadb

from .errors import (
    CorruptRecordError,
    DimensionMismatchError,
    DuplicateKeyError,
    NotFoundError,
    ReadOnlyNamespaceError,
    StorageError,
    namespace_of,
)
from .models import Metadata, Segment, metadata_from_dict

logger = logging.getLogger(__name__)

#: Namespaces whose segments may be updated in place.
MUTABLE_NAMESPACES = frozenset({"policy"})

_INCLUDE_ALL = ["documents", "metadatas", "embeddings"]


class SegmentStore:
    """
    Persistent segment store backed by ChromaDB.

    Writes are create-once and serialised by an internal lock, so a write
    is visible to every subsequent ``read``/``scan`` (read-your-writes).
    """

    def __init__(
        self,
        path: str = "./memroute_db",
        dimension: int = 384,
        collection_name: str = "segments",
        mutable_namespaces: frozenset[str] = MUTABLE_NAMESPACES,
        _client: Any | None = None,
    ) -> None:
        self.dimension = dimension
        self.mutable_namespaces = mutable_namespaces
        try:
            self.client = _client or chromadb.PersistentClient(path=path)
            self.collection = self.client.get_or_create_collection(
                name=collection_name,
                embedding_function=None,
                metadata={"hnsw:space": "cosine"},
            )
        except Exception as exc:
            raise StorageError(f"could not open segment store at {path}: {exc}") from exc
        self._lock = threading.RLock()
        self._checkpoint_hooks: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def write(self, segment: Segment) -> None:
        """Create *segment*.  Raises ``DuplicateKeyError`` if the key exists."""
        vector = self._vector_for(segment.embedding)
        record_meta = self._encode_metadata(
            segment.key, segment.metadata, segment.embedding is not None
        )
        with self._lock:
            if self.exists(segment.key):
                raise DuplicateKeyError("segment already exists", key=segment.key)
            try:
                self.collection.add(
                    ids=[segment.key],
                    documents=[segment.content],
                    metadatas=[record_meta],
                    embeddings=[vector],
                )
            except Exception as exc:
                raise StorageError(f"write failed: {exc}", key=segment.key) from exc

    def update(self, key: str, content: str, metadata: Metadata) -> Segment:
        """
        Replace the content and metadata of an existing segment, keeping its
        key and embedding.  Only allowed in mutable namespaces.
        """
        if namespace_of(key) not in self.mutable_namespaces:
            raise ReadOnlyNamespaceError("namespace is write-once", key=key)
        with self._lock:
            existing = self.read(key)
            record_meta = self._encode_metadata(key, metadata, existing.embedding is not None)
            # The vector is always passed so Chroma never re-embeds the document.
            vector = self._vector_for(existing.embedding)
            try:
                self.collection.update(
                    ids=[key],
                    documents=[content],
                    metadatas=[record_meta],
                    embeddings=[vector],
                )
            except Exception as exc:
                raise StorageError(f"update failed: {exc}", key=key) from exc
        return Segment(key=key, content=content, metadata=metadata, embedding=existing.embedding)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def read(self, key: str) -> Segment:
        """Fetch a single segment.  Corruption is fatal here."""
        try:
            result = self.collection.get(ids=[key], include=_INCLUDE_ALL)
        except Exception as exc:
            raise StorageError(f"read failed: {exc}", key=key) from exc
        if not result["ids"]:
            raise NotFoundError("segment not found", key=key)
        return self._decode(result, 0)

    def exists(self, key: str) -> bool:
        try:
            result = self.collection.get(ids=[key], include=[])
        except Exception as exc:
            raise StorageError(f"lookup failed: {exc}", key=key) from exc
        return bool(result["ids"])

    def scan(
        self,
        prefix: str = "",
        where: dict[str, Any] | None = None,
        page_size: int = 256,
    ) -> Iterator[Segment]:
        """
        Lazily yield every segment whose key starts with *prefix*.

        Pages through the collection, so the sequence is finite and a fresh
        call restarts it.  *where* is an equality filter on metadata fields;
        list-valued fields match when they contain the value.  Corrupt
        records are skipped with a warning.
        """
        chroma_where = self._namespace_filter(prefix)
        offset = 0
        while True:
            try:
                page = self.collection.get(
                    where=chroma_where,
                    limit=page_size,
                    offset=offset,
                    include=_INCLUDE_ALL,
                )
            except Exception as exc:
                raise StorageError(f"scan of {prefix!r} failed: {exc}") from exc

            ids = page["ids"]
            for i, key in enumerate(ids):
                if not key.startswith(prefix):
                    continue
                try:
                    segment = self._decode(page, i)
                except CorruptRecordError as exc:
                    logger.warning("Skipping corrupt record during scan: %s", exc)
                    continue
                if where and not matches_where(segment.metadata, where):
                    continue
                yield segment

            if len(ids) < page_size:
                return
            offset += page_size

    def count(self, prefix: str = "") -> int:
        """Return the number of segments whose key starts with *prefix*."""
        try:
            result = self.collection.get(where=self._namespace_filter(prefix), include=[])
        except Exception as exc:
            raise StorageError(f"count of {prefix!r} failed: {exc}") from exc
        return sum(1 for key in result["ids"] if key.startswith(prefix))

    # ------------------------------------------------------------------
    # Index side-state
    # ------------------------------------------------------------------

    def register_checkpoint(self, hook: Callable[[], None]) -> None:
        """Register a callback flushed by :meth:`checkpoint`."""
        self._checkpoint_hooks.append(hook)

    def checkpoint(self) -> None:
        """Flush buffered index side-state (each registered index checkpoint)."""
        for hook in self._checkpoint_hooks:
            hook()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _vector_for(self, embedding: list[float] | None) -> list[float]:
        if embedding is None:
            return [0.0] * self.dimension
        if len(embedding) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(embedding), where="segment embedding")
        return [float(x) for x in embedding]

    @staticmethod
    def _namespace_filter(prefix: str) -> dict[str, Any] | None:
        root = namespace_of(prefix)
        return {"ns": root} if root else None

    @staticmethod
    def _encode_metadata(key: str, metadata: Metadata, has_embedding: bool) -> dict[str, Any]:
        return {
            "ns": namespace_of(key),
            "kind": metadata.kind,
            "has_embedding": has_embedding,
            "meta": json.dumps(metadata.to_dict(), default=str),
        }

    def _decode(self, result: dict[str, Any], i: int) -> Segment:
        key = result["ids"][i]
        raw_meta = (result.get("metadatas") or [None] * (i + 1))[i] or {}
        documents = result.get("documents")
        embeddings = result.get("embeddings")
        try:
            metadata = metadata_from_dict(json.loads(raw_meta["meta"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptRecordError(f"undecodable metadata: {exc}", key=key) from exc

        embedding = None
        if raw_meta.get("has_embedding") and embeddings is not None and len(embeddings) > i:
            embedding = [float(x) for x in embeddings[i]]
            if len(embedding) != self.dimension:
                raise CorruptRecordError(
                    f"stored vector has dimension {len(embedding)}, expected {self.dimension}",
                    key=key,
                )

        content = documents[i] if documents is not None and documents[i] is not None else ""
        return Segment(key=key, content=content, metadata=metadata, embedding=embedding)


def matches_where(metadata: Metadata, where: dict[str, Any]) -> bool:
    """Equality filter; a list-valued field matches when it contains the value."""
    for name, expected in where.items():
        actual = metadata.get(name)
        if isinstance(actual, (list, tuple, set)):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True
