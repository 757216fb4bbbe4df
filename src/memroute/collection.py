"""
SemanticNamespace: one key namespace wired to a segment store, an embedder
and a progressive index.

Writes go to the store first and are then queued on the index.  Searches
use the graph once the index has caught up and a brute-force cosine scan
of the namespace otherwise.
"""

from __future__ import annotations

import heapq
import logging
from typing import Any, Optional, Sequence

import numpy as np

from .embeddings import Embedder
from .errors import CorruptRecordError, DimensionMismatchError, NotFoundError
from .index import ProgressiveIndex
from .models import GenericMetadata, Metadata, SearchMatch, Segment
from .store import SegmentStore, matches_where

logger = logging.getLogger(__name__)

#: How many extra graph candidates to fetch per requested result when a
#: filter is applied.
OVERFETCH_FACTOR = 10


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def _rank_key(match: SearchMatch) -> tuple[float, str]:
    return (-match.score, match.key)


class SemanticNamespace:
    """Embedded, searchable view of all segments under ``<name>/``."""

    def __init__(
        self,
        name: str,
        store: SegmentStore,
        embedder: Embedder,
        index: ProgressiveIndex,
    ) -> None:
        if embedder.dimension() != store.dimension:
            raise DimensionMismatchError(store.dimension, embedder.dimension(), where=f"embedder for {name}")
        if index.dimension != store.dimension:
            raise DimensionMismatchError(store.dimension, index.dimension, where=f"index for {name}")
        self.name = name.strip("/")
        self.prefix = f"{self.name}/"
        self.store = store
        self.embedder = embedder
        self.index = index
        store.register_checkpoint(index.checkpoint)

    def key_for(self, suffix: str) -> str:
        return self.prefix + suffix

    def suffix_of(self, key: str) -> str:
        return key[len(self.prefix):]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(
        self,
        suffix: str,
        content: str,
        metadata: Metadata | None = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> Segment:
        """
        Embed *content* (unless *embedding* is given), store it under
        ``<name>/<suffix>`` and queue it for indexing.

        Embedding happens before anything is written, so a failed embed
        leaves the store untouched.
        """
        vector = list(embedding) if embedding is not None else self.embedder.embed(content)
        segment = Segment(
            key=self.key_for(suffix),
            content=content,
            metadata=metadata if metadata is not None else GenericMetadata(),
            embedding=vector,
        )
        self.store.write(segment)
        self.index.insert_deferred(suffix, vector)
        return segment

    def get(self, suffix: str) -> Segment:
        return self.store.read(self.key_for(suffix))

    def count(self) -> int:
        return self.store.count(self.prefix)

    def recover(self) -> int:
        """
        Re-queue every embedded segment the index does not know about, e.g.
        writes made after the last checkpoint.  Returns the number queued.
        """
        queued = 0
        for segment in self.store.scan(self.prefix):
            if segment.embedding is None:
                continue
            suffix = self.suffix_of(segment.key)
            if suffix in self.index:
                continue
            self.index.insert_deferred(suffix, segment.embedding)
            queued += 1
        if queued:
            logger.info("Re-queued %d segments missing from index %s", queued, self.name)
        return queued

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str | None = None,
        k: int = 5,
        *,
        vector: Optional[Sequence[float]] = None,
        prefix: str | None = None,
        where: dict[str, Any] | None = None,
    ) -> list[SearchMatch]:
        """
        Return up to *k* matches ordered by descending score, then key.

        Either *query* (embedded here) or a precomputed *vector* must be
        given.  *prefix* is relative to the namespace and *where* is an
        equality filter on metadata fields.
        """
        if vector is None:
            if query is None:
                raise ValueError("search needs a query or a vector")
            vector = self.embedder.embed(query)
        elif len(vector) != self.store.dimension:
            raise DimensionMismatchError(self.store.dimension, len(vector), where="query vector")
        if k <= 0:
            return []

        key_prefix = self.key_for(prefix) if prefix else self.prefix
        if self.index.is_complete():
            matches = self._graph_search(vector, k, key_prefix, where)
            if matches is not None:
                return matches
        return self._scan_search(vector, k, key_prefix, where)

    def _graph_search(
        self,
        vector: Sequence[float],
        k: int,
        key_prefix: str,
        where: dict[str, Any] | None,
    ) -> list[SearchMatch] | None:
        filtered = key_prefix != self.prefix or bool(where)
        fetch = k * OVERFETCH_FACTOR if filtered else k
        matches: list[SearchMatch] = []
        for suffix, score in self.index.search(vector, fetch):
            key = self.key_for(suffix)
            if not key.startswith(key_prefix):
                continue
            try:
                segment = self.store.read(key)
            except (NotFoundError, CorruptRecordError) as exc:
                logger.warning("Index %s points at an unreadable segment: %s", self.name, exc)
                continue
            if where and not matches_where(segment.metadata, where):
                continue
            matches.append(SearchMatch(key=key, score=score, segment=segment))

        if filtered and len(matches) < k:
            # Filtering left too few; the caller falls back to a full scan.
            return None
        matches.sort(key=_rank_key)
        return matches[:k]

    def _scan_search(
        self,
        vector: Sequence[float],
        k: int,
        key_prefix: str,
        where: dict[str, Any] | None,
    ) -> list[SearchMatch]:
        candidates = (
            SearchMatch(key=segment.key, score=cosine_similarity(vector, segment.embedding), segment=segment)
            for segment in self.store.scan(key_prefix, where=where)
            if segment.embedding is not None
        )
        return heapq.nsmallest(k, candidates, key=_rank_key)
