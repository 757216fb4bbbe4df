"""
Progressive index: an incrementally built HNSW-style graph over the
embedded segments of one namespace.

Writers call :meth:`ProgressiveIndex.insert_deferred`, which only appends to
a pending queue.  A maintenance thread (or an explicit :meth:`tick` /
:meth:`drain`) moves queued vectors into the graph in small batches and
checkpoints the graph to a JSON file every ``checkpoint_every`` insertions.
Until the queue is empty the owning namespace answers queries with a
brute-force scan instead.

Locking: the queue and the graph have separate locks, so enqueueing never
waits on a graph insertion.  Graph mutation and graph search share one lock.
"""

from __future__ import annotations

import bisect
import hashlib
import heapq
import json
import logging
import math
import os
import random
import threading
from collections import deque
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np

from .config import IndexConfig
from .errors import DimensionMismatchError, VectorIndexError

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


def _normalise(vector: Sequence[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    return arr / norm if norm > 0.0 else arr


class ProgressiveIndex:
    """
    Approximate nearest-neighbour graph with a deferred insertion queue.

    Parameters
    ----------
    name:
        Namespace the index belongs to; used in log messages and as the
        checkpoint file stem.
    dimension:
        Vector dimension.  Every inserted vector must have this length.
    config:
        Graph and maintenance parameters (see :class:`IndexConfig`).
    checkpoint_path:
        JSON file the graph is snapshotted to.  ``None`` keeps the index
        purely in memory.
    """

    def __init__(
        self,
        name: str,
        dimension: int,
        config: IndexConfig | None = None,
        checkpoint_path: str | Path | None = None,
    ) -> None:
        self.name = name
        self.dimension = dimension
        self.config = config or IndexConfig()
        self.checkpoint_path = Path(checkpoint_path) if checkpoint_path else None

        # Graph state, guarded by _graph_lock.
        self._vectors: dict[str, np.ndarray] = {}
        self._layers: dict[str, int] = {}
        self._neighbors: dict[str, list[list[tuple[str, float]]]] = {}
        self._entry_point: Optional[str] = None
        self._top_layer = 0
        self._insert_count = 0
        self._since_checkpoint = 0
        self._graph_lock = threading.RLock()

        # Queue state, guarded by _queue_lock.
        self._pending: deque[tuple[str, list[float]]] = deque()
        self._in_flight = 0
        self._queue_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        with self._graph_lock:
            return len(self._vectors)

    def __contains__(self, node_id: object) -> bool:
        with self._graph_lock:
            return node_id in self._vectors

    def pending_count(self) -> int:
        with self._queue_lock:
            return len(self._pending)

    def is_complete(self) -> bool:
        """True when nothing is queued and no drained batch is still being linked."""
        with self._queue_lock:
            return not self._pending and self._in_flight == 0

    def max_layer(self) -> int:
        """Adaptive cap on node layers for the current graph size."""
        n = len(self._vectors)
        return max(1, math.ceil(math.log(n + 1) / math.log(self.config.max_neighbors)))

    def stats(self) -> dict[str, Any]:
        with self._graph_lock:
            nodes = len(self._vectors)
            top_layer = self._top_layer
            inserted = self._insert_count
        with self._queue_lock:
            pending = len(self._pending)
            in_flight = self._in_flight
        return {
            "name": self.name,
            "nodes": nodes,
            "pending": pending,
            "in_flight": in_flight,
            "complete": pending == 0 and in_flight == 0,
            "top_layer": top_layer,
            "insert_count": inserted,
        }

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def insert_deferred(self, node_id: str, embedding: Sequence[float]) -> None:
        """
        Queue *embedding* for insertion without touching the graph.

        When the queue already holds ``max_pending`` items the vector is
        inserted synchronously instead.
        """
        self._check_dimension(embedding)
        with self._queue_lock:
            if len(self._pending) < self.config.max_pending:
                self._pending.append((node_id, list(embedding)))
                return
        logger.debug("Pending queue of index %s is full; inserting %s synchronously", self.name, node_id)
        self.insert(node_id, embedding)

    def insert(self, node_id: str, embedding: Sequence[float]) -> bool:
        """
        Link *node_id* into the graph now.  Returns ``False`` if it is
        already present.  A checkpoint that falls due and cannot be written
        is logged and retried later; the insertion itself stands.
        """
        self._check_dimension(embedding)
        added = self._link(node_id, embedding)
        if added and self._checkpoint_due():
            self._checkpoint_logged()
        return added

    def _link(self, node_id: str, embedding: Sequence[float]) -> bool:
        vector = _normalise(embedding)
        m = self.config.max_neighbors
        with self._graph_lock:
            if node_id in self._vectors:
                return False

            level = self._draw_level(node_id)
            self._vectors[node_id] = vector
            self._layers[node_id] = level
            self._neighbors[node_id] = [[] for _ in range(level + 1)]

            if self._entry_point is None:
                self._entry_point = node_id
                self._top_layer = level
                self._count_insertion()
                return True

            entry = self._entry_point
            for layer in range(self._top_layer, level, -1):
                entry = self._greedy_closest(vector, entry, layer)

            entries = [entry]
            for layer in range(min(level, self._top_layer), -1, -1):
                candidates = self._search_layer(vector, entries, self.config.ef_construction, layer)
                candidates = [(d, nid) for d, nid in candidates if nid != node_id]
                selected = self._select_neighbors(candidates, m)
                self._neighbors[node_id][layer] = [(nid, d) for d, nid in selected]
                for distance, neighbor in selected:
                    self._add_edge(neighbor, node_id, distance, layer)
                if candidates:
                    entries = [nid for _, nid in candidates]

            if level > self._top_layer:
                self._top_layer = level
                self._entry_point = node_id
            self._count_insertion()
            return True

    def _count_insertion(self) -> None:
        self._insert_count += 1
        self._since_checkpoint += 1

    def _checkpoint_due(self) -> bool:
        with self._graph_lock:
            return (
                self.checkpoint_path is not None
                and self._since_checkpoint >= self.config.checkpoint_every
            )

    def _draw_level(self, node_id: str) -> int:
        seed = int.from_bytes(hashlib.blake2b(node_id.encode("utf-8"), digest_size=8).digest(), "big")
        rng = random.Random(seed)
        level = int(-math.log(1.0 - rng.random()) / math.log(self.config.max_neighbors))
        return min(level, self.max_layer())

    def max_degree(self, layer: int) -> int:
        """Neighbour list capacity: twice ``max_neighbors`` on the base layer."""
        m = self.config.max_neighbors
        return 2 * m if layer == 0 else m

    def _add_edge(self, src: str, dst: str, distance: float, layer: int) -> None:
        edges = self._neighbors[src][layer]
        if any(nid == dst for nid, _ in edges):
            return
        edges.append((dst, distance))
        cap = self.max_degree(layer)
        if len(edges) > cap:
            kept = self._select_neighbors(sorted((d, nid) for nid, d in edges), cap)
            edges[:] = [(nid, d) for d, nid in kept]
        else:
            edges.sort(key=lambda edge: (edge[1], edge[0]))

    def _select_neighbors(
        self, candidates: list[tuple[float, str]], m: int
    ) -> list[tuple[float, str]]:
        """
        Pick up to *m* of *candidates* (``(distance, id)`` pairs sorted
        nearest first) with the HNSW diversity heuristic.

        A candidate is kept when it is closer to the base node than to every
        neighbour kept so far, so links toward other clusters survive next
        to the many near-duplicates of the node's own cluster.  Free slots
        are then filled with the nearest discarded candidates.
        """
        if len(candidates) <= m:
            return list(candidates)

        matrix = np.vstack([self._vectors[nid] for _, nid in candidates])
        pairwise = (1.0 - matrix @ matrix.T).tolist()
        selected: list[int] = []
        discarded: list[int] = []
        for i, (distance, _) in enumerate(candidates):
            if len(selected) >= m:
                break
            if all(distance < pairwise[i][j] for j in selected):
                selected.append(i)
            else:
                discarded.append(i)
        for i in discarded:
            if len(selected) >= m:
                break
            selected.append(i)
        return [candidates[i] for i in sorted(selected)]

    def _check_dimension(self, embedding: Sequence[float]) -> None:
        if len(embedding) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(embedding), where=f"index {self.name}")

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, vector: Sequence[float], k: int) -> list[tuple[str, float]]:
        """
        Return up to *k* ``(node_id, score)`` pairs, best first.

        Score is cosine similarity; equal scores order by node id.
        """
        if k <= 0:
            return []
        self._check_dimension(vector)
        query = _normalise(vector)
        with self._graph_lock:
            if self._entry_point is None:
                return []
            entry = self._entry_point
            for layer in range(self._top_layer, 0, -1):
                entry = self._greedy_closest(query, entry, layer)
            results = self._search_layer(query, [entry], max(self.config.ef_search, k), 0)
        return [(node_id, 1.0 - distance) for distance, node_id in results[:k]]

    def _distance(self, query: np.ndarray, node_id: str) -> float:
        return 1.0 - float(np.dot(query, self._vectors[node_id]))

    def _greedy_closest(self, query: np.ndarray, entry: str, layer: int) -> str:
        best = (self._distance(query, entry), entry)
        improved = True
        while improved:
            improved = False
            for neighbor, _ in self._neighbors[best[1]][layer]:
                candidate = (self._distance(query, neighbor), neighbor)
                if candidate < best:
                    best = candidate
                    improved = True
        return best[1]

    def _search_layer(
        self, query: np.ndarray, entries: list[str], ef: int, layer: int
    ) -> list[tuple[float, str]]:
        visited = set(entries)
        frontier: list[tuple[float, str]] = []
        results: list[tuple[float, str]] = []
        for node_id in entries:
            item = (self._distance(query, node_id), node_id)
            heapq.heappush(frontier, item)
            bisect.insort(results, item)

        while frontier:
            item = heapq.heappop(frontier)
            if len(results) >= ef and item > results[-1]:
                break
            for neighbor, _ in self._neighbors[item[1]][layer]:
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                candidate = (self._distance(query, neighbor), neighbor)
                if len(results) < ef or candidate < results[-1]:
                    heapq.heappush(frontier, candidate)
                    bisect.insort(results, candidate)
                    if len(results) > ef:
                        results.pop()
        return results

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def tick(self) -> int:
        """
        One maintenance pass: link up to ``batches_per_tick`` batches of
        ``batch_size`` queued vectors.  Returns the number of items taken
        off the queue.  Checkpoint failures are logged and retried on the
        next pass.
        """
        return self._drain(self.config.batches_per_tick, honour_stop=True)

    def drain(self) -> int:
        """Link everything currently queued, then checkpoint."""
        processed = self._drain(None, honour_stop=False)
        self.checkpoint()
        return processed

    def _drain(self, max_batches: Optional[int], honour_stop: bool) -> int:
        processed = 0
        batches = 0
        while max_batches is None or batches < max_batches:
            if honour_stop and self._stop_event.is_set():
                break
            with self._queue_lock:
                if not self._pending:
                    break
                size = min(self.config.batch_size, len(self._pending))
                batch = [self._pending.popleft() for _ in range(size)]
                self._in_flight += size
            try:
                for node_id, embedding in batch:
                    if self._link(node_id, embedding) and self._checkpoint_due():
                        self._checkpoint_logged()
            finally:
                with self._queue_lock:
                    self._in_flight -= size
            processed += size
            batches += 1
        return processed

    def _checkpoint_logged(self) -> None:
        try:
            self.checkpoint()
        except VectorIndexError as exc:
            logger.warning("Checkpoint of index %s failed: %s", self.name, exc)

    def start(self) -> None:
        """Start the background maintenance thread (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"memroute-index-{self.name}", daemon=True
        )
        self._thread.start()
        logger.debug("Started maintenance thread for index %s", self.name)

    def stop(self) -> None:
        """
        Stop draining, wait for the in-progress batch to finish and write a
        final checkpoint.  Queued items that were never linked are not lost:
        they are still in the store and get re-queued on the next open.  A
        final checkpoint that cannot be written is logged, not raised.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._checkpoint_logged()

    def _run(self) -> None:
        while not self._stop_event.wait(self.config.tick_interval):
            try:
                processed = self.tick()
            except Exception:
                logger.exception("Maintenance tick of index %s failed", self.name)
                continue
            if processed:
                logger.debug("Index %s linked %d queued vectors", self.name, processed)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def checkpoint(self) -> None:
        """Atomically write the graph to ``checkpoint_path``."""
        if self.checkpoint_path is None:
            return
        path = self.checkpoint_path
        tmp_path = path.with_name(path.name + ".tmp")
        with self._graph_lock:
            snapshot = {
                "version": CHECKPOINT_VERSION,
                "name": self.name,
                "dimension": self.dimension,
                "max_neighbors": self.config.max_neighbors,
                "entry_point": self._entry_point,
                "top_layer": self._top_layer,
                "insert_count": self._insert_count,
                "nodes": {
                    node_id: {
                        "layer": self._layers[node_id],
                        "vector": self._vectors[node_id].tolist(),
                        "neighbors": [
                            [[neighbor, distance] for neighbor, distance in edges]
                            for edges in self._neighbors[node_id]
                        ],
                    }
                    for node_id in self._vectors
                },
            }
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as fh:
                    json.dump(snapshot, fh)
                os.replace(tmp_path, path)
            except OSError as exc:
                raise VectorIndexError(f"could not write checkpoint for index {self.name!r}: {exc}") from exc
            self._since_checkpoint = 0

    def load(self) -> bool:
        """
        Replace the in-memory graph with the last checkpoint.  Returns
        ``False`` when there is no checkpoint yet.
        """
        if self.checkpoint_path is None or not self.checkpoint_path.exists():
            return False
        try:
            with open(self.checkpoint_path, encoding="utf-8") as fh:
                snapshot = json.load(fh)
            if snapshot.get("dimension") != self.dimension:
                raise DimensionMismatchError(
                    self.dimension, snapshot.get("dimension"), where=f"checkpoint of index {self.name}"
                )
            nodes = snapshot["nodes"]
            vectors = {nid: np.asarray(node["vector"], dtype=np.float64) for nid, node in nodes.items()}
            layers = {nid: int(node["layer"]) for nid, node in nodes.items()}
            neighbors = {
                nid: [[(str(n), float(d)) for n, d in edges] for edges in node["neighbors"]]
                for nid, node in nodes.items()
            }
            entry_point = snapshot["entry_point"]
            top_layer = int(snapshot["top_layer"])
            insert_count = int(snapshot.get("insert_count", len(nodes)))
        except (OSError, KeyError, TypeError, ValueError) as exc:
            raise VectorIndexError(f"could not load checkpoint for index {self.name!r}: {exc}") from exc

        with self._graph_lock:
            self._vectors = vectors
            self._layers = layers
            self._neighbors = neighbors
            self._entry_point = entry_point
            self._top_layer = top_layer
            self._insert_count = insert_count
            self._since_checkpoint = 0
        logger.debug("Loaded index %s with %d nodes", self.name, len(vectors))
        return True
