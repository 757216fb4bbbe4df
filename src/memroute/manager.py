"""
MemoryManager: the command surface of memroute.

Assembles the segment store, the embedder, one progressive index per
embedded namespace, the memory/session stores, the policy cache, the cost
ledger and the router from a single :class:`MemrouteConfig`, and owns the
lifecycle of the background maintenance threads.

Usage example::

    from memroute import MemoryManager, MemrouteConfig

    with MemoryManager(MemrouteConfig(data_dir="./memroute-data")) as manager:
        manager.add_memory("JWT tokens expire after 24 hours", tags=["auth"])
        for match in manager.search("How long do JWT tokens last?"):
            print(match.score, match.content)

        decision = manager.route_request("Design a distributed cache")
        print(decision.tier, decision.model)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional, Sequence

from .bootstrap import bootstrap_memory
from .collection import SemanticNamespace
from .config import MemrouteConfig
from .embeddings import Embedder, build_embedder
from .errors import DimensionMismatchError
from .index import ProgressiveIndex
from .ledger import CostLedger
from .memory import MemoryStore, SessionStore
from .models import (
    CostRecord,
    CostStats,
    PolicyEntry,
    RoutingContext,
    RoutingDecision,
    SearchMatch,
    Segment,
    Usage,
)
from .policy import PolicyCache
from .router import TieredRouter
from .store import SegmentStore

logger = logging.getLogger(__name__)

INDEXED_NAMESPACES = ("memory", "session", "policy")


class MemoryManager:
    """
    Facade over every memroute component.

    Parameters
    ----------
    config:
        Resolved configuration.  Defaults to :class:`MemrouteConfig` defaults.
    embedder:
        Embedder to use instead of the one named by ``config.embedder``.
    _client:
        ChromaDB client to use instead of a persistent one under
        ``config.data_dir`` (tests pass an ephemeral client).
    _collection_name:
        ChromaDB collection name; tests use a unique one per manager.
    """

    def __init__(
        self,
        config: MemrouteConfig | None = None,
        embedder: Embedder | None = None,
        _client: Any | None = None,
        _collection_name: str = "segments",
    ) -> None:
        self.config = config or MemrouteConfig()
        self.embedder = embedder or build_embedder(self.config)
        if self.embedder.dimension() != self.config.dimension:
            raise DimensionMismatchError(self.config.dimension, self.embedder.dimension(), where="embedder")

        self.store = SegmentStore(
            path=str(self.config.chroma_path),
            dimension=self.config.dimension,
            collection_name=_collection_name,
            _client=_client,
        )
        self.namespaces = {name: self._open_namespace(name) for name in INDEXED_NAMESPACES}

        self.memories = MemoryStore(self.namespaces["memory"])
        self.sessions = SessionStore(self.namespaces["session"])
        self.policies = PolicyCache(
            self.namespaces["policy"],
            read_threshold=self.config.read_threshold,
            write_threshold=self.config.write_threshold,
        )
        self.ledger = CostLedger(self.store)
        self.router = TieredRouter(
            self.policies,
            self.ledger,
            self.config.tier_models,
            read_threshold=self.config.read_threshold,
            complexity_threshold=self.config.complexity_threshold,
            min_policy_success_rate=self.config.min_policy_success_rate,
            tier_costs=self.config.tier_costs,
            budget_limit=self.config.budget_limit,
            budget_window=self.config.budget_window,
        )

        if self.config.migration_source:
            self.migrate(self.config.migration_source, self.config.migration_name)

    def _open_namespace(self, name: str) -> SemanticNamespace:
        index = ProgressiveIndex(
            name,
            self.config.dimension,
            config=self.config.index,
            checkpoint_path=self.config.index_dir / f"{name}.json",
        )
        index.load()
        namespace = SemanticNamespace(name, self.store, self.embedder, index)
        namespace.recover()
        return namespace

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background maintenance thread of every index."""
        for namespace in self.namespaces.values():
            namespace.index.start()

    def close(self) -> None:
        """Stop maintenance threads and write a final checkpoint of each index."""
        for namespace in self.namespaces.values():
            namespace.index.stop()

    def flush(self) -> None:
        """Link every queued vector into its graph now and checkpoint."""
        for namespace in self.namespaces.values():
            namespace.index.drain()
        self.store.checkpoint()

    def __enter__(self) -> "MemoryManager":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def add_memory(self, text: str, tags: Optional[Sequence[str]] = None, source: str = "user") -> str:
        """Store *text* as a new memory and return its id."""
        return self.memories.add_memory(text, tags, source=source)

    def search(self, query: str, top_k: int = 5, tag: str | None = None) -> list[SearchMatch]:
        """Memories most similar to *query*, best first."""
        return self.memories.search(query, top_k, tag=tag)

    def get_memory(self, memory_id: str) -> Optional[Segment]:
        return self.memories.get(memory_id)

    def list_memories(self, limit: int | None = 100) -> list[Segment]:
        return self.memories.list_all(limit)

    def count(self) -> int:
        """Return the number of stored memories."""
        return self.memories.count()

    def migrate(self, source: str, name: str = "memory-md") -> int:
        """Import a notes file into memory once; see :func:`bootstrap_memory`."""
        return bootstrap_memory(self.namespaces["memory"], source, name=name)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def index_turn(
        self,
        session_id: str,
        turn_id: int,
        user_message: str,
        assistant_message: str,
        model: str = "",
    ) -> str:
        return self.sessions.index_turn(session_id, turn_id, user_message, assistant_message, model)

    def search_turns(self, query: str, session_id: str | None = None, top_k: int = 5) -> list[SearchMatch]:
        return self.sessions.search_turns(query, session_id=session_id, top_k=top_k)

    # ------------------------------------------------------------------
    # Routing and cost
    # ------------------------------------------------------------------

    def route_request(self, prompt: str, context: RoutingContext | None = None) -> RoutingDecision:
        return self.router.route(prompt, context)

    def update_policy(self, pattern: str, tier: int, feedback: bool | float) -> PolicyEntry:
        return self.router.update_policy(pattern, tier, feedback)

    def record_cost(
        self,
        model: str,
        usage: Usage,
        latency_ms: float,
        success: Optional[bool] = None,
    ) -> CostRecord:
        return self.router.record_cost(model, usage, latency_ms, success)

    def get_cost_stats(
        self,
        model: str | None = None,
        timeframe: timedelta | str | None = None,
    ) -> CostStats:
        return self.ledger.stats(model, timeframe)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Segment counts and index progress per namespace."""
        indexes = {name: ns.index.stats() for name, ns in self.namespaces.items()}
        budget = None
        if self.config.budget_limit > 0:
            budget = {
                "limit": self.config.budget_limit,
                "window": self.config.budget_window,
                "spent": self.ledger.spend(timeframe=self.config.budget_window),
            }
        return {
            "data_dir": self.config.data_dir,
            "dimension": self.config.dimension,
            "embedder": self.config.embedder,
            "segments": {
                name: self.store.count(f"{name}/")
                for name in (*INDEXED_NAMESPACES, "cost", "system")
            },
            "indexes": indexes,
            "complete": all(stats["complete"] for stats in indexes.values()),
            "budget": budget,
        }
