"""
memroute: local semantic memory and cost-aware model routing for LLM agents.

Stores notes, conversation turns, routing policies and cost records as
keyed segments in a local ChromaDB store, keeps an incrementally built
nearest-neighbour graph over the embedded ones, and routes prompts to one
of three model tiers using a learned policy cache.
"""

from .config import MemrouteConfig, load_config_from_env
from .embeddings import HashEmbedder, ProviderEmbedder, build_embedder
from .errors import MemrouteError
from .manager import MemoryManager
from .models import RoutingContext, RoutingDecision, SearchMatch, Segment, Usage
from .store import SegmentStore

__all__ = [
    "HashEmbedder",
    "MemoryManager",
    "MemrouteConfig",
    "MemrouteError",
    "ProviderEmbedder",
    "RoutingContext",
    "RoutingDecision",
    "SearchMatch",
    "Segment",
    "SegmentStore",
    "Usage",
    "build_embedder",
    "load_config_from_env",
]
