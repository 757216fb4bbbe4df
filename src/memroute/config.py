"""
Resolved configuration for a memroute instance.

The core only ever consumes a fully resolved :class:`MemrouteConfig`.
:func:`load_config_from_env` is the adapter used by the CLI and the MCP
server to build one from ``MEMROUTE_*`` environment variables.

Environment variables:
    MEMROUTE_DATA_DIR          - data directory (default: ~/.cache/memroute)
    MEMROUTE_DIMENSION         - embedding dimension (default: 384)
    MEMROUTE_EMBEDDER          - hash | openai | sentence-transformers (default: hash)
    MEMROUTE_EMBEDDING_MODEL   - provider model name
    MEMROUTE_API_BASE_URL      - OpenAI-compatible base URL
    MEMROUTE_API_KEY_ENV       - name of the variable holding the API key (default: OPENAI_API_KEY)
    MEMROUTE_TICK_INTERVAL     - maintenance period in seconds (default: 5)
    MEMROUTE_MIGRATION_SOURCE  - notes file imported on first run (default: none)
    MEMROUTE_TIER1_MODEL / MEMROUTE_TIER2_MODEL / MEMROUTE_TIER3_MODEL
    MEMROUTE_BUDGET_LIMIT      - spending cap in USD over the budget window (default: 0, unlimited)
    MEMROUTE_BUDGET_WINDOW     - trailing budget window such as 24h or 30d (default: 24h)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_DATA_DIR = str(Path.home() / ".cache" / "memroute")
DEFAULT_DIMENSION = 384

#: Minimum similarity for the router to reuse a cached policy.
READ_THRESHOLD: float = 0.85
#: Minimum similarity for feedback to update an existing policy in place.
#: Stricter than the read threshold so distinct patterns are not merged.
WRITE_THRESHOLD: float = 0.95
#: Complexity scores at or above this go to tier 3.
COMPLEXITY_THRESHOLD: float = 0.30

DEFAULT_TIER_MODELS: dict[int, str] = {
    1: "agent-booster-wasm",
    2: "claude-haiku-3.5",
    3: "claude-sonnet-4.5",
}

#: Estimated USD per thousand tokens, used only for budget checks.
DEFAULT_TIER_COSTS: dict[int, float] = {
    1: 0.0,
    2: 0.001,
    3: 0.01,
}

EMBEDDER_VARIANTS =("hash", "openai", "sentence-transformers")


@dataclass
class IndexConfig:
    """Progressive index parameters."""

    max_neighbors: int = 16
    ef_construction: int = 64
    ef_search: int = 64
    batch_size: int = 10
    batches_per_tick: int = 10
    checkpoint_every: int = 100
    tick_interval: float = 5.0
    max_pending: int = 10_000


@dataclass
class MemrouteConfig:
    data_dir: str = DEFAULT_DATA_DIR
    dimension: int = DEFAULT_DIMENSION
    embedder: str = "hash"
    embedding_model: str = "text-embedding-3-small"
    api_base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    embedding_timeout: float = 30.0
    embedding_batch_size: int = 10
    embedding_max_attempts: int = 3
    read_threshold: float = READ_THRESHOLD
    write_threshold: float = WRITE_THRESHOLD
    complexity_threshold: float = COMPLEXITY_THRESHOLD
    min_policy_success_rate: float = 0.0
    tier_models: dict[int, str] = field(default_factory=lambda: dict(DEFAULT_TIER_MODELS))
    tier_costs: dict[int, float] = field(default_factory=lambda: dict(DEFAULT_TIER_COSTS))
    budget_limit: float = 0.0
    budget_window: str = "24h"
    index: IndexConfig = field(default_factory=IndexConfig)
    migration_source: Optional[str] = None
    migration_name: str = "memory-md"

    def __post_init__(self) -> None:
        if self.dimension <= 0:
            raise ConfigurationError(f"dimension must be positive, got {self.dimension}")
        if self.embedder not in EMBEDDER_VARIANTS:
            raise ConfigurationError(
                f"unknown embedder {self.embedder!r}; expected one of {', '.join(EMBEDDER_VARIANTS)}"
            )
        if not 0.0 <= self.read_threshold <= 1.0 or not 0.0 <= self.write_threshold <= 1.0:
            raise ConfigurationError("similarity thresholds must lie in [0, 1]")
        if self.budget_limit < 0 or any(cost < 0 for cost in self.tier_costs.values()):
            raise ConfigurationError("budget limit and tier costs must be non-negative")

    @property
    def chroma_path(self) -> Path:
        return Path(self.data_dir) / "chroma"

    @property
    def index_dir(self) -> Path:
        return Path(self.data_dir) / "index"


def load_config_from_env(environ: Mapping[str, str] | None = None) -> MemrouteConfig:
    """Build a :class:`MemrouteConfig` from ``MEMROUTE_*`` variables."""
    env = os.environ if environ is None else environ

    def _get(name: str, default: str | None = None) -> str | None:
        return env.get(f"MEMROUTE_{name}", default)

    try:
        dimension = int(_get("DIMENSION", str(DEFAULT_DIMENSION)))
        tick_interval = float(_get("TICK_INTERVAL", "5"))
        budget_limit = float(_get("BUDGET_LIMIT", "0"))
    except ValueError as exc:
        raise ConfigurationError(f"invalid numeric setting: {exc}") from exc

    tier_models = dict(DEFAULT_TIER_MODELS)
    for tier in tier_models:
        override = _get(f"TIER{tier}_MODEL")
        if override:
            tier_models[tier] = override

    return MemrouteConfig(
        data_dir=_get("DATA_DIR", DEFAULT_DATA_DIR),
        dimension=dimension,
        embedder=_get("EMBEDDER", "hash"),
        embedding_model=_get("EMBEDDING_MODEL", "text-embedding-3-small"),
        api_base_url=_get("API_BASE_URL", "https://api.openai.com/v1"),
        api_key_env=_get("API_KEY_ENV", "OPENAI_API_KEY"),
        tier_models=tier_models,
        budget_limit=budget_limit,
        budget_window=_get("BUDGET_WINDOW", "24h"),
        index=IndexConfig(tick_interval=tick_interval),
        migration_source=_get("MIGRATION_SOURCE") or None,
    )
