"""
Data model: segments, typed metadata variants and the value objects that
flow through the router and the cost ledger.

Metadata is a small closed set of dataclasses, one per namespace, each with
an ``extra`` map for keys that the variant does not know about.  Unknown
keys survive a store round trip through ``extra``.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union

from .errors import namespace_of

# ---------------------------------------------------------------------------
# Metadata variants
# ---------------------------------------------------------------------------


class _MetadataMixin:
    kind: ClassVar[str] = "generic"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind}
        data.update(self.extra)  # type: ignore[attr-defined]
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            if f.name != "extra":
                data[f.name] = getattr(self, f.name)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {f.name for f in dataclasses.fields(cls)} - {"extra"}  # type: ignore[arg-type]
        kwargs = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known and k != "kind"}
        return cls(**kwargs, extra=extra)

    def get(self, name: str, default: Any = None) -> Any:
        """Look up a field or an ``extra`` key by name."""
        if name != "extra" and name in {f.name for f in dataclasses.fields(self)}:  # type: ignore[arg-type]
            return getattr(self, name)
        return self.extra.get(name, default)  # type: ignore[attr-defined]


@dataclass
class MemoryMetadata(_MetadataMixin):
    kind: ClassVar[str] = "memory"

    tags: list[str] = field(default_factory=list)
    source: str = "user"
    created_at: float = field(default_factory=time.time)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class TurnMetadata(_MetadataMixin):
    kind: ClassVar[str] = "turn"

    session_id: str = ""
    turn_id: int = 0
    user_message: str = ""
    assistant_message: str = ""
    model: str = ""
    created_at: float = field(default_factory=time.time)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class PolicyMetadata(_MetadataMixin):
    kind: ClassVar[str] = "policy"

    tier: int = 2
    model: str = ""
    complexity: float = 0.0
    success_rate: float = 1.0
    usage_count: int = 1
    last_used: float = field(default_factory=time.time)
    reason: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class CostMetadata(_MetadataMixin):
    kind: ClassVar[str] = "cost"

    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    success: Optional[bool] = None
    timestamp: float = field(default_factory=time.time)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class MarkerMetadata(_MetadataMixin):
    kind: ClassVar[str] = "marker"

    source: str = ""
    indexed: int = 0
    skipped: int = 0
    completed_at: float = field(default_factory=time.time)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenericMetadata(_MetadataMixin):
    """Fallback for records written with a kind this version does not know."""

    kind: ClassVar[str] = "generic"

    extra: dict[str, Any] = field(default_factory=dict)


Metadata = Union[
    MemoryMetadata,
    TurnMetadata,
    PolicyMetadata,
    CostMetadata,
    MarkerMetadata,
    GenericMetadata,
]

METADATA_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (MemoryMetadata, TurnMetadata, PolicyMetadata, CostMetadata, MarkerMetadata)
}


def metadata_from_dict(data: dict[str, Any]) -> Metadata:
    """Rebuild the typed metadata variant named by ``data["kind"]``."""
    cls = METADATA_TYPES.get(data.get("kind", ""), GenericMetadata)
    return cls.from_dict(data)


# ---------------------------------------------------------------------------
# Segment
# ---------------------------------------------------------------------------


@dataclass
class Segment:
    """A keyed, optionally embedded unit of durable storage."""

    key: str
    content: str
    metadata: Metadata = field(default_factory=GenericMetadata)
    embedding: Optional[list[float]] = None

    @property
    def namespace(self) -> str:
        return namespace_of(self.key)

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


@dataclass
class SearchMatch:
    """One hit from a semantic search, ordered by descending ``score``."""

    key: str
    score: float
    segment: Segment

    @property
    def id(self) -> str:
        return self.key.rsplit("/", 1)[-1]

    @property
    def content(self) -> str:
        return self.segment.content

    @property
    def metadata(self) -> Metadata:
        return self.segment.metadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "content": self.content,
            "score": round(self.score, 4),
            "metadata": self.metadata.to_dict(),
        }


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

#: Capability flag that unconditionally selects tier 1.
AGENT_BOOSTER_AVAILABLE = "AGENT_BOOSTER_AVAILABLE"


@dataclass
class RoutingContext:
    """Caller-supplied context for a routing decision."""

    capabilities: set[str] = field(default_factory=set)
    tags: list[str] = field(default_factory=list)
    #: Expected size of the call, used to price it against a budget.
    estimated_tokens: int = 1000

    @property
    def cheap_transform_available(self) -> bool:
        return AGENT_BOOSTER_AVAILABLE in self.capabilities or AGENT_BOOSTER_AVAILABLE in self.tags


@dataclass
class RoutingDecision:
    tier: int
    model: str
    reason: str
    complexity_score: float

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class PolicyEntry:
    """A learned routing policy, materialised from a ``policy/`` segment."""

    key: str
    pattern: str
    embedding: Optional[list[float]]
    tier: int
    model: str
    complexity: float
    success_rate: float
    usage_count: int
    last_used: float
    reason: str

    @classmethod
    def from_segment(cls, segment: Segment) -> "PolicyEntry":
        meta = segment.metadata
        if not isinstance(meta, PolicyMetadata):
            meta = PolicyMetadata.from_dict(meta.to_dict())
        return cls(
            key=segment.key,
            pattern=segment.content,
            embedding=segment.embedding,
            tier=int(meta.tier),
            model=meta.model,
            complexity=float(meta.complexity),
            success_rate=float(meta.success_rate),
            usage_count=int(meta.usage_count),
            last_used=float(meta.last_used),
            reason=meta.reason,
        )

    def to_metadata(self) -> PolicyMetadata:
        return PolicyMetadata(
            tier=self.tier,
            model=self.model,
            complexity=self.complexity,
            success_rate=self.success_rate,
            usage_count=self.usage_count,
            last_used=self.last_used,
            reason=self.reason,
        )


# ---------------------------------------------------------------------------
# Cost ledger
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    """Token usage and monetary cost of one model call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CostRecord:
    key: str
    model: str
    latency_ms: float
    input_tokens: int
    output_tokens: int
    cost: float
    success: Optional[bool]
    timestamp: float

    @classmethod
    def from_segment(cls, segment: Segment) -> "CostRecord":
        meta = segment.metadata
        if not isinstance(meta, CostMetadata):
            meta = CostMetadata.from_dict(meta.to_dict())
        return cls(
            key=segment.key,
            model=meta.model,
            latency_ms=float(meta.latency_ms),
            input_tokens=int(meta.input_tokens),
            output_tokens=int(meta.output_tokens),
            cost=float(meta.cost),
            success=meta.success,
            timestamp=float(meta.timestamp),
        )


@dataclass
class CostStats:
    total_calls: int = 0
    total_cost: float = 0.0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    success_rate: Optional[float] = None
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class BudgetCheck:
    """Outcome of pricing one call against a spending limit."""

    limit: float
    spent: float
    estimated_cost: float

    @property
    def approved(self) -> bool:
        return self.limit <= 0 or self.spent + self.estimated_cost <= self.limit

    def to_dict(self) -> dict[str, Any]:
        return {**dataclasses.asdict(self), "approved": self.approved}
