"""
Cost ledger: append-only record of model calls and their cost.

Records are stored without an embedding under
``cost/<nanosecond-timestamp>-<random hex>`` so that keys sort by time.
The same records back the spending checks the router runs before it
picks an expensive tier.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
import time
from datetime import timedelta
from typing import Callable, Optional

from .models import BudgetCheck, CostMetadata, CostRecord, CostStats, Segment, Usage
from .store import SegmentStore

logger = logging.getLogger(__name__)

NAMESPACE = "cost"

_TIMEFRAME_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw])\s*$")
_TIMEFRAME_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_timeframe(timeframe: timedelta | str | None) -> Optional[timedelta]:
    """Accept a ``timedelta`` or a string such as ``"30m"``, ``"24h"`` or ``"7d"``."""
    if timeframe is None or isinstance(timeframe, timedelta):
        return timeframe
    match = _TIMEFRAME_RE.match(timeframe)
    if not match:
        raise ValueError(f"invalid timeframe {timeframe!r}; expected e.g. '30m', '24h' or '7d'")
    amount, unit = match.groups()
    return timedelta(**{_TIMEFRAME_UNITS[unit]: float(amount)})


def estimate_cost(cost_per_1k_tokens: float, tokens: int) -> float:
    """Cost of *tokens* at a price quoted per thousand tokens."""
    return cost_per_1k_tokens * tokens / 1000.0


def p95(values: list[float]) -> float:
    """Nearest-rank 95th percentile: index ``ceil(0.95 * n) - 1`` of the sorted values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


class CostLedger:
    def __init__(self, store: SegmentStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def record(
        self,
        model: str,
        usage: Usage,
        latency_ms: float,
        success: Optional[bool] = None,
    ) -> CostRecord:
        """Append one cost record.  Storage errors propagate."""
        if latency_ms < 0:
            raise ValueError("latency_ms must be non-negative")
        if usage.input_tokens < 0 or usage.output_tokens < 0 or usage.cost < 0:
            raise ValueError("token counts and cost must be non-negative")

        timestamp = self._clock()
        key = f"{NAMESPACE}/{int(timestamp * 1e9):020d}-{secrets.token_hex(4)}"
        metadata = CostMetadata(
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=usage.cost,
            latency_ms=float(latency_ms),
            success=success,
            timestamp=timestamp,
        )
        content = f"{model}: {usage.total_tokens} tokens, ${usage.cost:.6f}, {latency_ms:.0f} ms"
        segment = Segment(key=key, content=content, metadata=metadata)
        self.store.write(segment)
        return CostRecord.from_segment(segment)

    def records(
        self,
        model: str | None = None,
        timeframe: timedelta | str | None = None,
    ) -> list[CostRecord]:
        """Records in key (time) order, optionally for one model and a trailing window."""
        window = parse_timeframe(timeframe)
        since = self._clock() - window.total_seconds() if window is not None else None
        where = {"model": model} if model else None
        records = [CostRecord.from_segment(s) for s in self.store.scan(f"{NAMESPACE}/", where=where)]
        if since is not None:
            records = [r for r in records if r.timestamp >= since]
        records.sort(key=lambda r: r.key)
        return records

    def stats(
        self,
        model: str | None = None,
        timeframe: timedelta | str | None = None,
    ) -> CostStats:
        records = self.records(model, timeframe)
        if not records:
            return CostStats()

        latencies = [r.latency_ms for r in records]
        tracked = [r.success for r in records if r.success is not None]
        return CostStats(
            total_calls=len(records),
            total_cost=sum(r.cost for r in records),
            avg_latency_ms=sum(latencies) / len(latencies),
            p95_latency_ms=p95(latencies),
            success_rate=(sum(1 for s in tracked if s) / len(tracked)) if tracked else None,
            input_tokens=sum(r.input_tokens for r in records),
            output_tokens=sum(r.output_tokens for r in records),
        )

    def spend(
        self,
        model: str | None = None,
        timeframe: timedelta | str | None = None,
    ) -> float:
        """Total recorded cost, optionally for one model and a trailing window."""
        return sum(r.cost for r in self.records(model, timeframe))

    def check_budget(
        self,
        estimated_cost: float,
        limit: float,
        timeframe: timedelta | str | None = "24h",
        model: str | None = None,
    ) -> BudgetCheck:
        """
        Price a prospective call against *limit*.

        The call is approved when the spend recorded within the trailing
        *timeframe* (for *model* only, if given) plus *estimated_cost* stays
        at or below *limit*.  A limit of zero or less means unlimited and
        skips the scan.
        """
        if estimated_cost < 0:
            raise ValueError("estimated_cost must be non-negative")
        if limit <= 0:
            return BudgetCheck(limit=limit, spent=0.0, estimated_cost=estimated_cost)
        return BudgetCheck(limit=limit, spent=self.spend(model, timeframe), estimated_cost=estimated_cost)
