"""
Tiered router: picks an execution tier for a prompt.

Decision order:
  1. The cheap-transform capability flag selects tier 1 outright.
  2. A cached policy more similar than ``read_threshold`` is reused.
  3. Otherwise the heuristic complexity score picks tier 2 or tier 3.

When a budget is configured, a tier 3 pick whose estimated cost would take
the trailing spend past the limit is downgraded to tier 2.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Mapping, Optional

from .config import COMPLEXITY_THRESHOLD, READ_THRESHOLD
from .errors import ConfigurationError, RoutingError
from .intelligence import compute_complexity
from .ledger import CostLedger, estimate_cost, parse_timeframe
from .models import CostRecord, PolicyEntry, RoutingContext, RoutingDecision, Usage
from .policy import PolicyCache

logger = logging.getLogger(__name__)

VALID_TIERS = (1, 2, 3)


class TieredRouter:
    def __init__(
        self,
        policy_cache: PolicyCache,
        ledger: CostLedger,
        tier_models: Mapping[int, str],
        read_threshold: float = READ_THRESHOLD,
        complexity_threshold: float = COMPLEXITY_THRESHOLD,
        min_policy_success_rate: float = 0.0,
        tier_costs: Optional[Mapping[int, float]] = None,
        budget_limit: float = 0.0,
        budget_window: timedelta | str = "24h",
    ) -> None:
        if not tier_models:
            raise RoutingError("no model tiers configured")
        self.policy_cache = policy_cache
        self.ledger = ledger
        self.tier_models = dict(tier_models)
        self.read_threshold = read_threshold
        self.complexity_threshold = complexity_threshold
        self.min_policy_success_rate = min_policy_success_rate
        self.tier_costs = dict(tier_costs or {})
        self.budget_limit = budget_limit
        try:
            self.budget_window = parse_timeframe(budget_window)
        except ValueError as exc:
            raise ConfigurationError(f"invalid budget window: {exc}") from exc

    def model_for(self, tier: int) -> str:
        try:
            return self.tier_models[tier]
        except KeyError:
            raise RoutingError(f"no model configured for tier {tier}") from None

    def route(self, prompt: str, context: Optional[RoutingContext] = None) -> RoutingDecision:
        context = context or RoutingContext()

        if context.cheap_transform_available:
            return RoutingDecision(
                tier=1,
                model=self.model_for(1),
                reason="Cheap transform available; skipping model call",
                complexity_score=0.0,
            )

        hit = self.policy_cache.best_match(prompt)
        if hit is not None:
            entry, score = hit
            if score > self.read_threshold and entry.success_rate >= self.min_policy_success_rate:
                logger.debug("Policy cache hit %s (similarity %.3f)", entry.key, score)
                return self._apply_budget(
                    RoutingDecision(
                        tier=entry.tier,
                        model=self.model_for(entry.tier),
                        reason=(
                            f"Policy cache hit (similarity {score:.2f}, "
                            f"success rate {entry.success_rate:.2f} over {entry.usage_count} uses)"
                        ),
                        complexity_score=entry.complexity,
                    ),
                    context,
                )

        complexity = compute_complexity(prompt)
        if complexity < self.complexity_threshold:
            tier = 2
            reason = f"Complexity {complexity:.2f} below threshold {self.complexity_threshold:.2f}"
        else:
            tier = 3
            reason = f"Complexity {complexity:.2f} at or above threshold {self.complexity_threshold:.2f}"
        return self._apply_budget(
            RoutingDecision(
                tier=tier,
                model=self.model_for(tier),
                reason=reason,
                complexity_score=complexity,
            ),
            context,
        )

    def _apply_budget(self, decision: RoutingDecision, context: RoutingContext) -> RoutingDecision:
        # Only tier 3 is downgraded, and only onto a configured tier 2.
        if self.budget_limit <= 0 or decision.tier != 3 or 2 not in self.tier_models:
            return decision

        estimated = estimate_cost(self.tier_costs.get(3, 0.0), context.estimated_tokens)
        check = self.ledger.check_budget(estimated, self.budget_limit, self.budget_window)
        if check.approved:
            return decision

        logger.info(
            "Budget constraint: spent %.4f + estimated %.4f exceeds %.4f; downgrading to tier 2",
            check.spent,
            check.estimated_cost,
            check.limit,
        )
        return RoutingDecision(
            tier=2,
            model=self.model_for(2),
            reason=(
                f"{decision.reason}; downgraded from tier 3 by budget "
                f"(spent ${check.spent:.4f} + estimated ${check.estimated_cost:.4f} "
                f"> limit ${check.limit:.4f})"
            ),
            complexity_score=decision.complexity_score,
        )

    def record_cost(
        self,
        model: str,
        usage: Usage,
        latency_ms: float,
        success: Optional[bool] = None,
    ) -> CostRecord:
        return self.ledger.record(model, usage, latency_ms, success)

    def update_policy(self, pattern: str, tier: int, feedback: bool | float) -> PolicyEntry:
        """Report how *tier* did on *pattern*; the policy cache learns from it."""
        if tier not in VALID_TIERS:
            raise ValueError(f"tier must be one of {VALID_TIERS}, got {tier!r}")
        return self.policy_cache.record_feedback(pattern, tier, feedback, self.model_for(tier))
