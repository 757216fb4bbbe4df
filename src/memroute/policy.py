"""
Policy cache: learned routing decisions keyed by prompt similarity.

Each entry lives under ``policy/<uuid4>`` and is the only kind of segment
that is updated in place.  The router reads it with a looser similarity
threshold than feedback uses to write it, so that distinct prompt patterns
are not merged into one entry.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from .collection import SemanticNamespace
from .config import READ_THRESHOLD, WRITE_THRESHOLD
from .intelligence import compute_complexity, generate_id
from .models import PolicyEntry, PolicyMetadata

logger = logging.getLogger(__name__)

#: Outcomes at or above this count as a success.
SUCCESS_OUTCOME = 0.5


def feedback_outcome(feedback: bool | float) -> float:
    """Normalise *feedback* to an outcome in [0, 1]."""
    if isinstance(feedback, bool):
        return 1.0 if feedback else 0.0
    outcome = float(feedback)
    if not 0.0 <= outcome <= 1.0:
        raise ValueError(f"feedback outcome must lie in [0, 1], got {feedback!r}")
    return outcome


class PolicyCache:
    def __init__(
        self,
        namespace: SemanticNamespace,
        read_threshold: float = READ_THRESHOLD,
        write_threshold: float = WRITE_THRESHOLD,
    ) -> None:
        self.namespace = namespace
        self.read_threshold = read_threshold
        self.write_threshold = write_threshold
        self._write_lock = threading.Lock()

    def best_match(self, prompt: str) -> Optional[tuple[PolicyEntry, float]]:
        """The most similar stored policy and its similarity, if any exist."""
        matches = self.namespace.search(prompt, 1)
        if not matches:
            return None
        return PolicyEntry.from_segment(matches[0].segment), matches[0].score

    def record_feedback(
        self,
        pattern: str,
        tier: int,
        feedback: bool | float,
        model: str,
    ) -> PolicyEntry:
        """
        Fold one observed outcome for *pattern* into the cache.

        An entry more similar than ``write_threshold`` is updated in place:
        its success rate becomes the running average including this outcome,
        and on success its tier and model become the reported ones.
        Otherwise a new entry is created.  Feedback writes are serialised.
        """
        outcome = feedback_outcome(feedback)
        vector = self.namespace.embedder.embed(pattern)

        with self._write_lock:
            matches = self.namespace.search(vector=vector, k=1)
            if matches and matches[0].score > self.write_threshold:
                return self._update(matches[0].segment, tier, model, outcome)

            metadata = PolicyMetadata(
                tier=tier,
                model=model,
                complexity=compute_complexity(pattern),
                success_rate=outcome,
                usage_count=1,
                last_used=time.time(),
                reason="learned from feedback",
            )
            segment = self.namespace.add(generate_id(), pattern, metadata, embedding=vector)
            logger.debug("Created policy %s (tier %d)", segment.key, tier)
            return PolicyEntry.from_segment(segment)

    def _update(self, segment, tier: int, model: str, outcome: float) -> PolicyEntry:
        entry = PolicyEntry.from_segment(segment)
        entry.success_rate = (entry.success_rate * entry.usage_count + outcome) / (entry.usage_count + 1)
        entry.usage_count += 1
        entry.last_used = time.time()
        if outcome >= SUCCESS_OUTCOME:
            entry.tier = tier
            entry.model = model

        metadata = entry.to_metadata()
        metadata.extra = dict(segment.metadata.extra)
        self.namespace.store.update(entry.key, entry.pattern, metadata)
        logger.debug(
            "Updated policy %s: success_rate=%.3f usage_count=%d",
            entry.key,
            entry.success_rate,
            entry.usage_count,
        )
        return entry

    def entries(self) -> list[PolicyEntry]:
        return [PolicyEntry.from_segment(s) for s in self.namespace.store.scan(self.namespace.prefix)]

    def count(self) -> int:
        return self.namespace.count()
