"""Tier gating and completion tracking.

Order is fixed: secondary -> qualitative -> quantitative.  Qualitative is an
AND-join of two sub-tiers (interview kit and focus-group kit): it completes
only when both have been marked.  Local flags are an optimistic cache of the
backend roadmap; :meth:`TierProgress.reconcile` replaces them with the
server's view whenever a view is entered.
"""
from __future__ import annotations

import logging
from enum import StrEnum

from validation_engine.models import (
    QUALITATIVE_SUB_TIERS,
    TOP_LEVEL_TIERS,
    RoadmapSnapshot,
    ValidationTier,
)

log = logging.getLogger(__name__)


class TierState(StrEnum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    COMPLETE = "complete"


class TierLockedError(Exception):
    """A tier was marked complete before its predecessor."""


# tier -> tier that must be complete first
_PREREQUISITE: dict[ValidationTier, ValidationTier | None] = {
    ValidationTier.SECONDARY: None,
    ValidationTier.INTERVIEWS: ValidationTier.SECONDARY,
    ValidationTier.FOCUS_GROUPS: ValidationTier.SECONDARY,
    ValidationTier.QUALITATIVE: ValidationTier.SECONDARY,
    ValidationTier.QUANTITATIVE: ValidationTier.QUALITATIVE,
}


class TierProgress:
    def __init__(self, completed: set[ValidationTier] | None = None):
        self._completed: set[ValidationTier] = set()
        for tier in completed or ():
            self._completed.add(ValidationTier(tier))
        if ValidationTier.QUALITATIVE in self._completed:
            self._completed.update(QUALITATIVE_SUB_TIERS)
        self._apply_join()

    @property
    def completed(self) -> frozenset[ValidationTier]:
        return frozenset(self._completed)

    def is_complete(self, tier: ValidationTier) -> bool:
        return tier in self._completed

    def is_unlocked(self, tier: ValidationTier) -> bool:
        prerequisite = _PREREQUISITE[tier]
        return prerequisite is None or prerequisite in self._completed

    def state(self, tier: ValidationTier) -> TierState:
        if tier in self._completed:
            return TierState.COMPLETE
        if self.is_unlocked(tier):
            return TierState.UNLOCKED
        return TierState.LOCKED

    def states(self) -> dict[ValidationTier, TierState]:
        return {tier: self.state(tier) for tier in ValidationTier}

    @property
    def is_validation_complete(self) -> bool:
        return all(t in self._completed for t in TOP_LEVEL_TIERS)

    def mark_complete(self, tier: ValidationTier) -> bool:
        """Mark *tier* complete; returns True if qualitative flipped as a result.

        Confirming ``qualitative`` itself (the backend already recorded it)
        completes both sub-tiers.
        """
        tier = ValidationTier(tier)
        if not self.is_unlocked(tier):
            raise TierLockedError(f"{tier.value} is locked until {_PREREQUISITE[tier].value} is complete")
        qual_before = ValidationTier.QUALITATIVE in self._completed
        if tier is ValidationTier.QUALITATIVE:
            self._completed.update(QUALITATIVE_SUB_TIERS)
        self._completed.add(tier)
        self._apply_join()
        return not qual_before and ValidationTier.QUALITATIVE in self._completed

    def _apply_join(self) -> None:
        if all(t in self._completed for t in QUALITATIVE_SUB_TIERS):
            self._completed.add(ValidationTier.QUALITATIVE)

    def reconcile(self, snapshot: RoadmapSnapshot) -> set[ValidationTier]:
        """Adopt the server roadmap; return the tiers whose local flag was dropped."""
        before = set(self._completed)
        if snapshot.is_reset:
            self._completed.clear()
        else:
            for tier in TOP_LEVEL_TIERS:
                if snapshot.is_complete(tier):
                    self._completed.add(tier)
                else:
                    self._completed.discard(tier)
            if snapshot.qualitative:
                self._completed.update(QUALITATIVE_SUB_TIERS)
            elif all(t in self._completed for t in QUALITATIVE_SUB_TIERS):
                # both kits done locally but the server never recorded it: stale
                self._completed.difference_update(QUALITATIVE_SUB_TIERS)
            if not snapshot.secondary:
                self._completed.difference_update(QUALITATIVE_SUB_TIERS)

        dropped = before - self._completed
        if dropped:
            log.info("Server roadmap cleared local completion for: %s",
                     ", ".join(sorted(t.value for t in dropped)))
        return dropped
