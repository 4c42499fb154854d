"""Shared business logic behind the HTTP surface: workflow lookup and serialization."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from validation_engine.client import ValidationAPI
from validation_engine.config import Settings, get_settings
from validation_engine.models import TOP_LEVEL_TIERS, ValidationTier
from validation_engine.workflow import ValidationWorkflow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class WorkflowRegistry:
    """One in-memory workflow per team, all sharing a single API client."""

    def __init__(self, api: ValidationAPI | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.api = api or ValidationAPI(settings=self.settings)
        self._workflows: dict[int, ValidationWorkflow] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, team_id: int) -> bool:
        return team_id in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)

    async def get(self, team_id: int, *, enter: bool = False) -> ValidationWorkflow:
        """Return the team's workflow, creating and reconciling it on first use.

        With *enter*, an existing workflow is reconciled with the server again.
        """
        async with self._lock:
            wf = self._workflows.get(team_id)
            created = wf is None
            if created:
                wf = ValidationWorkflow(self.api, team_id, settings=self.settings)
                self._workflows[team_id] = wf
        if created or enter:
            await wf.enter_view()
        return wf

    async def drop(self, team_id: int) -> bool:
        async with self._lock:
            wf = self._workflows.pop(team_id, None)
        if wf is None:
            return False
        await wf.aclose()
        log.info("Closed validation workflow for team %s", team_id)
        return True

    async def aclose(self) -> None:
        for team_id in list(self._workflows):
            await self.drop(team_id)
        await self.api.aclose()


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def workflow_overview(wf: ValidationWorkflow) -> dict[str, Any]:
    score = wf.overall_score()
    return {
        "team_id": wf.team_id,
        "tiers": {tier.value: state.value for tier, state in wf.progress.states().items()},
        "scores": {
            tier.value: wf.scores[tier].model_dump(mode="json")
            for tier in TOP_LEVEL_TIERS if tier in wf.scores
        },
        "overall_score": score,
        "overall_status": wf.overall_status().value,
        "validation_complete": wf.progress.is_validation_complete,
        "evidence": wf.evidence.model_dump(),
        "survey_questions": [q.model_dump() for q in wf.survey_questions],
        "busy": wf.is_busy(),
    }


def tier_score_out(wf: ValidationWorkflow, tier: ValidationTier) -> dict[str, Any] | None:
    score = wf.scores.get(tier)
    return score.model_dump(mode="json") if score is not None else None
