"""Domain types for the validation workflow.

None of these are persisted locally; the backend owns the authoritative records
(scores keyed by team + tier, insights, evidence, roadmap flags).
"""
from __future__ import annotations

import hashlib
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ValidationTier(StrEnum):
    SECONDARY = "secondary"
    QUALITATIVE = "qualitative"
    QUANTITATIVE = "quantitative"
    INTERVIEWS = "interviews"
    FOCUS_GROUPS = "focus-groups"


TOP_LEVEL_TIERS: tuple[ValidationTier, ...] = (
    ValidationTier.SECONDARY,
    ValidationTier.QUALITATIVE,
    ValidationTier.QUANTITATIVE,
)
QUALITATIVE_SUB_TIERS: tuple[ValidationTier, ...] = (
    ValidationTier.INTERVIEWS,
    ValidationTier.FOCUS_GROUPS,
)


class TierScoreStatus(StrEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    WARNING = "warning"
    POOR = "poor"


class OverallStatus(StrEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    BAD = "bad"


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EvidenceType(StrEnum):
    QUAL_FOLDER = "qual_folder"
    QUAL_INTERVIEW = "qual_interview"
    QUAL_FOCUS_GROUP = "qual_focus_group"
    QUAL_TRANSCRIPT = "qual_transcript"
    QUANT_VIDEO = "quant_video"
    QUANT_FORM = "quant_form"
    RESPONSE_VOLUME = "response_volume"


class InsightChannel(StrEnum):
    INTERVIEW = "interview"
    FOCUS_GROUP = "focus_group"


class ValidationScore(BaseModel):
    tier: ValidationTier
    score: int = 0  # normalized 0-100
    status: TierScoreStatus = TierScoreStatus.POOR
    insights: list[str] = []
    data: dict[str, Any] = {}


class Insight(BaseModel):
    section: str
    question: str
    insight: str = ""


class Question(BaseModel):
    """A displayed question with an identity that survives reordering."""
    id: str
    section: str
    text: str

    @classmethod
    def mint(cls, section: str, text: str) -> Question:
        normalized = " ".join(text.split()).casefold()
        digest = hashlib.sha1(f"{section}\x1f{normalized}".encode()).hexdigest()[:12]
        return cls(id=f"{section}-{digest}", section=section, text=text)


class EvidenceLinks(BaseModel):
    qual_folder_link: str = ""
    qual_interview_link: str = ""
    qual_focus_group_link: str = ""
    qual_transcript_link: str = ""
    quant_video_link: str = ""
    quant_form_link: str = ""
    response_volume: int = 0


class RoadmapSnapshot(BaseModel):
    secondary: bool = False
    qualitative: bool = False
    quantitative: bool = False

    @classmethod
    def from_roadmap(cls, payload: Any) -> RoadmapSnapshot:
        """Read the ``validation`` section of a roadmap-completion response."""
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        validation = data.get("validation") if isinstance(data, dict) else None
        if not isinstance(validation, dict):
            return cls()
        return cls(**{tier: bool(validation.get(tier)) for tier in ("secondary", "qualitative", "quantitative")})

    @property
    def is_reset(self) -> bool:
        return not (self.secondary or self.qualitative or self.quantitative)

    def is_complete(self, tier: ValidationTier) -> bool:
        return bool(getattr(self, tier.value, False))


class SurveyQuestion(BaseModel):
    id: str
    type: str = "open"
    text: str
    options: list[str] = []
    required: bool = False
    insights: str | None = None


class ValidationSummary(BaseModel):
    overall_score: int
    status: OverallStatus
    tier_scores: list[ValidationScore] = Field(default_factory=list)
    recommendation: str
    completed_at: datetime
