"""Pydantic request/response schemas for the validation API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator


class ValidationScoreOut(BaseModel):
    tier: str
    score: int
    status: str
    insights: list[str] = []
    data: dict[str, Any] = {}


class SurveyQuestionOut(BaseModel):
    id: str
    type: str
    text: str
    options: list[str] = []
    required: bool = False
    insights: str | None = None


class EvidenceOut(BaseModel):
    qual_folder_link: str = ""
    qual_interview_link: str = ""
    qual_focus_group_link: str = ""
    qual_transcript_link: str = ""
    quant_video_link: str = ""
    quant_form_link: str = ""
    response_volume: int = 0


class WorkflowOut(BaseModel):
    team_id: int
    tiers: dict[str, str]
    scores: dict[str, ValidationScoreOut] = {}
    overall_score: int
    overall_status: str
    validation_complete: bool
    evidence: EvidenceOut
    survey_questions: list[SurveyQuestionOut] = []
    busy: bool = False


class QualitativeEvidenceIn(BaseModel):
    interview: str = ""
    focus_group: str = ""
    transcript: str = ""


class SubTierCompleteOut(BaseModel):
    sub_tier: str
    qualitative_complete: bool
    qualitative_score: ValidationScoreOut | None = None


class InsightDraftIn(BaseModel):
    section: str
    question: str
    insight: str = ""

    @field_validator("section", "question")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class InsightBatchIn(BaseModel):
    insights: list[InsightDraftIn]
    interview_id: int | None = None


class InsightBatchOut(BaseModel):
    channel: str
    saved: int


class InterviewKitOut(BaseModel):
    interview_id: int | None = None
    questions: list[dict[str, str]] = []
    drafts: dict[str, str] = {}


class FocusGroupKitOut(BaseModel):
    questions: list[dict[str, str]] = []
    drafts: dict[str, str] = {}
    moderator_strategy: Any = None
    target_participant_count: Any = None
    session_duration: Any = None


class QuantitativeIn(BaseModel):
    form_link: str = ""
    response_volume: int | str = 0
    survey_insights: dict[str, str] | None = None


class SummaryOut(BaseModel):
    overall_score: int
    status: str
    tier_scores: list[ValidationScoreOut]
    recommendation: str
    completed_at: str
