"""Evidence store: team-scoped links and free-text insights kept on the backend."""
from __future__ import annotations

import logging
from typing import Any

from validation_engine.client import ValidationAPI, ValidationError
from validation_engine.models import EvidenceLinks, EvidenceType, Insight, InsightChannel
from validation_engine.utils import to_number

log = logging.getLogger(__name__)

# evidence type -> EvidenceLinks field
_LINK_FIELDS: dict[EvidenceType, str] = {
    EvidenceType.QUAL_FOLDER: "qual_folder_link",
    EvidenceType.QUAL_INTERVIEW: "qual_interview_link",
    EvidenceType.QUAL_FOCUS_GROUP: "qual_focus_group_link",
    EvidenceType.QUAL_TRANSCRIPT: "qual_transcript_link",
    EvidenceType.QUANT_VIDEO: "quant_video_link",
    EvidenceType.QUANT_FORM: "quant_form_link",
    EvidenceType.RESPONSE_VOLUME: "response_volume",
}


def parse_links(raw: dict[str, Any]) -> EvidenceLinks:
    """Build EvidenceLinks from an evidence payload, tolerating missing fields."""
    values: dict[str, Any] = {}
    for field in _LINK_FIELDS.values():
        if field == "response_volume":
            values[field] = max(0, int(to_number(raw.get(field))))
        else:
            values[field] = str(raw.get(field) or "")
    return EvidenceLinks(**values)


class EvidenceStore:
    def __init__(self, api: ValidationAPI, team_id: int):
        self.api = api
        self.team_id = team_id

    async def get_links(self) -> EvidenceLinks:
        return parse_links(await self.api.get_evidence(self.team_id))

    async def save_link(self, evidence_type: EvidenceType | str, link: str | int) -> None:
        """Upsert one field of the team's evidence record."""
        evidence_type = EvidenceType(evidence_type)
        if evidence_type is EvidenceType.RESPONSE_VOLUME:
            try:
                volume = int(str(link).strip())
            except ValueError as exc:
                raise ValidationError(f"Response volume must be a whole number, got {link!r}") from exc
            if volume < 0:
                raise ValidationError("Response volume cannot be negative")
            value = str(volume)
        else:
            value = str(link).strip()
            if not value:
                raise ValidationError(f"Empty link for {evidence_type.value}")
        await self.api.submit_evidence(self.team_id, evidence_type, value)
        log.info("Saved %s evidence for team %s", evidence_type.value, self.team_id)

    async def list_insights(
        self, channel: InsightChannel, interview_id: int | None = None,
    ) -> list[Insight]:
        return await self.api.list_insights(self.team_id, channel, interview_id)

    async def save_insights(
        self,
        channel: InsightChannel,
        insights: list[Insight],
        interview_id: int | None = None,
    ) -> None:
        """Batch upsert; (section, question) is the key on the server side."""
        if not insights:
            return
        await self.api.save_insights(self.team_id, channel, insights, interview_id)
        log.debug("Saved %d %s insights for team %s", len(insights), channel.value, self.team_id)
