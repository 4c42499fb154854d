"""Per-team validation workflow: the controller tying the tiers together.

Secondary research is a long-running backend job that is started, polled
and then scored.  Qualitative testing collects evidence links and per-question
insights on two channels (interviews and focus groups) and completes when both
kits are done.  Quantitative testing assembles a survey and scores it.  Each
tier's score comes from the backend; this module only decides when to ask for
it and folds the results into the overall score.
"""
from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from validation_engine.client import ClientError, HTTPError, JobFailedError, ValidationAPI, ValidationError
from validation_engine.config import Settings, get_settings
from validation_engine.evidence import EvidenceStore
from validation_engine.insights import (
    FOCUS_GROUP_SECTIONS,
    InsightDraftBuffer,
    normalize_interview_kit,
    questions_from_kit,
)
from validation_engine.models import (
    TOP_LEVEL_TIERS,
    EvidenceLinks,
    EvidenceType,
    InsightChannel,
    JobStatus,
    RoadmapSnapshot,
    SurveyQuestion,
    ValidationScore,
    ValidationSummary,
    ValidationTier,
)
from validation_engine.poller import PollOutcome, PollResult, parse_job_status, poll_job
from validation_engine.progress import TierLockedError, TierProgress
from validation_engine.scoring import (
    build_tier_score,
    compute_overall_score,
    extract_report_insights,
    overall_status,
    recommendation,
)
from validation_engine.utils import to_number

log = logging.getLogger(__name__)

# server score field per tier
SCORE_FIELDS: dict[ValidationTier, str] = {
    ValidationTier.SECONDARY: "final_score_20",
    ValidationTier.QUALITATIVE: "final_score_10",
    ValidationTier.QUANTITATIVE: "final_score_50",
}

OnPoll = Callable[[JobStatus | None, int], Awaitable[None]]


class ActionInProgressError(Exception):
    """The same action is already running (e.g. a double-clicked submit)."""


class ValidationIncompleteError(Exception):
    """finish() was called before all three tiers were complete."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _survey_question(raw: dict[str, Any], index: int) -> SurveyQuestion:
    options = raw.get("options")
    return SurveyQuestion(
        id=str(raw.get("id") or f"q{index + 1}"),
        type=str(raw.get("type") or "open"),
        text=str(raw.get("text") or raw.get("question") or ""),
        options=[str(o) for o in options] if isinstance(options, list) else [],
        required=bool(raw.get("required", False)),
        insights=raw.get("insights") if isinstance(raw.get("insights"), str) else None,
    )


class ValidationWorkflow:
    def __init__(
        self,
        api: ValidationAPI,
        team_id: int,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api = api
        self.team_id = team_id
        self.settings = settings or get_settings()
        self.store = EvidenceStore(api, team_id)
        self.progress = TierProgress()
        self.snapshot: RoadmapSnapshot | None = None
        self.scores: dict[ValidationTier, ValidationScore] = {}
        self.raw_scores: dict[ValidationTier, float] = {}
        self.evidence = EvidenceLinks()
        self.report: dict[str, Any] | None = None
        self.survey_questions: list[SurveyQuestion] = []
        self.focus_group_guide: dict[str, Any] = {}
        self.abort = asyncio.Event()
        self.interview_insights = InsightDraftBuffer(
            self.store, InsightChannel.INTERVIEW, delay=self.settings.debounce_seconds,
        )
        self.focus_group_insights = InsightDraftBuffer(
            self.store, InsightChannel.FOCUS_GROUP, delay=self.settings.debounce_seconds,
        )
        self._sleep = sleep
        self._in_flight: set[str] = set()

    # -----------------------------------------------------------------------
    # Busy guard
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def _guard(self, action: str) -> AsyncIterator[None]:
        if action in self._in_flight:
            raise ActionInProgressError(f"{action} is already in progress")
        self._in_flight.add(action)
        try:
            yield
        finally:
            self._in_flight.discard(action)

    def is_busy(self, action: str | None = None) -> bool:
        return bool(self._in_flight) if action is None else action in self._in_flight

    def buffer_for(self, channel: InsightChannel) -> InsightDraftBuffer:
        if channel is InsightChannel.INTERVIEW:
            return self.interview_insights
        return self.focus_group_insights

    # -----------------------------------------------------------------------
    # Scores
    # -----------------------------------------------------------------------

    def _record_score(
        self,
        tier: ValidationTier,
        raw: Any,
        insights: list[str] | None = None,
        data: dict[str, Any] | None = None,
    ) -> ValidationScore:
        previous = self.scores.get(tier)
        if insights is None and previous is not None:
            insights = previous.insights
        if data is None and previous is not None:
            data = previous.data
        self.raw_scores[tier] = to_number(raw)
        score = build_tier_score(tier, raw, insights, data)
        self.scores[tier] = score
        return score

    def _forget_tier(self, tier: ValidationTier) -> None:
        self.scores.pop(tier, None)
        self.raw_scores.pop(tier, None)

    async def _fetch_score(self, tier: ValidationTier) -> bool:
        """Best-effort fetch of one tier's server score; True if one was recorded."""
        try:
            if tier is ValidationTier.SECONDARY:
                score = await self.api.get_secondary_score(self.team_id)
            elif tier is ValidationTier.QUALITATIVE:
                score = await self.api.get_qualitative_score(
                    self.team_id, self.interview_insights.interview_id,
                )
            else:
                score = await self.api.get_quantitative_score(self.team_id)
        except ClientError as exc:
            log.debug("No %s score for team %s: %s", tier.value, self.team_id, exc)
            return False
        raw = score.get(SCORE_FIELDS[tier])
        if not _is_number(raw):
            return False
        self._record_score(tier, raw, data=score if tier is not ValidationTier.SECONDARY else None)
        return True

    def overall_score(self) -> int:
        return compute_overall_score(
            self.raw_scores.get(ValidationTier.SECONDARY, 0.0),
            self.raw_scores.get(ValidationTier.QUALITATIVE, 0.0),
            self.raw_scores.get(ValidationTier.QUANTITATIVE, 0.0),
        )

    def overall_status(self):
        return overall_status(self.overall_score())

    # -----------------------------------------------------------------------
    # View entry / server reconciliation
    # -----------------------------------------------------------------------

    async def enter_view(self) -> RoadmapSnapshot | None:
        """Reconcile with the server roadmap, then reload server-owned state.

        Returns None when the roadmap could not be fetched; local state is
        left untouched in that case.
        """
        try:
            snapshot = RoadmapSnapshot.from_roadmap(await self.api.get_roadmap(self.team_id))
        except ClientError as exc:
            log.warning("Roadmap fetch failed for team %s: %s", self.team_id, exc)
            return None

        self.snapshot = snapshot
        dropped = self.progress.reconcile(snapshot)
        if snapshot.is_reset:
            self.scores.clear()
            self.raw_scores.clear()
            self.evidence = EvidenceLinks()
            self.report = None
            self.survey_questions = []
            self.focus_group_guide = {}
            return snapshot
        for tier in dropped:
            if tier in TOP_LEVEL_TIERS:
                self._forget_tier(tier)

        for tier in TOP_LEVEL_TIERS:
            await self._fetch_score(tier)
        if snapshot.secondary and self.report is None:
            await self._load_existing_report()
        try:
            self.evidence = await self.store.get_links()
        except ClientError as exc:
            log.debug("Evidence links unavailable for team %s: %s", self.team_id, exc)
        if self.progress.is_unlocked(ValidationTier.QUALITATIVE):
            await self._load_channels()
        return snapshot

    async def _load_channels(self) -> None:
        """Show both qualitative kits with their saved answers, best-effort."""
        loaders = (
            (self.interview_insights, self.load_interview_kit),
            (self.focus_group_insights, self.load_focus_group_kit),
        )
        for buffer, load_kit in loaders:
            try:
                if buffer.questions:
                    await buffer.load()
                else:
                    await load_kit()
            except ClientError as exc:
                log.debug("No %s kit for team %s: %s", buffer.channel.value, self.team_id, exc)

    async def _load_existing_report(self) -> None:
        try:
            report = await self.api.get_deep_research_report(self.team_id)
        except ClientError as exc:
            log.debug("No saved deep-research report for team %s: %s", self.team_id, exc)
            return
        if report is None:
            return
        self.report = report
        raw = self.raw_scores.get(ValidationTier.SECONDARY, 0.0)
        self._record_score(ValidationTier.SECONDARY, raw, extract_report_insights(report), report)

    async def _mark_server_complete(self, tier: ValidationTier) -> None:
        try:
            await self.api.mark_validation_completed(self.team_id, **{tier.value: True})
        except ClientError as exc:
            log.warning("Could not record %s completion for team %s: %s", tier.value, self.team_id, exc)

    # -----------------------------------------------------------------------
    # Secondary research
    # -----------------------------------------------------------------------

    async def _poll_deep_research(self, on_poll: OnPoll | None) -> PollResult:
        return await poll_job(
            lambda: self.api.get_deep_research_status(self.team_id),
            abort=self.abort,
            interval=self.settings.poll_interval_seconds,
            rate_limit_interval=self.settings.rate_limit_interval_seconds,
            timeout=self.settings.poll_timeout_seconds,
            sleep=self._sleep,
            on_poll=on_poll,
        )

    async def run_secondary(self, on_poll: OnPoll | None = None) -> ValidationScore | None:
        """Start deep research, wait for it, then score it.

        Returns None if polling timed out or was cancelled.  Raises
        JobFailedError if the backend reports the job as failed.
        """
        async with self._guard("secondary"):
            self.abort.clear()
            await self.api.start_deep_research(self.team_id)
            log.info("Deep research started for team %s", self.team_id)
            result = await self._poll_deep_research(on_poll)
            return await self._finish_secondary(result)

    async def resume_secondary(self, on_poll: OnPoll | None = None) -> ValidationScore | None:
        """Pick up polling for a job that was already running when the view opened."""
        try:
            status = parse_job_status(await self.api.get_deep_research_status(self.team_id))
        except ClientError as exc:
            log.debug("Deep-research status unavailable for team %s: %s", self.team_id, exc)
            return None
        if status not in (JobStatus.PENDING, JobStatus.PROCESSING):
            return None
        async with self._guard("secondary"):
            self.abort.clear()
            log.info("Resuming deep-research polling for team %s", self.team_id)
            result = await self._poll_deep_research(on_poll)
            if result.outcome is PollOutcome.FAILED:
                log.warning("Resumed deep research failed for team %s: %s", self.team_id, result.error_message)
                return None
            return await self._finish_secondary(result)

    async def _finish_secondary(self, result: PollResult) -> ValidationScore | None:
        if result.outcome is PollOutcome.FAILED:
            raise JobFailedError(result.error_message or "Deep research failed")
        if result.outcome is not PollOutcome.COMPLETED:
            log.info("Deep research for team %s stopped: %s", self.team_id, result.outcome.value)
            return None

        try:
            report = await self.api.get_deep_research_report(self.team_id)
        except HTTPError as exc:
            if exc.status_code != 404:
                raise
            report = None
        if report is None:
            raise JobFailedError("Deep research report not found")
        self.report = report
        insights = extract_report_insights(report)
        self._record_score(ValidationTier.SECONDARY, 0, insights, report)

        try:
            await self.api.compute_secondary_score(self.team_id)
        except ClientError as exc:
            log.warning("Secondary score computation failed for team %s: %s", self.team_id, exc)
        await self._fetch_score(ValidationTier.SECONDARY)

        self.progress.mark_complete(ValidationTier.SECONDARY)
        await self._mark_server_complete(ValidationTier.SECONDARY)
        return self.scores[ValidationTier.SECONDARY]

    def cancel(self) -> None:
        """Stop any polling loop before its next status call."""
        self.abort.set()

    # -----------------------------------------------------------------------
    # Qualitative testing
    # -----------------------------------------------------------------------

    def _require_unlocked(self, tier: ValidationTier) -> None:
        if not self.progress.is_unlocked(tier):
            raise TierLockedError(f"{tier.value} is locked")

    async def load_interview_kit(self) -> int:
        """Fetch the generated interview kit and show its questions."""
        kit = normalize_interview_kit(await self.api.get_interview_kit(self.team_id))
        self.interview_insights.set_questions(questions_from_kit(kit))
        await self.interview_insights.load()
        return len(self.interview_insights.questions)

    async def _fetch_focus_group_guide(self) -> dict[str, Any]:
        try:
            guide = await self.api.get_focus_group_guide(self.team_id)
        except HTTPError as exc:
            if exc.status_code != 404:
                raise
            guide = {}
        if guide:
            return guide
        log.info("Generating focus-group guide for team %s", self.team_id)
        context = {"secondary_research": self.report or {}}
        guide = await self.api.generate_focus_group_guide(self.team_id, context)
        return guide or await self.api.get_focus_group_guide(self.team_id)

    async def load_focus_group_kit(self) -> int:
        """Fetch the moderator guide, generating it on first use, and show its prompts."""
        self.focus_group_guide = await self._fetch_focus_group_guide()
        self.focus_group_insights.set_questions(questions_from_kit(self.focus_group_guide, FOCUS_GROUP_SECTIONS))
        await self.focus_group_insights.load()
        return len(self.focus_group_insights.questions)

    async def select_interview(self, interview_id: int | None) -> int:
        """Switch the interview channel to another session's answers."""
        buffer = self.interview_insights
        await buffer.aclose()
        buffer.clear_drafts()
        buffer.interview_id = interview_id
        return await buffer.load()

    def draft_answer(self, channel: InsightChannel, section: str, question: str, insight: str) -> str:
        buffer = self.buffer_for(channel)
        key = buffer.ensure_question(section, question)
        buffer.set_insight(key, insight)
        return key

    async def submit_qualitative_evidence(
        self, *, interview: str = "", focus_group: str = "", transcript: str = "",
    ) -> EvidenceLinks:
        links = {
            EvidenceType.QUAL_INTERVIEW: interview.strip(),
            EvidenceType.QUAL_FOCUS_GROUP: focus_group.strip(),
            EvidenceType.QUAL_TRANSCRIPT: transcript.strip(),
        }
        if not any(links.values()):
            raise ValidationError("Provide at least one evidence link")
        self._require_unlocked(ValidationTier.QUALITATIVE)
        async with self._guard("qualitative_evidence"):
            for evidence_type, link in links.items():
                if link:
                    await self.store.save_link(evidence_type, link)
                    setattr(self.evidence, f"{evidence_type.value}_link", link)
        return self.evidence

    async def complete_sub_tier(self, sub_tier: ValidationTier) -> bool:
        """Mark interviews or focus groups done; returns True when qualitative completes."""
        if sub_tier not in (ValidationTier.INTERVIEWS, ValidationTier.FOCUS_GROUPS):
            raise ValueError(f"{sub_tier.value} is not a qualitative sub-tier")
        self._require_unlocked(sub_tier)
        async with self._guard(sub_tier.value):
            buffer = self.interview_insights if sub_tier is ValidationTier.INTERVIEWS else self.focus_group_insights
            await buffer.aclose()
            joined = self.progress.mark_complete(sub_tier)
            if joined:
                await self._mark_server_complete(ValidationTier.QUALITATIVE)
                await self._fetch_score(ValidationTier.QUALITATIVE)
            return joined

    async def complete_interviews(self) -> bool:
        return await self.complete_sub_tier(ValidationTier.INTERVIEWS)

    async def complete_focus_groups(self) -> bool:
        return await self.complete_sub_tier(ValidationTier.FOCUS_GROUPS)

    # -----------------------------------------------------------------------
    # Quantitative testing
    # -----------------------------------------------------------------------

    async def assemble_survey(self) -> list[SurveyQuestion]:
        """Generate the survey question set; only ever called on explicit request."""
        self._require_unlocked(ValidationTier.QUANTITATIVE)
        async with self._guard("survey"):
            await self.api.generate_survey(self.team_id)
            raw = await self.api.get_survey(self.team_id)
            self.survey_questions = [_survey_question(q, i) for i, q in enumerate(raw)]
            log.info("Survey assembled for team %s: %d questions", self.team_id, len(self.survey_questions))
            return self.survey_questions

    async def submit_quantitative(
        self,
        *,
        form_link: str = "",
        response_volume: int | str = 0,
        survey_insights: dict[str, str] | None = None,
    ) -> ValidationScore:
        self._require_unlocked(ValidationTier.QUANTITATIVE)
        try:
            volume = int(str(response_volume).strip() or 0)
        except ValueError as exc:
            raise ValidationError(f"Response volume must be a whole number, got {response_volume!r}") from exc
        if volume < 0:
            raise ValidationError("Response volume cannot be negative")
        if survey_insights is None:
            survey_insights = {q.id: q.insights for q in self.survey_questions if q.insights}

        async with self._guard("quantitative"):
            if form_link.strip():
                await self.store.save_link(EvidenceType.QUANT_FORM, form_link)
                self.evidence.quant_form_link = form_link.strip()
            await self.store.save_link(EvidenceType.RESPONSE_VOLUME, volume)
            self.evidence.response_volume = volume

            score = await self.api.compute_quantitative_score(self.team_id, survey_insights, volume)
            raw = score.get(SCORE_FIELDS[ValidationTier.QUANTITATIVE])
            if _is_number(raw):
                self._record_score(ValidationTier.QUANTITATIVE, raw, data=score)
            elif not await self._fetch_score(ValidationTier.QUANTITATIVE):
                log.warning("No quantitative score returned for team %s", self.team_id)
                self._record_score(ValidationTier.QUANTITATIVE, 0, data=score)

            self.progress.mark_complete(ValidationTier.QUANTITATIVE)
            await self._mark_server_complete(ValidationTier.QUANTITATIVE)
            return self.scores[ValidationTier.QUANTITATIVE]

    # -----------------------------------------------------------------------
    # Completion
    # -----------------------------------------------------------------------

    def finish(self) -> ValidationSummary:
        if not self.progress.is_validation_complete:
            missing = [t.value for t in TOP_LEVEL_TIERS if not self.progress.is_complete(t)]
            raise ValidationIncompleteError(f"Validation incomplete: {', '.join(missing)}")
        score = self.overall_score()
        status = overall_status(score)
        return ValidationSummary(
            overall_score=score,
            status=status,
            tier_scores=[self.scores[t] for t in TOP_LEVEL_TIERS if t in self.scores],
            recommendation=recommendation(status),
            completed_at=datetime.now(UTC),
        )

    async def aclose(self) -> None:
        """Stop polling and flush unsaved drafts."""
        self.cancel()
        for buffer in (self.interview_insights, self.focus_group_insights):
            try:
                await buffer.aclose()
            except ClientError as exc:
                log.warning("Unsaved %s insights for team %s: %s", buffer.channel.value, self.team_id, exc)
