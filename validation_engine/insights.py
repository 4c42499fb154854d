"""Debounced draft buffer for free-text insight answers.

Edits land in memory immediately; a single shared timer (re)armed on every
edit flushes the whole visible answer set to the evidence store once typing
pauses.  Flushes are serialized with a lock, and each one reads the drafts
when it starts, so the value persisted last is always the latest edit.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from validation_engine.client import ClientError
from validation_engine.evidence import EvidenceStore
from validation_engine.models import Insight, InsightChannel, Question

log = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 1.0
MAX_QUESTIONS_PER_SECTION = 10

# section key -> field of the generated interview kit
INTERVIEW_KIT_SECTIONS: dict[str, str] = {
    "demographic": "demographic_questions",
    "behavioral": "behavioral_questions",
    "pain_point": "pain_point_questions",
    "solution": "solution_questions",
    "market": "market_questions",
    "persona_validation": "persona_validation_questions",
}

# section key -> field of the generated focus-group guide
FOCUS_GROUP_SECTIONS: dict[str, str] = {
    "introduction": "introduction_prompts",
    "warmup": "warmup_prompts",
    "opening": "opening_prompts",
    "key_discussion": "key_discussion_prompts",
    "market": "market_prompts",
    "persona_validation": "persona_validation_prompts",
    "followup": "followup_prompts",
    "closing": "closing_prompts",
}


def normalize_interview_kit(raw: Mapping[str, Any]) -> dict[str, list[str]]:
    """Fold older kit field names into the current section fields."""
    market_validation = raw.get("market_validation_questions") or []
    return {
        "demographic_questions": raw.get("demographic_questions") or raw.get("warm_up_questions") or [],
        "behavioral_questions": raw.get("behavioral_questions") or market_validation,
        "pain_point_questions": raw.get("pain_point_questions") or market_validation,
        "solution_questions": raw.get("solution_questions") or raw.get("solution_feedback_questions") or [],
        "market_questions": raw.get("market_questions") or market_validation,
        "persona_validation_questions": raw.get("persona_validation_questions") or [],
    }


def questions_from_kit(
    kit: Mapping[str, Any],
    sections: Mapping[str, str] = INTERVIEW_KIT_SECTIONS,
    limit: int = MAX_QUESTIONS_PER_SECTION,
) -> list[Question]:
    """Mint stable questions from a generated kit, in display order."""
    out: list[Question] = []
    seen: set[str] = set()
    for section, field in sections.items():
        items = kit.get(field) or []
        if not isinstance(items, list):
            continue
        for text in items[:limit]:
            if not isinstance(text, str) or not text.strip():
                continue
            q = Question.mint(section, text)
            if q.id in seen:
                continue
            seen.add(q.id)
            out.append(q)
    return out


def _match_key(section: str, text: str) -> tuple[str, str]:
    return section, " ".join(text.split()).casefold()


class InsightDraftBuffer:
    def __init__(
        self,
        store: EvidenceStore,
        channel: InsightChannel,
        questions: Iterable[Question] = (),
        *,
        interview_id: int | None = None,
        delay: float = DEFAULT_DEBOUNCE,
    ):
        self.store = store
        self.channel = channel
        self.interview_id = interview_id
        self.delay = delay
        self.last_error: ClientError | None = None
        self._questions: list[Question] = list(questions)
        self._drafts: dict[str, str] = {}
        # ids edited locally since their value last reached the store
        self._unsaved: set[str] = set()
        self._dirty = False
        self._timer: asyncio.TimerHandle | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # -- questions ----------------------------------------------------------

    @property
    def questions(self) -> list[Question]:
        return list(self._questions)

    def set_questions(self, questions: Iterable[Question]) -> None:
        """Replace the visible question list; drafts for known ids are kept."""
        self._questions = list(questions)

    def ensure_question(self, section: str, text: str) -> str:
        """Return the id of a visible question, appending it if it is new."""
        wanted = _match_key(section, text)
        for q in self._questions:
            if _match_key(q.section, q.text) == wanted:
                return q.id
        q = Question.mint(section, text)
        self._questions.append(q)
        return q.id

    def key_for(self, section: str, index: int) -> str:
        """Resolve the *index*-th displayed question of *section* to its id."""
        in_section = [q for q in self._questions if q.section == section]
        try:
            return in_section[index].id
        except IndexError:
            raise KeyError(f"No question {index} in section {section!r}") from None

    # -- drafts -------------------------------------------------------------

    @property
    def drafts(self) -> dict[str, str]:
        return dict(self._drafts)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def flush_pending(self) -> bool:
        return self._timer is not None

    def clear_drafts(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._drafts.clear()
        self._unsaved.clear()
        self._dirty = False

    def get_insight(self, key: str) -> str:
        return self._drafts.get(key, "")

    def set_insight(self, key: str, value: str) -> None:
        """Store an edit and restart the shared debounce timer.

        Must be called from inside the running event loop.
        """
        self._drafts[key] = value
        self._unsaved.add(key)
        self._dirty = True
        self._schedule()

    def _schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self._background_flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background_flush(self) -> None:
        try:
            await self.flush()
        except ClientError as exc:
            # stays dirty; the next edit or aclose() retries
            log.warning("Autosave of %s insights failed: %s", self.channel.value, exc)

    def payload(self) -> list[Insight]:
        """Every non-empty answer for the visible questions, in display order."""
        out: list[Insight] = []
        for q in self._questions:
            value = self._drafts.get(q.id, "").strip()
            if value:
                out.append(Insight(section=q.section, question=q.text, insight=value))
        return out

    async def flush(self) -> int:
        """Send the full current answer set as one batch; returns its size."""
        async with self._lock:
            sent = dict(self._drafts)
            batch = self.payload()
            self._dirty = False
            if batch:
                try:
                    await self.store.save_insights(self.channel, batch, self.interview_id)
                except ClientError as exc:
                    self._dirty = True
                    self.last_error = exc
                    raise
                self.last_error = None
            # edits made while the batch was in flight stay unsaved
            self._unsaved = {k for k in self._unsaved if self._drafts.get(k) != sent.get(k)}
            return len(batch)

    async def wait_idle(self) -> None:
        """Wait for any flush the timer has already started."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel the timer and persist anything not yet flushed."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.wait_idle()
        if self._dirty:
            await self.flush()

    # -- loading ------------------------------------------------------------

    async def load(self) -> int:
        """Seed drafts from saved insights matched by (section, question text).

        Answers with local edits that have not been saved yet are left alone,
        so reloading during the debounce window never reverts the last edit.
        """
        try:
            saved = await self.store.list_insights(self.channel, self.interview_id)
        except ClientError as exc:
            log.info("No saved %s insights loaded: %s", self.channel.value, exc)
            return 0
        by_text = {_match_key(q.section, q.text): q.id for q in self._questions}
        loaded = 0
        for item in saved:
            qid = by_text.get(_match_key(item.section, item.question))
            if qid is None:
                log.debug("Saved insight for unknown question %r in %s", item.question, item.section)
                continue
            if qid in self._unsaved:
                continue
            self._drafts[qid] = item.insight
            loaded += 1
        return loaded
