"""Async REST client for the validation backend, plus the client error taxonomy."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from validation_engine.config import Settings, get_settings
from validation_engine.models import EvidenceType, Insight, InsightChannel
from validation_engine.utils import json_parse, unwrap_data

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ClientError(Exception):
    """Base class for everything the validation client raises."""


class NetworkError(ClientError):
    """The request never produced an HTTP response (DNS, connect, timeout...)."""


class HTTPError(ClientError):
    """Non-2xx response from the backend."""
    def __init__(self, message: str, status_code: int, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitError(HTTPError):
    """HTTP 429; the status poller backs off when it sees this."""


class ValidationError(ClientError):
    """User input rejected before any request was sent."""


class JobFailedError(ClientError):
    """The backend reported an async job as failed."""


def _error_message(body: Any, status_code: int) -> str:
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, str) and body.strip():
        return body.strip()[:300]
    return f"HTTP {status_code}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

_INSIGHT_PATHS = {
    InsightChannel.INTERVIEW: "qual-insights",
    InsightChannel.FOCUS_GROUP: "focus-group-insights",
}


class ValidationAPI:
    """Thin async wrapper over the validation and roadmap endpoints.

    One instance owns one ``httpx.AsyncClient``; close it with :meth:`aclose`
    or use the instance as an async context manager.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = (base_url or self.settings.api_base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.settings.auth_headers,
            timeout=httpx.Timeout(self.settings.request_timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self) -> ValidationAPI:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the decoded body; raise on failure."""
        try:
            resp = await self._client.request(method, path, json=json, params=params)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if "application/json" in resp.headers.get("content-type", ""):
            try:
                body: Any = resp.json()
            except ValueError:
                body = None
        else:
            # some endpoints answer JSON under a text/html content type
            body = json_parse(resp.text, default=resp.text)

        if resp.status_code == 429:
            raise RateLimitError(_error_message(body, 429), 429, body)
        if resp.status_code >= 400:
            log.debug("%s %s -> %s", method, path, resp.status_code)
            raise HTTPError(_error_message(body, resp.status_code), resp.status_code, body)
        return body

    async def get(self, path: str, **params: Any) -> Any:
        clean = {k: v for k, v in params.items() if v is not None}
        return await self.request("GET", path, params=clean or None)

    async def post(self, path: str, payload: Any = None, **params: Any) -> Any:
        clean = {k: v for k, v in params.items() if v is not None}
        return await self.request("POST", path, json=payload if payload is not None else {}, params=clean or None)

    async def put(self, path: str, payload: Any) -> Any:
        return await self.request("PUT", path, json=payload)

    # -- Deep research (secondary) ------------------------------------------

    async def start_deep_research(self, team_id: int) -> Any:
        return await self.post(f"/validation/teams/{team_id}/deep-research/")

    async def get_deep_research_status(self, team_id: int) -> dict[str, Any]:
        return await self.get(f"/validation/teams/{team_id}/deep-research/status/") or {}

    async def get_deep_research_report(self, team_id: int) -> dict[str, Any] | None:
        body = await self.get(f"/validation/teams/{team_id}/deep-research/")
        report = body.get("report") if isinstance(body, dict) else None
        return report if isinstance(report, dict) else None

    # -- Interview kit ------------------------------------------------------

    async def get_interview_kit(self, team_id: int) -> dict[str, Any]:
        body = unwrap_data(await self.get(f"/validation/teams/{team_id}/user-personas/"))
        return body if isinstance(body, dict) else {}

    # -- Focus-group guide --------------------------------------------------

    async def get_focus_group_guide(self, team_id: int) -> dict[str, Any]:
        body = unwrap_data(await self.get(f"/validation/teams/{team_id}/focus-group/"))
        return body if isinstance(body, dict) else {}

    async def generate_focus_group_guide(
        self, team_id: int, context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Ask the backend to write a guide; returns it when the response carries one."""
        body = unwrap_data(await self.post(
            f"/validation/teams/{team_id}/focus-group/generate/", context or {},
        ))
        guide = body.get("focus_group") if isinstance(body, dict) else None
        return guide if isinstance(guide, dict) else {}

    # -- Scores -------------------------------------------------------------

    async def compute_secondary_score(self, team_id: int) -> Any:
        return await self.post(f"/validation/teams/{team_id}/secondary-score/")

    async def get_secondary_score(self, team_id: int) -> dict[str, Any]:
        return _score_of(await self.get(f"/validation/teams/{team_id}/secondary-score/"))

    async def get_qualitative_score(self, team_id: int, interview_id: int | None = None) -> dict[str, Any]:
        return _score_of(await self.get(
            f"/validation/teams/{team_id}/qualitative-score/", interview_id=interview_id,
        ))

    async def get_quantitative_score(self, team_id: int) -> dict[str, Any]:
        return _score_of(await self.get(f"/validation/teams/{team_id}/quantitative-score/"))

    async def compute_quantitative_score(
        self, team_id: int, survey_insights: dict[str, str], response_volume: int,
    ) -> dict[str, Any]:
        body = await self.post(
            f"/validation/teams/{team_id}/compute-quantitative-score/",
            {"survey_insights": survey_insights, "response_volume": response_volume},
        )
        return _score_of(body)

    # -- Insights -----------------------------------------------------------

    async def list_insights(
        self, team_id: int, channel: InsightChannel, interview_id: int | None = None,
    ) -> list[Insight]:
        body = await self.get(
            f"/validation/teams/{team_id}/{_INSIGHT_PATHS[channel]}/", interview_id=interview_id,
        )
        body = unwrap_data(body)
        if not isinstance(body, list):
            return []
        out: list[Insight] = []
        for item in body:
            if isinstance(item, dict) and item.get("section") and item.get("question"):
                out.append(Insight(
                    section=str(item["section"]),
                    question=str(item["question"]),
                    insight=str(item.get("insight") or ""),
                ))
        return out

    async def save_insights(
        self,
        team_id: int,
        channel: InsightChannel,
        insights: list[Insight],
        interview_id: int | None = None,
    ) -> Any:
        return await self.post(
            f"/validation/teams/{team_id}/{_INSIGHT_PATHS[channel]}/",
            [i.model_dump() for i in insights],
            interview_id=interview_id,
        )

    # -- Evidence -----------------------------------------------------------

    async def get_evidence(self, team_id: int) -> dict[str, Any]:
        body = unwrap_data(await self.get(f"/validation/teams/{team_id}/evidence/"))
        return body if isinstance(body, dict) else {}

    async def submit_evidence(self, team_id: int, evidence_type: EvidenceType, link: str) -> Any:
        return await self.post(
            f"/validation/teams/{team_id}/evidence/",
            {"type": evidence_type.value, "link": link},
        )

    # -- Survey -------------------------------------------------------------

    async def generate_survey(self, team_id: int) -> Any:
        return await self.post(f"/validation/teams/{team_id}/generate-ai-survey/")

    async def get_survey(self, team_id: int) -> list[dict[str, Any]]:
        body = await self.get(f"/validation/teams/{team_id}/ai-survey/")
        while isinstance(body, dict) and "questions" not in body and isinstance(body.get("data"), dict):
            body = body["data"]
        questions = body.get("questions") if isinstance(body, dict) else None
        return [q for q in questions if isinstance(q, dict)] if isinstance(questions, list) else []

    # -- Roadmap ------------------------------------------------------------

    async def get_roadmap(self, team_id: int) -> dict[str, Any]:
        body = await self.get(f"/ideation/teams/{team_id}/roadmap-completion/")
        return body if isinstance(body, dict) else {}

    async def mark_validation_completed(self, team_id: int, **flags: bool) -> Any:
        """PUT a partial patch, e.g. ``{"validation": {"secondary": true}}``."""
        return await self.put(f"/ideation/teams/{team_id}/roadmap-completion/", {"validation": flags})


def _score_of(body: Any) -> dict[str, Any]:
    """Pull ``score`` out of ``{score: ...}`` or ``{data: {score: ...}}``."""
    for candidate in (body, body.get("data") if isinstance(body, dict) else None):
        if isinstance(candidate, dict) and isinstance(candidate.get("score"), dict):
            return candidate["score"]
    return {}
