"""Shared fixtures: an in-memory fake of the validation backend behind httpx.MockTransport."""
from __future__ import annotations

import json
import re
from typing import Any

import httpx
import pytest

from validation_engine.client import ValidationAPI
from validation_engine.config import Settings

_PATH_RE = re.compile(r"^/api/(?:validation|ideation)/teams/(\d+)/(.+?)/?$")

_SCORE_PATHS = {
    "secondary-score": "secondary",
    "qualitative-score": "qualitative",
    "quantitative-score": "quantitative",
}


class FakeBackend:
    """Minimal stateful stand-in for the validation + roadmap endpoints."""

    def __init__(self):
        self.roadmap: dict[str, bool] = {"secondary": False, "qualitative": False, "quantitative": False}
        self.statuses: list[Any] = [{"status": "completed"}]
        self.report: dict[str, Any] | None = {
            "market_insights": ["Demand is real"],
            "competitive_analysis": [{"competitor": "Acme"}],
            "tam": "$1B",
            "personas": [{"name": "Founder"}],
        }
        self.scores: dict[str, dict[str, Any]] = {}
        self.score_on_compute: dict[str, dict[str, Any]] = {
            "secondary": {"final_score_20": 16},
            "quantitative": {"final_score_50": 50},
        }
        self.qualitative_score: dict[str, Any] = {"final_score_10": 6}
        self.evidence: dict[str, Any] = {}
        self.insights: dict[str, list[dict[str, Any]]] = {"qual-insights": [], "focus-group-insights": []}
        self.kit: dict[str, Any] = {
            "pain_point_questions": ["What is hardest today?", "What have you tried?"],
            "solution_questions": ["Would you pay for this?"],
        }
        self.focus_group_guide: dict[str, Any] | None = None
        self.generated_guide: dict[str, Any] = {
            "warmup_prompts": ["How do you run a team offsite?"],
            "key_discussion_prompts": ["What slows your team down?", "Who signs off on new tools?"],
            "moderator_strategy": "Keep it loose",
        }
        self.survey = [
            {"id": "q1", "type": "scale", "text": "How likely?", "options": ["1", "5"], "required": True},
            {"text": "Anything else?"},
        ]
        self.fail_roadmap_put = False
        self.failures: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.puts: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        m = _PATH_RE.match(request.url.path)
        if not m:
            return httpx.Response(404, json={"detail": "unknown path"})
        route = m.group(2)
        method = request.method
        self.calls.append((method, route))
        if route in self.failures:
            return httpx.Response(self.failures[route], json={"error": f"{route} unavailable"})
        body = json.loads(request.content) if request.content else None

        if route == "roadmap-completion":
            if method == "PUT":
                if self.fail_roadmap_put:
                    return httpx.Response(500, json={"error": "roadmap unavailable"})
                self.puts.append(body)
                self.roadmap.update(body.get("validation", {}))
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(200, json={"data": {"validation": dict(self.roadmap)}})

        if route == "deep-research" and method == "POST":
            return httpx.Response(202, json={"status": "pending"})
        if route == "deep-research/status":
            item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            if isinstance(item, int):
                return httpx.Response(item, json={"detail": "error"})
            return httpx.Response(200, json=item)
        if route == "deep-research":
            if self.report is None:
                return httpx.Response(404, json={"error": "Report not found"})
            return httpx.Response(200, json={"report": self.report})

        if route == "secondary-score" and method == "POST":
            self.scores["secondary"] = self.score_on_compute["secondary"]
            return httpx.Response(200, json={"ok": True})
        if route in _SCORE_PATHS:
            tier = _SCORE_PATHS[route]
            if tier == "qualitative" and self.roadmap["qualitative"]:
                self.scores.setdefault("qualitative", self.qualitative_score)
            if tier not in self.scores:
                return httpx.Response(404, json={"detail": "No score yet"})
            return httpx.Response(200, json={"score": self.scores[tier]})
        if route == "compute-quantitative-score":
            self.scores["quantitative"] = self.score_on_compute["quantitative"]
            return httpx.Response(200, json={"score": self.scores["quantitative"]})

        if route == "evidence":
            if method == "POST":
                field = body["type"] if body["type"] == "response_volume" else f"{body['type']}_link"
                self.evidence[field] = body["link"]
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(200, json={"data": self.evidence})

        if route in self.insights:
            if method == "POST":
                self.insights[route] = body
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(200, json={"data": self.insights[route]})

        if route == "user-personas":
            return httpx.Response(200, json={"data": self.kit})
        if route == "focus-group" and method == "GET":
            if self.focus_group_guide is None:
                return httpx.Response(404, json={"error": "Focus group not found"})
            return httpx.Response(200, json={"success": True, "data": self.focus_group_guide})
        if route == "focus-group/generate":
            self.focus_group_guide = dict(self.generated_guide)
            return httpx.Response(200, json={"success": True, "data": {"focus_group": self.focus_group_guide}})
        if route == "generate-ai-survey":
            return httpx.Response(200, json={"ok": True})
        if route == "ai-survey":
            return httpx.Response(200, json={"questions": self.survey})
        return httpx.Response(404, json={"detail": f"unhandled {method} {route}"})


class FakeSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def settings():
    return Settings(
        api_base_url="http://backend.test/api",
        api_token="t0ken",
        poll_interval_seconds=5,
        rate_limit_interval_seconds=30,
        poll_timeout_seconds=900,
        debounce_seconds=0.05,
    )


@pytest.fixture()
def backend():
    return FakeBackend()


@pytest.fixture()
def api(backend, settings):
    return ValidationAPI(settings=settings, transport=httpx.MockTransport(backend))


@pytest.fixture()
def fake_sleep():
    return FakeSleep()
