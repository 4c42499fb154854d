"""Integration tests for the FastAPI surface.

Uses TestClient with the registry dependency pointed at the fake backend.
"""
from __future__ import annotations

import asyncio
import json
import logging

import pytest
from fastapi.testclient import TestClient

from validation_engine.app import _secondary_stream
from validation_engine.client import HTTPError
from validation_engine.services import WorkflowRegistry
from validation_engine.workflow import ValidationWorkflow


@pytest.fixture()
def client(api, settings):
    from validation_engine.app import app, get_registry

    fast = settings.model_copy(update={
        "poll_interval_seconds": 0.01,
        "rate_limit_interval_seconds": 0.01,
        "poll_timeout_seconds": 0.1,
    })
    registry = WorkflowRegistry(api, fast)
    app.dependency_overrides[get_registry] = lambda: registry
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, registry
    app.dependency_overrides.clear()


def _events(resp) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]


def _run_secondary(c, team_id: int = 1) -> list[dict]:
    resp = c.post(f"/api/teams/{team_id}/validation/secondary")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    return _events(resp)


class TestOverview:
    def test_fresh_team(self, client):
        c, registry = client
        resp = c.get("/api/teams/1/validation")
        assert resp.status_code == 200
        data = resp.json()
        assert data["overall_score"] == 0
        assert data["overall_status"] == "bad"
        assert data["tiers"]["secondary"] == "unlocked"
        assert data["tiers"]["quantitative"] == "locked"
        assert data["validation_complete"] is False
        assert 1 in registry

    def test_each_view_picks_up_server_roadmap(self, client, backend):
        c, _ = client
        c.get("/api/teams/1/validation")
        assert backend.calls.count(("GET", "roadmap-completion")) == 1
        backend.roadmap["secondary"] = True
        backend.scores["secondary"] = {"final_score_20": 20}
        data = c.get("/api/teams/1/validation").json()
        assert backend.calls.count(("GET", "roadmap-completion")) == 2
        assert data["tiers"]["secondary"] == "complete"
        assert data["scores"]["secondary"]["score"] == 100
        assert data["overall_score"] == 20

    def test_server_reset_shows_on_next_view(self, client, backend):
        c, _ = client
        backend.roadmap["secondary"] = True
        backend.scores["secondary"] = {"final_score_20": 20}
        assert c.get("/api/teams/1/validation").json()["tiers"]["secondary"] == "complete"
        backend.roadmap["secondary"] = False
        backend.scores.clear()
        data = c.get("/api/teams/1/validation").json()
        assert data["tiers"]["secondary"] == "unlocked"
        assert data["tiers"]["interviews"] == "locked"
        assert data["scores"] == {}
        assert data["overall_score"] == 0

    def test_drop_workflow(self, client):
        c, registry = client
        c.get("/api/teams/4/validation")
        assert c.delete("/api/teams/4/validation").json() == {"ok": True}
        assert 4 not in registry
        assert c.delete("/api/teams/4/validation").status_code == 404


class TestSecondaryStream:
    def test_stream_progress_then_complete(self, client, backend):
        c, _ = client
        backend.statuses = [{"status": "pending"}, {"status": "completed"}]
        events = _run_secondary(c)
        assert [e["type"] for e in events] == ["started", "progress", "progress", "complete"]
        assert events[1]["status"] == "pending"
        assert events[-1]["score"]["score"] == 80
        assert events[-1]["overall_score"] == 16

    def test_stream_reports_failure(self, client, backend):
        c, _ = client
        backend.statuses = [{"status": "failed", "error_message": "no credits"}]
        events = _run_secondary(c)
        assert events[-1] == {"type": "failed", "error": "no credits"}

    def test_stream_timeout_stops(self, client, backend):
        c, _ = client
        backend.statuses = [{"status": "pending"}]
        events = _run_secondary(c)
        assert events[-1]["type"] == "stopped"

    def test_cancel_when_idle(self, client):
        c, _ = client
        resp = c.post("/api/teams/1/validation/secondary/cancel")
        assert resp.json() == {"ok": True, "running": False}

    @pytest.mark.asyncio
    async def test_failure_after_disconnect_is_logged(self, api, settings, caplog):
        gate = asyncio.Event()

        async def start_then_fail(team_id):
            await gate.wait()
            raise HTTPError("deep research unavailable", 503)

        api.start_deep_research = start_then_fail
        wf = ValidationWorkflow(api, 1, settings=settings)
        body = _secondary_stream(wf, False).body_iterator
        assert '"started"' in await body.__anext__()
        await asyncio.sleep(0)
        await body.aclose()
        assert wf.abort.is_set()
        with caplog.at_level(logging.WARNING, logger="validation_engine.app"):
            gate.set()
            await asyncio.sleep(0.01)
        assert not wf.is_busy()
        assert "failed after the stream closed: deep research unavailable" in caplog.text


class TestQualitativeRoutes:
    def test_evidence_locked_is_conflict(self, client):
        c, _ = client
        resp = c.post("/api/teams/1/validation/qualitative/evidence", json={"interview": "https://x"})
        assert resp.status_code == 409

    def test_evidence_empty_is_bad_request(self, client):
        c, _ = client
        _run_secondary(c)
        resp = c.post("/api/teams/1/validation/qualitative/evidence", json={})
        assert resp.status_code == 400

    def test_sub_tier_join(self, client):
        c, _ = client
        _run_secondary(c)
        first = c.post("/api/teams/1/validation/qualitative/interviews/complete").json()
        assert first["qualitative_complete"] is False
        assert first["qualitative_score"] is None
        second = c.post("/api/teams/1/validation/qualitative/focus-groups/complete").json()
        assert second["qualitative_complete"] is True
        assert second["qualitative_score"]["score"] == 18

    def test_unknown_sub_tier(self, client):
        c, _ = client
        assert c.post("/api/teams/1/validation/qualitative/surveys/complete").status_code == 404
        assert c.post("/api/teams/1/validation/qualitative/secondary/complete").status_code == 404

    def test_insights_flush(self, client, backend):
        c, _ = client
        kit = c.get("/api/teams/1/validation/interview-kit").json()
        assert len(kit["questions"]) == 3
        resp = c.put(
            "/api/teams/1/validation/insights/interview",
            params={"flush": True},
            json={"insights": [{"section": "pain_point", "question": "What is hardest today?", "insight": "Tax"}]},
        )
        assert resp.json() == {"channel": "interview", "saved": 1}
        assert backend.insights["qual-insights"][0]["insight"] == "Tax"

    def test_focus_group_kit_generated_once(self, client, backend):
        c, _ = client
        backend.insights["focus-group-insights"] = [
            {"section": "warmup", "question": "How do you run a team offsite?", "insight": "Quarterly"},
        ]
        kit = c.get("/api/teams/1/validation/focus-group-kit").json()
        assert [q["section"] for q in kit["questions"]] == ["warmup", "key_discussion", "key_discussion"]
        assert list(kit["drafts"].values()) == ["Quarterly"]
        assert kit["moderator_strategy"] == "Keep it loose"
        c.get("/api/teams/1/validation/focus-group-kit")
        assert backend.calls.count(("POST", "focus-group/generate")) == 1

    def test_focus_group_kit_backend_error(self, client, backend):
        c, _ = client
        backend.failures["focus-group/generate"] = 503
        resp = c.get("/api/teams/1/validation/focus-group-kit")
        assert resp.status_code == 502

    def test_insights_blank_question_rejected(self, client):
        c, _ = client
        resp = c.put(
            "/api/teams/1/validation/insights/focus_group",
            json={"insights": [{"section": "market", "question": "  ", "insight": "x"}]},
        )
        assert resp.status_code == 422

    def test_unknown_channel(self, client):
        c, _ = client
        assert c.put("/api/teams/1/validation/insights/email", json={"insights": []}).status_code == 404


class TestQuantitativeAndFinish:
    def test_full_run(self, client):
        c, _ = client
        _run_secondary(c)
        c.post("/api/teams/1/validation/qualitative/interviews/complete")
        c.post("/api/teams/1/validation/qualitative/focus-groups/complete")
        survey = c.post("/api/teams/1/validation/survey").json()
        assert [q["id"] for q in survey] == ["q1", "q2"]
        score = c.post("/api/teams/1/validation/quantitative",
                       json={"form_link": "https://forms/x", "response_volume": 40}).json()
        assert score["score"] == 100
        summary = c.post("/api/teams/1/validation/finish").json()
        assert summary["overall_score"] == 84
        assert summary["status"] == "good"
        assert summary["recommendation"] == "proceed"

    def test_finish_incomplete_is_conflict(self, client):
        c, _ = client
        assert c.post("/api/teams/1/validation/finish").status_code == 409

    def test_survey_locked(self, client):
        c, _ = client
        assert c.post("/api/teams/1/validation/survey").status_code == 409

    def test_backend_error_is_bad_gateway(self, client, backend):
        c, _ = client
        _run_secondary(c)
        c.post("/api/teams/1/validation/qualitative/interviews/complete")
        c.post("/api/teams/1/validation/qualitative/focus-groups/complete")
        backend.failures["generate-ai-survey"] = 503
        resp = c.post("/api/teams/1/validation/survey")
        assert resp.status_code == 502
        assert "generate-ai-survey unavailable" in resp.json()["detail"]
        backend.failures.clear()
        assert c.post("/api/teams/1/validation/survey").status_code == 200

    @pytest.mark.parametrize("action,path,payload,route", [
        ("survey", "survey", None, "generate-ai-survey"),
        ("quantitative", "quantitative", {"response_volume": 40}, "compute-quantitative-score"),
    ])
    def test_submit_while_running_is_conflict(self, client, backend, action, path, payload, route):
        c, registry = client
        _run_secondary(c)
        c.post("/api/teams/1/validation/qualitative/interviews/complete")
        c.post("/api/teams/1/validation/qualitative/focus-groups/complete")
        registry._workflows[1]._in_flight.add(action)
        assert c.get("/api/teams/1/validation").json()["busy"] is True
        resp = c.post(f"/api/teams/1/validation/{path}", json=payload)
        assert resp.status_code == 409
        assert "already in progress" in resp.json()["detail"]
        assert ("POST", route) not in backend.calls
