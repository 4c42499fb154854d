from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Iterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from validation_engine import services
from validation_engine.client import ClientError, JobFailedError, ValidationError
from validation_engine.config import configure_logging
from validation_engine.models import InsightChannel, JobStatus, ValidationTier
from validation_engine.progress import TierLockedError
from validation_engine.schemas import (
    EvidenceOut,
    FocusGroupKitOut,
    InsightBatchIn,
    InsightBatchOut,
    InterviewKitOut,
    QualitativeEvidenceIn,
    QuantitativeIn,
    SubTierCompleteOut,
    SummaryOut,
    SurveyQuestionOut,
    ValidationScoreOut,
    WorkflowOut,
)
from validation_engine.services import WorkflowRegistry
from validation_engine.workflow import ActionInProgressError, ValidationIncompleteError, ValidationWorkflow

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.registry = WorkflowRegistry()
    try:
        yield
    finally:
        await app.state.registry.aclose()


app = FastAPI(
    title="Validation Engine",
    version="0.1.0",
    description=(
        "Drives a team's three-tier startup validation: secondary research, "
        "qualitative testing and quantitative testing. Scores come from the "
        "validation backend; this service polls, gates and aggregates them."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Workflow", "description": "Per-team validation state and final summary."},
        {"name": "Secondary", "description": "Deep-research job start, progress stream and cancel."},
        {"name": "Qualitative", "description": "Evidence links, interview and focus-group kits, insight drafts."},
        {"name": "Quantitative", "description": "Survey assembly and quantitative scoring."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_registry(request: Request) -> WorkflowRegistry:
    return request.app.state.registry


async def _workflow(team_id: int, registry: WorkflowRegistry, *, enter: bool = False) -> ValidationWorkflow:
    with _translate_errors():
        return await registry.get(team_id, enter=enter)


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map workflow and client errors onto HTTP status codes."""
    try:
        yield
    except (ActionInProgressError, TierLockedError, ValidationIncompleteError) as exc:
        raise HTTPException(409, str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(400, str(exc)) from exc
    except ClientError as exc:
        log.warning("Backend call failed: %s", exc)
        raise HTTPException(502, str(exc)) from exc


def _event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _secondary_stream(wf: ValidationWorkflow, resume: bool):
    """SSE wrapper around a deep-research run: one event per poll, then a final one."""
    async def stream():
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        async def on_poll(status: JobStatus | None, polls: int) -> None:
            await queue.put({"type": "progress", "poll": polls, "status": status.value if status else None})

        detached = False

        def on_done(finished: asyncio.Task) -> None:
            queue.put_nowait(None)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None and detached:
                log.warning("Secondary research for team %s failed after the stream closed: %s",
                            wf.team_id, exc)

        runner = wf.resume_secondary if resume else wf.run_secondary
        task = asyncio.create_task(runner(on_poll))
        task.add_done_callback(on_done)
        try:
            yield _event({"type": "started", "team_id": wf.team_id, "resume": resume})
            while (item := await queue.get()) is not None:
                yield _event(item)
            try:
                score = task.result()
            except JobFailedError as exc:
                yield _event({"type": "failed", "error": str(exc)})
                return
            except (ActionInProgressError, ClientError) as exc:
                log.warning("Secondary research for team %s failed: %s", wf.team_id, exc)
                yield _event({"type": "error", "error": str(exc)})
                return
            if score is None:
                yield _event({"type": "stopped", "overall_score": wf.overall_score()})
            else:
                yield _event({
                    "type": "complete",
                    "score": score.model_dump(mode="json"),
                    "overall_score": wf.overall_score(),
                })
        finally:
            if not task.done():
                # client went away mid-poll
                detached = True
                wf.cancel()

    return StreamingResponse(stream(), media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Routes: Workflow
# ---------------------------------------------------------------------------


@app.get("/api/teams/{team_id}/validation", response_model=WorkflowOut,
         tags=["Workflow"], summary="Current tier states, scores and evidence for a team")
async def get_validation(team_id: int, registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry, enter=True)
    return services.workflow_overview(wf)


@app.post("/api/teams/{team_id}/validation/finish", response_model=SummaryOut,
          tags=["Workflow"], summary="Finalize validation and return the overall verdict")
async def finish_validation(team_id: int, registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    with _translate_errors():
        summary = wf.finish()
    return summary.model_dump(mode="json")


@app.delete("/api/teams/{team_id}/validation", tags=["Workflow"],
            summary="Drop the in-memory workflow, flushing unsaved drafts")
async def drop_validation(team_id: int, registry: WorkflowRegistry = Depends(get_registry)):
    if not await registry.drop(team_id):
        raise HTTPException(404, "No active validation workflow for team")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Secondary
# ---------------------------------------------------------------------------


@app.post("/api/teams/{team_id}/validation/secondary", tags=["Secondary"],
          summary="Run (or resume) deep research with an SSE progress stream")
async def run_secondary(team_id: int, resume: bool = Query(False),
                        registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    if wf.is_busy("secondary"):
        raise HTTPException(409, "Deep research is already running")
    return _secondary_stream(wf, resume)


@app.post("/api/teams/{team_id}/validation/secondary/cancel", tags=["Secondary"],
          summary="Stop polling deep research before the next status check")
async def cancel_secondary(team_id: int, registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    wf.cancel()
    return {"ok": True, "running": wf.is_busy("secondary")}


# ---------------------------------------------------------------------------
# Routes: Qualitative
# ---------------------------------------------------------------------------


@app.post("/api/teams/{team_id}/validation/qualitative/evidence", response_model=EvidenceOut,
          tags=["Qualitative"], summary="Save interview, focus-group and transcript links")
async def submit_qualitative_evidence(team_id: int, body: QualitativeEvidenceIn,
                                      registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    with _translate_errors():
        links = await wf.submit_qualitative_evidence(
            interview=body.interview, focus_group=body.focus_group, transcript=body.transcript,
        )
    return links.model_dump()


@app.post("/api/teams/{team_id}/validation/qualitative/{sub_tier}/complete",
          response_model=SubTierCompleteOut, tags=["Qualitative"],
          summary="Mark the interview kit or focus-group kit as done")
async def complete_sub_tier(team_id: int, sub_tier: str,
                            registry: WorkflowRegistry = Depends(get_registry)):
    try:
        tier = ValidationTier(sub_tier)
    except ValueError:
        raise HTTPException(404, f"Unknown qualitative sub-tier '{sub_tier}'") from None
    if tier not in (ValidationTier.INTERVIEWS, ValidationTier.FOCUS_GROUPS):
        raise HTTPException(404, f"Unknown qualitative sub-tier '{sub_tier}'")
    wf = await _workflow(team_id, registry)
    with _translate_errors():
        await wf.complete_sub_tier(tier)
    return {
        "sub_tier": tier.value,
        "qualitative_complete": wf.progress.is_complete(ValidationTier.QUALITATIVE),
        "qualitative_score": services.tier_score_out(wf, ValidationTier.QUALITATIVE),
    }


@app.get("/api/teams/{team_id}/validation/interview-kit", response_model=InterviewKitOut,
         tags=["Qualitative"], summary="Load the interview kit questions and saved answers")
async def get_interview_kit(team_id: int, interview_id: int | None = Query(None),
                            registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    buffer = wf.interview_insights
    with _translate_errors():
        if interview_id != buffer.interview_id:
            await wf.select_interview(interview_id)
        await wf.load_interview_kit()
    return {
        "interview_id": buffer.interview_id,
        "questions": [q.model_dump() for q in buffer.questions],
        "drafts": buffer.drafts,
    }


@app.get("/api/teams/{team_id}/validation/focus-group-kit", response_model=FocusGroupKitOut,
         tags=["Qualitative"], summary="Load (or generate) the focus-group guide and saved answers")
async def get_focus_group_kit(team_id: int, registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    with _translate_errors():
        await wf.load_focus_group_kit()
    buffer = wf.focus_group_insights
    guide = wf.focus_group_guide
    return {
        "questions": [q.model_dump() for q in buffer.questions],
        "drafts": buffer.drafts,
        "moderator_strategy": guide.get("moderator_strategy"),
        "target_participant_count": guide.get("target_participant_count"),
        "session_duration": guide.get("session_duration"),
    }


@app.put("/api/teams/{team_id}/validation/insights/{channel}", response_model=InsightBatchOut,
         tags=["Qualitative"], summary="Record insight drafts (autosaved after a pause)")
async def put_insights(team_id: int, channel: str, body: InsightBatchIn,
                       flush: bool = Query(False),
                       registry: WorkflowRegistry = Depends(get_registry)):
    try:
        insight_channel = InsightChannel(channel)
    except ValueError:
        raise HTTPException(404, f"Unknown insight channel '{channel}'") from None
    wf = await _workflow(team_id, registry)
    buffer = wf.buffer_for(insight_channel)
    saved = 0
    with _translate_errors():
        if insight_channel is InsightChannel.INTERVIEW and body.interview_id != buffer.interview_id:
            await wf.select_interview(body.interview_id)
        for item in body.insights:
            wf.draft_answer(insight_channel, item.section, item.question, item.insight)
        if flush:
            saved = await buffer.flush()
    return {"channel": insight_channel.value, "saved": saved}


# ---------------------------------------------------------------------------
# Routes: Quantitative
# ---------------------------------------------------------------------------


@app.post("/api/teams/{team_id}/validation/survey", response_model=list[SurveyQuestionOut],
          tags=["Quantitative"], summary="Generate and fetch the survey question set")
async def assemble_survey(team_id: int, registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    with _translate_errors():
        questions = await wf.assemble_survey()
    return [q.model_dump() for q in questions]


@app.post("/api/teams/{team_id}/validation/quantitative", response_model=ValidationScoreOut,
          tags=["Quantitative"], summary="Submit survey results and compute the quantitative score")
async def submit_quantitative(team_id: int, body: QuantitativeIn,
                              registry: WorkflowRegistry = Depends(get_registry)):
    wf = await _workflow(team_id, registry)
    with _translate_errors():
        score = await wf.submit_quantitative(
            form_link=body.form_link,
            response_volume=body.response_volume,
            survey_insights=body.survey_insights,
        )
    return score.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("validation_engine.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()
