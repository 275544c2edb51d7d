"""Run control and activity routes.

POST /runs starts a run; pause, resume and stop act on an existing run.
GET /runs/{run_id}/events streams the run's activity as SSE: stored entries
are replayed by sequence first, then (with ``follow=true``) live events are
forwarded until the run stops executing.  Clients reconnect with
``after_sequence`` set to the last sequence they saw.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from itemresearch.activity.activity_log import entry_to_dict, get_item_activity, get_run_activity
from itemresearch.activity.events import CHANNEL_ACTIVITY, CHANNEL_STATUS
from itemresearch.api.deps import get_controller, get_db, get_runtime
from itemresearch.core.constants import RUN_PENDING, RUN_RUNNING, RUN_TYPE_MANUAL
from itemresearch.core.errors import RunNotFound
from itemresearch.db.models import ResearchRun
from itemresearch.runs.controller import RunController, RunSnapshot
from itemresearch.runs.runtime import ResearchRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])

KEEPALIVE_S = 15.0
REPLAY_LIMIT = 5000


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class StartRunBody(BaseModel):
    item_id: str = Field(min_length=1)
    run_type: str = RUN_TYPE_MANUAL
    mode: str = "balanced"
    organization_id: str | None = None
    completion_threshold: float | None = Field(default=None, ge=0, le=1)


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------

@router.post("/runs", status_code=201, summary="Start a research run", response_model=RunSnapshot)
def start_run(body: StartRunBody, controller: RunController = Depends(get_controller)):
    return controller.start(
        body.item_id,
        run_type=body.run_type,
        mode=body.mode,
        organization_id=body.organization_id,
        completion_threshold=body.completion_threshold,
    )


@router.get("/runs/{run_id}", summary="Run status", response_model=RunSnapshot)
def get_run(run_id: UUID, controller: RunController = Depends(get_controller)):
    return controller.get_status(run_id)


@router.post("/runs/{run_id}/pause", summary="Pause at the next node boundary", response_model=RunSnapshot)
def pause_run(run_id: UUID, controller: RunController = Depends(get_controller)):
    return controller.request_pause(run_id)


@router.post("/runs/{run_id}/resume", summary="Resume from the last checkpoint", response_model=RunSnapshot)
def resume_run(run_id: UUID, controller: RunController = Depends(get_controller)):
    return controller.resume(run_id)


@router.post("/runs/{run_id}/stop", summary="Cancel a run", response_model=RunSnapshot)
def stop_run(run_id: UUID, controller: RunController = Depends(get_controller)):
    return controller.stop(run_id)


@router.get("/items/{item_id}/runs", summary="Runs for an item, newest first", response_model=list[RunSnapshot])
def list_item_runs(
    item_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    controller: RunController = Depends(get_controller),
):
    return controller.list_item_runs(item_id, limit=limit)


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------

@router.get("/runs/{run_id}/activity", summary="Activity entries for a run")
def run_activity(
    run_id: UUID,
    after_sequence: int | None = Query(default=None, ge=0),
    limit: int = Query(default=500, ge=1, le=REPLAY_LIMIT),
    db: Session = Depends(get_db),
):
    if db.get(ResearchRun, run_id) is None:
        raise RunNotFound(run_id)
    entries = [entry_to_dict(e) for e in get_run_activity(db, run_id, after_sequence=after_sequence, limit=limit)]
    return {
        "run_id": str(run_id),
        "entries": entries,
        "last_sequence": entries[-1]["sequence"] if entries else after_sequence,
    }


@router.get("/items/{item_id}/activity", summary="Activity entries for an item across its runs")
def item_activity(
    item_id: str,
    since: datetime | None = None,
    limit: int = Query(default=500, ge=1, le=REPLAY_LIMIT),
    db: Session = Depends(get_db),
):
    entries = get_item_activity(db, item_id, since=since, limit=limit)
    return {"item_id": item_id, "entries": [entry_to_dict(e) for e in entries]}


def _sse(data: dict, event: str | None = None) -> str:
    """Format a dict as an SSE message."""
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, default=str)}\n\n"


def _event_stream(
    runtime: ResearchRuntime,
    run_id: UUID,
    after_sequence: int,
    follow: bool,
    keepalive_s: float = KEEPALIVE_S,
) -> Iterator[str]:
    # Subscribe before replaying so nothing committed in between is missed.
    subscription = runtime.broadcaster.subscribe(run_id=run_id) if follow else None
    try:
        db = runtime.session_factory()
        try:
            run = db.get(ResearchRun, run_id)
            status = run.status if run is not None else None
            replay = [entry_to_dict(e) for e in get_run_activity(db, run_id, after_sequence, limit=REPLAY_LIMIT)]
        finally:
            db.close()

        last_sequence = after_sequence
        for payload in replay:
            last_sequence = payload["sequence"]
            yield _sse(payload, CHANNEL_ACTIVITY)
        yield _sse({"run_id": str(run_id), "status": status}, CHANNEL_STATUS)

        if subscription is None or status not in (RUN_PENDING, RUN_RUNNING):
            return
        while True:
            event = subscription.get(timeout=keepalive_s)
            if event is None:
                yield ": keepalive\n\n"
                continue
            if event.channel == CHANNEL_ACTIVITY:
                sequence = event.payload.get("sequence")
                if sequence is not None and sequence <= last_sequence:
                    continue
                if sequence is not None:
                    last_sequence = sequence
            yield _sse(event.to_dict(), event.channel)
            if event.channel == CHANNEL_STATUS and event.payload.get("status") not in (RUN_PENDING, RUN_RUNNING):
                return
    finally:
        if subscription is not None:
            subscription.close()


@router.get("/runs/{run_id}/events", summary="Stream run activity (SSE)")
def run_events(
    run_id: UUID,
    after_sequence: int = Query(default=0, ge=0),
    follow: bool = False,
    runtime: ResearchRuntime = Depends(get_runtime),
):
    runtime.controller.get_status(run_id)
    return StreamingResponse(
        _event_stream(runtime, run_id, after_sequence, follow),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
