"""GET /health: liveness check."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from itemresearch.api.deps import get_runtime
from itemresearch.runs.runtime import ResearchRuntime

router = APIRouter(tags=["health"])


@router.get("/health", summary="Basic health check")
def health_check(runtime: ResearchRuntime = Depends(get_runtime)) -> dict[str, str | int]:
    settings = runtime.settings
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
        "pipeline_version": runtime.graph.version,
        "runs_in_flight": len(runtime.pool.in_flight()),
    }
