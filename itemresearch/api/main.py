"""FastAPI application factory.

Assembles CORS, the error mapping and all API routers, and runs the
recovery sweep in the background for the lifetime of the process.
This module is the authoritative app object; itemresearch/main.py re-exports it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from itemresearch.api.deps import get_runtime, set_runtime
from itemresearch.api.routes.health import router as health_router
from itemresearch.api.routes.learning import router as learning_router
from itemresearch.api.routes.runs import router as runs_router
from itemresearch.core.errors import InvalidState, ResearchError, RetryBudgetExceeded
from itemresearch.core.logging import setup_logging
from itemresearch.core.settings import get_settings
from itemresearch.runs.runtime import ResearchRuntime

logger = logging.getLogger(__name__)


async def _recovery_loop(runtime: ResearchRuntime) -> None:
    """Re-dispatch abandoned runs at startup and then periodically."""
    while True:
        try:
            await asyncio.to_thread(runtime.sweeper.sweep)
        except SQLAlchemyError:
            logger.exception("Recovery sweep failed; retrying in %ss", runtime.settings.recovery_interval_s)
        await asyncio.sleep(runtime.settings.recovery_interval_s)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    runtime = get_runtime()
    task = asyncio.create_task(_recovery_loop(runtime))
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    runtime.shutdown(wait=False)
    set_runtime(None)


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS: restrict origins in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ResearchError)
async def research_error_handler(_: Request, exc: ResearchError) -> JSONResponse:
    body: dict = {"error": exc.error_code, "detail": str(exc)}
    if isinstance(exc, InvalidState) and exc.current_status is not None:
        body["current_status"] = exc.current_status
    if isinstance(exc, RetryBudgetExceeded):
        body["step_count"] = exc.step_count
        body["budget"] = exc.budget
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc)
    return JSONResponse(status_code=exc.status_code, content=body)


app.include_router(health_router)
app.include_router(runs_router)
app.include_router(learning_router)
