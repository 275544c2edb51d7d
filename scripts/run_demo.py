#!/usr/bin/env python3
"""Run one item through the research graph with canned in-process tools.

Usage:
    python scripts/run_demo.py                      # SQLite file ./demo.db
    DATABASE_URL=... python scripts/run_demo.py
"""
from __future__ import annotations

import os
import sys
import time

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from itemresearch.core.constants import RUN_PENDING, RUN_RUNNING, RUN_SUCCESS
from itemresearch.core.logging import setup_logging
from itemresearch.core.settings import get_settings
from itemresearch.db.base import Base
from itemresearch.db.repositories import ResearchOutcomeRepository
from itemresearch.db.session import get_engine, get_session_factory, session_scope
from itemresearch.learning.anomaly import AnomalyDetector
from itemresearch.learning.outcomes import OutcomeService
from itemresearch.pipeline.tools import ToolRegistry, ToolResult
from itemresearch.runs.runtime import build_runtime


def demo_tools() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register("item_context", lambda payload: {
        "item": {"sku": payload["item_id"], "user_fields": {"title": "Canon AE-1 35mm camera", "condition": "used_good"}},
        "media": ["front.jpg", "back.jpg"],
        "required_fields": [],
    })
    registry.register("vision_analysis", lambda payload: ToolResult(
        output={
            "fields": {"category": "Film Cameras", "color": "black", "material": "metal"},
            "observations": {"labels": ["camera", "lens"]},
        },
        cost_usd=0.002,
        confidence=0.8,
    ))
    registry.register("product_identification", lambda payload: ToolResult(
        output={"fields": {"brand": "Canon", "model": "AE-1", "year": 1976}, "candidates": [{"model": "AE-1"}]},
        cost_usd=0.004,
        confidence=0.9,
    ))
    registry.register("comp_search", lambda payload: ToolResult(
        output={"comps": [{"id": "c1", "price": 120.0}, {"id": "c2", "price": 145.0}, {"id": "c3", "price": 132.0}]},
        cost_usd=0.001,
        confidence=0.7,
    ))
    registry.register("comp_analysis", lambda payload: ToolResult(
        output={"analysis": {"median": 132.0, "count": len(payload["comps"])}},
        confidence=0.75,
    ))
    registry.register("pricing", lambda payload: ToolResult(
        output={"floor": 115.0, "target": 132.0, "ceiling": 150.0},
        confidence=0.85,
    ))
    return registry


def main() -> int:
    os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./demo.db")
    setup_logging()
    Base.metadata.create_all(bind=get_engine())

    factory = get_session_factory()
    runtime = build_runtime(factory, get_settings(), tools=demo_tools())
    try:
        snapshot = runtime.controller.start("demo-item-1", mode="balanced", organization_id="demo-org")
        print(f"Started run {snapshot.id}")

        deadline = time.monotonic() + 30
        while snapshot.status in (RUN_PENDING, RUN_RUNNING) and time.monotonic() < deadline:
            time.sleep(0.2)
            snapshot = runtime.controller.get_status(snapshot.id)
        print(f"Run finished: status={snapshot.status} steps={snapshot.step_count} "
              f"completion={snapshot.completion_score:.2f} ready={snapshot.ready_to_publish}")
        print(f"Fields: {snapshot.canonical_fields}")
        if snapshot.status != RUN_SUCCESS:
            print(f"Run did not succeed: {snapshot.error_message}")
            return 1

        # Let the background outcome ingestion finish first
        runtime.shutdown()
        with session_scope(factory) as db:
            service = OutcomeService(db, AnomalyDetector(db))
            outcome = ResearchOutcomeRepository(db).get_by_run(snapshot.id) or service.ingest_completed_run(snapshot.id)
            outcome = service.record_sale(outcome.id, 128.0, marketplace="ebay")
            print(f"Sale recorded: quality={outcome.outcome_quality} ratio={outcome.price_accuracy_ratio:.3f}")
    finally:
        runtime.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
