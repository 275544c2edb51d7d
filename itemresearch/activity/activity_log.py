"""Append-only activity log for research runs.

``append_entries()`` is only called from the checkpoint store, inside the
same transaction as the run state it describes.  Sequence numbers are
per run and strictly increasing; they come from ``ResearchRun.log_sequence``
which the checkpoint store advances in the same write.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from itemresearch.activity.events import (
    VALID_ENTRY_TYPES,
    VALID_EVENT_TYPES,
    VALID_STATUSES,
)
from itemresearch.db.models import ActivityLogEntry

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 500


@dataclass
class ActivityDraft:
    """An activity entry before it has a sequence number."""

    type: str
    event_type: str
    title: str
    status: str
    message: str = ""
    operation_id: str | None = None
    operation_type: str | None = None
    step_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def summarize_payload(payload: Any, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """Compact, truncated JSON rendering of a tool input or output."""
    try:
        text = json.dumps(payload, default=str, sort_keys=True)
    except (TypeError, ValueError):
        text = repr(payload)
    if len(text) > max_chars:
        return text[: max_chars - 3] + "..."
    return text


def validate_draft(draft: ActivityDraft) -> None:
    """Raise ``ValueError`` for drafts using unknown vocabulary."""
    if draft.type not in VALID_ENTRY_TYPES:
        raise ValueError(f"Invalid activity type {draft.type!r}; must be one of {sorted(VALID_ENTRY_TYPES)}")
    if draft.event_type not in VALID_EVENT_TYPES:
        raise ValueError(f"Invalid event_type {draft.event_type!r}; must be one of {sorted(VALID_EVENT_TYPES)}")
    if draft.status not in VALID_STATUSES:
        raise ValueError(f"Invalid status {draft.status!r}; must be one of {sorted(VALID_STATUSES)}")
    if not draft.title or not draft.title.strip():
        raise ValueError("title must be a non-empty string")


def append_entries(
    db_session: Session,
    run_id: UUID,
    item_id: str,
    organization_id: str | None,
    last_sequence: int,
    drafts: list[ActivityDraft],
    timestamp: datetime | None = None,
) -> list[ActivityLogEntry]:
    """Persist *drafts* with sequence numbers following *last_sequence*.

    Raises ``ValueError`` for invalid drafts before anything is added.
    Flushes but does **not** commit; the caller controls the transaction.
    """
    for draft in drafts:
        validate_draft(draft)

    entries: list[ActivityLogEntry] = []
    for offset, draft in enumerate(drafts, start=1):
        entry = ActivityLogEntry(
            research_run_id=run_id,
            item_id=item_id,
            organization_id=organization_id,
            sequence=last_sequence + offset,
            type=draft.type,
            event_type=draft.event_type,
            operation_id=draft.operation_id,
            operation_type=draft.operation_type,
            title=draft.title,
            message=draft.message,
            metadata_json=draft.metadata or None,
            status=draft.status,
            step_id=draft.step_id,
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        db_session.add(entry)
        entries.append(entry)

    db_session.flush()
    if entries:
        logger.debug("Appended %d activity entries to run %s", len(entries), run_id)
    return entries


def get_run_activity(
    db_session: Session,
    run_id: UUID,
    after_sequence: int | None = None,
    limit: int = 500,
) -> list[ActivityLogEntry]:
    """Return a run's entries in sequence order, optionally after a cursor."""
    stmt = select(ActivityLogEntry).where(ActivityLogEntry.research_run_id == run_id)
    if after_sequence is not None:
        stmt = stmt.where(ActivityLogEntry.sequence > after_sequence)
    stmt = stmt.order_by(ActivityLogEntry.sequence.asc()).limit(limit)
    return list(db_session.execute(stmt).scalars().all())


def get_item_activity(
    db_session: Session,
    item_id: str,
    since: datetime | None = None,
    limit: int = 500,
) -> list[ActivityLogEntry]:
    """Return an item's entries across all its runs, ordered by time."""
    stmt = select(ActivityLogEntry).where(ActivityLogEntry.item_id == item_id)
    if since is not None:
        stmt = stmt.where(ActivityLogEntry.timestamp >= since)
    stmt = stmt.order_by(
        ActivityLogEntry.timestamp.asc(),
        ActivityLogEntry.research_run_id.asc(),
        ActivityLogEntry.sequence.asc(),
    ).limit(limit)
    return list(db_session.execute(stmt).scalars().all())


def entry_to_dict(entry: ActivityLogEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "research_run_id": str(entry.research_run_id),
        "item_id": entry.item_id,
        "organization_id": entry.organization_id,
        "sequence": entry.sequence,
        "type": entry.type,
        "event_type": entry.event_type,
        "operation_id": entry.operation_id,
        "operation_type": entry.operation_type,
        "title": entry.title,
        "message": entry.message,
        "metadata": entry.metadata_json or {},
        "status": entry.status,
        "step_id": entry.step_id,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }
