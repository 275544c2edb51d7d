"""Tests for itemresearch/activity/activity_log.py."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from itemresearch.activity.activity_log import (
    ActivityDraft,
    append_entries,
    entry_to_dict,
    get_item_activity,
    get_run_activity,
    summarize_payload,
    validate_draft,
)
from itemresearch.core.clock import utcnow


def _draft(title, **kwargs):
    values = {"type": "node", "event_type": "completed", "status": "success"}
    values.update(kwargs)
    return ActivityDraft(title=title, **values)


# ===========================================================================
# Validation
# ===========================================================================

class TestValidateDraft:
    def test_valid_draft_passes(self):
        validate_draft(_draft("load_context completed"))

    @pytest.mark.parametrize("override", [
        {"type": "unknown"},
        {"event_type": "finished"},
        {"status": "green"},
        {"title": "   "},
    ])
    def test_invalid_vocabulary(self, override):
        values = {"title": "x"}
        values.update(override)
        with pytest.raises(ValueError):
            validate_draft(_draft(**values))


# ===========================================================================
# append_entries
# ===========================================================================

class TestAppendEntries:
    def test_sequences_follow_last_sequence(self, controller, db_session):
        run = controller.start("item-1", organization_id="org-1")

        entries = append_entries(db_session, run.id, "item-1", "org-1", 4, [_draft("a"), _draft("b")])
        db_session.commit()

        assert [e.sequence for e in entries] == [5, 6]
        assert all(e.organization_id == "org-1" for e in entries)

    def test_invalid_draft_adds_nothing(self, controller, db_session):
        run = controller.start("item-1")

        with pytest.raises(ValueError):
            append_entries(db_session, run.id, "item-1", None, 0, [_draft("ok"), _draft("bad", status="??")])

        assert get_run_activity(db_session, run.id) == []

    def test_duplicate_sequence_rejected(self, controller, db_session):
        run = controller.start("item-1")
        append_entries(db_session, run.id, "item-1", None, 0, [_draft("a")])
        db_session.commit()

        with pytest.raises(IntegrityError):
            append_entries(db_session, run.id, "item-1", None, 0, [_draft("again")])
        db_session.rollback()

    def test_entries_are_immutable(self, controller, db_session):
        run = controller.start("item-1")
        [entry] = append_entries(db_session, run.id, "item-1", None, 0, [_draft("a")])
        db_session.commit()

        entry.message = "rewritten"
        with pytest.raises(ValueError, match="immutable"):
            db_session.flush()
        db_session.rollback()

    def test_entries_cannot_be_deleted(self, controller, db_session):
        run = controller.start("item-1")
        [entry] = append_entries(db_session, run.id, "item-1", None, 0, [_draft("a")])
        db_session.commit()

        db_session.delete(entry)
        with pytest.raises(ValueError, match="append-only"):
            db_session.flush()
        db_session.rollback()


# ===========================================================================
# Queries
# ===========================================================================

class TestQueries:
    def test_run_activity_after_cursor(self, controller, db_session):
        run = controller.start("item-1")
        append_entries(db_session, run.id, "item-1", None, 0, [_draft(str(i)) for i in range(5)])
        db_session.commit()

        after = get_run_activity(db_session, run.id, after_sequence=2)
        limited = get_run_activity(db_session, run.id, limit=2)

        assert [e.sequence for e in after] == [3, 4, 5]
        assert [e.sequence for e in limited] == [1, 2]

    def test_item_activity_spans_runs_in_time_order(self, controller, db_session):
        base = utcnow()
        first = controller.start("item-1")
        controller.stop(first.id)
        second = controller.start("item-1")
        append_entries(db_session, second.id, "item-1", None, 0, [_draft("late")], timestamp=base + timedelta(minutes=5))
        append_entries(db_session, first.id, "item-1", None, 0, [_draft("early")], timestamp=base)
        db_session.commit()

        titles = [e.title for e in get_item_activity(db_session, "item-1")]
        recent = [e.title for e in get_item_activity(db_session, "item-1", since=base + timedelta(minutes=1))]

        assert titles == ["early", "late"]
        assert recent == ["late"]

    def test_entry_to_dict(self, controller, db_session):
        run = controller.start("item-1")
        [entry] = append_entries(
            db_session, run.id, "item-1", None, 0,
            [_draft("tool", type="tool_call", step_id="search_comps#2", metadata={"tool": "comp_search"})],
        )
        db_session.commit()

        payload = entry_to_dict(entry)
        assert payload["research_run_id"] == str(run.id)
        assert payload["step_id"] == "search_comps#2"
        assert payload["metadata"] == {"tool": "comp_search"}
        assert payload["timestamp"] is not None


class TestSummarizePayload:
    def test_short_payload_is_compact_json(self):
        assert summarize_payload({"b": 1, "a": [1, 2]}) == '{"a": [1, 2], "b": 1}'

    def test_long_payload_is_truncated(self):
        text = summarize_payload({"blob": "x" * 2000}, max_chars=100)
        assert len(text) == 100
        assert text.endswith("...")

    def test_non_json_values_fall_back_to_str(self):
        assert "2024" in summarize_payload({"when": utcnow().replace(year=2024)})
