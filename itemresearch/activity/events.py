"""Activity log vocabulary.

Entries are grouped into operations (``operation_id``); each operation
emits ``started`` and then ``completed`` or ``failed``, optionally with
``progress`` entries in between.
"""
from __future__ import annotations

EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_STARTED,
    EVENT_PROGRESS,
    EVENT_COMPLETED,
    EVENT_FAILED,
})

STATUS_PROCESSING = "processing"
STATUS_SUCCESS = "success"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"
STATUS_INFO = "info"

VALID_STATUSES: frozenset[str] = frozenset({
    STATUS_PROCESSING,
    STATUS_SUCCESS,
    STATUS_WARNING,
    STATUS_ERROR,
    STATUS_INFO,
})

# Entry types
TYPE_NODE = "node"
TYPE_TOOL_CALL = "tool_call"
TYPE_FIELD_UPDATE = "field_update"
TYPE_RUN_STATUS = "run_status"
TYPE_PROGRESS = "progress"

VALID_ENTRY_TYPES: frozenset[str] = frozenset({
    TYPE_NODE,
    TYPE_TOOL_CALL,
    TYPE_FIELD_UPDATE,
    TYPE_RUN_STATUS,
    TYPE_PROGRESS,
})

# Broadcast channels
CHANNEL_ACTIVITY = "activity"
CHANNEL_STATUS = "status"
CHANNEL_NODE = "node"
