"""Pydantic models for pipeline journal events."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

JournalEventType = Literal[
    "ANCHOR_RUN_STARTED",
    "GUARD_CONTENDED",
    "CHAIN_ANCHORED",
    "SNAPSHOT_CAPTURED",
    "SNAPSHOT_SKIPPED",
    "ARCHIVE_UPLOADED",
    "REPORT_COLLAPSED",
    "PHASE_FAILED",
    "LEASE_RECLAIMED",
]


class JournalEvent(BaseModel):
    """Append-only journal event record.

    Written as JSONL to <state_dir>/journal.jsonl.
    Never mutate or delete; only append.
    """

    event_id: str = Field(description="Unique event identifier (uuid4)")
    run_id: str = Field(description="Pipeline invocation identifier (uuid4)")
    ts: datetime = Field(description="Event timestamp (ISO8601 UTC)")
    event_type: JournalEventType = Field(description="Event type")
    report_id: str | None = Field(default=None, description="Related report ID if applicable")
    payload: dict = Field(default_factory=dict, description="Event-specific data")

    model_config = {"frozen": True}
