"""Append-only pipeline journal for PhishBlock."""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console

from .models.journal import JournalEvent, JournalEventType

console = Console(stderr=True)


class JournalWriter:
    """Append-only journal writer.

    Writes events to <state_dir>/journal.jsonl.
    Never truncates or rewrites; only appends.
    """

    def __init__(self, journal_path: Path, run_id: str | None = None):
        """Initialize journal writer.

        Args:
            journal_path: Path to journal.jsonl file
            run_id: Optional run ID; if None, generates a new uuid4
        """
        self.journal_path = journal_path
        self.run_id = run_id or str(uuid.uuid4())

    def for_run(self, run_id: str) -> "JournalWriter":
        """Return a writer for the same file tagged with another run ID."""
        return JournalWriter(self.journal_path, run_id=run_id)

    def append_event(
        self,
        event_type: JournalEventType,
        payload: dict,
        report_id: str | None = None,
    ) -> JournalEvent:
        """Append an event to the journal.

        Args:
            event_type: Type of event
            payload: Event-specific data
            report_id: Optional report ID reference

        Returns:
            The created JournalEvent
        """
        self.journal_path.parent.mkdir(parents=True, exist_ok=True)

        event = JournalEvent(
            event_id=str(uuid.uuid4()),
            run_id=self.run_id,
            ts=datetime.now(timezone.utc),
            event_type=event_type,
            report_id=report_id,
            payload=payload,
        )

        # One JSON object per line
        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.model_dump(mode="json")) + "\n")

        return event


def read_journal_tail(journal_path: Path, n: int = 20, report_id: str | None = None) -> list[JournalEvent]:
    """Read the last N events from the journal.

    Robust parsing: skips malformed lines with a warning.

    Args:
        journal_path: Path to journal.jsonl file
        n: Number of events to read from the end
        report_id: Only return events for this report (scans the whole file)

    Returns:
        List of JournalEvent objects (last N matching events)
    """
    if not journal_path.exists():
        return []

    events: list[JournalEvent] = []
    malformed_count = 0

    with open(journal_path, "r", encoding="utf-8") as f:
        lines = f.readlines()

    # A report's events are interleaved with other runs, so filtering needs every line
    candidates = lines if report_id is not None else lines[-n:]

    for line in candidates:
        line = line.strip()
        if not line:
            continue

        try:
            event = JournalEvent(**json.loads(line))
        except (json.JSONDecodeError, ValueError) as e:
            malformed_count += 1
            console.print(f"[yellow]Warning: Skipping malformed line: {e}[/yellow]")
            continue
        if report_id is None or event.report_id == report_id:
            events.append(event)

    if malformed_count > 0:
        console.print(f"[yellow]Skipped {malformed_count} malformed line(s)[/yellow]")

    return events[-n:] if n > 0 else []
