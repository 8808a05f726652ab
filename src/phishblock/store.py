"""SQLite-backed record store for report documents.

Three write shapes are offered and they are not interchangeable:

* ``compare_and_update`` - atomic conditional merge (guard acquire)
* ``replace`` - full-document overwrite (collapse)
* ``update_fields`` - plain merge (checkpoints, error annotation, release)
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .models.report import (
    AnchoredReport,
    PendingReport,
    ReportUpdateEvent,
    parse_report,
    to_document,
)


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()
"""Sentinel value: passing it for a key in a merge removes that key."""


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def _merge(document: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    merged = dict(document)
    for key, value in fields.items():
        if value is DELETE_FIELD:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class ReportNotFound(KeyError):
    """Raised when a report id has no document."""


class ReportStore:
    """Report documents keyed by id, plus one vote row per (report, voter)."""

    def __init__(self, db_path: Path, busy_timeout: float = 30.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; write transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS reports(
                  report_id TEXT PRIMARY KEY,
                  document_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS votes(
                  report_id TEXT NOT NULL REFERENCES reports(report_id),
                  voter_id TEXT NOT NULL,
                  value INTEGER NOT NULL CHECK (value IN (1, -1)),
                  voted_at TEXT NOT NULL,
                  PRIMARY KEY (report_id, voter_id)
                );
                """
            )
        finally:
            conn.close()

    @staticmethod
    def _read(conn: sqlite3.Connection, report_id: str) -> Optional[dict[str, Any]]:
        row = conn.execute(
            "SELECT document_json FROM reports WHERE report_id = ?", (report_id,)
        ).fetchone()
        if row is None:
            return None
        return json.loads(str(row["document_json"]))

    @staticmethod
    def _write(conn: sqlite3.Connection, report_id: str, document: dict[str, Any]) -> None:
        conn.execute(
            "UPDATE reports SET document_json = ?, updated_at = ? WHERE report_id = ?",
            (_json_dumps(document), iso_now(), report_id),
        )

    def _transact(
        self,
        report_id: str,
        mutate: Callable[[sqlite3.Connection, dict[str, Any]], Optional[dict[str, Any]]],
    ) -> Optional[ReportUpdateEvent]:
        """Run read-modify-write for one report under a write lock.

        ``mutate`` returns the new document, or None to leave it untouched.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                before = self._read(conn, report_id)
                if before is None:
                    raise ReportNotFound(f"Unknown report_id: {report_id}")
                after = mutate(conn, before)
                if after is None:
                    conn.execute("ROLLBACK")
                    return None
                self._write(conn, report_id, after)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            return ReportUpdateEvent(report_id=report_id, before=before, after=after)
        finally:
            conn.close()

    # Reads

    def get(self, report_id: str) -> Optional[dict[str, Any]]:
        """Return the raw stored document, or None."""
        conn = self._connect()
        try:
            return self._read(conn, report_id)
        finally:
            conn.close()

    def get_report(self, report_id: str) -> Union[PendingReport, AnchoredReport, None]:
        """Return the typed report variant, or None."""
        document = self.get(report_id)
        if document is None:
            return None
        return parse_report(report_id, document)

    def list_documents(self) -> list[tuple[str, dict[str, Any]]]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT report_id, document_json FROM reports").fetchall()
            return [(str(r["report_id"]), json.loads(str(r["document_json"]))) for r in rows]
        finally:
            conn.close()

    def list_reports(self) -> list[Union[PendingReport, AnchoredReport]]:
        """All reports, newest first by ``createdAt`` (feed order)."""
        reports = [parse_report(rid, doc) for rid, doc in self.list_documents()]
        return sorted(reports, key=lambda r: r.created_at, reverse=True)

    # Writes

    def create_report(
        self,
        *,
        target: str,
        description: str = "",
        author_id: str = "",
        author_name: str = "",
        created_at: Optional[str] = None,
        report_id: Optional[str] = None,
    ) -> PendingReport:
        report = PendingReport(
            report_id=report_id or uuid.uuid4().hex[:20],
            target=target,
            description=description,
            author_id=author_id,
            author_name=author_name,
            created_at=created_at or iso_now(),
        )
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO reports(report_id, document_json, updated_at) VALUES(?, ?, ?)",
                (report.report_id, _json_dumps(to_document(report)), iso_now()),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Report already exists: {report.report_id}") from e
        finally:
            conn.close()
        return report

    def compare_and_update(
        self,
        report_id: str,
        condition: Callable[[dict[str, Any]], bool],
        fields: dict[str, Any],
    ) -> Optional[ReportUpdateEvent]:
        """Merge ``fields`` only if ``condition`` holds on the current document.

        The read, the check and the write happen in a single IMMEDIATE
        transaction. Returns None when the condition fails.
        """

        def mutate(_conn: sqlite3.Connection, document: dict[str, Any]) -> Optional[dict[str, Any]]:
            if not condition(document):
                return None
            return _merge(document, fields)

        return self._transact(report_id, mutate)

    def update_fields(self, report_id: str, fields: dict[str, Any]) -> ReportUpdateEvent:
        """Merge ``fields`` into the stored document."""
        event = self._transact(report_id, lambda _conn, document: _merge(document, fields))
        assert event is not None
        return event

    def replace(
        self,
        report_id: str,
        document: Union[dict[str, Any], Callable[[dict[str, Any]], dict[str, Any]]],
    ) -> ReportUpdateEvent:
        """Overwrite the stored document entirely (no merge).

        ``document`` may be a callable, which is given the current document
        inside the write transaction and returns the replacement.
        """
        if callable(document):
            build = document
            event = self._transact(report_id, lambda _conn, current: dict(build(current)))
        else:
            event = self._transact(report_id, lambda _conn, _current: dict(document))
        assert event is not None
        return event

    def apply_vote(self, report_id: str, voter_id: str, value: int) -> ReportUpdateEvent:
        """Record one voter's vote and move the counters to match.

        Re-casting the same vote is a no-op write; switching sides moves one
        count from the old counter to the new one.
        """
        if value not in (1, -1):
            raise ValueError(f"Vote value must be 1 or -1, got {value}")

        def mutate(conn: sqlite3.Connection, document: dict[str, Any]) -> dict[str, Any]:
            if document.get("kind") == "anchored":
                raise ValueError(f"Report {report_id} is anchored; voting is closed")
            row = conn.execute(
                "SELECT value FROM votes WHERE report_id = ? AND voter_id = ?",
                (report_id, voter_id),
            ).fetchone()
            previous = int(row["value"]) if row is not None else 0

            upvotes = int(document.get("upvotes", 0) or 0)
            downvotes = int(document.get("downvotes", 0) or 0)
            if previous != value:
                if previous == 1:
                    upvotes -= 1
                elif previous == -1:
                    downvotes -= 1
                if value == 1:
                    upvotes += 1
                else:
                    downvotes += 1

            conn.execute(
                "INSERT INTO votes(report_id, voter_id, value, voted_at) VALUES(?, ?, ?, ?) "
                "ON CONFLICT(report_id, voter_id) DO UPDATE SET value=excluded.value, voted_at=excluded.voted_at",
                (report_id, voter_id, value, iso_now()),
            )
            return _merge(document, {"upvotes": upvotes, "downvotes": downvotes})

        event = self._transact(report_id, mutate)
        assert event is not None
        return event
