"""Evidence record assembly and hashing."""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

from .models.evidence import EvidenceRecord, Snapshot
from .models.report import PendingReport

NO_DESCRIPTION = "No description provided."
UNKNOWN_AUTHOR = "Unknown"
EVIDENCE_FILENAME = "metadata.json"


def sha256_hex(data: str | bytes) -> str:
    """0x-prefixed SHA-256 hex digest of ``data`` (strings are UTF-8 encoded)."""
    buf = data if isinstance(data, bytes) else str(data).encode("utf-8")
    return "0x" + hashlib.sha256(buf).hexdigest()


def canonical_json(document: dict[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def compute_evidence_hash(document: dict[str, Any]) -> str:
    """Hash of an evidence document excluding its own ``evidenceHash`` field."""
    body = {k: v for k, v in document.items() if k != "evidenceHash"}
    return sha256_hex(canonical_json(body))


def verify_evidence_hash(document: dict[str, Any]) -> bool:
    """Check a retrieved evidence document against its stored hash."""
    stored = document.get("evidenceHash")
    return bool(stored) and stored == compute_evidence_hash(document)


def build_evidence_record(
    report: PendingReport,
    snapshot: Snapshot,
    tx_hash: str,
    archived_at: Optional[str] = None,
) -> EvidenceRecord:
    """Assemble the permanent evidence record.

    ``report`` must be a fresh read of the stored record. The content hash
    is computed last, over everything else, and stored on the record.
    """
    if archived_at is None:
        archived_at = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    draft = EvidenceRecord(
        post_id=report.report_id,
        url=report.target,
        description=report.description.strip() or NO_DESCRIPTION,
        author_id=report.author_id,
        author_name=report.author_name.strip() or UNKNOWN_AUTHOR,
        reported_at=report.created_at,
        http_status=snapshot.http_status,
        redirect_chain=list(snapshot.redirect_chain),
        headers=dict(snapshot.headers),
        snapshot_text=snapshot.body,
        snapshot_html_hash=sha256_hex(snapshot.body) if snapshot.body else None,
        upvotes=report.upvotes,
        downvotes=report.downvotes,
        anchored=True,
        anchor_tx=tx_hash,
        archived_at=archived_at,
    )
    evidence_hash = compute_evidence_hash(draft.to_document())
    return draft.model_copy(update={"evidence_hash": evidence_hash})


def serialize_evidence(record: EvidenceRecord) -> bytes:
    """Bytes uploaded to content-addressed storage."""
    return json.dumps(record.to_document(), ensure_ascii=False, indent=2).encode("utf-8")
