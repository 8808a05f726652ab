"""Pydantic models for PhishBlock."""

from .anchoring import (
    AnchoringPhase,
    AnchorReceipt,
    FailedPhase,
    Lease,
    PipelineResult,
    TransactionInspection,
)
from .evidence import EvidenceRecord, Snapshot
from .journal import JournalEvent
from .report import (
    AnchoredReport,
    PendingReport,
    Report,
    ReportUpdateEvent,
    parse_report,
    to_document,
)

__all__ = [
    # Reports
    "PendingReport",
    "AnchoredReport",
    "Report",
    "ReportUpdateEvent",
    "parse_report",
    "to_document",
    # Evidence
    "Snapshot",
    "EvidenceRecord",
    # Anchoring
    "AnchoringPhase",
    "FailedPhase",
    "AnchorReceipt",
    "Lease",
    "PipelineResult",
    "TransactionInspection",
    "JournalEvent",
]
