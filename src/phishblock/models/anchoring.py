"""Pydantic models for anchoring phases, receipts, leases and run results."""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class AnchoringPhase(str, Enum):
    """Per-record progress through the pipeline.

    A retry resumes at the first phase after the last completed one.
    """

    UNANCHORED = "unanchored"
    CHAIN_ANCHORED = "chain-anchored"
    ARCHIVED = "archived"
    COLLAPSED = "anchored-and-collapsed"


class FailedPhase(str, Enum):
    """Which step a failed run stopped in."""

    CHAIN = "chain"
    EVIDENCE = "evidence"
    ARCHIVE = "archive"
    COLLAPSE = "collapse"


class AnchorReceipt(BaseModel):
    """Confirmed ledger transaction for a report."""

    tx_hash: str = Field(description="Transaction identifier (0x-prefixed hex)")
    tx_url: str = Field(description="Block explorer URL for the transaction")
    block_number: Optional[int] = Field(default=None)
    confirmations: int = Field(default=1)

    model_config = {"frozen": True}


class Lease(BaseModel):
    """Ownership of a report's anchoring run."""

    report_id: str
    owner: str = Field(description="Owner token (uuid4) of the invocation holding the lease")
    acquired_at: str
    expires_at: str
    reclaimed_from: Optional[str] = Field(default=None, description="Owner of the expired lease this one replaced")

    model_config = {"frozen": True}


class PipelineResult(BaseModel):
    """Outcome of one pipeline invocation."""

    report_id: str
    status: Literal["completed", "skipped", "failed"]
    phase: AnchoringPhase = Field(description="Phase the record reached")
    failed_phase: Optional[FailedPhase] = Field(default=None)
    tx_hash: Optional[str] = Field(default=None)
    cid: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)
    reason: Optional[str] = Field(default=None, description="Why a run was skipped")

    model_config = {"frozen": True}


class TransactionInspection(BaseModel):
    """Decoded view of an anchor transaction, for operators."""

    tx_hash: str
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    block_number: Optional[int] = None
    status: Optional[int] = None
    reference: Optional[str] = Field(default=None, description="bytes32 argument, 0x hex")
    report_id: Optional[str] = Field(default=None, description="Decoded report id argument")
    reference_matches: bool = Field(default=False, description="reference == keccak256(report_id)")
