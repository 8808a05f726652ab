"""Pydantic models for report records.

A report is stored as a camelCase JSON document. Until it is certified it
has the full mutable shape (``PendingReport``); the collapse step replaces
it with the permanent summary (``AnchoredReport``). The ``kind`` field tags
which shape a document has.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel


_DOCUMENT_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "frozen": True,
}


class PendingReport(BaseModel):
    """Mutable report record: votable, not yet collapsed."""

    kind: Literal["pending"] = "pending"
    report_id: str = Field(description="Opaque record identity")
    target: str = Field(default="", alias="url", description="Reported URL or wallet string")
    description: str = Field(default="")
    author_id: str = Field(default="")
    author_name: str = Field(default="")
    upvotes: int = Field(default=0)
    downvotes: int = Field(default=0)
    created_at: str = Field(description="Creation timestamp (ISO8601 UTC); feed ordering key")

    anchored: bool = Field(default=False)
    anchoring_in_progress: bool = Field(default=False)
    anchoring_started_at: Optional[str] = Field(default=None)
    lease_owner: Optional[str] = Field(default=None)
    lease_expires_at: Optional[str] = Field(default=None)

    anchoring_error: bool = Field(default=False)
    last_error: Optional[str] = Field(default=None)
    last_error_at: Optional[str] = Field(default=None)
    failed_phase: Optional[str] = Field(default=None)

    # Checkpoints written as each irrevocable phase completes
    anchor_tx: Optional[str] = Field(default=None)
    anchor_tx_url: Optional[str] = Field(default=None)
    anchor_block_number: Optional[int] = Field(default=None)
    pending_anchor_tx: Optional[str] = Field(
        default=None, description="Submitted transaction whose confirmation was never observed"
    )
    archive_cid: Optional[str] = Field(default=None)
    evidence_hash: Optional[str] = Field(default=None)
    archived_at: Optional[str] = Field(default=None)

    model_config = _DOCUMENT_CONFIG


class AnchoredReport(BaseModel):
    """Collapsed, permanent report summary."""

    kind: Literal["anchored"] = "anchored"
    report_id: str
    target: str = Field(default="", alias="url")
    anchored: Literal[True] = True
    anchor_tx: str
    anchor_tx_url: str
    archive_cid: str
    ipfs_gateway: str
    backup_link: str
    evidence_hash: str
    archived_at: str
    upvotes: int = Field(default=0)
    downvotes: int = Field(default=0)
    created_at: str

    model_config = _DOCUMENT_CONFIG


Report = Annotated[Union[PendingReport, AnchoredReport], Field(discriminator="kind")]

_REPORT_ADAPTER: TypeAdapter[Report] = TypeAdapter(Report)


def parse_report(report_id: str, document: dict[str, Any]) -> Union[PendingReport, AnchoredReport]:
    """Parse a stored document into its typed variant.

    Documents written before the ``kind`` tag existed are pending reports.
    """
    data = dict(document)
    data.setdefault("kind", "pending")
    data["reportId"] = report_id
    return _REPORT_ADAPTER.validate_python(data)


def to_document(report: Union[PendingReport, AnchoredReport]) -> dict[str, Any]:
    """Serialize a report to its stored camelCase form (without the id)."""
    return report.model_dump(by_alias=True, exclude={"report_id"}, exclude_none=True, mode="json")


class ReportUpdateEvent(BaseModel):
    """Before/after snapshots delivered for every write to a report."""

    report_id: str
    before: Optional[dict[str, Any]] = Field(default=None)
    after: Optional[dict[str, Any]] = Field(default=None)

    model_config = {"frozen": True}
