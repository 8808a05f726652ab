"""Pydantic models for evidence snapshots and the archived evidence record."""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class Snapshot(BaseModel):
    """Best-effort capture of the reported resource.

    An empty snapshot (nothing captured) is a valid outcome.
    """

    http_status: Optional[int] = Field(default=None, description="HTTP status of the fetch")
    headers: dict[str, str] = Field(default_factory=dict, description="Response headers")
    redirect_chain: list[str] = Field(default_factory=list, description="[original, final] URLs")
    body: str = Field(default="", description="Response body truncated to the byte budget")

    model_config = {"frozen": True}

    @property
    def captured(self) -> bool:
        return self.http_status is not None


class EvidenceRecord(BaseModel):
    """Permanent evidence record uploaded to content-addressed storage.

    Never mutated after upload; ``evidence_hash`` is computed last, over the
    record serialized without that field.
    """

    post_id: str
    url: str = ""
    description: str = ""
    author_id: str = ""
    author_name: str = ""
    reported_at: str
    http_status: Optional[int] = None
    redirect_chain: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    snapshot_text: str = ""
    snapshot_html_hash: Optional[str] = None
    upvotes: int = 0
    downvotes: int = 0
    anchored: bool = True
    anchor_tx: str
    archived_at: str
    evidence_hash: Optional[str] = None

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "frozen": True,
    }

    def to_document(self) -> dict:
        """Return the camelCase JSON-ready mapping that gets uploaded."""
        return self.model_dump(by_alias=True, mode="json")
