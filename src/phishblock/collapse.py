"""Collapse a certified report into its permanent summary document."""

import logging
import sqlite3
from typing import Any

from .models.report import AnchoredReport, parse_report, to_document
from .storage import gateway_urls
from .store import ReportStore

logger = logging.getLogger(__name__)


class CollapseError(Exception):
    """Exception raised when the summary could not be written."""
    pass


def build_anchored_summary(
    report_id: str,
    current: dict[str, Any],
    *,
    tx_hash: str,
    tx_url: str,
    cid: str,
    evidence_hash: str,
    archived_at: str,
    primary_gateway: str,
    backup_gateway: str,
) -> AnchoredReport:
    """Summary built from the current stored document.

    Vote counts are whatever is stored now; ``createdAt`` is carried over
    unchanged.
    """
    if current.get("kind") == "anchored":
        raise CollapseError(f"Report {report_id} is already collapsed")
    created_at = current.get("createdAt")
    if not created_at:
        raise CollapseError(f"Report {report_id} has no createdAt")

    ipfs_gateway, backup_link = gateway_urls(cid, primary_gateway, backup_gateway)
    return AnchoredReport(
        report_id=report_id,
        target=current.get("url", ""),
        anchor_tx=tx_hash,
        anchor_tx_url=tx_url,
        archive_cid=cid,
        ipfs_gateway=ipfs_gateway,
        backup_link=backup_link,
        evidence_hash=evidence_hash,
        archived_at=archived_at,
        upvotes=int(current.get("upvotes", 0) or 0),
        downvotes=int(current.get("downvotes", 0) or 0),
        created_at=created_at,
    )


class DocumentCollapser:
    """Replaces the mutable report with its summary in one overwrite."""

    def __init__(self, store: ReportStore, primary_gateway: str, backup_gateway: str):
        self.store = store
        self.primary_gateway = primary_gateway
        self.backup_gateway = backup_gateway

    def collapse(
        self,
        report_id: str,
        *,
        tx_hash: str,
        tx_url: str,
        cid: str,
        evidence_hash: str,
        archived_at: str,
    ) -> AnchoredReport:
        """Overwrite the stored report with its summary.

        Raises:
            CollapseError: If the summary cannot be built or written
        """

        def build(current: dict[str, Any]) -> dict[str, Any]:
            summary = build_anchored_summary(
                report_id,
                current,
                tx_hash=tx_hash,
                tx_url=tx_url,
                cid=cid,
                evidence_hash=evidence_hash,
                archived_at=archived_at,
                primary_gateway=self.primary_gateway,
                backup_gateway=self.backup_gateway,
            )
            return to_document(summary)

        try:
            event = self.store.replace(report_id, build)
        except sqlite3.Error as e:
            raise CollapseError(f"Datastore write failed: {e}") from e

        logger.info(f"Collapsed report {report_id} (cid: {cid})")
        collapsed = parse_report(report_id, event.after or {})
        assert isinstance(collapsed, AnchoredReport)
        return collapsed
