"""Idempotency guard: one anchoring run per report at a time.

The ``anchoringInProgress`` flag is held as a lease with an owner token and
an expiry. A lease left behind by a crashed process can be reclaimed once it
expires, either by the next acquire or by ``sweep_expired``.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .models.anchoring import Lease
from .store import DELETE_FIELD, ReportStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_ts(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AnchoringGuard:
    """Acquire/release of the per-report anchoring lease."""

    def __init__(
        self,
        store: ReportStore,
        lease_seconds: int = 600,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.lease_seconds = lease_seconds
        self.clock = clock

    def _lease_expired(self, document: dict[str, Any], now: datetime) -> bool:
        expires_at = _parse_ts(document.get("leaseExpiresAt"))
        if expires_at is None:
            # Flag set without a lease (older writer): age it from the start time
            started_at = _parse_ts(document.get("anchoringStartedAt"))
            if started_at is None:
                return False
            expires_at = started_at + timedelta(seconds=self.lease_seconds)
        return expires_at <= now

    def acquire(self, report_id: str, *, allow_anchored: bool = False) -> Optional[Lease]:
        """Take the lease for ``report_id``.

        Succeeds only if the report is not collapsed, not already anchored
        (unless ``allow_anchored``, used when resuming archival), and no live
        lease is held. Returns None when contended; the caller must then
        abort without side effects.

        Raises:
            ReportNotFound: If the report does not exist
        """
        now = self.clock()
        owner = str(uuid.uuid4())
        expires_at = now + timedelta(seconds=self.lease_seconds)
        held_by: dict[str, Optional[str]] = {}

        def condition(document: dict[str, Any]) -> bool:
            if document.get("kind") == "anchored":
                return False
            if document.get("anchored") and not allow_anchored:
                return False
            if document.get("anchoringInProgress"):
                if not self._lease_expired(document, now):
                    return False
                held_by["owner"] = document.get("leaseOwner") or "unknown"
            return True

        event = self.store.compare_and_update(
            report_id,
            condition,
            {
                "anchoringInProgress": True,
                "anchoringStartedAt": _iso(now),
                "leaseOwner": owner,
                "leaseExpiresAt": _iso(expires_at),
            },
        )
        if event is None:
            logger.debug(f"Guard contended for {report_id}")
            return None

        if "owner" in held_by:
            logger.warning(f"Reclaimed expired anchoring lease on {report_id} (was {held_by['owner']})")

        return Lease(
            report_id=report_id,
            owner=owner,
            acquired_at=_iso(now),
            expires_at=_iso(expires_at),
            reclaimed_from=held_by.get("owner"),
        )

    def release(self, lease: Lease) -> bool:
        """Clear the in-progress flag held by ``lease``.

        A document that no longer carries this owner's lease (collapsed, or
        reclaimed by another invocation after expiry) is left untouched.
        Returns True when the flag was cleared.
        """
        event = self.store.compare_and_update(
            lease.report_id,
            lambda document: document.get("leaseOwner") == lease.owner,
            {
                "anchoringInProgress": False,
                "leaseOwner": DELETE_FIELD,
                "leaseExpiresAt": DELETE_FIELD,
            },
        )
        if event is None:
            logger.debug(f"Lease {lease.owner} on {lease.report_id} no longer held; nothing to release")
            return False
        return True

    def sweep_expired(self) -> list[str]:
        """Clear every expired lease. Returns the report ids reclaimed."""
        now = self.clock()
        reclaimed: list[str] = []

        for report_id, document in self.store.list_documents():
            if not document.get("anchoringInProgress") or not self._lease_expired(document, now):
                continue
            event = self.store.compare_and_update(
                report_id,
                lambda doc: bool(doc.get("anchoringInProgress")) and self._lease_expired(doc, now),
                {
                    "anchoringInProgress": False,
                    "leaseOwner": DELETE_FIELD,
                    "leaseExpiresAt": DELETE_FIELD,
                },
            )
            if event is not None:
                logger.warning(f"Swept expired anchoring lease on {report_id}")
                reclaimed.append(report_id)

        return reclaimed
