"""Trigger listener: decides whether a report update starts the pipeline."""

import logging
from typing import Any, Optional

from .models.anchoring import PipelineResult
from .models.report import ReportUpdateEvent
from .pipeline import AnchoringPipeline

logger = logging.getLogger(__name__)


def should_anchor(
    before: Optional[dict[str, Any]],
    after: Optional[dict[str, Any]],
    threshold: int,
) -> tuple[bool, str]:
    """Evaluate the trigger predicate on an update's before/after states.

    Returns (fire, reason). The pipeline re-checks everything against a
    fresh read; this only filters out updates that cannot matter.
    """
    before = before or {}
    if not after:
        return False, "deleted"
    if after.get("kind") == "anchored":
        return False, "collapsed"
    if after.get("anchored") or after.get("anchoringInProgress"):
        return False, "anchored-or-in-progress"
    if before.get("anchored"):
        return False, "already-anchored"
    # The pipeline's own lease release; the next real update retries
    if before.get("anchoringInProgress"):
        return False, "lease-released"
    if int(after.get("upvotes", 0) or 0) < threshold:
        return False, "below-threshold"
    return True, "threshold-crossed"


def handle_report_update(event: ReportUpdateEvent, pipeline: AnchoringPipeline) -> Optional[PipelineResult]:
    """Entry point for update deliveries (at-least-once, possibly concurrent).

    Returns the pipeline result, or None when the predicate filtered the
    update out.
    """
    fire, reason = should_anchor(event.before, event.after, pipeline.vote_threshold)
    if not fire:
        logger.debug(f"Skipping report {event.report_id}: {reason}")
        return None
    logger.info(f"Report {event.report_id} crossed the vote threshold; starting pipeline")
    return pipeline.run(event.report_id)
