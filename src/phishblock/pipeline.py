"""Anchoring & archival pipeline.

One invocation handles one report, sequentially:

    guard acquire -> chain anchor -> snapshot -> evidence -> upload
    -> collapse -> guard release

Each irrevocable phase checkpoints its result on the record before the next
phase starts, so a retry resumes after the last completed phase and never
submits a second ledger transaction once one is recorded. Fatal errors are
written to the record (``anchoringError``, ``lastError``, ``lastErrorAt``,
``failedPhase``) instead of being raised; the trigger system has no one
watching for exceptions.
"""

import logging
import uuid
from typing import Any, Optional, Union

from .chain import ChainAnchorer, ChainAnchorError, get_ledger_client
from .collapse import DocumentCollapser
from .config import PhishBlockConfig
from .evidence import build_evidence_record
from .guard import AnchoringGuard
from .journal import JournalWriter
from .models.anchoring import AnchoringPhase, FailedPhase, PipelineResult
from .models.report import AnchoredReport, PendingReport
from .paths import StatePaths
from .snapshot import EvidenceSnapshotter
from .storage import ArchiveError, ArchiveUploader, get_content_stores
from .store import DELETE_FIELD, ReportStore, iso_now

logger = logging.getLogger(__name__)


def current_phase(report: Union[PendingReport, AnchoredReport]) -> AnchoringPhase:
    """Last completed phase, as recorded on the report."""
    if isinstance(report, AnchoredReport):
        return AnchoringPhase.COLLAPSED
    if report.archive_cid and report.evidence_hash:
        return AnchoringPhase.ARCHIVED
    if report.anchor_tx:
        return AnchoringPhase.CHAIN_ANCHORED
    return AnchoringPhase.UNANCHORED


class AnchoringPipeline:
    """Runs the certification pipeline for a report."""

    def __init__(
        self,
        *,
        store: ReportStore,
        guard: AnchoringGuard,
        anchorer: ChainAnchorer,
        snapshotter: EvidenceSnapshotter,
        uploader: ArchiveUploader,
        collapser: DocumentCollapser,
        journal: JournalWriter,
        vote_threshold: int = 10,
    ):
        self.store = store
        self.guard = guard
        self.anchorer = anchorer
        self.snapshotter = snapshotter
        self.uploader = uploader
        self.collapser = collapser
        self.journal = journal
        self.vote_threshold = vote_threshold

    @classmethod
    def from_config(cls, config: PhishBlockConfig, engine: str = "auto") -> "AnchoringPipeline":
        """Wire the pipeline from configuration.

        Args:
            config: Loaded configuration
            engine: 'auto' for real ledger/storage, 'fake' for an in-memory dry run
        """
        paths = StatePaths.from_config(config)
        store = ReportStore(paths.db_file)
        return cls(
            store=store,
            guard=AnchoringGuard(store, lease_seconds=config.lease.lease_seconds),
            anchorer=ChainAnchorer(
                get_ledger_client(config, engine="fake" if engine == "fake" else "auto"),
                explorer_tx_url=config.chain.explorer_tx_url,
                confirm_timeout=config.chain.confirm_timeout_seconds,
            ),
            snapshotter=EvidenceSnapshotter(
                timeout=config.snapshot.timeout_seconds,
                max_bytes=config.snapshot.max_bytes,
            ),
            uploader=ArchiveUploader(get_content_stores(config, engine=engine, tmp_dir=paths.tmp)),
            collapser=DocumentCollapser(
                store,
                primary_gateway=config.storage.primary_gateway,
                backup_gateway=config.storage.backup_gateway,
            ),
            journal=JournalWriter(paths.journal_file),
            vote_threshold=config.vote_threshold,
        )

    def run(self, report_id: str, *, resume: bool = False) -> PipelineResult:
        """Run (or resume) the pipeline for ``report_id``.

        With ``resume`` the vote threshold is not re-checked and a report
        already marked anchored (archive pending) may be picked up; this is
        the operator retry path.

        Raises:
            ReportNotFound: If the report does not exist
        """
        run_id = str(uuid.uuid4())
        journal = self.journal.for_run(run_id)

        lease = self.guard.acquire(report_id, allow_anchored=resume)
        if lease is None:
            journal.append_event("GUARD_CONTENDED", {"resume": resume}, report_id=report_id)
            report = self.store.get_report(report_id)
            return PipelineResult(
                report_id=report_id,
                status="skipped",
                phase=current_phase(report) if report is not None else AnchoringPhase.UNANCHORED,
                reason="guard-contended",
            )

        if lease.reclaimed_from:
            journal.append_event(
                "LEASE_RECLAIMED", {"previous_owner": lease.reclaimed_from}, report_id=report_id
            )

        try:
            report = self.store.get_report(report_id)
            if not isinstance(report, PendingReport):
                return PipelineResult(
                    report_id=report_id, status="skipped", phase=AnchoringPhase.COLLAPSED, reason="already-collapsed"
                )
            if not resume and report.upvotes < self.vote_threshold:
                logger.debug(f"Skipping {report_id}: {report.upvotes} < threshold {self.vote_threshold}")
                return PipelineResult(
                    report_id=report_id,
                    status="skipped",
                    phase=current_phase(report),
                    reason="below-threshold",
                )

            phase = current_phase(report)
            logger.info(f"Anchoring and archiving report {report_id} (from {phase.value})")
            journal.append_event(
                "ANCHOR_RUN_STARTED",
                {"phase": phase.value, "resume": resume, "lease_owner": lease.owner},
                report_id=report_id,
            )
            return self._advance(report, journal)
        finally:
            try:
                self.guard.release(lease)
            except Exception as e:
                logger.error(f"Failed to release anchoring lease on {report_id}: {e}")

    def _advance(self, report: PendingReport, journal: JournalWriter) -> PipelineResult:
        report_id = report.report_id
        step = FailedPhase.CHAIN
        tx_hash: Optional[str] = report.anchor_tx
        tx_url: Optional[str] = report.anchor_tx_url
        cid: Optional[str] = report.archive_cid
        phase = current_phase(report)

        try:
            if tx_hash is None:
                receipt = self.anchorer.anchor(report_id, pending_tx=report.pending_anchor_tx)
                tx_hash, tx_url = receipt.tx_hash, receipt.tx_url
                # Confirmed; a failure from here on belongs to the next phase
                phase = AnchoringPhase.CHAIN_ANCHORED
                step = FailedPhase.EVIDENCE
                # Journal first: the tx must be recorded somewhere even if the store write fails
                journal.append_event(
                    "CHAIN_ANCHORED",
                    {"tx_hash": tx_hash, "tx_url": tx_url, "block_number": receipt.block_number},
                    report_id=report_id,
                )
                self.store.update_fields(
                    report_id,
                    {
                        "anchorTx": tx_hash,
                        "anchorTxUrl": tx_url,
                        "anchorBlockNumber": receipt.block_number,
                        "pendingAnchorTx": DELETE_FIELD,
                    },
                )
                logger.info(f"Anchored report {report_id}, tx: {tx_hash}")
            else:
                logger.info(f"Report {report_id} already anchored in {tx_hash}; not re-submitting")
            tx_url = tx_url or self.anchorer.tx_url(tx_hash)

            if phase != AnchoringPhase.ARCHIVED:
                step = FailedPhase.EVIDENCE
                snapshot = self.snapshotter.capture(report.target)
                journal.append_event(
                    "SNAPSHOT_CAPTURED" if snapshot.captured else "SNAPSHOT_SKIPPED",
                    {"http_status": snapshot.http_status, "redirect_chain": snapshot.redirect_chain},
                    report_id=report_id,
                )

                # Evidence is built from the stored record, not the trigger payload
                fresh = self.store.get_report(report_id)
                if not isinstance(fresh, PendingReport):
                    raise RuntimeError(f"Report {report_id} changed shape during anchoring")
                record = build_evidence_record(fresh, snapshot, tx_hash)

                step = FailedPhase.ARCHIVE
                upload = self.uploader.upload(record)
                cid = upload.cid
                journal.append_event(
                    "ARCHIVE_UPLOADED",
                    {
                        "cid": cid,
                        "provider": upload.provider,
                        "evidence_hash": record.evidence_hash,
                        "failures": upload.failures,
                    },
                    report_id=report_id,
                )
                self.store.update_fields(
                    report_id,
                    {
                        "archiveCid": cid,
                        "evidenceHash": record.evidence_hash,
                        "archivedAt": record.archived_at,
                    },
                )
                evidence_hash = record.evidence_hash
                archived_at = record.archived_at
                phase = AnchoringPhase.ARCHIVED
            else:
                logger.info(f"Report {report_id} already archived as {cid}; collapsing only")
                evidence_hash = report.evidence_hash
                archived_at = report.archived_at or iso_now()

            step = FailedPhase.COLLAPSE
            assert cid is not None and evidence_hash is not None
            self.collapser.collapse(
                report_id,
                tx_hash=tx_hash,
                tx_url=tx_url,
                cid=cid,
                evidence_hash=evidence_hash,
                archived_at=archived_at,
            )
            journal.append_event("REPORT_COLLAPSED", {"tx_hash": tx_hash, "cid": cid}, report_id=report_id)

        except Exception as e:
            return self._report_error(
                report_id, step, e, journal, phase=phase, tx_hash=tx_hash, tx_url=tx_url, cid=cid
            )

        return PipelineResult(
            report_id=report_id,
            status="completed",
            phase=AnchoringPhase.COLLAPSED,
            tx_hash=tx_hash,
            cid=cid,
        )

    def _report_error(
        self,
        report_id: str,
        step: FailedPhase,
        error: Exception,
        journal: JournalWriter,
        *,
        phase: AnchoringPhase,
        tx_hash: Optional[str],
        tx_url: Optional[str],
        cid: Optional[str],
    ) -> PipelineResult:
        """Persist a fatal error on the record and return a failed result."""
        message = str(error) or type(error).__name__
        logger.error(f"Error processing report {report_id} in {step.value} phase: {message}")

        fields: dict[str, Any] = {
            "anchoringError": True,
            "lastError": message,
            "lastErrorAt": iso_now(),
            "failedPhase": step.value,
        }
        # Re-record durable results so a retry can skip the phases that produced them
        if tx_hash:
            fields["anchorTx"] = tx_hash
            fields["anchorTxUrl"] = tx_url or self.anchorer.tx_url(tx_hash)
        if isinstance(error, ChainAnchorError) and error.tx_hash and not error.reverted:
            fields["pendingAnchorTx"] = error.tx_hash
        if isinstance(error, ArchiveError):
            # Anchored on chain, archive pending
            fields["anchored"] = True

        journal.append_event(
            "PHASE_FAILED",
            {"phase": step.value, "error": message, "tx_hash": tx_hash, "cid": cid},
            report_id=report_id,
        )

        try:
            self.store.update_fields(report_id, fields)
        except Exception as uerr:
            logger.error(f"Failed to mark anchoringError on {report_id}: {uerr}")

        return PipelineResult(
            report_id=report_id,
            status="failed",
            phase=phase,
            failed_phase=step,
            tx_hash=tx_hash,
            cid=cid,
            error=message,
        )
