"""
Enrichment Trigger Coordinator

Decides, per recent proposal, whether the external job runner should be
asked to verify its build or write commentary for it.

Decision order:
1. Below the verification floor -> skip
2. Feed detail unavailable -> skip
3. Not code-changing (no target canister, no expected hash) -> skip
4. A successful run named for the proposal already exists -> skip
5. (commentary) Commentary already stored -> skip
6. Any run named for the proposal created inside the trailing window -> skip
7. Otherwise dispatch

The runner offers no atomic claim, so this is check-then-act against an
eventually consistent listing. Two overlapping invocations inside the window
can both dispatch the same proposal.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..clients import GovernanceFeedClient, JobRunnerClient
from ..config import WatcherConfig
from ..exceptions import UpstreamUnavailableError
from ..models.feed import JobRun, JobStatus, VerificationStatus
from .store import ProposalStore
from .text_extraction import match_job_proposal_id


logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def runs_for(runs: Iterable[JobRun], tag: str, proposal_id: int) -> List[JobRun]:
    """Runs whose display title names this proposal under the given tag."""
    return [r for r in runs if match_job_proposal_id(tag, r.display_title) == proposal_id]


def has_recent_run(runs: Iterable[JobRun], now: datetime, window_minutes: int) -> bool:
    cutoff = _as_utc(now) - timedelta(minutes=window_minutes)
    return any(r.created_at is not None and _as_utc(r.created_at) >= cutoff for r in runs)


class EnrichmentTriggerCoordinator:
    """
    Best-effort, de-duplicated dispatch of verification and commentary jobs.

    Usage:
        coordinator = EnrichmentTriggerCoordinator(db, config, feed, jobs)
        result = coordinator.run_verification()
    """

    def __init__(
        self,
        db: Session,
        config: WatcherConfig,
        feed: GovernanceFeedClient,
        jobs: JobRunnerClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.config = config
        self.feed = feed
        self.jobs = jobs
        self.sleep = sleep
        self.clock = clock
        self.store = ProposalStore(db)

    # =========================================================================
    # SHARED DECISION STEPS
    # =========================================================================

    def _precheck(self, proposal_id: int) -> Optional[str]:
        """Reason to skip before the job listing is consulted, or None."""
        if proposal_id < self.config.verification_min_proposal_id:
            return "below minimum proposal ID"

        try:
            detail = self.feed.get_proposal(proposal_id)
        except UpstreamUnavailableError as e:
            logger.warning(f"Could not fetch detail for #{proposal_id}: {e}")
            detail = None
        if detail is None:
            return "could not fetch proposal details"

        if not detail.is_code_changing:
            return "not an upgrade proposal"
        return None

    def _listing_skip(self, runs: List[JobRun], tag: str, proposal_id: int, window_minutes: int) -> Optional[str]:
        matching = runs_for(runs, tag, proposal_id)
        if any(r.succeeded for r in matching):
            return "successful run exists"
        if has_recent_run(matching, self.clock(), window_minutes):
            return "recent run exists"
        return None

    def _result(self, processed: int, triggered: List[int], skipped: List[Dict[str, Any]],
                failed: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "run_date": datetime.utcnow().isoformat(),
            "processed": processed,
            "succeeded": len(triggered),
            "failed": len(failed),
            "skipped": len(skipped),
            "triggered": triggered,
            "details": {
                "skipped": skipped,
                "failed": failed,
            },
        }

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def run_verification(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Dispatch build verification (and commentary alongside) for recent
        code-changing proposals.

        Raises:
            UpstreamUnavailableError: job listing unavailable
        """
        proposals = self.store.recent(limit or self.config.trigger_scan_limit)
        runs = self.jobs.list_runs()

        triggered: List[int] = []
        skipped: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        for proposal in proposals:
            proposal_id = proposal.proposal_id

            reason = self._precheck(proposal_id) or self._listing_skip(
                runs, self.config.verification_job_tag, proposal_id,
                self.config.verification_recent_minutes,
            )
            if reason:
                skipped.append({"proposal_id": proposal_id, "reason": reason})
                continue

            verify_ok = self.jobs.dispatch(self.config.verification_workflow, proposal_id)
            commentary_ok = self.jobs.dispatch(self.config.commentary_workflow, proposal_id)

            if verify_ok or commentary_ok:
                triggered.append(proposal_id)
            if not verify_ok:
                failed.append({"proposal_id": proposal_id, "reason": "verify workflow failed to trigger"})
            if not commentary_ok:
                failed.append({"proposal_id": proposal_id, "reason": "commentary workflow failed to trigger"})

            self.sleep(self.config.trigger_delay_seconds)

        logger.info(
            f"Verification trigger: {len(triggered)} triggered, {len(skipped)} skipped, "
            f"{len(failed)} failed workflows"
        )
        return self._result(len(proposals), triggered, skipped, failed)

    # =========================================================================
    # COMMENTARY
    # =========================================================================

    def run_commentary(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Dispatch commentary for recent code-changing proposals that have none.

        Raises:
            UpstreamUnavailableError: job listing unavailable
        """
        proposals = self.store.recent(limit or self.config.trigger_scan_limit)
        runs = self.jobs.list_runs()

        triggered: List[int] = []
        skipped: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        for proposal in proposals:
            proposal_id = proposal.proposal_id

            reason = self._precheck(proposal_id)
            if reason is None:
                matching = runs_for(runs, self.config.commentary_job_tag, proposal_id)
                if any(r.succeeded for r in matching):
                    reason = "successful run exists"
                elif self.store.commentary_count(proposal_id) > 0:
                    reason = "commentary already exists"
                elif has_recent_run(matching, self.clock(), self.config.commentary_recent_minutes):
                    reason = "recent commentary run exists"
            if reason:
                skipped.append({"proposal_id": proposal_id, "reason": reason})
                continue

            if self.jobs.dispatch(self.config.commentary_workflow, proposal_id):
                triggered.append(proposal_id)
            else:
                failed.append({"proposal_id": proposal_id, "reason": "failed to trigger workflow"})

            self.sleep(self.config.trigger_delay_seconds)

        logger.info(
            f"Commentary trigger: {len(triggered)} triggered, {len(skipped)} skipped, {len(failed)} failed"
        )
        return self._result(len(proposals), triggered, skipped, failed)

    # =========================================================================
    # STATUS
    # =========================================================================

    def verification_status(self, proposal_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """
        Verification state per proposal from the newest matching run.

        Proposals with no run stay pending. Listing failures leave
        everything pending.
        """
        ids = list(proposal_ids)
        status = {pid: {"status": VerificationStatus.PENDING.value, "run_url": None} for pid in ids}

        try:
            runs = self.jobs.list_runs()
        except UpstreamUnavailableError as e:
            logger.warning(f"Job listing unavailable for status lookup: {e}")
            return status

        resolved = set()
        for run in runs:
            proposal_id = match_job_proposal_id(self.config.verification_job_tag, run.display_title)
            if proposal_id not in status or proposal_id in resolved:
                continue
            if run.status != JobStatus.COMPLETED.value:
                state = VerificationStatus.IN_PROGRESS
            elif run.conclusion == "success":
                state = VerificationStatus.VERIFIED
            else:
                state = VerificationStatus.FAILED
            status[proposal_id] = {"status": state.value, "run_url": run.html_url}
            resolved.add(proposal_id)

        return status
