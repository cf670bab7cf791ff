"""
Diff-Stats Backfill

Resolves a proposal's code references to line-level added / removed counts.

Resolution order:
(a) every pull request and commit / compare link in the proposal text, summed
(b) the proposal's own source URL when it points at the code host
(c) the extracted commit hash, searched across the known repositories

(b) and (c) honor the sub-path of a tree link so only files under it count.
When nothing resolves from the live feed record the backfill stores 0 / 0 so
the proposal is not retried on every pass. While the feed is down it never
stores 0 / 0; the proposal stays unresolved for the next run.
"""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..clients import CodeHostClient, GovernanceFeedClient
from ..config import WatcherConfig
from ..exceptions import UpstreamUnavailableError
from ..models.db_models import ProposalDB
from ..models.feed import DiffStats
from .store import ProposalStore
from .text_extraction import (
    extract_commit_references,
    extract_pr_references,
    parse_github_url,
    points_at_code_host,
    proposal_text,
)


logger = logging.getLogger(__name__)


class DiffStatsResolver:
    """Turns proposal text and links into DiffStats via the code host."""

    def __init__(self, code_host: CodeHostClient, config: WatcherConfig):
        self.code_host = code_host
        self.config = config

    def from_references(self, text: str) -> Optional[DiffStats]:
        """Sum of every PR and commit / compare link that resolves."""
        total = DiffStats()
        resolved = 0

        for pr in extract_pr_references(text):
            stats = self.code_host.pull_request_stats(pr)
            if stats is not None:
                total = total + stats
                resolved += 1

        for ref in extract_commit_references(text):
            stats = self.code_host.ref_stats(ref)
            if stats is not None:
                total = total + stats
                resolved += 1

        return total if resolved else None

    def resolve(
        self,
        text: str,
        source_url: Optional[str],
        commit_hash: Optional[str],
    ) -> Optional[Tuple[DiffStats, str]]:
        """
        Returns:
            (stats, source) where source names the step that resolved them,
            or None when no step did
        """
        stats = self.from_references(text)
        if stats is not None:
            return stats, "references"

        parsed = parse_github_url(source_url) if points_at_code_host(source_url) else None
        path_filter = parsed.path if parsed else None

        if parsed is not None:
            stats = self.code_host.ref_stats(parsed)
            if stats is not None:
                return stats, f"commit ({path_filter})" if path_filter else "commit"

        if commit_hash:
            stats = self.code_host.find_commit(commit_hash, path_filter)
            if stats is not None:
                return stats, f"hash ({path_filter})" if path_filter else "hash"

        return None


class DiffStatsBackfill:
    """
    Batched, rate-limited diff-stat resolution over stored proposals.

    Usage:
        backfill = DiffStatsBackfill(db, config, feed, resolver)
        result = backfill.run(batch=20, force=False)
    """

    def __init__(
        self,
        db: Session,
        config: WatcherConfig,
        feed: GovernanceFeedClient,
        resolver: DiffStatsResolver,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.config = config
        self.feed = feed
        self.resolver = resolver
        self.sleep = sleep
        self.store = ProposalStore(db)

    def _text_for(self, proposal: ProposalDB) -> Tuple[str, bool]:
        """
        Full proposal text to search for code references.

        Returns:
            (text, complete). complete is False when the feed was unreachable
            and the stored title and summary stood in for the live record.
        """
        try:
            detail = self.feed.get_proposal(proposal.proposal_id)
        except UpstreamUnavailableError as e:
            logger.warning(f"Feed detail unavailable for #{proposal.proposal_id}: {e}")
            return proposal_text(proposal.title, proposal.summary, proposal.summary_url), False
        if detail is not None:
            return proposal_text(detail.title, detail.summary, detail.url), True
        return proposal_text(proposal.title, proposal.summary, proposal.summary_url), True

    def clamp_batch(self, batch: Optional[int]) -> int:
        if not batch or batch < 1:
            return self.config.backfill_default_batch
        return min(batch, self.config.backfill_max_batch)

    def run(self, batch: Optional[int] = None, force: bool = False) -> Dict[str, Any]:
        batch_size = self.clamp_batch(batch)
        proposals = self.store.needing_diff_stats(batch_size, force)
        logger.info(f"Backfilling diff stats for {len(proposals)} proposals (batch={batch_size}, force={force})")

        succeeded = 0
        no_data = 0
        failed = 0
        details: List[Dict[str, Any]] = []

        for proposal in proposals:
            proposal_id = proposal.proposal_id
            try:
                text, complete = self._text_for(proposal)
                resolved = self.resolver.resolve(text, proposal.summary_url, proposal.commit_hash)

                if resolved is not None:
                    stats, source = resolved
                    self.store.set_diff_stats(proposal_id, stats.additions, stats.deletions)
                    self.db.commit()
                    succeeded += 1
                    details.append({
                        "proposal_id": proposal_id,
                        "status": "success",
                        "lines_added": stats.additions,
                        "lines_removed": stats.deletions,
                        "source": source,
                    })
                    logger.info(f"#{proposal_id}: +{stats.additions} -{stats.deletions} (from {source})")
                elif not complete:
                    failed += 1
                    details.append({
                        "proposal_id": proposal_id,
                        "status": "failed",
                        "error": "governance feed unavailable",
                    })
                    logger.warning(f"#{proposal_id}: unresolved while the feed is down, retrying next run")
                else:
                    self.store.set_diff_stats(proposal_id, 0, 0)
                    self.db.commit()
                    no_data += 1
                    details.append({"proposal_id": proposal_id, "status": "no_data"})
                    logger.info(f"#{proposal_id}: no code host data found")

                self.sleep(self.config.backfill_delay_seconds)
            except Exception as e:
                self.db.rollback()
                failed += 1
                details.append({"proposal_id": proposal_id, "status": "failed", "error": str(e)})
                logger.error(f"Diff stats for #{proposal_id} failed: {e}")

        return {
            "run_date": datetime.utcnow().isoformat(),
            "processed": len(proposals),
            "succeeded": succeeded,
            "no_data": no_data,
            "failed": failed,
            "skipped": 0,
            "details": details,
        }

    def resolve_new_proposals(self, proposal_ids: Iterable[int]) -> int:
        """
        Post-poll resolution for freshly ingested proposals.

        Only real stats are written; a proposal that doesn't resolve stays
        unresolved for the regular backfill. Errors are logged, never raised.

        Returns:
            number of proposals that got stats
        """
        stored = 0
        for proposal_id in proposal_ids:
            try:
                proposal = self.store.get(proposal_id)
                if proposal is None or proposal.has_diff_stats:
                    continue

                text, _ = self._text_for(proposal)
                if not (proposal.commit_hash or "github.com" in text or points_at_code_host(proposal.summary_url)):
                    continue

                resolved = self.resolver.resolve(text, proposal.summary_url, proposal.commit_hash)
                if resolved is None:
                    continue

                stats, source = resolved
                self.store.set_diff_stats(proposal_id, stats.additions, stats.deletions)
                self.db.commit()
                stored += 1
                logger.info(f"Stored diff stats for #{proposal_id}: +{stats.additions} -{stats.deletions} (from {source})")
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to fetch diff stats for #{proposal_id}: {e}")
        return stored
