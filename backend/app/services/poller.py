"""
Proposal Poller

One poll:
1. Fetch the most recent proposals from the governance feed
2. Keep those at or above the id floor, in a tracked topic, not yet stored
3. Insert-if-absent each survivor with its extracted commit hash
4. Hand the rows this poll created to the Notification Dispatcher, together
   with older stored rows whose dispatch never finished (notified is false)

Overlapping polls are tolerated: the losing insert is a no-op, and only the
poll that created a row dispatches it until redispatch_after_minutes passes.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Set

from sqlalchemy.orm import Session

from ..clients import GovernanceFeedClient
from ..config import WatcherConfig
from ..models.feed import FeedProposal
from .dispatcher import NotificationDispatcher
from .store import ProposalStore, SubscriptionRegistry
from .text_extraction import extract_commit_hash, proposal_text


logger = logging.getLogger(__name__)


def filter_new_proposals(
    proposals: List[FeedProposal],
    tracked_topics: Set[int],
    seen_ids: Set[int],
    min_proposal_id: int,
) -> List[FeedProposal]:
    return [
        p for p in proposals
        if p.id >= min_proposal_id and p.topic in tracked_topics and p.id not in seen_ids
    ]


class ProposalPoller:
    """
    Ingests new proposals and triggers their notification pass.

    Usage:
        poller = ProposalPoller(db, config, feed, dispatcher)
        result = poller.poll()
        result["new_ids"]  # hand to DiffStatsBackfill.resolve_new_proposals
    """

    def __init__(
        self,
        db: Session,
        config: WatcherConfig,
        feed: GovernanceFeedClient,
        dispatcher: NotificationDispatcher,
    ):
        self.db = db
        self.config = config
        self.feed = feed
        self.dispatcher = dispatcher
        self.store = ProposalStore(db)
        self.registry = SubscriptionRegistry(db)

    def tracked_topics(self) -> Set[int]:
        """Union of subscription topics, or every known topic when that is empty."""
        topics = self.registry.tracked_topics()
        return topics if topics else set(self.config.all_topics)

    def poll(self) -> Dict[str, Any]:
        """
        Run one poll.

        Raises:
            UpstreamUnavailableError: feed unreachable, nothing written
        """
        logger.info("Starting proposal check")
        proposals = self.feed.list_proposals(limit=self.config.feed_limit)

        seen_ids = self.store.seen_ids()
        tracked = self.tracked_topics()
        logger.info(
            f"Fetched {len(proposals)} proposals, {len(seen_ids)} already seen, "
            f"tracking topics {sorted(tracked)}"
        )

        candidates = filter_new_proposals(proposals, tracked, seen_ids, self.config.min_proposal_id)

        created_ids: List[int] = []
        for proposal in candidates:
            commit_hash = extract_commit_hash(
                proposal_text(proposal.title, proposal.summary, proposal.url)
            )
            created = self.store.insert_if_absent(
                proposal,
                topic_name=self.config.topic_name(proposal.topic),
                commit_hash=commit_hash,
            )
            if created:
                created_ids.append(proposal.id)
            else:
                logger.info(f"Proposal #{proposal.id} already stored by an overlapping poll")
        self.db.commit()

        # Rows an interrupted poll stored but never finished dispatching.
        # The grace window keeps a concurrent poll's fresh rows with their owner.
        cutoff = datetime.utcnow() - timedelta(minutes=self.config.redispatch_after_minutes)
        pending = [
            row for row in self.store.unnotified(self.config.min_proposal_id, seen_before=cutoff)
            if row.proposal_id not in created_ids
        ]
        pending_ids = [row.proposal_id for row in pending]
        if pending:
            logger.warning(f"Re-dispatching {len(pending)} unnotified proposals: {pending_ids}")

        if not created_ids and not pending:
            logger.info("No new proposals")
            return {
                "run_date": datetime.utcnow().isoformat(),
                "checked": len(proposals),
                "seen": len(seen_ids),
                "new": 0,
                "new_ids": [],
                "redispatched_ids": [],
                "processed": len(candidates),
                "succeeded": 0,
                "failed": 0,
                "skipped": len(proposals),
                "details": [],
            }

        if created_ids:
            logger.info(f"Found {len(created_ids)} new proposals: {created_ids}")
        rows = pending + [self.store.get(proposal_id) for proposal_id in created_ids]
        dispatch = self.dispatcher.dispatch(rows)

        return {
            "run_date": datetime.utcnow().isoformat(),
            "checked": len(proposals),
            "seen": len(seen_ids),
            "new": len(created_ids),
            "new_ids": created_ids,
            "redispatched_ids": pending_ids,
            "processed": len(candidates),
            "succeeded": len(created_ids),
            "failed": 0,
            "skipped": len(proposals) - len(created_ids),
            "notifications": {
                "sent": dispatch["notifications_sent"],
                "failed": dispatch["notifications_failed"],
                "expired": dispatch["expired"],
            },
            "emails": {
                "sent": dispatch["emails_sent"],
                "failed": dispatch["emails_failed"],
            },
            "details": dispatch["details"],
        }
