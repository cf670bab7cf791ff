"""
Forum Thread Resolver

Finds the discussion thread for proposals that have no canonical thread yet.

Per proposal:
1. Search the forum for the proposal id
2. Keep results in the proposal-discussion category
3. Fetch each candidate's first post; the literal id must appear in it
4. First verified candidate is stored as the canonical thread

Every attempt is written to the forum search log. A rejected forum cookie
aborts the rest of the batch, since every remaining search would fail too.
"""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..clients import ForumClient
from ..config import WatcherConfig
from ..exceptions import ConfigurationError, ForumAuthError
from ..models.db_models import ForumSearchStatus
from ..models.feed import ForumMatch
from .store import ProposalStore


logger = logging.getLogger(__name__)


class ForumThreadResolver:
    """
    Deterministic forum thread lookup.

    Usage:
        resolver = ForumThreadResolver(db, config, forum)
        result = resolver.run()
    """

    def __init__(
        self,
        db: Session,
        config: WatcherConfig,
        forum: ForumClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.config = config
        self.forum = forum
        self.sleep = sleep
        self.store = ProposalStore(db)

    def find_thread(self, proposal_id: int) -> ForumMatch:
        """
        Search and verify one proposal's thread.

        Raises:
            ForumAuthError: cookie rejected
            UpstreamUnavailableError: search failed after retries
        """
        needle = str(proposal_id)
        topics = self.forum.search(needle)
        if not topics:
            return ForumMatch(found=False, reason="No search results found")

        in_category = [t for t in topics if t.category_id == self.config.forum_category_id]
        if not in_category:
            categories = sorted({t.category_id for t in topics if t.category_id is not None})
            return ForumMatch(
                found=False,
                reason=(
                    f"Found {len(topics)} results but none in category "
                    f"{self.config.forum_category_id} (categories: {categories})"
                ),
            )

        for topic in in_category:
            post = self.forum.first_post(topic.id, topic.slug)
            matched = post is not None and needle in post.text
            logger.info(f"[{proposal_id}] Thread {topic.id} verification: {'MATCH' if matched else 'no match'}")
            if matched:
                return ForumMatch(
                    found=True,
                    url=self.forum.topic_url(topic),
                    title=topic.title,
                    topic_id=topic.id,
                )

        return ForumMatch(
            found=False,
            reason=f"Found {len(in_category)} potential threads but none contained proposal ID",
        )

    def run(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Resolve threads for recent proposals without a canonical one.

        Raises:
            ConfigurationError: no forum credential configured
        """
        if not self.forum.has_credentials:
            raise ConfigurationError("Forum cookies not configured")

        recent = self.store.recent(limit or self.config.forum_scan_limit)
        pending = self.store.ids_without_canonical_thread([p.proposal_id for p in recent])
        logger.info(f"Checking {len(pending)} proposals without canonical forum threads")

        found: List[int] = []
        not_found: List[int] = []
        errors: List[Dict[str, Any]] = []
        aborted = False

        for index, proposal_id in enumerate(pending):
            query = str(proposal_id)
            try:
                match = self.find_thread(proposal_id)
            except ForumAuthError as e:
                self.store.log_forum_search(proposal_id, query, 0, None, ForumSearchStatus.AUTH_FAILED, str(e))
                self.db.commit()
                errors.append({"proposal_id": proposal_id, "error": str(e)})
                logger.error(f"Forum rejected credentials, aborting remaining {len(pending) - index - 1}")
                aborted = True
                break
            except Exception as e:
                self.db.rollback()
                self.store.log_forum_search(proposal_id, query, 0, None, ForumSearchStatus.ERROR, str(e))
                self.db.commit()
                errors.append({"proposal_id": proposal_id, "error": str(e)})
                logger.error(f"Error searching for {proposal_id}: {e}")
                continue

            if match.found:
                self.store.add_forum_thread(proposal_id, match.url, match.title, is_canonical=True)
                self.store.log_forum_search(proposal_id, query, 1, match.url, ForumSearchStatus.SUCCESS)
                found.append(proposal_id)
                logger.info(f"Found forum thread for {proposal_id}: {match.url}")
            else:
                self.store.log_forum_search(
                    proposal_id, query, 0, None, ForumSearchStatus.NO_RESULTS, match.reason
                )
                not_found.append(proposal_id)
                logger.info(f"No forum thread found for {proposal_id}: {match.reason}")
            self.db.commit()

            self.sleep(self.config.forum_delay_seconds)

        return {
            "run_date": datetime.utcnow().isoformat(),
            "processed": len(found) + len(not_found) + len(errors),
            "succeeded": len(found),
            "failed": len(errors),
            "skipped": len(recent) - len(pending),
            "checked": len(pending),
            "found": len(found),
            "not_found": len(not_found),
            "aborted": aborted,
            "details": {
                "found": found,
                "not_found": not_found,
                "errors": errors,
            },
        }

    # =========================================================================
    # AI FALLBACK
    # =========================================================================

    def store_ai_match(self, proposal_id: int, match: ForumMatch) -> None:
        """Record an AI match as a non-canonical thread with its confidence."""
        self.store.add_forum_thread(
            proposal_id, match.url, match.title,
            is_canonical=False, confidence=match.confidence,
        )

    def run_with_ai(self, matcher, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        AI-assisted pass for recent proposals that have no thread at all.

        Used only when the deterministic search cannot run.
        """
        recent = self.store.recent(limit or self.config.forum_scan_limit)
        pending = [p for p in recent if not self.store.forum_threads(p.proposal_id)]
        logger.info(f"AI forum pass over {len(pending)} proposals without threads")

        found: List[int] = []
        not_found: List[int] = []
        errors: List[Dict[str, Any]] = []

        for proposal in pending:
            proposal_id = proposal.proposal_id
            query = f"ai:{proposal_id}"
            try:
                match = matcher.find(
                    proposal_id, proposal.title or "", proposal.topic_name, proposal.created_at_upstream
                )
            except Exception as e:
                self.db.rollback()
                self.store.log_forum_search(proposal_id, query, 0, None, ForumSearchStatus.ERROR, str(e))
                self.db.commit()
                errors.append({"proposal_id": proposal_id, "error": str(e)})
                logger.error(f"AI forum search for {proposal_id} failed: {e}")
                continue

            if match.found:
                self.store_ai_match(proposal_id, match)
                self.store.log_forum_search(proposal_id, query, 1, match.url, ForumSearchStatus.SUCCESS)
                found.append(proposal_id)
            else:
                self.store.log_forum_search(
                    proposal_id, query, 0, None, ForumSearchStatus.NO_RESULTS, match.reason
                )
                not_found.append(proposal_id)
            self.db.commit()

        return {
            "run_date": datetime.utcnow().isoformat(),
            "mode": "ai",
            "processed": len(pending),
            "succeeded": len(found),
            "failed": len(errors),
            "skipped": len(recent) - len(pending),
            "checked": len(pending),
            "found": len(found),
            "not_found": len(not_found),
            "details": {
                "found": found,
                "not_found": not_found,
                "errors": errors,
            },
        }
