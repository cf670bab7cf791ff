"""
Dedup Store

System of record for which proposals have been observed, notified, reviewed
and enriched. Every component goes through these narrow read / upsert
operations; nothing caches this state across invocations.

Methods flush but never commit. Callers commit at their own progress points
so that an interrupted invocation keeps everything finished so far.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ...models.db_models import (
    ProposalDB,
    ForumThreadDB,
    ForumSearchLogDB,
    CommentaryDB,
    ForumSearchStatus,
)
from ...models.feed import FeedProposal
from .upsert import insert_if_absent


class ProposalStore:
    """Narrow read / upsert access to proposal records and their enrichments."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # PROPOSALS
    # =========================================================================

    def seen_ids(self) -> Set[int]:
        return {row[0] for row in self.db.query(ProposalDB.proposal_id).all()}

    def get(self, proposal_id: int) -> Optional[ProposalDB]:
        return self.db.query(ProposalDB).filter(ProposalDB.proposal_id == proposal_id).first()

    def insert_if_absent(
        self,
        proposal: FeedProposal,
        topic_name: Optional[str] = None,
        commit_hash: Optional[str] = None,
    ) -> bool:
        """
        Persist a newly observed proposal.

        Returns:
            True if this call created the row. A concurrent poll that already
            stored the same id makes this a no-op returning False.
        """
        return insert_if_absent(
            self.db,
            ProposalDB,
            {
                "proposal_id": proposal.id,
                "topic": proposal.topic,
                "topic_name": topic_name,
                "title": proposal.title,
                "summary": proposal.summary or None,
                "summary_url": proposal.url or None,
                "commit_hash": commit_hash,
                "created_at_upstream": proposal.created_at,
                "first_seen_at": datetime.utcnow(),
                "notified": False,
            },
            conflict_columns=["proposal_id"],
        )

    def mark_notified(self, proposal_id: int) -> None:
        self.db.execute(
            update(ProposalDB)
            .where(ProposalDB.proposal_id == proposal_id)
            .values(notified=True)
        )

    def unnotified(self, min_proposal_id: int, seen_before: datetime) -> List[ProposalDB]:
        """Rows whose dispatch never finished, oldest first."""
        return (
            self.db.query(ProposalDB)
            .filter(
                ProposalDB.notified.is_(False),
                ProposalDB.proposal_id >= min_proposal_id,
                ProposalDB.first_seen_at < seen_before,
            )
            .order_by(ProposalDB.proposal_id)
            .all()
        )

    def recent(self, limit: int = 50) -> List[ProposalDB]:
        return (
            self.db.query(ProposalDB)
            .order_by(ProposalDB.proposal_id.desc())
            .limit(limit)
            .all()
        )

    # =========================================================================
    # DIFF STATS
    # =========================================================================

    def needing_diff_stats(self, limit: int, force: bool = False) -> List[ProposalDB]:
        """Proposals with unresolved line counts, newest first. force ignores resolution."""
        query = self.db.query(ProposalDB)
        if not force:
            query = query.filter(
                (ProposalDB.lines_added.is_(None)) | (ProposalDB.lines_removed.is_(None))
            )
        return query.order_by(ProposalDB.proposal_id.desc()).limit(limit).all()

    def set_diff_stats(self, proposal_id: int, lines_added: int, lines_removed: int) -> None:
        self.db.execute(
            update(ProposalDB)
            .where(ProposalDB.proposal_id == proposal_id)
            .values(
                lines_added=lines_added,
                lines_removed=lines_removed,
                diff_stats_resolved_at=datetime.utcnow(),
            )
        )

    # =========================================================================
    # FORUM THREADS
    # =========================================================================

    def canonical_thread(self, proposal_id: int) -> Optional[ForumThreadDB]:
        return self.db.query(ForumThreadDB).filter(
            ForumThreadDB.proposal_id == proposal_id,
            ForumThreadDB.is_canonical.is_(True),
        ).first()

    def forum_threads(self, proposal_id: int) -> List[ForumThreadDB]:
        return (
            self.db.query(ForumThreadDB)
            .filter(ForumThreadDB.proposal_id == proposal_id)
            .order_by(ForumThreadDB.is_canonical.desc(), ForumThreadDB.added_at.desc())
            .all()
        )

    def ids_without_canonical_thread(self, proposal_ids: Iterable[int]) -> List[int]:
        ids = list(proposal_ids)
        if not ids:
            return []
        with_canonical = {
            row[0]
            for row in self.db.query(ForumThreadDB.proposal_id).filter(
                ForumThreadDB.proposal_id.in_(ids),
                ForumThreadDB.is_canonical.is_(True),
            ).all()
        }
        return [pid for pid in ids if pid not in with_canonical]

    def add_forum_thread(
        self,
        proposal_id: int,
        forum_url: str,
        thread_title: Optional[str] = None,
        is_canonical: bool = False,
        confidence: Optional[str] = None,
    ) -> ForumThreadDB:
        """
        Upsert a thread keyed by (proposal_id, forum_url).

        A canonical request is downgraded to non-canonical when the proposal
        already has a canonical thread; the partial unique index backs this
        up against overlapping writers.
        """
        existing = self.db.query(ForumThreadDB).filter(
            ForumThreadDB.proposal_id == proposal_id,
            ForumThreadDB.forum_url == forum_url,
        ).first()

        if existing is not None:
            if thread_title:
                existing.thread_title = thread_title
            if is_canonical and not existing.is_canonical and self.canonical_thread(proposal_id) is None:
                existing.is_canonical = True
            self.db.flush()
            return existing

        values: Dict[str, Any] = {
            "id": str(uuid4()),
            "proposal_id": proposal_id,
            "forum_url": forum_url,
            "thread_title": thread_title,
            "is_canonical": bool(is_canonical) and self.canonical_thread(proposal_id) is None,
            "confidence": confidence,
            "added_at": datetime.utcnow(),
        }
        inserted = insert_if_absent(self.db, ForumThreadDB, values)
        if not inserted and values["is_canonical"]:
            # Lost the canonical slot to an overlapping writer
            values["is_canonical"] = False
            insert_if_absent(self.db, ForumThreadDB, values)

        return self.db.query(ForumThreadDB).filter(
            ForumThreadDB.proposal_id == proposal_id,
            ForumThreadDB.forum_url == forum_url,
        ).one()

    def remove_forum_thread(self, proposal_id: int, forum_url: str) -> bool:
        deleted = self.db.query(ForumThreadDB).filter(
            ForumThreadDB.proposal_id == proposal_id,
            ForumThreadDB.forum_url == forum_url,
        ).delete(synchronize_session=False)
        return deleted > 0

    def log_forum_search(
        self,
        proposal_id: int,
        search_query: str,
        results_count: int,
        selected_url: Optional[str],
        status: ForumSearchStatus,
        error_message: Optional[str] = None,
    ) -> ForumSearchLogDB:
        entry = ForumSearchLogDB(
            id=str(uuid4()),
            proposal_id=proposal_id,
            search_query=search_query,
            results_count=results_count,
            selected_url=selected_url,
            status=status.value,
            error_message=error_message,
            created_at=datetime.utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    # =========================================================================
    # COMMENTARY
    # =========================================================================

    def save_commentary(
        self,
        proposal_id: int,
        commentary: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CommentaryDB:
        metadata = metadata or {}
        record = CommentaryDB(
            id=str(uuid4()),
            proposal_id=proposal_id,
            title=commentary.get("title"),
            canister_id=commentary.get("canister_id"),
            analysis_incomplete=bool(commentary.get("analysis_incomplete", False)),
            incomplete_reason=commentary.get("incomplete_reason"),
            cost_usd=metadata.get("cost_usd"),
            duration_ms=metadata.get("duration_ms"),
            turns=metadata.get("turns"),
            commentary_data=commentary,
            created_at=datetime.utcnow(),
        )
        self.db.add(record)
        self.db.flush()
        return record

    def latest_commentary(self, proposal_id: int) -> Optional[CommentaryDB]:
        return (
            self.db.query(CommentaryDB)
            .filter(CommentaryDB.proposal_id == proposal_id)
            .order_by(CommentaryDB.created_at.desc())
            .first()
        )

    def commentary_count(self, proposal_id: int) -> int:
        return (
            self.db.query(func.count(CommentaryDB.id))
            .filter(CommentaryDB.proposal_id == proposal_id)
            .scalar()
        ) or 0
