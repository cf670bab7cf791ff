"""
Proposal Watch - SQLAlchemy ORM Models
Durable store for proposals, subscriptions and the enrichment audit trail
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Text, JSON, Boolean, Numeric,
    ForeignKey, UniqueConstraint, Index, text,
)
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class NotificationChannel(str, Enum):
    """Delivery channels. PUSH is primary, EMAIL is the fallback."""
    PUSH = "push"
    EMAIL = "email"


class NotificationStatus(str, Enum):
    """Outcome of a single delivery attempt."""
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


class ForumSearchStatus(str, Enum):
    """Outcome of a forum search attempt."""
    SUCCESS = "success"
    NO_RESULTS = "no_results"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"


# =============================================================================
# DEDUP STORE
# =============================================================================

class ProposalDB(Base):
    """
    One row per governance proposal, created by the poller and never deleted.

    lines_added / lines_removed stay NULL until the diff-stats backfill has
    tried the proposal; 0/0 means it tried and found nothing.
    """
    __tablename__ = "proposals_seen"

    proposal_id = Column(BigInteger, primary_key=True, autoincrement=False)
    topic = Column(Integer, nullable=False, index=True)
    topic_name = Column(String(100), nullable=True)
    title = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    summary_url = Column(Text, nullable=True)
    commit_hash = Column(String(40), nullable=True)
    created_at_upstream = Column(DateTime, nullable=True)
    first_seen_at = Column(DateTime, default=datetime.utcnow)

    notified = Column(Boolean, default=False, nullable=False)

    # Reviewer workflow - written by the reviewer-facing surface only
    viewer_seen_at = Column(DateTime, nullable=True)
    review_url = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    # Diff stats
    lines_added = Column(Integer, nullable=True)
    lines_removed = Column(Integer, nullable=True)
    diff_stats_resolved_at = Column(DateTime, nullable=True)

    @property
    def has_diff_stats(self) -> bool:
        return self.lines_added is not None and self.lines_removed is not None


class ForumThreadDB(Base):
    """Forum thread linked to a proposal. At most one canonical per proposal."""
    __tablename__ = "proposal_forum_threads"
    __table_args__ = (
        UniqueConstraint("proposal_id", "forum_url", name="uq_forum_thread_proposal_url"),
        # At most one canonical thread per proposal
        Index(
            "uq_forum_threads_one_canonical",
            "proposal_id",
            unique=True,
            postgresql_where=text("is_canonical"),
            sqlite_where=text("is_canonical = 1"),
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    proposal_id = Column(BigInteger, nullable=False, index=True)
    forum_url = Column(Text, nullable=False)
    thread_title = Column(Text, nullable=True)
    is_canonical = Column(Boolean, default=False, nullable=False)
    confidence = Column(String(20), nullable=True)  # Set by the AI matcher only
    added_at = Column(DateTime, default=datetime.utcnow)


class ForumSearchLogDB(Base):
    """Append-only audit log of forum search attempts."""
    __tablename__ = "forum_search_log"

    id = Column(String(36), primary_key=True)  # UUID
    proposal_id = Column(BigInteger, nullable=False, index=True)
    search_query = Column(Text, nullable=False)
    results_count = Column(Integer, nullable=False, default=0)
    selected_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class CommentaryDB(Base):
    """AI-written commentary. Every version posted by the job runner is kept."""
    __tablename__ = "proposal_commentaries"

    id = Column(String(36), primary_key=True)  # UUID
    proposal_id = Column(
        BigInteger,
        ForeignKey("proposals_seen.proposal_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(Text, nullable=True)
    canister_id = Column(String(64), nullable=True)
    analysis_incomplete = Column(Boolean, default=False)
    incomplete_reason = Column(Text, nullable=True)

    cost_usd = Column(Numeric(10, 4), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    turns = Column(Integer, nullable=True)

    commentary_data = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# SUBSCRIPTION REGISTRY
# =============================================================================

class SubscriptionDB(Base):
    """A push endpoint with its topic interests and optional email fallback."""
    __tablename__ = "push_subscriptions"

    id = Column(String(36), primary_key=True)  # UUID
    endpoint = Column(Text, unique=True, nullable=False)
    p256dh = Column(Text, nullable=False)
    auth = Column(Text, nullable=False)
    email = Column(String(255), nullable=True)
    topics = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_success_at = Column(DateTime, nullable=True)

    def matches(self, topic: int) -> bool:
        """An empty topic set matches nothing."""
        return topic in (self.topics or [])


class NotificationLogDB(Base):
    """Append-only record of every delivery attempt."""
    __tablename__ = "notification_log"

    id = Column(String(36), primary_key=True)  # UUID
    proposal_id = Column(BigInteger, nullable=False, index=True)
    subscription_id = Column(String(36), nullable=False, index=True)
    channel = Column(String(10), nullable=False)
    status = Column(String(10), nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
