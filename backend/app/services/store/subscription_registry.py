"""
Subscription Registry

Notification endpoints, their topic interests, and the append-only log of
every delivery attempt made to them.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Set
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    SubscriptionDB,
    NotificationLogDB,
    NotificationChannel,
    NotificationStatus,
)
from .upsert import insert_if_absent


class SubscriptionRegistry:
    """Read / upsert / delete access to push subscriptions keyed by endpoint."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def save(
        self,
        endpoint: str,
        p256dh: str,
        auth: str,
        email: Optional[str] = None,
        topics: Optional[Iterable[int]] = None,
        default_topics: Iterable[int] = (),
    ) -> SubscriptionDB:
        """
        Create or refresh a subscription.

        Re-subscribing an existing endpoint rotates its keys and email but
        keeps the topic preferences unless new ones are given. A new endpoint
        without topics starts with default_topics.
        """
        created = insert_if_absent(
            self.db,
            SubscriptionDB,
            {
                "id": str(uuid4()),
                "endpoint": endpoint,
                "p256dh": p256dh,
                "auth": auth,
                "email": email or None,
                "topics": sorted(set(topics if topics is not None else default_topics)),
                "created_at": datetime.utcnow(),
            },
            conflict_columns=["endpoint"],
        )

        subscription = self.get(endpoint)
        if not created:
            subscription.p256dh = p256dh
            subscription.auth = auth
            subscription.email = email or None
            if topics is not None:
                subscription.topics = sorted(set(topics))
            self.db.flush()
        return subscription

    def get(self, endpoint: str) -> Optional[SubscriptionDB]:
        return self.db.query(SubscriptionDB).filter(SubscriptionDB.endpoint == endpoint).first()

    def all(self) -> List[SubscriptionDB]:
        return self.db.query(SubscriptionDB).order_by(SubscriptionDB.created_at).all()

    def delete(self, endpoint: str) -> bool:
        """Remove an endpoint. Deleting an already-deleted endpoint is a no-op."""
        deleted = self.db.query(SubscriptionDB).filter(
            SubscriptionDB.endpoint == endpoint
        ).delete(synchronize_session="fetch")
        return deleted > 0

    def mark_success(self, endpoint: str) -> None:
        self.db.query(SubscriptionDB).filter(SubscriptionDB.endpoint == endpoint).update(
            {"last_success_at": datetime.utcnow()}, synchronize_session="fetch"
        )

    def update_topics(self, endpoint: str, topics: Iterable[int]) -> Optional[SubscriptionDB]:
        subscription = self.get(endpoint)
        if subscription is None:
            return None
        subscription.topics = sorted(set(topics))
        self.db.flush()
        return subscription

    def tracked_topics(self) -> Set[int]:
        """Union of every subscription's topic set."""
        topics: Set[int] = set()
        for (subscription_topics,) in self.db.query(SubscriptionDB.topics).all():
            topics.update(subscription_topics or [])
        return topics

    # =========================================================================
    # ATTEMPT LOG
    # =========================================================================

    def log_attempt(
        self,
        proposal_id: int,
        subscription_id: str,
        channel: NotificationChannel,
        status: NotificationStatus,
        error: Optional[str] = None,
    ) -> NotificationLogDB:
        entry = NotificationLogDB(
            id=str(uuid4()),
            proposal_id=proposal_id,
            subscription_id=subscription_id,
            channel=channel.value,
            status=status.value,
            error=error,
            created_at=datetime.utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def attempts_for(self, proposal_id: int) -> List[NotificationLogDB]:
        return (
            self.db.query(NotificationLogDB)
            .filter(NotificationLogDB.proposal_id == proposal_id)
            .order_by(NotificationLogDB.created_at)
            .all()
        )
