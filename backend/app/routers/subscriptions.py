"""
Subscription API Routes

Browser push opt-in / opt-out, topic preferences, and the manual test send.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import require_cron_secret
from ..config import WatcherConfig
from ..database import get_db
from ..dependencies import get_config, get_email_channel, get_push_channel
from ..services.channels import EmailChannel, PushChannel
from ..services.dispatcher import NotificationDispatcher
from ..services.store import SubscriptionRegistry


logger = logging.getLogger(__name__)

router = APIRouter(tags=["subscriptions"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscriptionPayload(BaseModel):
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys


class SubscribeRequest(BaseModel):
    subscription: PushSubscriptionPayload
    email: Optional[str] = None
    topics: Optional[List[int]] = None


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(..., min_length=1)


class PreferencesRequest(BaseModel):
    endpoint: str = Field(..., min_length=1)
    topics: List[int]


class TestNotificationRequest(BaseModel):
    simulateFailure: bool = False


def _validate_topics(topics: List[int], config: WatcherConfig) -> List[int]:
    if not topics:
        raise HTTPException(status_code=400, detail="At least one topic required")
    unknown = sorted(set(topics) - set(config.all_topics))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown topic codes: {unknown}")
    return topics


# =============================================================================
# SUBSCRIBE / UNSUBSCRIBE
# =============================================================================

@router.post("/subscribe", response_model=dict)
def subscribe(
    request: SubscribeRequest,
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
):
    """Save a push subscription, keyed by endpoint."""
    if request.topics is not None:
        _validate_topics(request.topics, config)

    registry = SubscriptionRegistry(db)
    subscription = registry.save(
        request.subscription.endpoint,
        request.subscription.keys.p256dh,
        request.subscription.keys.auth,
        email=request.email,
        topics=request.topics,
        default_topics=config.default_topics,
    )
    db.commit()
    logger.info(f"Saved subscription {subscription.id}")
    return {"success": True, "topics": subscription.topics}


@router.delete("/subscribe", response_model=dict)
def unsubscribe(request: UnsubscribeRequest, db: Session = Depends(get_db)):
    """Remove a push subscription. Unknown endpoints are not an error."""
    SubscriptionRegistry(db).delete(request.endpoint)
    db.commit()
    return {"success": True}


# =============================================================================
# PREFERENCES
# =============================================================================

@router.get("/subscription-preferences", response_model=dict)
def get_preferences(
    endpoint: str,
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
):
    subscription = SubscriptionRegistry(db).get(endpoint)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return {
        "topics": subscription.topics,
        "available": {code: config.topic_name(code) for code in config.all_topics},
    }


@router.post("/subscription-preferences", response_model=dict)
def update_preferences(
    request: PreferencesRequest,
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
):
    topics = _validate_topics(request.topics, config)
    subscription = SubscriptionRegistry(db).update_topics(request.endpoint, topics)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    db.commit()
    return {"success": True, "topics": subscription.topics}


# =============================================================================
# MANUAL TEST SEND
# =============================================================================

@router.post("/test-notification", response_model=dict)
def test_notification(
    request: TestNotificationRequest,
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    push: PushChannel = Depends(get_push_channel),
    email: EmailChannel = Depends(get_email_channel),
    _: bool = Depends(require_cron_secret),
):
    """Send a test notice to every device, optionally skipping push."""
    registry = SubscriptionRegistry(db)
    if not registry.all():
        raise HTTPException(status_code=404, detail="No subscriptions found")

    dispatcher = NotificationDispatcher(db, config, push, email)
    return dispatcher.send_test(simulate_failure=request.simulateFailure)
