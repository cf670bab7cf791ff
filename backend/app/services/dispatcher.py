"""
Notification Dispatcher

Fans each new proposal out to every subscription whose topic set includes
the proposal's topic.

Per subscription:
1. Web Push attempt, logged sent / failed
2. Gone endpoint: subscription deleted
3. Any push failure + fallback address: one email attempt, logged separately

Once every matching subscription has been attempted the proposal is marked
notified, whatever the individual outcomes were. Delivery failures are not
retried automatically.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import WatcherConfig
from ..exceptions import SubscriptionGoneError, WatcherError
from ..models.db_models import (
    NotificationChannel,
    NotificationStatus,
    ProposalDB,
    SubscriptionDB,
)
from .channels import EmailChannel, PushChannel, proposal_payload, render_proposal_email
from .store import ProposalStore, SubscriptionRegistry


logger = logging.getLogger(__name__)

EXPIRED = "expired"


class NotificationDispatcher:
    """
    Delivers new-proposal notices and records every attempt.

    Usage:
        dispatcher = NotificationDispatcher(db, config, push, email)
        result = dispatcher.dispatch(new_proposals)
    """

    def __init__(
        self,
        db: Session,
        config: WatcherConfig,
        push: PushChannel,
        email: EmailChannel,
    ):
        self.db = db
        self.config = config
        self.push = push
        self.email = email
        self.proposals = ProposalStore(db)
        self.registry = SubscriptionRegistry(db)

    # =========================================================================
    # AUTOMATIC DISPATCH
    # =========================================================================

    def dispatch(self, proposals: List[ProposalDB]) -> Dict[str, Any]:
        """
        Notify matching subscribers about each proposal, then mark it notified.

        Commits after every proposal so an interrupted pass keeps its progress.
        """
        counts = {
            "notifications_sent": 0,
            "notifications_failed": 0,
            "emails_sent": 0,
            "emails_failed": 0,
            "expired": 0,
        }
        details = []

        for proposal in proposals:
            # Re-read each time: an earlier proposal may have retired endpoints
            subscriptions = [s for s in self.registry.all() if s.matches(proposal.topic)]
            outcomes = []

            for subscription in subscriptions:
                subscription_id = subscription.id
                email = subscription.email
                outcome: Dict[str, Any] = {"subscription_id": subscription_id}
                try:
                    self._deliver(proposal, subscription, counts, outcome)
                except Exception as e:
                    logger.error(
                        f"Delivery to subscription {subscription_id} for #{proposal.proposal_id} crashed: {e}"
                    )
                    outcome["error"] = str(e)
                    if "push" not in outcome:
                        counts["notifications_failed"] += 1
                        outcome["push"] = NotificationStatus.FAILED.value
                        self.registry.log_attempt(
                            proposal.proposal_id, subscription_id,
                            NotificationChannel.PUSH, NotificationStatus.FAILED, str(e),
                        )
                    if outcome["push"] != NotificationStatus.SENT.value and "email" not in outcome:
                        try:
                            self._email_fallback(proposal, subscription_id, email, counts, outcome)
                        except Exception as fallback_error:
                            logger.error(
                                f"Email fallback for subscription {subscription_id} crashed: {fallback_error}"
                            )
                outcomes.append(outcome)

            self.proposals.mark_notified(proposal.proposal_id)
            self.db.commit()

            details.append({
                "proposal_id": proposal.proposal_id,
                "subscriptions": len(subscriptions),
                "outcomes": outcomes,
            })
            logger.info(
                f"Dispatched #{proposal.proposal_id} to {len(subscriptions)} matching subscriptions"
            )

        return {**counts, "details": details}

    def _deliver(
        self,
        proposal: ProposalDB,
        subscription: SubscriptionDB,
        counts: Dict[str, int],
        outcome: Dict[str, Any],
    ) -> None:
        """Push, then email fallback on any push failure. Fills outcome as it goes."""
        # Copy out before a possible delete detaches the row
        subscription_id = subscription.id
        endpoint = subscription.endpoint
        email = subscription.email
        proposal_id = proposal.proposal_id

        payload = proposal_payload(proposal_id, proposal.title or "", self.config.proposal_path(proposal_id))

        try:
            self.push.send(endpoint, subscription.p256dh, subscription.auth, payload)
        except SubscriptionGoneError:
            outcome["push"] = EXPIRED
            counts["notifications_failed"] += 1
            counts["expired"] += 1
            self.registry.delete(endpoint)
            self.registry.log_attempt(
                proposal_id, subscription_id, NotificationChannel.PUSH, NotificationStatus.FAILED, EXPIRED
            )
            logger.info(f"Subscription {subscription_id} expired, removed")
        except Exception as e:
            if not isinstance(e, WatcherError):
                logger.error(f"Push to subscription {subscription_id} raised {type(e).__name__}: {e}")
            counts["notifications_failed"] += 1
            outcome["push"] = NotificationStatus.FAILED.value
            self.registry.log_attempt(
                proposal_id, subscription_id, NotificationChannel.PUSH, NotificationStatus.FAILED, str(e)
            )
        else:
            outcome["push"] = NotificationStatus.SENT.value
            counts["notifications_sent"] += 1
            self.registry.mark_success(endpoint)
            self.registry.log_attempt(
                proposal_id, subscription_id, NotificationChannel.PUSH, NotificationStatus.SENT
            )
            return

        self._email_fallback(proposal, subscription_id, email, counts, outcome)

    def _email_fallback(
        self,
        proposal: ProposalDB,
        subscription_id: str,
        email: Optional[str],
        counts: Dict[str, int],
        outcome: Dict[str, Any],
    ) -> None:
        if not email:
            return
        proposal_id = proposal.proposal_id
        topic_name = proposal.topic_name or self.config.topic_name(proposal.topic)
        sent = self._send_email(email, proposal_id, proposal.title or "", topic_name)
        status = NotificationStatus.SENT if sent else NotificationStatus.FAILED
        counts["emails_sent" if sent else "emails_failed"] += 1
        outcome["email"] = status.value
        self.registry.log_attempt(proposal_id, subscription_id, NotificationChannel.EMAIL, status)

    def _send_email(self, to: str, proposal_id: int, title: str, topic_name: str) -> bool:
        html = render_proposal_email(
            proposal_id,
            title,
            topic_name,
            app_url=f"{self.config.app_base_url}{self.config.proposal_path(proposal_id)}",
            dashboard_url=self.config.dashboard_url(proposal_id),
        )
        return self.email.send(to, f"New Proposal: {title}", html)

    # =========================================================================
    # MANUAL TEST SEND
    # =========================================================================

    def send_test(self, simulate_failure: bool = False) -> Dict[str, Any]:
        """
        Send a test notice to every subscription.

        Applies the same gone / fallback handling as dispatch but writes no
        attempt log rows and touches no proposal. simulate_failure skips push
        and goes straight to the email fallback.
        """
        subscriptions = self.registry.all()
        results = {"pushSuccess": 0, "pushFailed": 0, "emailSent": 0, "emailFailed": 0, "expired": 0}

        payload = {
            "title": "Test Notification (Failure Test)" if simulate_failure else "Test Notification",
            "body": (
                "This tests the email fallback when push fails."
                if simulate_failure else "Push notifications are working correctly!"
            ),
            "proposalId": "test",
            "url": "/",
        }

        for subscription in subscriptions:
            endpoint = subscription.endpoint
            email = subscription.email

            if simulate_failure:
                results["pushFailed"] += 1
            else:
                try:
                    self.push.send(endpoint, subscription.p256dh, subscription.auth, payload)
                    results["pushSuccess"] += 1
                    continue
                except SubscriptionGoneError:
                    results["expired"] += 1
                    self.registry.delete(endpoint)
                except WatcherError as e:
                    results["pushFailed"] += 1
                    logger.warning(f"Test push to {subscription.id} failed: {e}")

            if email:
                sent = self.email.send(
                    email,
                    "Test Notification (Email Fallback)",
                    render_proposal_email(
                        0, "Test Notification (Email Fallback)", "Test",
                        app_url=self.config.app_base_url,
                        dashboard_url=self.config.dashboard_base_url,
                    ),
                )
                results["emailSent" if sent else "emailFailed"] += 1

        self.db.commit()

        total = len(subscriptions)
        if simulate_failure:
            message = (
                f"Simulated failure for {total} device(s). "
                f"Emails sent: {results['emailSent']}, failed: {results['emailFailed']}"
            )
        else:
            message = (
                f"Sent to {results['pushSuccess']}/{total} device(s). "
                f"Push failed: {results['pushFailed']}, expired: {results['expired']}, "
                f"email fallbacks: {results['emailSent']}"
            )

        return {
            "run_date": datetime.utcnow().isoformat(),
            "success": results["pushSuccess"] > 0 or results["emailSent"] > 0,
            "message": message,
            "results": results,
        }
