"""
Tests for proposal ingestion and notification fan-out.

Covers:
1. New proposal in a tracked topic -> stored, pushed, marked notified
2. Gone endpoint -> subscription removed, email fallback sent
3. Unreachable push service or crashed delivery -> email fallback still sent
4. Repeated polls never re-notify; an interrupted dispatch is resumed
5. Id floor and topic filtering
6. Empty subscription union falls back to every topic
7. A losing concurrent insert does not dispatch
8. Feed outage writes nothing
9. Manual test send
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import requests

from app.exceptions import DeliveryError, SubscriptionGoneError, UpstreamUnavailableError
from app.models.db_models import NotificationLogDB
from app.services.channels import PushChannel
from app.services.dispatcher import NotificationDispatcher
from app.services.poller import ProposalPoller, filter_new_proposals
from app.services.store import ProposalStore, SubscriptionRegistry


SHA = "a1b2c3d4e5f60718293a4b5c6d7e8f9012345678"
ENDPOINT_A = "https://fcm.googleapis.com/fcm/send/device-a"
ENDPOINT_B = "https://updates.push.services.mozilla.com/wpush/v2/device-b"


def _poller(db, config, feed, push, email):
    return ProposalPoller(db, config, feed, NotificationDispatcher(db, config, push, email))


def _feed(*proposals):
    feed = MagicMock()
    feed.list_proposals.return_value = list(proposals)
    return feed


def _attempts(db, proposal_id):
    rows = (
        db.query(NotificationLogDB)
        .filter(NotificationLogDB.proposal_id == proposal_id)
        .order_by(NotificationLogDB.channel.desc(), NotificationLogDB.status)
        .all()
    )
    return [(r.channel, r.status, r.error) for r in rows]


# =============================================================================
# TEST: INGESTION
# =============================================================================

class TestProposalPoller:

    def test_new_proposal_is_stored_and_pushed(self, db, config, push, email, make_proposal):
        registry = SubscriptionRegistry(db)
        registry.save(ENDPOINT_A, "p256", "auth", topics=[17])
        db.commit()

        feed = _feed(make_proposal(
            140102, title="Upgrade governance canister",
            summary=f"Built from commit {SHA}",
        ))
        result = _poller(db, config, feed, push, email).poll()

        assert result["new"] == 1
        assert result["new_ids"] == [140102]
        assert result["notifications"] == {"sent": 1, "failed": 0, "expired": 0}
        assert result["emails"] == {"sent": 0, "failed": 0}

        endpoint, p256dh, auth, payload = push.send.call_args[0]
        assert endpoint == ENDPOINT_A
        assert payload == {
            "title": "New Proposal",
            "body": "#140102: Upgrade governance canister",
            "proposalId": "140102",
            "url": "/proposals/140102",
        }

        row = ProposalStore(db).get(140102)
        assert row.notified is True
        assert row.commit_hash == SHA
        assert row.topic_name == "Protocol Canister Management"
        assert _attempts(db, 140102) == [("push", "sent", None)]
        assert registry.get(ENDPOINT_A).last_success_at is not None
        email.send.assert_not_called()

    def test_gone_endpoint_is_removed_and_email_sent(self, db, config, push, email, make_proposal):
        registry = SubscriptionRegistry(db)
        registry.save(ENDPOINT_A, "p256", "auth", email="reviewer@example.com", topics=[17])
        db.commit()
        push.send.side_effect = SubscriptionGoneError(ENDPOINT_A, 410)

        result = _poller(db, config, _feed(make_proposal(140102)), push, email).poll()

        assert result["notifications"] == {"sent": 0, "failed": 1, "expired": 1}
        assert result["emails"] == {"sent": 1, "failed": 0}
        assert registry.get(ENDPOINT_A) is None
        assert _attempts(db, 140102) == [
            ("push", "failed", "expired"),
            ("email", "sent", None),
        ]
        to, subject, html = email.send.call_args[0]
        assert to == "reviewer@example.com"
        assert "140102" in html
        assert "https://watch.test/proposals/140102" in html
        assert ProposalStore(db).get(140102).notified is True

    def test_push_failure_without_email_is_only_logged(self, db, config, push, email, make_proposal):
        registry = SubscriptionRegistry(db)
        registry.save(ENDPOINT_A, "p256", "auth", topics=[17])
        db.commit()
        push.send.side_effect = DeliveryError("push failed: 500")

        result = _poller(db, config, _feed(make_proposal(140102)), push, email).poll()

        assert result["notifications"]["failed"] == 1
        assert registry.get(ENDPOINT_A) is not None
        assert _attempts(db, 140102) == [("push", "failed", "push failed: 500")]
        email.send.assert_not_called()
        assert ProposalStore(db).get(140102).notified is True

    def test_one_crashing_subscription_does_not_stop_the_batch(self, db, config, push, email, make_proposal):
        registry = SubscriptionRegistry(db)
        registry.save(ENDPOINT_A, "p256", "auth", email="reviewer@example.com", topics=[17])
        registry.save(ENDPOINT_B, "p256", "auth", topics=[17])
        db.commit()

        def send(endpoint, *args):
            if endpoint == ENDPOINT_A:
                raise RuntimeError("boom")

        push.send.side_effect = send

        result = _poller(db, config, _feed(make_proposal(140102)), push, email).poll()

        assert push.send.call_count == 2
        assert result["notifications"]["sent"] == 1
        assert result["emails"] == {"sent": 1, "failed": 0}
        assert sorted((channel, status) for channel, status, _ in _attempts(db, 140102)) == [
            ("email", "sent"),
            ("push", "failed"),
            ("push", "sent"),
        ]

    def test_unreachable_push_service_falls_back_to_email(self, db, config, email, make_proposal):
        SubscriptionRegistry(db).save(ENDPOINT_A, "p256", "auth", email="reviewer@example.com", topics=[17])
        db.commit()
        sender = MagicMock(side_effect=requests.exceptions.ConnectionError("connection refused"))
        push = PushChannel("vapid-private", "mailto:ops@example.com", sender=sender)

        result = _poller(db, config, _feed(make_proposal(140102)), push, email).poll()

        assert result["notifications"]["failed"] == 1
        assert result["emails"] == {"sent": 1, "failed": 0}
        assert [(channel, status) for channel, status, _ in _attempts(db, 140102)] == [
            ("push", "failed"),
            ("email", "sent"),
        ]
        assert email.send.call_args[0][0] == "reviewer@example.com"

    def test_crash_after_push_failure_still_sends_email(self, db, config, push, email, make_proposal):
        registry = SubscriptionRegistry(db)
        registry.save(ENDPOINT_A, "p256", "auth", email="reviewer@example.com", topics=[17])
        db.commit()
        push.send.side_effect = SubscriptionGoneError(ENDPOINT_A, 410)
        dispatcher = NotificationDispatcher(db, config, push, email)
        dispatcher.registry.delete = MagicMock(side_effect=RuntimeError("database is locked"))

        result = ProposalPoller(db, config, _feed(make_proposal(140102)), dispatcher).poll()

        email.send.assert_called_once()
        assert result["emails"]["sent"] == 1
        assert result["details"][0]["outcomes"][0]["error"] == "database is locked"
        assert ProposalStore(db).get(140102).notified is True

    def test_interrupted_dispatch_is_resumed_by_next_poll(self, db, config, push, email, make_proposal):
        SubscriptionRegistry(db).save(ENDPOINT_A, "p256", "auth", topics=[17])
        store = ProposalStore(db)
        store.insert_if_absent(make_proposal(140102, title="Upgrade governance canister"))
        db.commit()
        # Stored by a poll that died before dispatching
        store.get(140102).first_seen_at = datetime.utcnow() - timedelta(hours=1)
        db.commit()

        result = _poller(db, config, _feed(make_proposal(140102)), push, email).poll()

        assert result["new"] == 0
        assert result["redispatched_ids"] == [140102]
        push.send.assert_called_once()
        assert store.get(140102).notified is True
        assert _attempts(db, 140102) == [("push", "sent", None)]

        again = _poller(db, config, _feed(make_proposal(140102)), push, email).poll()
        assert again["redispatched_ids"] == []
        push.send.assert_called_once()

    def test_repeated_polls_notify_once(self, db, config, push, email, make_proposal):
        SubscriptionRegistry(db).save(ENDPOINT_A, "p256", "auth", topics=[17])
        db.commit()
        feed = _feed(make_proposal(140102), make_proposal(140101))
        poller = _poller(db, config, feed, push, email)

        first = poller.poll()
        second = poller.poll()

        assert first["new"] == 2
        assert second["new"] == 0
        assert second["new_ids"] == []
        assert push.send.call_count == 2
        assert len(_attempts(db, 140102)) == 1

    def test_floor_and_topic_filtering(self, db, config, push, email, make_proposal):
        SubscriptionRegistry(db).save(ENDPOINT_A, "p256", "auth", topics=[17])
        db.commit()
        feed = _feed(
            make_proposal(139999),
            make_proposal(140100, topic=7),
            make_proposal(140102),
        )

        result = _poller(db, config, feed, push, email).poll()

        assert result["new_ids"] == [140102]
        assert ProposalStore(db).seen_ids() == {140102}

    def test_empty_union_tracks_every_topic(self, db, config, push, email, make_proposal):
        feed = _feed(make_proposal(140100, topic=7), make_proposal(140102, topic=17))

        result = _poller(db, config, feed, push, email).poll()

        assert sorted(result["new_ids"]) == [140100, 140102]
        push.send.assert_not_called()
        assert ProposalStore(db).get(140100).notified is True

    def test_empty_topic_subscription_receives_nothing(self, db, config, push, email, make_proposal):
        SubscriptionRegistry(db).save(ENDPOINT_A, "p256", "auth", topics=[])
        db.commit()

        result = _poller(db, config, _feed(make_proposal(140102)), push, email).poll()

        assert result["new_ids"] == [140102]
        push.send.assert_not_called()
        assert _attempts(db, 140102) == []

    def test_losing_insert_does_not_dispatch(self, db, config, push, email, make_proposal):
        SubscriptionRegistry(db).save(ENDPOINT_A, "p256", "auth", topics=[17])
        ProposalStore(db).insert_if_absent(make_proposal(140102))
        db.commit()

        poller = _poller(db, config, _feed(make_proposal(140102)), push, email)
        # Overlapping poll: the row lands after this poll read the seen set
        poller.store.seen_ids = lambda: set()
        result = poller.poll()

        assert result["new"] == 0
        push.send.assert_not_called()

    def test_feed_outage_writes_nothing(self, db, config, push, email):
        feed = MagicMock()
        feed.list_proposals.side_effect = UpstreamUnavailableError("governance feed", "timeout")

        with pytest.raises(UpstreamUnavailableError):
            _poller(db, config, feed, push, email).poll()

        assert ProposalStore(db).seen_ids() == set()


def test_filter_new_proposals(make_proposal):
    proposals = [make_proposal(140101), make_proposal(140102, topic=7), make_proposal(139000)]
    result = filter_new_proposals(proposals, {17}, {140101}, 140000)
    assert result == []

    result = filter_new_proposals(proposals, {7, 17}, set(), 140000)
    assert [p.id for p in result] == [140101, 140102]


# =============================================================================
# TEST: MANUAL TEST SEND
# =============================================================================

class TestSendTest:

    def test_simulated_failure_goes_to_email(self, db, config, push, email):
        registry = SubscriptionRegistry(db)
        registry.save(ENDPOINT_A, "p256", "auth", email="reviewer@example.com", topics=[17])
        registry.save(ENDPOINT_B, "p256", "auth", topics=[17])
        db.commit()

        result = NotificationDispatcher(db, config, push, email).send_test(simulate_failure=True)

        push.send.assert_not_called()
        assert result["results"]["pushFailed"] == 2
        assert result["results"]["emailSent"] == 1
        assert result["success"] is True
        assert db.query(NotificationLogDB).count() == 0

    def test_expired_endpoint_is_removed(self, db, config, push, email):
        registry = SubscriptionRegistry(db)
        registry.save(ENDPOINT_A, "p256", "auth", topics=[17])
        db.commit()
        push.send.side_effect = SubscriptionGoneError(ENDPOINT_A, 404)

        result = NotificationDispatcher(db, config, push, email).send_test()

        assert result["results"]["expired"] == 1
        assert result["success"] is False
        assert registry.get(ENDPOINT_A) is None
