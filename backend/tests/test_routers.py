"""
Tests for the HTTP surface: authorization, validation and wiring.
"""
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.clients import ForumClient
from app.config import WatcherSecrets
from app.database import get_db
from app.dependencies import (
    get_code_host_client,
    get_config,
    get_email_channel,
    get_feed_client,
    get_forum_client,
    get_forum_matcher,
    get_job_runner_client,
    get_push_channel,
    get_secrets,
)
from app.exceptions import UpstreamUnavailableError
from app.main import app
from app.services.forum_ai import AIForumMatcher
from app.services.store import ProposalStore, SubscriptionRegistry


CRON = {"Authorization": "Bearer cron-secret"}
LINK = {"Authorization": "Bearer link-secret"}
COMMENTARY = {"Authorization": "Bearer commentary-secret"}

SUBSCRIPTION = {
    "endpoint": "https://fcm.googleapis.com/fcm/send/device-a",
    "keys": {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA", "auth": "tBHItJI5svbpez7KI4CCXg"},
}


@pytest.fixture
def feed(make_proposal):
    client = MagicMock()
    client.list_proposals.return_value = [make_proposal(140102)]
    client.get_proposal.return_value = None
    return client


@pytest.fixture
def jobs():
    runner = MagicMock()
    runner.list_runs.return_value = []
    runner.dispatch.return_value = True
    return runner


@pytest.fixture
def client(db, config, push, email, feed, jobs):
    forum = ForumClient(config, cookies=None)
    overrides = {
        get_db: lambda: db,
        get_config: lambda: config,
        get_secrets: lambda: WatcherSecrets(
            cron_secret="cron-secret",
            forum_link_secret="link-secret",
            commentary_secret="commentary-secret",
        ),
        get_push_channel: lambda: push,
        get_email_channel: lambda: email,
        get_feed_client: lambda: feed,
        get_code_host_client: lambda: MagicMock(),
        get_job_runner_client: lambda: jobs,
        get_forum_client: lambda: forum,
        get_forum_matcher: lambda: AIForumMatcher(config, forum, api_key=None),
    }
    app.dependency_overrides.update(overrides)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


# =============================================================================
# TEST: SCHEDULER ENDPOINTS
# =============================================================================

class TestSchedulerRoutes:

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, LINK])
    def test_rejects_missing_or_wrong_secret(self, client, db, feed, headers):
        response = client.post("/internal/check-proposals", headers=headers)

        assert response.status_code == 401
        feed.list_proposals.assert_not_called()
        assert ProposalStore(db).seen_ids() == set()

    def test_check_proposals(self, client, db, push):
        SubscriptionRegistry(db).save(
            SUBSCRIPTION["endpoint"], "p256", "auth", topics=[17]
        )
        db.commit()

        response = client.post("/internal/check-proposals", headers=CRON)

        assert response.status_code == 200
        body = response.json()
        assert body["task"] == "check_proposals"
        assert body["new_ids"] == [140102]
        assert body["notifications"]["sent"] == 1
        push.send.assert_called_once()

    def test_get_is_accepted_for_manual_runs(self, client):
        response = client.get("/internal/check-proposals", headers=CRON)
        assert response.status_code == 200

    def test_feed_outage_is_502(self, client, feed):
        feed.list_proposals.side_effect = UpstreamUnavailableError("governance feed", "timeout")

        response = client.post("/internal/check-proposals", headers=CRON)

        assert response.status_code == 502

    def test_detect_forum_posts_without_credentials_is_503(self, client):
        response = client.post("/internal/detect-forum-posts", headers=CRON)
        assert response.status_code == 503

    def test_find_forum_topic_without_ai_key_is_503(self, client):
        response = client.get("/internal/find-forum-topic?proposal_id=140102&title=x", headers=CRON)
        assert response.status_code == 503

    def test_trigger_verification(self, client, db, make_proposal):
        ProposalStore(db).insert_if_absent(make_proposal(139000))
        db.commit()

        response = client.post("/internal/trigger-verification", headers=CRON)

        assert response.status_code == 200
        body = response.json()
        assert body["task"] == "trigger_verification"
        assert body["details"]["skipped"] == [
            {"proposal_id": 139000, "reason": "below minimum proposal ID"}
        ]

    def test_backfill_diff_stats(self, client):
        response = client.post("/internal/backfill-diff-stats?batch=5", headers=CRON)

        assert response.status_code == 200
        assert response.json()["processed"] == 0


# =============================================================================
# TEST: SUBSCRIPTIONS
# =============================================================================

class TestSubscriptionRoutes:

    def test_subscribe_defaults_to_default_topics(self, client, db):
        response = client.post("/api/subscribe", json={"subscription": SUBSCRIPTION})

        assert response.status_code == 200
        assert response.json()["topics"] == [17]
        assert SubscriptionRegistry(db).get(SUBSCRIPTION["endpoint"]) is not None

    @pytest.mark.parametrize("topics", [[], [99]])
    def test_subscribe_rejects_bad_topics(self, client, db, topics):
        response = client.post("/api/subscribe", json={"subscription": SUBSCRIPTION, "topics": topics})

        assert response.status_code == 400
        assert SubscriptionRegistry(db).all() == []

    def test_subscribe_requires_keys(self, client):
        response = client.post("/api/subscribe", json={"subscription": {"endpoint": "https://push.test/a"}})
        assert response.status_code == 422

    def test_preferences_round_trip(self, client):
        client.post("/api/subscribe", json={"subscription": SUBSCRIPTION})

        update = client.post(
            "/api/subscription-preferences",
            json={"endpoint": SUBSCRIPTION["endpoint"], "topics": [7, 17]},
        )
        current = client.get("/api/subscription-preferences", params={"endpoint": SUBSCRIPTION["endpoint"]})

        assert update.status_code == 200
        assert current.json()["topics"] == [7, 17]
        assert current.json()["available"]["17"] == "Protocol Canister Management"

    def test_preferences_unknown_endpoint(self, client):
        response = client.get("/api/subscription-preferences", params={"endpoint": "https://push.test/none"})
        assert response.status_code == 404

    def test_unsubscribe(self, client, db):
        client.post("/api/subscribe", json={"subscription": SUBSCRIPTION})

        response = client.request("DELETE", "/api/subscribe", json={"endpoint": SUBSCRIPTION["endpoint"]})

        assert response.status_code == 200
        assert SubscriptionRegistry(db).all() == []

    def test_test_notification_requires_secret(self, client):
        response = client.post("/api/test-notification", json={})
        assert response.status_code == 401

    def test_test_notification_without_subscriptions(self, client):
        response = client.post("/api/test-notification", json={}, headers=CRON)
        assert response.status_code == 404


# =============================================================================
# TEST: FORUM LINKS
# =============================================================================

class TestForumLinkRoutes:

    URL = "https://forum.dfinity.org/t/proposal-140102/51234"

    def test_add_requires_secret(self, client, db):
        response = client.post("/api/forum-links", json={"proposalId": 140102, "forumUrl": self.URL})

        assert response.status_code == 401
        assert ProposalStore(db).forum_threads(140102) == []

    def test_add_rejects_foreign_host(self, client, db):
        response = client.post(
            "/api/forum-links",
            json={"proposalId": 140102, "forumUrl": "https://example.com/t/1"},
            headers=LINK,
        )

        assert response.status_code == 400
        assert ProposalStore(db).forum_threads(140102) == []

    def test_add_list_remove(self, client):
        added = client.post(
            "/api/forum-links",
            json={"proposalId": 140102, "forumUrl": self.URL, "threadTitle": "Proposal 140102"},
            headers=LINK,
        )
        listed = client.get("/api/forum-links", params={"proposalId": 140102})
        removed = client.request(
            "DELETE", "/api/forum-links",
            json={"proposalId": 140102, "forumUrl": self.URL},
            headers=LINK,
        )
        after = client.get("/api/forum-links", params={"proposalId": 140102})

        assert added.status_code == 200
        assert added.json()["thread"]["is_canonical"] is False
        assert [t["forum_url"] for t in listed.json()["threads"]] == [self.URL]
        assert removed.status_code == 200
        assert after.json()["threads"] == []


# =============================================================================
# TEST: COMMENTARY
# =============================================================================

class TestCommentaryRoutes:

    def _body(self, proposal_id="140102", **overrides):
        commentary = {
            "title": "Upgrade governance canister",
            "proposal_id": proposal_id,
            "overall_summary": "Adds neuron follow limits.",
            "sources": [{"type": "github", "url": "https://github.com/dfinity/ic/pull/4521"}],
            "analysis_incomplete": False,
        }
        commentary.update(overrides)
        return {"commentary": commentary, "metadata": {"cost_usd": 0.42, "duration_ms": 61000, "turns": 9}}

    @pytest.fixture(autouse=True)
    def _proposal(self, db, make_proposal):
        ProposalStore(db).insert_if_absent(make_proposal(140102))
        db.commit()

    def test_requires_commentary_secret(self, client):
        response = client.post("/api/proposals/140102/commentary", json=self._body(), headers=CRON)
        assert response.status_code == 401

    def test_id_mismatch(self, client):
        response = client.post(
            "/api/proposals/140102/commentary", json=self._body(proposal_id="140103"), headers=COMMENTARY
        )
        assert response.status_code == 400

    def test_missing_fields(self, client):
        response = client.post(
            "/api/proposals/140102/commentary", json=self._body(sources=[]), headers=COMMENTARY
        )
        assert response.status_code == 400

    def test_unknown_proposal(self, client):
        response = client.post(
            "/api/proposals/140999/commentary", json=self._body(proposal_id="140999"), headers=COMMENTARY
        )
        assert response.status_code == 404

    def test_store_and_read_latest(self, client, db):
        missing = client.get("/api/proposals/140102/commentary")
        posted = client.post("/api/proposals/140102/commentary", json=self._body(), headers=COMMENTARY)
        fetched = client.get("/api/proposals/140102/commentary")

        assert missing.status_code == 404
        assert posted.status_code == 200
        assert posted.json()["success"] is True
        commentary = fetched.json()["commentary"]
        assert commentary["overall_summary"] == "Adds neuron follow limits."
        assert commentary["turns"] == 9
        assert ProposalStore(db).commentary_count(140102) == 1
