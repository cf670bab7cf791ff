"""
Tests for the external clients and delivery channels.
"""
import json
from unittest.mock import MagicMock

import httpx
import pytest
import requests
from pywebpush import WebPushException

from app.clients import GovernanceFeedClient, JobRunnerClient
from app.clients.governance import parse_proposal
from app.exceptions import (
    ConfigurationError,
    DeliveryError,
    SubscriptionGoneError,
    UpstreamUnavailableError,
)
from app.services.channels import EmailChannel, PushChannel, proposal_payload, render_proposal_email


# =============================================================================
# TEST: GOVERNANCE FEED
# =============================================================================

class TestGovernanceFeed:

    def test_parse_install_code_proposal(self):
        proposal = parse_proposal({
            "proposal_id": 140102,
            "topic": "TOPIC_PROTOCOL_CANISTER_MANAGEMENT",
            "status": "OPEN",
            "title": "Upgrade NNS governance canister",
            "summary": "Upgrade to commit a1b2c3d4e5f60718293a4b5c6d7e8f9012345678",
            "url": "https://github.com/dfinity/ic/tree/a1b2c3d4e5f60718293a4b5c6d7e8f9012345678",
            "proposal_timestamp_seconds": "1764590400",
            "payload": {
                "canister_id": "rrkah-fqaaa-aaaaa-aaaaq-cai",
                "wasm_module_hash": "3f2a9c",
            },
        })

        assert proposal.id == 140102
        assert proposal.topic == 17
        assert proposal.status == 1
        assert proposal.is_code_changing is True
        assert proposal.created_at.isoformat() == "2025-12-01T12:00:00"

    def test_parse_motion_is_not_code_changing(self):
        proposal = parse_proposal({"id": "140103", "topic": 4, "status": 3, "title": "Motion"})

        assert proposal.id == 140103
        assert proposal.topic == 4
        assert proposal.is_code_changing is False
        assert proposal.created_at is None

    def test_list_skips_malformed_records(self, config, mock_http):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": [
                {"proposal_id": 140102, "topic": 17, "status": 1, "title": "A"},
                {"title": "no id"},
            ]})

        feed = GovernanceFeedClient(config, http=mock_http(handler))
        proposals = feed.list_proposals(limit=50, exclude_topics=[1])

        assert [p.id for p in proposals] == [140102]
        assert seen[0].url.path.endswith("/proposals")
        assert seen[0].url.params["limit"] == "50"
        assert seen[0].url.params["exclude_topic"] == "TOPIC_NEURON_MANAGEMENT"

    def test_list_failure_raises(self, config, mock_http):
        feed = GovernanceFeedClient(config, http=mock_http(lambda request: httpx.Response(503)))
        with pytest.raises(UpstreamUnavailableError):
            feed.list_proposals()

    def test_unknown_proposal_is_none(self, config, mock_http):
        feed = GovernanceFeedClient(config, http=mock_http(lambda request: httpx.Response(404)))
        assert feed.get_proposal(1) is None


# =============================================================================
# TEST: JOB RUNNER
# =============================================================================

class TestJobRunner:

    def test_list_runs(self, config, mock_http):
        body = {"workflow_runs": [{
            "id": 3,
            "display_title": "Verify Proposal #140102",
            "status": "completed",
            "conclusion": "success",
            "html_url": "https://github.com/jorgenbuilder/icp-build-verifier/actions/runs/3",
            "created_at": "2025-12-01T11:55:00Z",
        }]}
        jobs = JobRunnerClient(config, token="ghp_test", http=mock_http(lambda r: httpx.Response(200, json=body)))

        runs = jobs.list_runs()

        assert runs[0].succeeded is True
        assert runs[0].created_at.tzinfo is not None

    def test_dispatch_posts_proposal_id(self, config, mock_http):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(204)

        jobs = JobRunnerClient(config, token="ghp_test", http=mock_http(handler))

        assert jobs.dispatch("verify.yml", 140102) is True
        assert sent[0].url.path.endswith("/actions/workflows/verify.yml/dispatches")
        assert json.loads(sent[0].content) == {"ref": "main", "inputs": {"proposal_id": "140102"}}
        assert sent[0].headers["Authorization"] == "Bearer ghp_test"

    def test_dispatch_without_token(self, config, mock_http):
        handler = MagicMock()
        jobs = JobRunnerClient(config, token=None, http=mock_http(handler))

        assert jobs.dispatch("verify.yml", 140102) is False
        handler.assert_not_called()

    def test_dispatch_rejected(self, config, mock_http):
        jobs = JobRunnerClient(
            config, token="ghp_test",
            http=mock_http(lambda r: httpx.Response(422, json={"message": "No ref found"})),
        )
        assert jobs.dispatch("verify.yml", 140102) is False


# =============================================================================
# TEST: PUSH CHANNEL
# =============================================================================

class TestPushChannel:

    def _push_error(self, status_code):
        return WebPushException("Push failed", response=MagicMock(status_code=status_code))

    def test_send_passes_vapid_claims(self):
        sender = MagicMock()
        channel = PushChannel("vapid-private", "mailto:ops@example.com", sender=sender)

        channel.send("https://push.test/a", "p256", "auth", proposal_payload(140102, "Upgrade", "/proposals/140102"))

        kwargs = sender.call_args.kwargs
        assert kwargs["subscription_info"] == {
            "endpoint": "https://push.test/a",
            "keys": {"p256dh": "p256", "auth": "auth"},
        }
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
        assert json.loads(kwargs["data"])["body"] == "#140102: Upgrade"

    @pytest.mark.parametrize("status_code", [404, 410])
    def test_gone(self, status_code):
        sender = MagicMock(side_effect=self._push_error(status_code))
        channel = PushChannel("vapid-private", "mailto:ops@example.com", sender=sender)

        with pytest.raises(SubscriptionGoneError):
            channel.send("https://push.test/a", "p256", "auth", {})

    def test_other_failure(self):
        sender = MagicMock(side_effect=self._push_error(500))
        channel = PushChannel("vapid-private", "mailto:ops@example.com", sender=sender)

        with pytest.raises(DeliveryError) as excinfo:
            channel.send("https://push.test/a", "p256", "auth", {})
        assert not isinstance(excinfo.value, SubscriptionGoneError)

    def test_connection_error_is_delivery_error(self):
        sender = MagicMock(side_effect=requests.exceptions.ConnectTimeout("timed out"))
        channel = PushChannel("vapid-private", "mailto:ops@example.com", sender=sender)

        with pytest.raises(DeliveryError) as excinfo:
            channel.send("https://push.test/a", "p256", "auth", {})
        assert not isinstance(excinfo.value, SubscriptionGoneError)

    def test_missing_keys(self):
        channel = PushChannel(None, "mailto:ops@example.com", sender=MagicMock())
        with pytest.raises(ConfigurationError):
            channel.send("https://push.test/a", "p256", "auth", {})


# =============================================================================
# TEST: EMAIL CHANNEL
# =============================================================================

class TestEmailChannel:

    def test_send(self, mock_http):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={"id": "email-1"})

        channel = EmailChannel("re_test", "Proposals <n@example.com>", http=mock_http(handler))

        assert channel.send("reviewer@example.com", "New Proposal: Upgrade", "<p>hi</p>") is True
        body = json.loads(sent[0].content)
        assert body["to"] == ["reviewer@example.com"]
        assert sent[0].headers["Authorization"] == "Bearer re_test"

    def test_provider_error_is_false(self, mock_http):
        channel = EmailChannel("re_test", "n@example.com", http=mock_http(lambda r: httpx.Response(422)))
        assert channel.send("reviewer@example.com", "s", "h") is False

    def test_unconfigured_is_false(self, mock_http):
        handler = MagicMock()
        channel = EmailChannel(None, "n@example.com", http=mock_http(handler))

        assert channel.send("reviewer@example.com", "s", "h") is False
        handler.assert_not_called()

    def test_render_escapes_title(self):
        html = render_proposal_email(
            140102, "<script>x</script>", "Governance",
            "https://watch.test/proposals/140102", "https://dashboard.internetcomputer.org/proposal/140102",
        )
        assert "<script>" not in html
        assert "#140102" in html
