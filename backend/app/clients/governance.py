"""
Governance Feed Client

Reads proposals from the public governance REST API. The feed is newest-first
with no cursor guarantees between calls, so callers treat every response as
an unordered, possibly repeating batch.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from dateutil.parser import isoparse

from ..config import TOPIC_API_NAMES, WatcherConfig
from ..exceptions import UpstreamUnavailableError
from ..models.feed import FeedProposal, ProposalStatus


logger = logging.getLogger(__name__)

_TOPIC_CODES = {name: code for code, name in TOPIC_API_NAMES.items()}
_STATUS_CODES = {
    "PROPOSAL_STATUS_" + status.name: status.value for status in ProposalStatus
}
_STATUS_CODES.update({status.name: status.value for status in ProposalStatus})


def _topic_code(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.isdigit():
            return int(value)
        return _TOPIC_CODES.get(value.upper(), 0)
    return 0


def _status_code(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.isdigit():
            return int(value)
        return _STATUS_CODES.get(value.upper(), 0)
    return 0


def _timestamp(raw: Dict[str, Any]) -> Optional[datetime]:
    seconds = raw.get("proposal_timestamp_seconds")
    if seconds not in (None, ""):
        # Stored as naive UTC like every other timestamp column
        return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(tzinfo=None)
    created = raw.get("created_at") or raw.get("proposal_timestamp")
    if created:
        parsed = isoparse(created)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def _action_fields(raw: Dict[str, Any]) -> Dict[str, Optional[str]]:
    payload = raw.get("payload") or {}
    if not isinstance(payload, dict):
        payload = {}
    # InstallCode payloads may be nested under the action name
    install = payload.get("InstallCode") if isinstance(payload.get("InstallCode"), dict) else payload
    canister_id = install.get("canister_id") or None
    expected_hash = (
        install.get("wasm_module_hash")
        or install.get("expected_hash")
        or None
    )
    return {"canister_id": canister_id, "expected_hash": expected_hash}


def parse_proposal(raw: Dict[str, Any]) -> FeedProposal:
    """Map one feed record onto a FeedProposal."""
    proposal_id = raw.get("proposal_id", raw.get("id"))
    if proposal_id is None:
        raise ValueError("feed record has no proposal id")

    return FeedProposal(
        id=int(proposal_id),
        topic=_topic_code(raw.get("topic")),
        status=_status_code(raw.get("status")),
        title=raw.get("title") or "Untitled",
        summary=raw.get("summary") or "",
        url=raw.get("url") or "",
        created_at=_timestamp(raw),
        **_action_fields(raw),
    )


class GovernanceFeedClient:
    """
    Thin client over the governance REST API.

    Usage:
        feed = GovernanceFeedClient(config)
        proposals = feed.list_proposals(limit=100)
    """

    SERVICE = "governance feed"

    def __init__(self, config: WatcherConfig, http: Optional[httpx.Client] = None):
        self.config = config
        self.http = http or httpx.Client(timeout=config.http_timeout_seconds)

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.config.feed_base_url}{path}"
        try:
            response = self.http.get(url, params=params, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(self.SERVICE, str(e), original_error=e)
        return response

    def list_proposals(
        self,
        limit: Optional[int] = None,
        exclude_topics: Iterable[int] = (),
    ) -> List[FeedProposal]:
        """Most recent proposals, newest first."""
        params: Dict[str, Any] = {"limit": limit or self.config.feed_limit}
        excluded = [TOPIC_API_NAMES[t] for t in exclude_topics if t in TOPIC_API_NAMES]
        if excluded:
            params["exclude_topic"] = excluded

        response = self._get("/proposals", params)
        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                self.SERVICE, f"list failed with HTTP {response.status_code}", response.status_code
            )

        body = response.json()
        records = body.get("data", []) if isinstance(body, dict) else body

        proposals = []
        for raw in records:
            try:
                proposals.append(parse_proposal(raw))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed feed record: {e}")

        logger.info(f"Fetched {len(proposals)} proposals from governance feed")
        return proposals

    def get_proposal(self, proposal_id: int) -> Optional[FeedProposal]:
        """Full detail for one proposal, or None if the feed does not know it."""
        response = self._get(f"/proposals/{proposal_id}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                self.SERVICE, f"detail for #{proposal_id} failed with HTTP {response.status_code}",
                response.status_code,
            )
        return parse_proposal(response.json())
