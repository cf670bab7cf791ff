"""
Forum Client

Discourse JSON endpoints for the proposal-discussion category. Requests are
retried on HTTP 429, honoring Retry-After when the forum sends it and backing
off linearly otherwise.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from dateutil.parser import isoparse

from ..config import WatcherConfig
from ..exceptions import ForumAuthError, UpstreamUnavailableError
from ..models.feed import ForumPost, ForumTopic


logger = logging.getLogger(__name__)

USER_AGENT = "ICP-Proposal-Reviewer/1.0"


def _parse_topic(raw: Dict[str, Any]) -> ForumTopic:
    created = raw.get("created_at")
    return ForumTopic(
        id=int(raw["id"]),
        title=raw.get("title") or "",
        slug=raw.get("slug") or "",
        category_id=raw.get("category_id"),
        created_at=isoparse(created) if created else None,
        tags=[t if isinstance(t, str) else t.get("name", "") for t in raw.get("tags") or []],
        excerpt=raw.get("excerpt"),
    )


class ForumClient:
    """
    Read-only forum access.

    The session cookie is optional for category listings but required for
    search, which the forum only serves to signed-in users.
    """

    SERVICE = "forum"

    def __init__(
        self,
        config: WatcherConfig,
        cookies: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.cookies = cookies
        self.http = http or httpx.Client(timeout=config.http_timeout_seconds)
        self.sleep = sleep

    @property
    def has_credentials(self) -> bool:
        return bool(self.cookies)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if self.cookies:
            headers["Cookie"] = self.cookies
        return headers

    def _get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        retries: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> httpx.Response:
        """
        GET with bounded retry on 429 and transport errors.

        Raises:
            ForumAuthError: forum rejected the cookie
            UpstreamUnavailableError: still failing after every retry
        """
        retries = retries or self.config.forum_max_retries
        delay = self.config.forum_retry_delay_seconds if delay is None else delay
        url = f"{self.config.forum_base_url}{path}"
        last_error: Optional[str] = None

        for attempt in range(retries):
            try:
                response = self.http.get(url, params=params, headers=self._headers())
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(f"Forum fetch error on attempt {attempt + 1}/{retries} for {path}: {e}")
                if attempt < retries - 1:
                    self.sleep(delay * (attempt + 1))
                continue

            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after and retry_after.isdigit() else delay * (attempt + 1)
                last_error = "rate limited"
                logger.info(f"Forum rate limited on {path}, waiting {wait}s before retry")
                self.sleep(wait)
                continue

            if response.status_code in (401, 403):
                raise ForumAuthError(response.status_code)

            return response

        raise UpstreamUnavailableError(
            self.SERVICE, f"{path} failed after {retries} attempts ({last_error})", 429
        )

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    def search(self, query: str) -> List[ForumTopic]:
        """Keyword search across the forum."""
        response = self._get("/search.json", params={"q": query})
        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                self.SERVICE, f"search failed with HTTP {response.status_code}", response.status_code
            )
        topics = [_parse_topic(raw) for raw in response.json().get("topics") or []]
        logger.info(f"Forum search for {query!r} returned {len(topics)} topics")
        return topics

    def first_post(self, topic_id: int, slug: Optional[str] = None) -> Optional[ForumPost]:
        """Opening post of a thread, or None if the thread can't be read."""
        path = f"/t/{slug}/{topic_id}.json" if slug else f"/t/{topic_id}.json"
        response = self._get(path)
        if response.status_code >= 400:
            logger.info(f"Thread {topic_id} fetch failed: {response.status_code}")
            return None

        posts = (response.json().get("post_stream") or {}).get("posts") or []
        if not posts:
            return None
        return ForumPost(cooked=posts[0].get("cooked") or "", raw=posts[0].get("raw") or "")

    def category_topics(self, page: int = 0) -> List[ForumTopic]:
        """One page of the proposal-discussion category, newest activity first."""
        path = f"/c/{self.config.forum_category_slug}/{self.config.forum_category_id}.json"
        response = self._get(path, params={"page": page})
        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                self.SERVICE, f"category page {page} failed with HTTP {response.status_code}",
                response.status_code,
            )
        raw_topics = (response.json().get("topic_list") or {}).get("topics") or []
        return [_parse_topic(raw) for raw in raw_topics]

    def topic_url(self, topic: ForumTopic) -> str:
        return self.config.forum_topic_url(topic.slug, topic.id)
