"""
AI-Assisted Forum Match

Fallback for when the deterministic forum search is unavailable. Ranks
recent threads in the proposal-discussion category, pulls the opening post of
the best few, and asks a Gemini model which one (if any) is the proposal's
thread.

Matches found here are lower-confidence metadata: callers store them as
non-canonical threads and never let them replace a canonical one.
"""
import json
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from google import genai

from ..clients import ForumClient
from ..config import WatcherConfig
from ..exceptions import UpstreamUnavailableError
from ..models.feed import ForumMatch, ForumTopic
from .text_extraction import html_to_text


logger = logging.getLogger(__name__)

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

PROMPT_TEMPLATE = """You are helping match an ICP (Internet Computer Protocol) governance proposal to its corresponding forum discussion thread.

PROPOSAL DETAILS:
- Proposal ID: {proposal_id}
- Title: {title}
{topic_line}
CANDIDATE FORUM THREADS:
{threads}

TASK:
Analyze the candidate forum threads and identify which one (if any) is the official discussion thread for Proposal #{proposal_id}.

Look for:
1. The proposal ID mentioned in the title or content
2. Similar or matching proposal titles
3. Discussion of the same canister upgrade or governance action
4. References to the proposal URL or NNS dashboard link

IMPORTANT: Only return a match if you are confident it's the correct thread. Forum threads often discuss proposals, so make sure it's THE thread for THIS specific proposal, not just a thread that mentions it.

Respond in JSON format only:
{{
  "found": true/false,
  "topicId": <number or null>,
  "confidence": "high" | "medium" | "low",
  "reason": "<brief explanation>"
}}"""


def rank_topics(topics: List[ForumTopic], proposal_id: int, topic_hint: Optional[str]) -> List[ForumTopic]:
    """Id-in-title first, then canister-tagged threads when a topic hint is given."""
    needle = str(proposal_id)

    def score(topic: ForumTopic) -> int:
        has_id = 1 if needle in topic.title else 0
        has_tag = 1 if topic_hint and any("canister" in t.lower() for t in topic.tags) else 0
        return has_id + has_tag

    return sorted(topics, key=score, reverse=True)


def parse_model_reply(text: str) -> Optional[Dict[str, Any]]:
    match = JSON_OBJECT_RE.search(text or "")
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except ValueError:
        return None


class AIForumMatcher:
    """
    Usage:
        matcher = AIForumMatcher(config, forum, api_key=secrets.gemini_api_key)
        match = matcher.find(140102, "Upgrade governance canister", "Protocol Canister Management")
    """

    def __init__(
        self,
        config: WatcherConfig,
        forum: ForumClient,
        api_key: Optional[str] = None,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.forum = forum
        self.api_key = api_key
        self._client = client
        self.sleep = sleep
        self.clock = clock

    @property
    def configured(self) -> bool:
        return bool(self._client or self.api_key)

    @property
    def client(self):
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
            logger.info(f"Initialized Gemini client with model {self.config.ai_model}")
        return self._client

    # =========================================================================
    # CANDIDATES
    # =========================================================================

    def recent_topics(self, since: datetime) -> List[ForumTopic]:
        """Category threads created between since and now, newest pages first."""
        now = self.clock()
        topics: List[ForumTopic] = []

        for page in range(self.config.ai_max_pages):
            try:
                page_topics = self.forum.category_topics(page)
            except UpstreamUnavailableError as e:
                logger.error(f"Failed to fetch category page {page}, stopping: {e}")
                break
            if not page_topics:
                break

            for topic in page_topics:
                if topic.created_at is None:
                    continue
                created = topic.created_at if topic.created_at.tzinfo else topic.created_at.replace(tzinfo=timezone.utc)
                if created > now:
                    continue
                if created < since:
                    logger.info(f"Reached end of search window, found {len(topics)} topics")
                    return topics
                topics.append(topic)

            if page < self.config.ai_max_pages - 1:
                self.sleep(self.config.forum_delay_seconds)

        return topics

    def _content(self, topic: ForumTopic) -> str:
        try:
            post = self.forum.first_post(topic.id)
        except UpstreamUnavailableError as e:
            logger.info(f"Could not fetch content for topic {topic.id}: {e}")
            return ""
        if post is None:
            return ""
        return html_to_text(post.cooked, self.config.ai_content_chars) or post.raw[: self.config.ai_content_chars]

    def build_prompt(
        self,
        proposal_id: int,
        title: str,
        topic_name: Optional[str],
        candidates: List[Dict[str, Any]],
    ) -> str:
        threads = "\n".join(
            f"\n--- Thread {i + 1} ---\n"
            f"ID: {c['topic'].id}\n"
            f"Title: {c['topic'].title}\n"
            f"Tags: {', '.join(c['topic'].tags) or 'none'}\n"
            f"Created: {c['topic'].created_at.isoformat() if c['topic'].created_at else 'unknown'}\n"
            f"Content Preview:\n{c['content'][:1500]}\n"
            for i, c in enumerate(candidates)
        )
        return PROMPT_TEMPLATE.format(
            proposal_id=proposal_id,
            title=title,
            topic_line=f"- Topic/Category: {topic_name}\n" if topic_name else "",
            threads=threads,
        )

    # =========================================================================
    # MATCH
    # =========================================================================

    def find(
        self,
        proposal_id: int,
        title: str,
        topic_name: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ForumMatch:
        if not self.configured:
            logger.warning("GEMINI_API_KEY not configured, skipping AI forum search")
            return ForumMatch(found=False, reason="AI search not configured")

        anchor = created_at or self.clock()
        if anchor.tzinfo is None:
            anchor = anchor.replace(tzinfo=timezone.utc)
        since = anchor - timedelta(days=self.config.ai_window_days)

        topics = self.recent_topics(since)
        if not topics:
            return ForumMatch(found=False, reason="No recent forum topics found in the search window")

        candidates = []
        for topic in rank_topics(topics, proposal_id, topic_name)[: self.config.ai_top_k]:
            candidates.append({"topic": topic, "content": self._content(topic)})
            self.sleep(self.config.forum_delay_seconds)

        prompt = self.build_prompt(proposal_id, title, topic_name, candidates)
        logger.info(f"Sending {len(candidates)} topics to Gemini for proposal {proposal_id}")

        try:
            response = self.client.models.generate_content(model=self.config.ai_model, contents=prompt)
        except Exception as e:
            logger.error(f"AI forum search error for {proposal_id}: {e}")
            return ForumMatch(found=False, reason="AI search failed")

        reply = parse_model_reply(response.text or "")
        if reply is None:
            logger.error("Failed to parse JSON from Gemini response")
            return ForumMatch(found=False, reason="Failed to parse AI response")

        if reply.get("found") and reply.get("topicId"):
            by_id = {c["topic"].id: c["topic"] for c in candidates}
            try:
                topic = by_id.get(int(reply["topicId"]))
            except (TypeError, ValueError):
                topic = None
            if topic is not None:
                logger.info(f"AI matched proposal {proposal_id} to topic {topic.id}: {topic.title}")
                return ForumMatch(
                    found=True,
                    url=self.forum.topic_url(topic),
                    title=topic.title,
                    topic_id=topic.id,
                    confidence=reply.get("confidence"),
                    reason=reply.get("reason"),
                )

        return ForumMatch(found=False, confidence=reply.get("confidence"), reason=reply.get("reason"))
