"""
Scheduler API Routes

Internal endpoints the external timer calls, one per component run:
proposal polling, diff-stat backfill, verification / commentary triggers,
forum thread detection.

Every endpoint requires the cron bearer secret and accepts GET as well as
POST so a run can be started by hand.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_cron_secret
from ..clients import CodeHostClient, ForumClient, GovernanceFeedClient, JobRunnerClient
from ..config import WatcherConfig
from ..database import SessionLocal, get_db
from ..dependencies import (
    get_code_host_client,
    get_config,
    get_email_channel,
    get_feed_client,
    get_forum_client,
    get_forum_matcher,
    get_job_runner_client,
    get_push_channel,
)
from ..exceptions import ConfigurationError, UpstreamUnavailableError
from ..services.channels import EmailChannel, PushChannel
from ..services.diff_stats import DiffStatsBackfill, DiffStatsResolver
from ..services.dispatcher import NotificationDispatcher
from ..services.enrichment_trigger import EnrichmentTriggerCoordinator
from ..services.forum_ai import AIForumMatcher
from ..services.forum_resolver import ForumThreadResolver
from ..services.poller import ProposalPoller
from ..services.store import ProposalStore


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["scheduler"])

JOB_METHODS = ["GET", "POST"]


def _upstream_failure(task: str, error: UpstreamUnavailableError) -> HTTPException:
    logger.error(f"[{task}] aborted, upstream unavailable: {error}")
    return HTTPException(status_code=502, detail=str(error))


def resolve_diff_stats_in_background(
    proposal_ids: List[int],
    config: WatcherConfig,
    feed: GovernanceFeedClient,
    code_host: CodeHostClient,
) -> None:
    """Post-poll diff-stat resolution on its own session."""
    db = SessionLocal()
    try:
        backfill = DiffStatsBackfill(db, config, feed, DiffStatsResolver(code_host, config))
        backfill.resolve_new_proposals(proposal_ids)
    finally:
        db.close()


# =============================================================================
# INGESTION
# =============================================================================

@router.api_route("/check-proposals", methods=JOB_METHODS, response_model=dict)
def check_proposals(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    feed: GovernanceFeedClient = Depends(get_feed_client),
    code_host: CodeHostClient = Depends(get_code_host_client),
    push: PushChannel = Depends(get_push_channel),
    email: EmailChannel = Depends(get_email_channel),
    _: bool = Depends(require_cron_secret),
):
    """
    Poll the governance feed and notify subscribers about new proposals.

    Diff stats for the new proposals are resolved after the response is sent.
    """
    poller = ProposalPoller(db, config, feed, NotificationDispatcher(db, config, push, email))

    try:
        result = poller.poll()
    except UpstreamUnavailableError as e:
        raise _upstream_failure("check-proposals", e)

    if result["new_ids"]:
        background_tasks.add_task(
            resolve_diff_stats_in_background, result["new_ids"], config, feed, code_host
        )

    return {"task": "check_proposals", **result}


@router.api_route("/backfill-diff-stats", methods=JOB_METHODS, response_model=dict)
def backfill_diff_stats(
    batch: Optional[int] = None,
    force: bool = False,
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    feed: GovernanceFeedClient = Depends(get_feed_client),
    code_host: CodeHostClient = Depends(get_code_host_client),
    _: bool = Depends(require_cron_secret),
):
    """
    Resolve line counts for proposals that have none.

    batch defaults to 20 and is capped at 100. force=true re-resolves
    proposals that already have stats.
    """
    backfill = DiffStatsBackfill(db, config, feed, DiffStatsResolver(code_host, config))
    return {"task": "backfill_diff_stats", **backfill.run(batch=batch, force=force)}


# =============================================================================
# JOB TRIGGERS
# =============================================================================

@router.api_route("/trigger-verification", methods=JOB_METHODS, response_model=dict)
def trigger_verification(
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    feed: GovernanceFeedClient = Depends(get_feed_client),
    jobs: JobRunnerClient = Depends(get_job_runner_client),
    _: bool = Depends(require_cron_secret),
):
    """Dispatch build verification (and commentary) for recent upgrade proposals."""
    coordinator = EnrichmentTriggerCoordinator(db, config, feed, jobs)
    try:
        result = coordinator.run_verification()
    except UpstreamUnavailableError as e:
        raise _upstream_failure("trigger-verification", e)
    return {"task": "trigger_verification", **result}


@router.api_route("/trigger-commentary", methods=JOB_METHODS, response_model=dict)
def trigger_commentary(
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    feed: GovernanceFeedClient = Depends(get_feed_client),
    jobs: JobRunnerClient = Depends(get_job_runner_client),
    _: bool = Depends(require_cron_secret),
):
    """Dispatch commentary for recent upgrade proposals that have none."""
    coordinator = EnrichmentTriggerCoordinator(db, config, feed, jobs)
    try:
        result = coordinator.run_commentary()
    except UpstreamUnavailableError as e:
        raise _upstream_failure("trigger-commentary", e)
    return {"task": "trigger_commentary", **result}


# =============================================================================
# FORUM
# =============================================================================

@router.api_route("/detect-forum-posts", methods=JOB_METHODS, response_model=dict)
def detect_forum_posts(
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    forum: ForumClient = Depends(get_forum_client),
    matcher: AIForumMatcher = Depends(get_forum_matcher),
    _: bool = Depends(require_cron_secret),
):
    """
    Find canonical forum threads for recent proposals.

    Without a forum credential this falls back to the AI matcher when
    AI_FORUM_FALLBACK is on, and answers 503 otherwise.
    """
    resolver = ForumThreadResolver(db, config, forum)

    if not forum.has_credentials and config.ai_forum_fallback and matcher.configured:
        logger.warning("[detect-forum-posts] No forum cookies, using AI fallback")
        return {"task": "detect_forum_posts", **resolver.run_with_ai(matcher)}

    try:
        result = resolver.run()
    except ConfigurationError as e:
        logger.warning(f"[detect-forum-posts] {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return {"task": "detect_forum_posts", **result}


@router.api_route("/find-forum-topic", methods=JOB_METHODS, response_model=dict)
def find_forum_topic(
    proposal_id: int,
    title: Optional[str] = None,
    topic: Optional[str] = None,
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    forum: ForumClient = Depends(get_forum_client),
    matcher: AIForumMatcher = Depends(get_forum_matcher),
    _: bool = Depends(require_cron_secret),
):
    """
    AI-assisted thread lookup for one proposal.

    A match for a stored proposal is saved as a non-canonical thread.
    """
    if not matcher.configured:
        raise HTTPException(status_code=503, detail="Gemini API key not configured")

    store = ProposalStore(db)
    proposal = store.get(proposal_id)
    title = title or (proposal.title if proposal else None)
    if not title:
        raise HTTPException(status_code=400, detail="Missing required parameters: proposal_id, title")

    topic_name = topic or (proposal.topic_name if proposal else None)
    created_at = proposal.created_at_upstream if proposal else None
    match = matcher.find(proposal_id, title, topic_name, created_at)

    stored = False
    if match.found and proposal is not None:
        ForumThreadResolver(db, config, forum).store_ai_match(proposal_id, match)
        db.commit()
        stored = True

    return {
        "task": "find_forum_topic",
        "run_date": datetime.now(timezone.utc).isoformat(),
        "found": match.found,
        "stored": stored,
        "topic": {
            "id": match.topic_id,
            "title": match.title,
            "url": match.url,
        } if match.found else None,
        "confidence": match.confidence,
        "reason": match.reason,
    }
