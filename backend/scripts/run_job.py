#!/usr/bin/env python3
"""
Job Runner Script
Runs one Proposal Watch job outside the web process, for cron or by hand.

Usage:
    python -m scripts.run_job <job> [--batch N] [--force] [--limit N]

Jobs:
    check-proposals        Poll the feed, store and notify new proposals
    backfill-diff-stats    Resolve line counts (--batch, --force)
    trigger-verification   Dispatch build verification jobs (--limit)
    trigger-commentary     Dispatch commentary jobs (--limit)
    detect-forum-posts     Link canonical forum threads (--limit)

Example:
    python -m scripts.run_job backfill-diff-stats --batch 50 --force
"""
import argparse
import json
import logging
import os
import sys

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from app.database import SessionLocal, init_db
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
from app.exceptions import WatcherError
from app.services.diff_stats import DiffStatsBackfill, DiffStatsResolver
from app.services.dispatcher import NotificationDispatcher
from app.services.enrichment_trigger import EnrichmentTriggerCoordinator
from app.services.forum_resolver import ForumThreadResolver
from app.services.poller import ProposalPoller


logger = logging.getLogger("run_job")

JOBS = [
    "check-proposals",
    "backfill-diff-stats",
    "trigger-verification",
    "trigger-commentary",
    "detect-forum-posts",
]


def run(job: str, db: Session, args: argparse.Namespace) -> dict:
    """Run a single job and return its result dict."""
    config = get_config()
    secrets = get_secrets()
    feed = get_feed_client(config)

    if job == "check-proposals":
        dispatcher = NotificationDispatcher(
            db, config, get_push_channel(secrets), get_email_channel(config, secrets)
        )
        result = ProposalPoller(db, config, feed, dispatcher).poll()
        if result["new_ids"]:
            # No background tasks here, resolve inline
            resolver = DiffStatsResolver(get_code_host_client(config, secrets), config)
            DiffStatsBackfill(db, config, feed, resolver).resolve_new_proposals(result["new_ids"])
        return result

    if job == "backfill-diff-stats":
        resolver = DiffStatsResolver(get_code_host_client(config, secrets), config)
        return DiffStatsBackfill(db, config, feed, resolver).run(batch=args.batch, force=args.force)

    if job in ("trigger-verification", "trigger-commentary"):
        coordinator = EnrichmentTriggerCoordinator(
            db, config, feed, get_job_runner_client(config, secrets)
        )
        if job == "trigger-verification":
            return coordinator.run_verification(limit=args.limit)
        return coordinator.run_commentary(limit=args.limit)

    if job == "detect-forum-posts":
        forum = get_forum_client(config, secrets)
        resolver = ForumThreadResolver(db, config, forum)
        matcher = get_forum_matcher(config, secrets, forum)
        if not forum.has_credentials and config.ai_forum_fallback and matcher.configured:
            logger.warning("No forum cookies, using AI fallback")
            return resolver.run_with_ai(matcher, limit=args.limit)
        return resolver.run(limit=args.limit)

    raise ValueError(f"Unknown job: {job}")


def main():
    parser = argparse.ArgumentParser(description="Run one Proposal Watch job")
    parser.add_argument("job", choices=JOBS)
    parser.add_argument("--batch", type=int, default=None)
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        result = run(args.job, db, args)
    except WatcherError as e:
        print(f"Error running {args.job}: {e}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()

    print(json.dumps({"task": args.job.replace("-", "_"), **result}, indent=2, default=str))
    sys.exit(0)


if __name__ == "__main__":
    main()
