"""
Migration: Create Proposal Watch tables.

Creates the dedup store, subscription registry and enrichment audit tables:
1. proposals_seen - one row per observed proposal, never deleted
2. proposal_forum_threads - forum links, at most one canonical per proposal
3. forum_search_log - append-only forum search audit
4. proposal_commentaries - every commentary version posted by the job runner
5. push_subscriptions - push endpoints with topic interests
6. notification_log - append-only delivery attempts

Safe to re-run: existing tables are left alone.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/proposal_watch"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def run_migration():
    """Create all Proposal Watch tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # TABLE 1: proposals_seen
        # =================================================================
        if table_exists(conn, "proposals_seen"):
            print("proposals_seen table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE proposals_seen (
                    proposal_id BIGINT PRIMARY KEY,
                    topic INTEGER NOT NULL,
                    topic_name VARCHAR(100),
                    title TEXT,
                    summary TEXT,
                    summary_url TEXT,
                    commit_hash VARCHAR(40),
                    created_at_upstream TIMESTAMP,
                    first_seen_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    notified BOOLEAN NOT NULL DEFAULT FALSE,
                    viewer_seen_at TIMESTAMP,
                    review_url TEXT,
                    reviewed_at TIMESTAMP,
                    lines_added INTEGER,
                    lines_removed INTEGER,
                    diff_stats_resolved_at TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_proposals_seen_topic ON proposals_seen(topic)
            """))
            conn.execute(text("""
                CREATE INDEX idx_proposals_seen_unresolved ON proposals_seen(proposal_id DESC)
                WHERE lines_added IS NULL OR lines_removed IS NULL
            """))
            print("Created proposals_seen table")

        # =================================================================
        # TABLE 2: proposal_forum_threads
        # =================================================================
        if table_exists(conn, "proposal_forum_threads"):
            print("proposal_forum_threads table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE proposal_forum_threads (
                    id VARCHAR(36) PRIMARY KEY,
                    proposal_id BIGINT NOT NULL,
                    forum_url TEXT NOT NULL,
                    thread_title TEXT,
                    is_canonical BOOLEAN NOT NULL DEFAULT FALSE,
                    confidence VARCHAR(20),
                    added_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_forum_thread_proposal_url UNIQUE (proposal_id, forum_url)
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_forum_threads_proposal ON proposal_forum_threads(proposal_id)
            """))
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_forum_threads_one_canonical
                ON proposal_forum_threads(proposal_id) WHERE is_canonical
            """))
            print("Created proposal_forum_threads table")

        # =================================================================
        # TABLE 3: forum_search_log
        # =================================================================
        if table_exists(conn, "forum_search_log"):
            print("forum_search_log table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE forum_search_log (
                    id VARCHAR(36) PRIMARY KEY,
                    proposal_id BIGINT NOT NULL,
                    search_query TEXT NOT NULL,
                    results_count INTEGER NOT NULL DEFAULT 0,
                    selected_url TEXT,
                    status VARCHAR(20) NOT NULL,
                    error_message TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_forum_search_proposal ON forum_search_log(proposal_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_forum_search_created ON forum_search_log(created_at)
            """))
            print("Created forum_search_log table")

        # =================================================================
        # TABLE 4: proposal_commentaries
        # =================================================================
        if table_exists(conn, "proposal_commentaries"):
            print("proposal_commentaries table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE proposal_commentaries (
                    id VARCHAR(36) PRIMARY KEY,
                    proposal_id BIGINT NOT NULL REFERENCES proposals_seen(proposal_id) ON DELETE CASCADE,
                    title TEXT,
                    canister_id VARCHAR(64),
                    analysis_incomplete BOOLEAN DEFAULT FALSE,
                    incomplete_reason TEXT,
                    cost_usd NUMERIC(10, 4),
                    duration_ms INTEGER,
                    turns INTEGER,
                    commentary_data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_commentaries_proposal ON proposal_commentaries(proposal_id, created_at DESC)
            """))
            print("Created proposal_commentaries table")

        # =================================================================
        # TABLE 5: push_subscriptions
        # =================================================================
        if table_exists(conn, "push_subscriptions"):
            print("push_subscriptions table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE push_subscriptions (
                    id VARCHAR(36) PRIMARY KEY,
                    endpoint TEXT NOT NULL UNIQUE,
                    p256dh TEXT NOT NULL,
                    auth TEXT NOT NULL,
                    email VARCHAR(255),
                    topics JSONB NOT NULL DEFAULT '[17]'::jsonb,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    last_success_at TIMESTAMP
                )
            """))
            print("Created push_subscriptions table")

        # =================================================================
        # TABLE 6: notification_log
        # =================================================================
        if table_exists(conn, "notification_log"):
            print("notification_log table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE notification_log (
                    id VARCHAR(36) PRIMARY KEY,
                    proposal_id BIGINT NOT NULL,
                    subscription_id VARCHAR(36) NOT NULL,
                    channel VARCHAR(10) NOT NULL,
                    status VARCHAR(10) NOT NULL,
                    error TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_notification_log_proposal ON notification_log(proposal_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_notification_log_subscription ON notification_log(subscription_id)
            """))
            print("Created notification_log table")

        conn.commit()
        print("\nProposal Watch migration completed successfully!")


if __name__ == "__main__":
    run_migration()
