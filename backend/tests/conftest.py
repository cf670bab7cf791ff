"""
Shared fixtures: in-memory database, synthetic config, fake channels and
HTTP transports.
"""
import os

# Must be set before app.database creates its engine
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime
from typing import Callable, Optional
from unittest.mock import MagicMock

import httpx
import pytest

from app.config import WatcherConfig
from app.database import Base, SessionLocal, engine
from app.models import db_models  # noqa: F401
from app.models.feed import FeedProposal


@pytest.fixture
def db():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def config():
    """Synthetic floors, no delays."""
    return WatcherConfig(
        min_proposal_id=140000,
        verification_min_proposal_id=140000,
        app_base_url="https://watch.test",
        trigger_delay_seconds=0,
        backfill_delay_seconds=0,
        forum_delay_seconds=0,
        forum_retry_delay_seconds=0,
        known_repositories=("dfinity/ic",),
    )


@pytest.fixture
def push():
    """Push channel that accepts every send unless told otherwise."""
    channel = MagicMock()
    channel.configured = True
    channel.send.return_value = None
    return channel


@pytest.fixture
def email():
    channel = MagicMock()
    channel.configured = True
    channel.send.return_value = True
    return channel


@pytest.fixture
def make_proposal() -> Callable[..., FeedProposal]:
    def _make(
        proposal_id: int,
        topic: int = 17,
        title: Optional[str] = None,
        summary: str = "",
        url: str = "",
        canister_id: Optional[str] = None,
        expected_hash: Optional[str] = None,
    ) -> FeedProposal:
        return FeedProposal(
            id=proposal_id,
            topic=topic,
            status=1,
            title=title or f"Upgrade canister for proposal {proposal_id}",
            summary=summary,
            url=url,
            canister_id=canister_id,
            expected_hash=expected_hash,
            created_at=datetime(2025, 12, 1, 12, 0, 0),
        )
    return _make


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.Client]:
    """Build an httpx.Client whose requests go to the given handler."""
    def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(handler))
    return _client
