"""
Proposal Watch - Upstream Value Types

Plain dataclasses for what the external collaborators return. Clients parse
raw JSON into these; services never touch raw payloads.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


# =============================================================================
# GOVERNANCE FEED
# =============================================================================

class ProposalStatus(int, Enum):
    UNKNOWN = 0
    OPEN = 1
    REJECTED = 2
    ADOPTED = 3
    EXECUTED = 4
    FAILED = 5


@dataclass
class FeedProposal:
    """One proposal as listed by the governance feed."""
    id: int
    topic: int
    status: int
    title: str
    summary: str = ""
    url: str = ""
    canister_id: Optional[str] = None
    expected_hash: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_code_changing(self) -> bool:
        """Install-code style action: a target canister or an expected wasm hash."""
        return bool(self.canister_id or self.expected_hash)


# =============================================================================
# JOB RUNNER
# =============================================================================

class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class JobRun:
    id: int
    display_title: str
    status: str
    conclusion: Optional[str]
    html_url: str
    created_at: Optional[datetime]

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED.value and self.conclusion == "success"


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"


# =============================================================================
# CODE HOST
# =============================================================================

@dataclass
class DiffStats:
    additions: int = 0
    deletions: int = 0

    def __add__(self, other: "DiffStats") -> "DiffStats":
        return DiffStats(self.additions + other.additions, self.deletions + other.deletions)


@dataclass(frozen=True)
class GitHubRef:
    """A parsed code-host link: commit, tree (optionally with sub-path) or compare."""
    owner: str
    repo: str
    kind: str  # "commit" | "tree" | "compare"
    ref: str
    base: Optional[str] = None
    head: Optional[str] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int


# =============================================================================
# FORUM
# =============================================================================

@dataclass
class ForumTopic:
    id: int
    title: str
    slug: str
    category_id: Optional[int] = None
    created_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    excerpt: Optional[str] = None


@dataclass
class ForumPost:
    cooked: str = ""
    raw: str = ""

    @property
    def text(self) -> str:
        return self.cooked or self.raw or ""


@dataclass
class ForumMatch:
    """Result of a forum thread lookup."""
    found: bool
    url: Optional[str] = None
    title: Optional[str] = None
    topic_id: Optional[int] = None
    confidence: Optional[str] = None
    reason: Optional[str] = None
