"""Proposal Watch - Data Models"""
from .feed import (
    ProposalStatus, FeedProposal,
    JobStatus, JobRun, VerificationStatus,
    DiffStats, GitHubRef, PullRequestRef,
    ForumTopic, ForumPost, ForumMatch,
)

__all__ = [
    "ProposalStatus", "FeedProposal",
    "JobStatus", "JobRun", "VerificationStatus",
    "DiffStats", "GitHubRef", "PullRequestRef",
    "ForumTopic", "ForumPost", "ForumMatch",
]
