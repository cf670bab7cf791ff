"""
HTTP clients for the external collaborators: governance feed, code host,
job runner and forum.
"""
from .governance import GovernanceFeedClient
from .github import CodeHostClient, JobRunnerClient
from .forum import ForumClient

__all__ = [
    "GovernanceFeedClient",
    "CodeHostClient",
    "JobRunnerClient",
    "ForumClient",
]
