"""
Proposal Watch - FastAPI Dependency Providers

Config and secrets are read once per process. Clients and channels are built
per request from them, so tests can override any single provider.
"""
from functools import lru_cache

from fastapi import Depends

from .clients import CodeHostClient, ForumClient, GovernanceFeedClient, JobRunnerClient
from .config import WatcherConfig, WatcherSecrets, load_config, load_secrets
from .services.channels import EmailChannel, PushChannel
from .services.forum_ai import AIForumMatcher


@lru_cache()
def get_config() -> WatcherConfig:
    return load_config()


@lru_cache()
def get_secrets() -> WatcherSecrets:
    return load_secrets()


def get_feed_client(config: WatcherConfig = Depends(get_config)) -> GovernanceFeedClient:
    return GovernanceFeedClient(config)


def get_code_host_client(
    config: WatcherConfig = Depends(get_config),
    secrets: WatcherSecrets = Depends(get_secrets),
) -> CodeHostClient:
    return CodeHostClient(config, token=secrets.github_token)


def get_job_runner_client(
    config: WatcherConfig = Depends(get_config),
    secrets: WatcherSecrets = Depends(get_secrets),
) -> JobRunnerClient:
    return JobRunnerClient(config, token=secrets.github_token)


def get_forum_client(
    config: WatcherConfig = Depends(get_config),
    secrets: WatcherSecrets = Depends(get_secrets),
) -> ForumClient:
    return ForumClient(config, cookies=secrets.forum_cookies)


def get_push_channel(secrets: WatcherSecrets = Depends(get_secrets)) -> PushChannel:
    return PushChannel(secrets.vapid_private_key, secrets.vapid_subject)


def get_email_channel(
    config: WatcherConfig = Depends(get_config),
    secrets: WatcherSecrets = Depends(get_secrets),
) -> EmailChannel:
    return EmailChannel(secrets.resend_api_key, secrets.email_from, timeout=config.http_timeout_seconds)


def get_forum_matcher(
    config: WatcherConfig = Depends(get_config),
    secrets: WatcherSecrets = Depends(get_secrets),
    forum: ForumClient = Depends(get_forum_client),
) -> AIForumMatcher:
    return AIForumMatcher(config, forum, api_key=secrets.gemini_api_key)
