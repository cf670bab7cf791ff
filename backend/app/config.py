"""
Proposal Watch - Configuration

All floors, category ids, windows and the topic taxonomy live in one
immutable WatcherConfig that is passed into every component at construction.
Secrets are loaded separately and never printed.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


# =============================================================================
# TOPIC TAXONOMY
# =============================================================================

# Governance topic code -> display name
TOPIC_NAMES: Dict[int, str] = {
    1: "Neuron Management",
    2: "Exchange Rate",
    3: "Network Economics",
    4: "Governance",
    5: "Node Admin",
    6: "Participant Management",
    7: "Subnet Management",
    8: "Application Canister Management",
    9: "KYC",
    10: "Node Provider Rewards",
    12: "IC OS Version Deployment",
    13: "IC OS Version Election",
    14: "SNS & Neurons' Fund",
    15: "API Boundary Node Management",
    16: "Subnet Rental",
    17: "Protocol Canister Management",
    18: "Service Nervous System Management",
}

# Topic code -> enum name used by the governance REST API
TOPIC_API_NAMES: Dict[int, str] = {
    1: "TOPIC_NEURON_MANAGEMENT",
    2: "TOPIC_EXCHANGE_RATE",
    3: "TOPIC_NETWORK_ECONOMICS",
    4: "TOPIC_GOVERNANCE",
    5: "TOPIC_NODE_ADMIN",
    6: "TOPIC_PARTICIPANT_MANAGEMENT",
    7: "TOPIC_SUBNET_MANAGEMENT",
    8: "TOPIC_APPLICATION_CANISTER_MANAGEMENT",
    9: "TOPIC_KYC",
    10: "TOPIC_NODE_PROVIDER_REWARDS",
    12: "TOPIC_IC_OS_VERSION_DEPLOYMENT",
    13: "TOPIC_IC_OS_VERSION_ELECTION",
    14: "TOPIC_SNS_AND_COMMUNITY_FUND",
    15: "TOPIC_API_BOUNDARY_NODE_MANAGEMENT",
    16: "TOPIC_SUBNET_RENTAL",
    17: "TOPIC_PROTOCOL_CANISTER_MANAGEMENT",
    18: "TOPIC_SERVICE_NERVOUS_SYSTEM_MANAGEMENT",
}

PROTOCOL_CANISTER_MANAGEMENT_TOPIC = 17


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _tuple_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if not value:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


# =============================================================================
# WATCHER CONFIG
# =============================================================================

@dataclass(frozen=True)
class WatcherConfig:
    """Immutable runtime configuration shared by every component."""

    # Governance feed
    feed_base_url: str = "https://ic-api.internetcomputer.org/api/v3"
    feed_limit: int = 100
    min_proposal_id: int = 139768
    verification_min_proposal_id: int = 139768
    topic_names: Dict[int, str] = field(default_factory=lambda: dict(TOPIC_NAMES))
    default_topics: Tuple[int, ...] = (PROTOCOL_CANISTER_MANAGEMENT_TOPIC,)
    # Stored but unnotified rows older than this are dispatched again by the next poll
    redispatch_after_minutes: int = 5

    # Deep links
    app_base_url: str = "http://localhost:3000"
    dashboard_base_url: str = "https://dashboard.internetcomputer.org"

    # Job runner (verification + commentary workflows)
    github_api_url: str = "https://api.github.com"
    job_repo_owner: str = "jorgenbuilder"
    job_repo_name: str = "icp-build-verifier"
    job_ref: str = "main"
    verification_workflow: str = "verify.yml"
    commentary_workflow: str = "commentary.yml"
    verification_job_tag: str = "Verify Proposal"
    commentary_job_tag: str = "Commentary Proposal"
    verification_recent_minutes: int = 10
    commentary_recent_minutes: int = 30
    trigger_scan_limit: int = 20
    trigger_delay_seconds: float = 0.5
    job_listing_page_size: int = 100

    # Diff stats backfill
    known_repositories: Tuple[str, ...] = ("dfinity/ic", "dfinity/nns-dapp", "dfinity/internet-identity")
    backfill_default_batch: int = 20
    backfill_max_batch: int = 100
    backfill_delay_seconds: float = 0.1

    # Forum
    forum_base_url: str = "https://forum.dfinity.org"
    forum_category_id: int = 76
    forum_category_slug: str = "governance/nns-proposal-discussions"
    forum_scan_limit: int = 100
    forum_delay_seconds: float = 0.3
    forum_max_retries: int = 3
    forum_retry_delay_seconds: float = 1.0

    # AI-assisted forum match
    ai_forum_fallback: bool = False
    ai_model: str = "gemini-2.0-flash"
    ai_window_days: int = 7
    ai_max_pages: int = 3
    ai_top_k: int = 8
    ai_content_chars: int = 3000

    # HTTP
    http_timeout_seconds: float = 30.0

    @property
    def all_topics(self) -> Tuple[int, ...]:
        return tuple(sorted(self.topic_names))

    def topic_name(self, topic: int) -> str:
        return self.topic_names.get(topic, f"Topic {topic}")

    def proposal_path(self, proposal_id: int) -> str:
        return f"/proposals/{proposal_id}"

    def dashboard_url(self, proposal_id: int) -> str:
        return f"{self.dashboard_base_url}/proposal/{proposal_id}"

    def forum_topic_url(self, slug: str, topic_id: int) -> str:
        return f"{self.forum_base_url}/t/{slug}/{topic_id}"


@dataclass(frozen=True)
class WatcherSecrets:
    """Shared secrets and API credentials. Never part of a repr."""

    cron_secret: Optional[str] = field(default=None, repr=False)
    forum_link_secret: Optional[str] = field(default=None, repr=False)
    commentary_secret: Optional[str] = field(default=None, repr=False)
    github_token: Optional[str] = field(default=None, repr=False)
    vapid_public_key: Optional[str] = field(default=None, repr=False)
    vapid_private_key: Optional[str] = field(default=None, repr=False)
    vapid_subject: str = "mailto:notifications@icp-proposals.app"
    resend_api_key: Optional[str] = field(default=None, repr=False)
    email_from: str = "ICP Proposals <notifications@icp-proposals.app>"
    gemini_api_key: Optional[str] = field(default=None, repr=False)
    forum_cookies: Optional[str] = field(default=None, repr=False)


def load_config() -> WatcherConfig:
    """Build the runtime configuration from environment variables."""
    defaults = WatcherConfig()
    return WatcherConfig(
        feed_base_url=os.getenv("GOVERNANCE_API_URL", defaults.feed_base_url),
        feed_limit=_int_env("FEED_LIMIT", defaults.feed_limit),
        min_proposal_id=_int_env("MIN_PROPOSAL_ID", defaults.min_proposal_id),
        verification_min_proposal_id=_int_env(
            "VERIFICATION_MIN_PROPOSAL_ID", defaults.verification_min_proposal_id
        ),
        redispatch_after_minutes=_int_env("REDISPATCH_AFTER_MINUTES", defaults.redispatch_after_minutes),
        app_base_url=os.getenv("APP_BASE_URL", defaults.app_base_url),
        job_repo_owner=os.getenv("JOB_REPO_OWNER", defaults.job_repo_owner),
        job_repo_name=os.getenv("JOB_REPO_NAME", defaults.job_repo_name),
        verification_recent_minutes=_int_env(
            "VERIFICATION_RECENT_MINUTES", defaults.verification_recent_minutes
        ),
        commentary_recent_minutes=_int_env(
            "COMMENTARY_RECENT_MINUTES", defaults.commentary_recent_minutes
        ),
        known_repositories=_tuple_env("KNOWN_REPOSITORIES", defaults.known_repositories),
        backfill_delay_seconds=_float_env("BACKFILL_DELAY_SECONDS", defaults.backfill_delay_seconds),
        forum_base_url=os.getenv("FORUM_BASE_URL", defaults.forum_base_url),
        forum_category_id=_int_env("FORUM_CATEGORY_ID", defaults.forum_category_id),
        forum_delay_seconds=_float_env("FORUM_DELAY_SECONDS", defaults.forum_delay_seconds),
        ai_forum_fallback=_bool_env("AI_FORUM_FALLBACK", defaults.ai_forum_fallback),
        ai_model=os.getenv("AI_FORUM_MODEL", defaults.ai_model),
    )


def load_secrets() -> WatcherSecrets:
    """Read shared secrets and API keys from the environment."""
    return WatcherSecrets(
        cron_secret=os.getenv("CRON_SECRET"),
        forum_link_secret=os.getenv("FORUM_LINK_SECRET"),
        commentary_secret=os.getenv("COMMENTARY_SECRET"),
        github_token=os.getenv("GITHUB_TOKEN"),
        vapid_public_key=os.getenv("VAPID_PUBLIC_KEY"),
        vapid_private_key=os.getenv("VAPID_PRIVATE_KEY"),
        vapid_subject=os.getenv("VAPID_SUBJECT", WatcherSecrets.vapid_subject),
        resend_api_key=os.getenv("RESEND_API_KEY"),
        email_from=os.getenv("EMAIL_FROM", WatcherSecrets.email_from),
        gemini_api_key=os.getenv("GEMINI_API_KEY"),
        forum_cookies=os.getenv("FORUM_COOKIES"),
    )
