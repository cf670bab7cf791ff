"""
Proposal Watch - Error Taxonomy

Upstream unavailability aborts an invocation. Delivery failures are recorded
per attempt. A gone endpoint is terminal for its subscription.
"""
from typing import Optional


class WatcherError(Exception):
    """Base exception for proposal watch errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class ConfigurationError(WatcherError):
    """Raised when a required secret or credential is missing."""
    pass


class UpstreamUnavailableError(WatcherError):
    """Raised when the feed, code host, forum or job runner cannot be reached."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(f"{service}: {message}", original_error)
        self.service = service
        self.status_code = status_code


class ForumAuthError(UpstreamUnavailableError):
    """Raised when the forum rejects the session credential (401/403)."""

    def __init__(self, status_code: int):
        super().__init__("forum", f"authentication rejected (HTTP {status_code})", status_code)


class DeliveryError(WatcherError):
    """Raised when a notification channel rejects or times out a delivery."""
    pass


class SubscriptionGoneError(DeliveryError):
    """Raised when the push service reports the endpoint as permanently gone."""

    def __init__(self, endpoint: str, status_code: int):
        super().__init__(f"subscription expired (HTTP {status_code})")
        self.endpoint = endpoint
        self.status_code = status_code
