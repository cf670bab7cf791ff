"""
Primary delivery channel: Web Push with VAPID.
"""
import json
import logging
from typing import Any, Callable, Dict, Optional

import requests
from pywebpush import WebPushException, webpush

from ...exceptions import ConfigurationError, DeliveryError, SubscriptionGoneError


logger = logging.getLogger(__name__)

GONE_STATUS_CODES = (404, 410)


def proposal_payload(proposal_id: int, title: str, path: str) -> Dict[str, Any]:
    """Notification body the service worker renders."""
    return {
        "title": "New Proposal",
        "body": f"#{proposal_id}: {title}",
        "proposalId": str(proposal_id),
        "url": path,
    }


class PushChannel:
    """
    Sends one JSON payload to one browser push endpoint.

    Raises SubscriptionGoneError when the push service reports the endpoint
    as permanently gone, DeliveryError for every other failure.
    """

    def __init__(
        self,
        vapid_private_key: Optional[str],
        vapid_subject: str,
        ttl: int = 86400,
        sender: Callable[..., Any] = webpush,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.ttl = ttl
        self._send = sender

    @property
    def configured(self) -> bool:
        return bool(self.vapid_private_key)

    def send(self, endpoint: str, p256dh: str, auth: str, payload: Dict[str, Any]) -> None:
        if not self.configured:
            raise ConfigurationError("VAPID keys not configured")

        try:
            self._send(
                subscription_info={"endpoint": endpoint, "keys": {"p256dh": p256dh, "auth": auth}},
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                ttl=self.ttl,
            )
        except WebPushException as e:
            status_code = getattr(e.response, "status_code", None)
            if status_code in GONE_STATUS_CODES:
                raise SubscriptionGoneError(endpoint, status_code)
            logger.warning(f"Push notification failed ({status_code}): {e}")
            raise DeliveryError(f"push failed: {e}", e)
        except requests.exceptions.RequestException as e:
            # Connection errors and timeouts surface unwrapped from the sender
            logger.warning(f"Push service unreachable for {endpoint}: {e}")
            raise DeliveryError(f"push unreachable: {e}", e)
