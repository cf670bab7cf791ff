"""
Fallback delivery channel: transactional email through the Resend API.

Fire-and-forget. A True return means the provider accepted the message,
nothing more.
"""
import logging
from html import escape
from typing import Optional

import httpx


logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


def render_proposal_email(
    proposal_id: int,
    title: str,
    topic_name: str,
    app_url: str,
    dashboard_url: str,
) -> str:
    return f"""
        <h2>New ICP Governance Proposal</h2>
        <p>A new proposal has been submitted that matches your subscriptions.</p>

        <div style="background: #f5f5f5; padding: 16px; border-radius: 8px; margin: 16px 0;">
          <h3 style="margin: 0 0 8px 0;">#{proposal_id}: {escape(title)}</h3>
          <p style="margin: 0; color: #666;">Topic: {escape(topic_name)}</p>
        </div>

        <p>
          <a href="{app_url}" style="display: inline-block; background: #000; color: #fff; padding: 12px 24px; text-decoration: none; border-radius: 6px;">
            View in App
          </a>
          &nbsp;&nbsp;
          <a href="{dashboard_url}" style="color: #000;">View on IC Dashboard</a>
        </p>

        <hr style="margin: 24px 0; border: none; border-top: 1px solid #eee;" />

        <p style="color: #666; font-size: 12px;">
          You're receiving this because push notification delivery failed.
        </p>
    """


class EmailChannel:
    """Sends a proposal notice to a fallback address."""

    def __init__(
        self,
        api_key: Optional[str],
        sender: str,
        http: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.http = http or httpx.Client(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, subject: str, html: str) -> bool:
        if not self.configured:
            logger.warning("RESEND_API_KEY not configured, email fallback skipped")
            return False

        try:
            response = self.http.post(
                RESEND_API_URL,
                json={"from": self.sender, "to": [to], "subject": subject, "html": html},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Email send failed: {e}")
            return False

        if response.status_code >= 400:
            logger.error(f"Resend error: {response.status_code} {response.text[:200]}")
            return False
        return True
