"""
Notification delivery channels: Web Push first, email as the fallback.
"""
from .push import PushChannel, proposal_payload
from .email import EmailChannel, render_proposal_email

__all__ = [
    "PushChannel",
    "EmailChannel",
    "proposal_payload",
    "render_proposal_email",
]
