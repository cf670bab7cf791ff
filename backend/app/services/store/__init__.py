"""
Durable state: the Dedup Store and the Subscription Registry.
"""
from .proposal_store import ProposalStore
from .subscription_registry import SubscriptionRegistry
from .upsert import insert_if_absent

__all__ = [
    "ProposalStore",
    "SubscriptionRegistry",
    "insert_if_absent",
]
