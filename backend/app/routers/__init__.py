"""Proposal Watch - API Routers"""
from .scheduler import router as scheduler_router
from .subscriptions import router as subscriptions_router
from .proposals import router as proposals_router

__all__ = [
    "scheduler_router",
    "subscriptions_router",
    "proposals_router",
]
