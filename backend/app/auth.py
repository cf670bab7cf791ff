"""
Proposal Watch - Authorization
Shared-secret bearer checks for the scheduler and write endpoints
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .config import WatcherSecrets
from .dependencies import get_secrets


logger = logging.getLogger(__name__)

# Bearer token security. auto_error is off so a missing header is a 401, not a 403.
security = HTTPBearer(auto_error=False)


def secret_matches(credentials: Optional[HTTPAuthorizationCredentials], secret: Optional[str]) -> bool:
    """Constant-time token comparison. An unset secret matches nothing."""
    if not secret or credentials is None:
        return False
    return hmac.compare_digest(credentials.credentials.encode("utf-8"), secret.encode("utf-8"))


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    secrets: WatcherSecrets = Depends(get_secrets),
) -> bool:
    """Dependency for scheduler-invoked job endpoints."""
    if not secrets.cron_secret:
        logger.warning("CRON_SECRET not configured")
    if not secret_matches(credentials, secrets.cron_secret):
        raise _unauthorized()
    return True


async def require_forum_link_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    secrets: WatcherSecrets = Depends(get_secrets),
) -> bool:
    """Dependency for manual forum link edits."""
    if not secrets.forum_link_secret:
        logger.warning("FORUM_LINK_SECRET not configured")
    if not secret_matches(credentials, secrets.forum_link_secret):
        raise _unauthorized()
    return True


async def require_commentary_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    secrets: WatcherSecrets = Depends(get_secrets),
) -> bool:
    """Dependency for commentary ingest from the job runner."""
    if not secrets.commentary_secret:
        logger.warning("COMMENTARY_SECRET not configured")
    if not secret_matches(credentials, secrets.commentary_secret):
        raise _unauthorized()
    return True
