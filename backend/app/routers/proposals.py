"""
Proposal Enrichment API Routes

Manual forum links, commentary ingest from the job runner, and build
verification status for listing views.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import require_commentary_secret, require_forum_link_secret
from ..clients import GovernanceFeedClient, JobRunnerClient
from ..config import WatcherConfig
from ..database import get_db
from ..dependencies import get_config, get_feed_client, get_job_runner_client
from ..models.db_models import CommentaryDB, ForumThreadDB
from ..services.enrichment_trigger import EnrichmentTriggerCoordinator
from ..services.store import ProposalStore


logger = logging.getLogger(__name__)

router = APIRouter(tags=["proposals"])

FORUM_HOST = "forum.dfinity.org"


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ForumLinkRequest(BaseModel):
    proposalId: int
    forumUrl: str = Field(..., min_length=1)
    threadTitle: Optional[str] = None
    isCanonical: bool = False


class ForumLinkDeleteRequest(BaseModel):
    proposalId: int
    forumUrl: str = Field(..., min_length=1)


class CommentaryMetadata(BaseModel):
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    turns: Optional[int] = None


class CommentaryRequest(BaseModel):
    commentary: Dict[str, Any]
    metadata: Optional[CommentaryMetadata] = None


def _thread_dict(thread: ForumThreadDB) -> Dict[str, Any]:
    return {
        "id": thread.id,
        "proposal_id": thread.proposal_id,
        "forum_url": thread.forum_url,
        "thread_title": thread.thread_title,
        "is_canonical": thread.is_canonical,
        "confidence": thread.confidence,
        "added_at": thread.added_at.isoformat() if thread.added_at else None,
    }


def _commentary_dict(record: CommentaryDB) -> Dict[str, Any]:
    return {
        **(record.commentary_data or {}),
        "cost_usd": float(record.cost_usd) if record.cost_usd is not None else None,
        "duration_ms": record.duration_ms,
        "turns": record.turns,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


# =============================================================================
# FORUM LINKS
# =============================================================================

@router.get("/forum-links", response_model=dict)
def list_forum_links(proposalId: int, db: Session = Depends(get_db)):
    threads = ProposalStore(db).forum_threads(proposalId)
    return {"threads": [_thread_dict(t) for t in threads]}


@router.post("/forum-links", response_model=dict)
def add_forum_link(
    request: ForumLinkRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(require_forum_link_secret),
):
    """
    Link a forum thread to a proposal by hand.

    A canonical request is stored non-canonical when the proposal already
    has a canonical thread.
    """
    if FORUM_HOST not in request.forumUrl:
        raise HTTPException(status_code=400, detail=f"URL must be from {FORUM_HOST}")

    thread = ProposalStore(db).add_forum_thread(
        request.proposalId,
        request.forumUrl,
        request.threadTitle,
        is_canonical=request.isCanonical,
    )
    db.commit()
    return {"success": True, "thread": _thread_dict(thread)}


@router.delete("/forum-links", response_model=dict)
def remove_forum_link(
    request: ForumLinkDeleteRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(require_forum_link_secret),
):
    ProposalStore(db).remove_forum_thread(request.proposalId, request.forumUrl)
    db.commit()
    return {"success": True}


# =============================================================================
# COMMENTARY
# =============================================================================

@router.post("/proposals/{proposal_id}/commentary", response_model=dict)
def post_commentary(
    proposal_id: int,
    request: CommentaryRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(require_commentary_secret),
):
    """Store a commentary version posted by the job runner."""
    commentary = request.commentary
    if not commentary.get("overall_summary") or not commentary.get("sources"):
        raise HTTPException(
            status_code=400,
            detail="Invalid commentary: missing required fields (overall_summary, sources)",
        )
    if str(commentary.get("proposal_id")) != str(proposal_id):
        raise HTTPException(status_code=400, detail="Proposal ID mismatch between URL and commentary data")

    store = ProposalStore(db)
    if store.get(proposal_id) is None:
        raise HTTPException(status_code=404, detail="Proposal not found")

    metadata = request.metadata.model_dump() if request.metadata else {}
    saved = store.save_commentary(proposal_id, commentary, metadata)
    db.commit()

    logger.info(
        f"Saved commentary for proposal {proposal_id} "
        f"(incomplete={commentary.get('analysis_incomplete')}, cost={metadata.get('cost_usd')})"
    )
    return {
        "success": True,
        "commentary_id": saved.id,
        "created_at": saved.created_at.isoformat() if saved.created_at else None,
    }


@router.get("/proposals/{proposal_id}/commentary", response_model=dict)
def get_commentary(proposal_id: int, db: Session = Depends(get_db)):
    record = ProposalStore(db).latest_commentary(proposal_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No commentary found for this proposal")
    commentary = _commentary_dict(record)
    return {"commentary": commentary, "created_at": commentary["created_at"]}


# =============================================================================
# VERIFICATION STATUS
# =============================================================================

@router.get("/verification-status", response_model=dict)
def verification_status(
    ids: List[int] = Query(...),
    db: Session = Depends(get_db),
    config: WatcherConfig = Depends(get_config),
    feed: GovernanceFeedClient = Depends(get_feed_client),
    jobs: JobRunnerClient = Depends(get_job_runner_client),
):
    """Build verification state per proposal id."""
    coordinator = EnrichmentTriggerCoordinator(db, config, feed, jobs)
    statuses = coordinator.verification_status(ids)
    return {"statuses": {str(pid): info for pid, info in statuses.items()}}
