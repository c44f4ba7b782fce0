"""Envelope (outbound message) endpoints for staff."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import PermissionChecker
from ..database import get_db
from ..schemas import EnvelopeResponse, EnvelopeStats
from ..use_cases.envelopes import (
    envelope_stats,
    list_envelopes,
    retry_envelope_use_case,
)

router = APIRouter(
    prefix="/envelopes",
    tags=["envelopes"],
    dependencies=[Depends(PermissionChecker("canManageEnvelopes"))],
)


@router.get("", response_model=list[EnvelopeResponse])
def get_envelopes(
    status: Optional[str] = Query(None, description="Comma-separated: PENDING,SENT,FAILED"),
    ticket_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    return list_envelopes(db, status=status, ticket_id=ticket_id, limit=limit, offset=offset)


@router.get("/stats", response_model=EnvelopeStats)
def get_envelope_stats(db: Session = Depends(get_db)):
    return envelope_stats(db)


@router.post("/{envelope_id}/retry", response_model=EnvelopeResponse)
def retry_envelope(envelope_id: UUID, db: Session = Depends(get_db)):
    """Put a FAILED envelope back in the queue with a fresh attempt budget."""
    return retry_envelope_use_case(db=db, envelope_id=envelope_id)
