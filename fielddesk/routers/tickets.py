"""Ticket endpoints."""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from ..auth import PermissionChecker, check_permission, get_current_user
from ..database import get_db
from ..dependencies import get_delivery_hooks
from ..domain_errors import DomainError, Forbidden, NotFound, ValidationError
from ..evidence import LocalEvidenceStore, get_evidence_store
from ..models import Assignment, Ticket, User
from ..schemas import (
    TicketAssignRequest,
    TicketConfirmRequest,
    TicketCreate,
    TicketRejectRequest,
    TicketResponse,
    TicketStatusUpdate,
)
from ..security import get_technician_for_user
from ..services.ticket_rules import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    STATUS_COMPLETED,
    STATUS_OPEN,
)
from ..use_cases.assignments import (
    admin_assign_use_case,
    confirm_assignment_use_case,
    self_assign_use_case,
)
from ..use_cases.envelopes import DeliveryHooks
from ..use_cases.ticket_lifecycle import (
    approve_ticket_use_case,
    create_ticket_use_case,
    delete_ticket_use_case,
    reject_ticket_use_case,
    update_status_use_case,
)

router = APIRouter(prefix="/tickets", tags=["tickets"])


def _ticket_query(db: Session):
    return db.query(Ticket).options(
        selectinload(Ticket.customer),
        selectinload(Ticket.assignments),
    )


def _technician_visibility_filter(db: Session, current_user: User):
    """Technicians see their own tickets plus approved OPEN ones they could take."""
    technician = get_technician_for_user(db, current_user)
    open_tickets = (Ticket.approval == APPROVAL_APPROVED) & (Ticket.status == STATUS_OPEN)
    if technician is None:
        return open_tickets
    own_ticket_ids = db.query(Assignment.ticket_id).filter(Assignment.technician_id == technician.id)
    return or_(open_tickets, Ticket.id.in_(own_ticket_ids), Ticket.completed_by_technician_id == technician.id)


def _get_visible_ticket(db: Session, ticket_id: UUID, current_user: User) -> Ticket:
    query = _ticket_query(db).filter(Ticket.id == ticket_id)
    if not check_permission(current_user, "canViewAllTickets"):
        query = query.filter(_technician_visibility_filter(db, current_user))
    ticket = query.first()
    if not ticket:
        raise NotFound("Ticket not found", code="TICKET_NOT_FOUND")
    return ticket


@router.get("", response_model=list[TicketResponse])
def list_tickets(
    status_filter: Optional[str] = Query(None, alias="status"),
    approval: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List tickets, newest first."""
    query = _ticket_query(db)
    if not check_permission(current_user, "canViewAllTickets"):
        query = query.filter(_technician_visibility_filter(db, current_user))
    if status_filter:
        query = query.filter(Ticket.status.in_([s.strip().upper() for s in status_filter.split(",")]))
    if approval:
        query = query.filter(Ticket.approval == approval.strip().upper())
    if category:
        query = query.filter(Ticket.category == category.strip().upper())
    return query.order_by(Ticket.created_at.desc()).offset(offset).limit(limit).all()


@router.get(
    "/pending-approval",
    response_model=list[TicketResponse],
    dependencies=[Depends(PermissionChecker("canApproveTickets"))],
)
def list_pending_approval(db: Session = Depends(get_db)):
    """Approval queue, oldest first."""
    return (
        _ticket_query(db)
        .filter(Ticket.approval == APPROVAL_PENDING)
        .order_by(Ticket.created_at, Ticket.id)
        .all()
    )


@router.get("/{ticket_id}", response_model=TicketResponse)
def get_ticket(
    ticket_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _get_visible_ticket(db, ticket_id, current_user)


@router.post(
    "",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(PermissionChecker("canCreateTickets"))],
)
def create_ticket(
    data: TicketCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    """Create ticket. Non-trusted callers land in the approval queue."""
    return create_ticket_use_case(
        db=db,
        current_user=current_user,
        category=data.category,
        address=data.address,
        details=data.details,
        customer_id=data.customer_id,
        customer_name=data.customer.name if data.customer else None,
        customer_phone=data.customer.phone if data.customer else None,
        scheduled_at=data.scheduled_at,
        hooks=hooks,
    )


@router.post(
    "/{ticket_id}/approve",
    response_model=TicketResponse,
    dependencies=[Depends(PermissionChecker("canApproveTickets"))],
)
def approve_ticket(
    ticket_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    return approve_ticket_use_case(db=db, ticket_id=ticket_id, current_user=current_user, hooks=hooks)


@router.post(
    "/{ticket_id}/reject",
    response_model=TicketResponse,
    dependencies=[Depends(PermissionChecker("canApproveTickets"))],
)
def reject_ticket(
    ticket_id: UUID,
    data: TicketRejectRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    return reject_ticket_use_case(
        db=db,
        ticket_id=ticket_id,
        current_user=current_user,
        reason=data.reason,
        hooks=hooks,
    )


@router.put("/{ticket_id}/status", response_model=TicketResponse)
def update_ticket_status(
    ticket_id: UUID,
    data: TicketStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    """Start, complete (with an evidence reference) or cancel a ticket."""
    return update_status_use_case(
        db=db,
        ticket_id=ticket_id,
        current_user=current_user,
        new_status=data.status,
        notes=data.notes,
        evidence_ref=data.evidence_ref,
        hooks=hooks,
    )


@router.post("/{ticket_id}/complete", response_model=TicketResponse)
def complete_ticket(
    ticket_id: UUID,
    file: UploadFile = File(...),
    notes: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
    store: LocalEvidenceStore = Depends(get_evidence_store),
):
    """Upload completion evidence and mark the ticket COMPLETED in one call."""
    evidence_ref = store.save(file.filename, file.file)
    try:
        return update_status_use_case(
            db=db,
            ticket_id=ticket_id,
            current_user=current_user,
            new_status=STATUS_COMPLETED,
            notes=notes,
            evidence_ref=evidence_ref,
            hooks=hooks,
        )
    except DomainError:
        store.discard(evidence_ref)
        raise


@router.delete(
    "/{ticket_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(PermissionChecker("canDeleteTickets"))],
)
def delete_ticket(
    ticket_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    delete_ticket_use_case(db=db, ticket_id=ticket_id, current_user=current_user, hooks=hooks)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{ticket_id}/assign",
    response_model=TicketResponse,
    dependencies=[Depends(PermissionChecker("canAssignTickets"))],
)
def assign_ticket(
    ticket_id: UUID,
    data: TicketAssignRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    return admin_assign_use_case(
        db=db,
        ticket_id=ticket_id,
        technician_ids=data.technician_ids,
        current_user=current_user,
        hooks=hooks,
    )


@router.post(
    "/{ticket_id}/self-assign",
    response_model=TicketResponse,
    dependencies=[Depends(PermissionChecker("canSelfAssign"))],
)
def self_assign_ticket(
    ticket_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    """Claim an open installation ticket."""
    return self_assign_use_case(db=db, ticket_id=ticket_id, current_user=current_user, hooks=hooks)


@router.post("/{ticket_id}/confirm", response_model=TicketResponse)
def confirm_ticket(
    ticket_id: UUID,
    data: TicketConfirmRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
):
    """Accept or decline an assignment."""
    technician_id = data.technician_id
    if technician_id is None:
        technician = get_technician_for_user(db, current_user)
        if technician is None:
            if check_permission(current_user, "canManageTickets"):
                raise ValidationError("technician_id is required", code="TECHNICIAN_ID_REQUIRED")
            raise Forbidden("Caller is not a registered technician", code="NOT_A_TECHNICIAN")
        technician_id = technician.id
    return confirm_assignment_use_case(
        db=db,
        ticket_id=ticket_id,
        technician_id=technician_id,
        action=data.action,
        current_user=current_user,
        hooks=hooks,
    )
