"""Ticket lifecycle use-cases: approval gate and status transitions."""
from __future__ import annotations

import logging
import secrets
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ..auth import check_permission
from ..config import settings
from ..domain_errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    StateConflict,
    ValidationError,
)
from ..models import Assignment, Customer, Envelope, Technician, Ticket, TicketActivity, User
from ..security import get_technician_for_user, require_permission
from ..services import messages
from ..services.phone import normalize_phone
from ..services.ticket_rules import (
    APPROVAL_APPROVED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    ROLE_PRIMARY,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    is_status_update_allowed,
    is_terminal_status,
    normalize_category,
    normalize_status,
    now_utc,
    ticket_number_for,
)
from .envelopes import DeliveryHooks, enqueue_envelope

logger = logging.getLogger(__name__)

_NO_HOOKS = DeliveryHooks()


def get_ticket_for_update(db: Session, ticket_id: UUID) -> Ticket:
    """Load a ticket under a row lock scoped to that ticket only."""
    ticket = (
        db.query(Ticket)
        .filter(Ticket.id == ticket_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not ticket:
        raise NotFound("Ticket not found", code="TICKET_NOT_FOUND")
    return ticket


def ensure_approved(ticket: Ticket) -> None:
    if ticket.approval != APPROVAL_APPROVED:
        raise StateConflict(
            "Ticket is not approved",
            code="TICKET_NOT_APPROVED",
            details={"approval": ticket.approval},
        )


def log_activity(
    db: Session,
    *,
    ticket: Ticket,
    action: str,
    actor: User | None,
    details: dict[str, Any] | None = None,
) -> None:
    db.add(
        TicketActivity(
            ticket_id=ticket.id,
            action=action,
            actor_id=actor.id if actor else None,
            details=details,
            created_at=now_utc(),
        )
    )


def ticket_event_payload(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": str(ticket.id),
        "ticketNumber": ticket.ticket_number,
        "category": ticket.category,
        "status": ticket.status,
        "approval": ticket.approval,
    }


def technician_names(db: Session, ticket: Ticket) -> list[str]:
    rows = (
        db.query(Technician.name)
        .join(Assignment, Assignment.technician_id == Technician.id)
        .filter(Assignment.ticket_id == ticket.id)
        .all()
    )
    return [row[0] for row in rows]


def release_assignments(db: Session, ticket: Ticket) -> None:
    db.query(Assignment).filter(Assignment.ticket_id == ticket.id).delete(synchronize_session=False)
    ticket.assignee_count = 0


def customer_status_envelope(
    db: Session,
    *,
    ticket: Ticket,
    old_status: str,
    new_status: str,
    names: list[str] | None = None,
) -> Envelope | None:
    customer = ticket.customer
    if customer is None:
        return None
    return enqueue_envelope(
        db,
        kind="ticket_status_changed",
        recipient_address=customer.phone,
        body=messages.status_change_for_customer(
            ticket,
            old_status=old_status,
            new_status=new_status,
            technician_names=names if names is not None else technician_names(db, ticket),
        ),
        ticket_id=ticket.id,
    )


def _announce_approved_ticket(db: Session, ticket: Ticket) -> list[Envelope]:
    """One envelope per active technician plus the customer's acknowledgement."""
    envelopes: list[Envelope] = []
    body = messages.new_ticket_announcement(ticket, ticket.customer)
    technicians = (
        db.query(Technician)
        .filter(Technician.is_active == True)  # noqa: E712
        .order_by(Technician.created_at, Technician.id)
        .all()
    )
    for technician in technicians:
        envelope = enqueue_envelope(
            db,
            kind="ticket_new",
            recipient_address=technician.phone,
            body=body,
            ticket_id=ticket.id,
        )
        if envelope is not None:
            envelopes.append(envelope)

    if ticket.customer is not None:
        envelope = enqueue_envelope(
            db,
            kind="ticket_received",
            recipient_address=ticket.customer.phone,
            body=messages.ticket_received_for_customer(ticket),
            ticket_id=ticket.id,
        )
        if envelope is not None:
            envelopes.append(envelope)
    return envelopes


def _resolve_customer(
    db: Session,
    *,
    customer_id: UUID | None,
    customer_name: str | None,
    customer_phone: str | None,
    address: str,
) -> Customer:
    if customer_id:
        customer = db.query(Customer).filter(Customer.id == customer_id).first()
        if not customer:
            raise NotFound("Customer not found", code="CUSTOMER_NOT_FOUND")
        return customer

    name = (customer_name or "").strip()
    if not name:
        raise ValidationError("Customer is required", code="CUSTOMER_REQUIRED")
    phone = normalize_phone(customer_phone)
    if customer_phone and not phone:
        raise ValidationError("Customer phone number is invalid", code="CUSTOMER_PHONE_INVALID")

    customer = Customer(name=name, phone=phone, address=address)
    db.add(customer)
    db.flush()
    return customer


def create_ticket_use_case(
    *,
    db: Session,
    current_user: User,
    category: str,
    address: str | None,
    details: str | None = None,
    customer_id: UUID | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    scheduled_at=None,
    auto_approve_roles: set[str] | None = None,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> Ticket:
    """Create a ticket; trusted roles skip the approval queue."""
    try:
        normalized_category = normalize_category(category)
    except ValueError as e:
        raise ValidationError(str(e), code="TICKET_CATEGORY_INVALID")

    clean_address = (address or "").strip()
    if not clean_address:
        raise ValidationError("Address is required", code="ADDRESS_REQUIRED")

    customer = _resolve_customer(
        db,
        customer_id=customer_id,
        customer_name=customer_name,
        customer_phone=customer_phone,
        address=clean_address,
    )

    trusted_roles = settings.auto_approve_roles if auto_approve_roles is None else auto_approve_roles
    auto_approved = current_user.role in trusted_roles
    created_at = now_utc()

    ticket = Ticket(
        ticket_number=ticket_number_for(normalized_category, at=created_at, suffix=secrets.token_hex(2)),
        category=normalized_category,
        status=STATUS_OPEN,
        approval=APPROVAL_APPROVED if auto_approved else APPROVAL_PENDING,
        customer_id=customer.id,
        creator_id=current_user.id,
        address=clean_address,
        details=(details or "").strip() or None,
        scheduled_at=scheduled_at,
        assignee_count=0,
    )
    ticket.customer = customer
    if auto_approved:
        ticket.approved_by_id = current_user.id
        ticket.approved_at = created_at
    db.add(ticket)
    db.flush()

    log_activity(
        db,
        ticket=ticket,
        action="ticket_created",
        actor=current_user,
        details={"approval": ticket.approval},
    )
    envelopes = _announce_approved_ticket(db, ticket) if auto_approved else []

    db.commit()
    db.refresh(ticket)
    logger.info("Ticket %s created by %s (approval=%s)", ticket.ticket_number, current_user.id, ticket.approval)

    hooks.after_commit(
        db,
        envelopes=envelopes,
        event="ticket.created" if auto_approved else "ticket.pending_approval",
        payload=ticket_event_payload(ticket),
    )
    return ticket


def approve_ticket_use_case(
    *,
    db: Session,
    ticket_id: UUID,
    current_user: User,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> Ticket:
    """Approve a pending ticket and announce it to the field."""
    require_permission(current_user, "canApproveTickets")
    ticket = get_ticket_for_update(db, ticket_id)
    if ticket.approval != APPROVAL_PENDING:
        raise StateConflict(
            "Ticket is not pending approval",
            code="TICKET_NOT_PENDING_APPROVAL",
            details={"approval": ticket.approval},
        )

    ticket.approval = APPROVAL_APPROVED
    ticket.status = STATUS_OPEN
    ticket.approved_by_id = current_user.id
    ticket.approved_at = now_utc()

    envelopes = _announce_approved_ticket(db, ticket)
    log_activity(
        db,
        ticket=ticket,
        action="ticket_approved",
        actor=current_user,
        details={"announced": len(envelopes)},
    )
    db.commit()
    db.refresh(ticket)

    hooks.after_commit(db, envelopes=envelopes, event="ticket.created", payload=ticket_event_payload(ticket))
    return ticket


def reject_ticket_use_case(
    *,
    db: Session,
    ticket_id: UUID,
    current_user: User,
    reason: str | None,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> Ticket:
    require_permission(current_user, "canApproveTickets")
    clean_reason = (reason or "").strip()
    if not clean_reason:
        raise ValidationError("Rejection reason is required", code="REJECTION_REASON_REQUIRED")

    ticket = get_ticket_for_update(db, ticket_id)
    if ticket.approval != APPROVAL_PENDING:
        raise StateConflict(
            "Ticket is not pending approval",
            code="TICKET_NOT_PENDING_APPROVAL",
            details={"approval": ticket.approval},
        )

    ticket.approval = APPROVAL_REJECTED
    ticket.status = STATUS_CANCELLED
    ticket.rejection_reason = clean_reason
    log_activity(db, ticket=ticket, action="ticket_rejected", actor=current_user, details={"reason": clean_reason})
    db.commit()
    db.refresh(ticket)

    hooks.after_commit(db, event="ticket.rejected", payload=ticket_event_payload(ticket))
    return ticket


def _ensure_may_change_status(db: Session, *, ticket: Ticket, current_user: User, next_status: str) -> None:
    if check_permission(current_user, "canManageTickets"):
        return
    if current_user.role != "technician":
        raise Forbidden("Permission denied: canManageTickets required", code="TICKET_STATUS_FORBIDDEN")
    if next_status == STATUS_CANCELLED:
        raise Forbidden("Technicians cannot cancel tickets", code="TICKET_CANCEL_FORBIDDEN")

    technician = get_technician_for_user(db, current_user)
    assigned = technician is not None and db.query(Assignment).filter(
        Assignment.ticket_id == ticket.id,
        Assignment.technician_id == technician.id,
    ).first() is not None
    if not assigned:
        raise Forbidden("Ticket not assigned to you", code="TICKET_NOT_ASSIGNED")


def update_status_use_case(
    *,
    db: Session,
    ticket_id: UUID,
    current_user: User,
    new_status: str,
    notes: str | None = None,
    evidence_ref: str | None = None,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> Ticket:
    """Move a ticket along ASSIGNED -> IN_PROGRESS -> COMPLETED, or cancel it."""
    try:
        next_status = normalize_status(new_status)
    except ValueError as e:
        raise ValidationError(str(e), code="TICKET_STATUS_INVALID")

    ticket = get_ticket_for_update(db, ticket_id)
    ensure_approved(ticket)
    _ensure_may_change_status(db, ticket=ticket, current_user=current_user, next_status=next_status)

    old_status = ticket.status
    if not is_status_update_allowed(current_status=old_status, next_status=next_status):
        raise InvalidTransition(old_status, next_status)
    if next_status == STATUS_COMPLETED and not (evidence_ref or "").strip():
        raise ValidationError("Completion evidence is required", code="EVIDENCE_REQUIRED")

    names = technician_names(db, ticket)
    clean_notes = (notes or "").strip() or None

    if next_status == STATUS_COMPLETED:
        primary = db.query(Assignment).filter(
            Assignment.ticket_id == ticket.id,
            Assignment.role == ROLE_PRIMARY,
        ).first()
        ticket.completed_at = now_utc()
        ticket.completed_by_technician_id = primary.technician_id if primary else None
        ticket.evidence_ref = evidence_ref.strip()
        ticket.completion_notes = clean_notes
    elif next_status == STATUS_CANCELLED or clean_notes:
        ticket.completion_notes = clean_notes
    if is_terminal_status(next_status):
        release_assignments(db, ticket)

    ticket.status = next_status
    envelope = customer_status_envelope(
        db,
        ticket=ticket,
        old_status=old_status,
        new_status=next_status,
        names=names,
    )
    log_activity(
        db,
        ticket=ticket,
        action="ticket_status_changed",
        actor=current_user,
        details={"oldStatus": old_status, "newStatus": next_status},
    )
    db.commit()
    db.refresh(ticket)
    logger.info("Ticket %s: %s -> %s", ticket.ticket_number, old_status, next_status)

    hooks.after_commit(
        db,
        envelopes=[envelope] if envelope else [],
        event="ticket.status_changed",
        payload={**ticket_event_payload(ticket), "oldStatus": old_status},
    )
    return ticket


def delete_ticket_use_case(
    *,
    db: Session,
    ticket_id: UUID,
    current_user: User,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> None:
    """Delete a ticket and its assignments. No message is sent."""
    require_permission(current_user, "canDeleteTickets")
    ticket = get_ticket_for_update(db, ticket_id)
    payload = ticket_event_payload(ticket)

    db.query(Assignment).filter(Assignment.ticket_id == ticket.id).delete(synchronize_session=False)
    db.expire(ticket, ["assignments"])
    log_activity(db, ticket=ticket, action="ticket_deleted", actor=current_user, details=payload)
    db.delete(ticket)
    db.commit()
    logger.info("Ticket %s deleted by %s", payload["ticketNumber"], current_user.id)

    hooks.after_commit(db, event="ticket.deleted", payload=payload)


__all__ = [
    "approve_ticket_use_case",
    "create_ticket_use_case",
    "customer_status_envelope",
    "delete_ticket_use_case",
    "ensure_approved",
    "get_ticket_for_update",
    "log_activity",
    "reject_ticket_use_case",
    "release_assignments",
    "technician_names",
    "ticket_event_payload",
    "update_status_use_case",
]
