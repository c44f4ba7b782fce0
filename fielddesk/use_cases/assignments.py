"""Assignment use-cases: admin assign, technician self-claim and confirm/decline.

Both assign paths end in a single conditional UPDATE on the ticket row
(status + assignee_count guard). Whoever commits that write first owns the
ticket; a loser sees ``rowcount == 0`` and gets a domain error.
"""
from __future__ import annotations

import logging
from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import (
    AlreadyAssigned,
    Forbidden,
    NotFound,
    NotOpen,
    StateConflict,
    ValidationError,
)
from ..models import Assignment, Technician, Ticket, User
from ..security import (
    get_technician_for_user,
    is_staff,
    require_active_technician,
    require_permission,
    staff_recipients,
)
from ..services import messages
from ..services.ticket_rules import (
    ACTION_ACCEPT,
    ACTION_DECLINE,
    APPROVAL_APPROVED,
    CATEGORY_INSTALL,
    ROLE_PRIMARY,
    SELF_ASSIGN_STATUSES,
    STATUS_ASSIGNED,
    STATUS_OPEN,
    now_utc,
)
from .envelopes import DeliveryHooks, enqueue_envelope
from .ticket_lifecycle import (
    customer_status_envelope,
    ensure_approved,
    get_ticket_for_update,
    log_activity,
    ticket_event_payload,
)

logger = logging.getLogger(__name__)

_NO_HOOKS = DeliveryHooks()


def _single_technician_id(technician_ids: Iterable[UUID]) -> UUID:
    unique_ids = list(dict.fromkeys(technician_ids or []))
    if len(unique_ids) != 1:
        raise ValidationError(
            "Exactly one technician must be assigned",
            code="TECHNICIAN_COUNT_INVALID",
            details={"received": len(unique_ids)},
        )
    return unique_ids[0]


def admin_assign_use_case(
    *,
    db: Session,
    ticket_id: UUID,
    technician_ids: list[UUID],
    current_user: User,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> Ticket:
    """Replace the ticket's assignments with one PRIMARY technician."""
    require_permission(current_user, "canAssignTickets")
    technician_id = _single_technician_id(technician_ids)
    technician = db.query(Technician).filter(Technician.id == technician_id).first()
    if not technician:
        raise NotFound("Technician not found", code="TECHNICIAN_NOT_FOUND")
    if not technician.is_active:
        raise ValidationError("Technician is inactive", code="TECHNICIAN_INACTIVE")

    ticket = get_ticket_for_update(db, ticket_id)
    ensure_approved(ticket)
    if ticket.status != STATUS_OPEN:
        raise NotOpen()

    now = now_utc()
    claimed = (
        db.query(Ticket)
        .filter(
            Ticket.id == ticket.id,
            Ticket.status == STATUS_OPEN,
            Ticket.approval == APPROVAL_APPROVED,
        )
        .update(
            {Ticket.status: STATUS_ASSIGNED, Ticket.assignee_count: 1, Ticket.updated_at: now},
            synchronize_session=False,
        )
    )
    if claimed == 0:
        db.rollback()
        raise NotOpen()

    db.query(Assignment).filter(Assignment.ticket_id == ticket.id).delete(synchronize_session=False)
    db.add(
        Assignment(
            ticket_id=ticket.id,
            technician_id=technician.id,
            role=ROLE_PRIMARY,
            assigned_at=now,
        )
    )

    envelopes = [
        enqueue_envelope(
            db,
            kind="ticket_assigned",
            recipient_address=technician.phone,
            body=messages.assignment_detail(ticket, ticket.customer, technician.name),
            ticket_id=ticket.id,
        ),
        customer_status_envelope(
            db,
            ticket=ticket,
            old_status=STATUS_OPEN,
            new_status=STATUS_ASSIGNED,
            names=[technician.name],
        ),
    ]
    log_activity(
        db,
        ticket=ticket,
        action="ticket_assigned",
        actor=current_user,
        details={"technicianId": str(technician.id)},
    )
    db.commit()
    db.refresh(ticket)
    logger.info("Ticket %s assigned to technician %s by %s", ticket.ticket_number, technician.id, current_user.id)

    hooks.after_commit(
        db,
        envelopes=envelopes,
        event="ticket.assigned",
        payload={**ticket_event_payload(ticket), "technicianId": str(technician.id)},
    )
    return ticket


def self_assign_use_case(
    *,
    db: Session,
    ticket_id: UUID,
    current_user: User,
    self_assign_enabled: bool | None = None,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> Ticket:
    """Technician claims an INSTALL ticket. First committer wins."""
    enabled = settings.SELF_ASSIGN_ENABLED if self_assign_enabled is None else self_assign_enabled
    if not enabled:
        raise Forbidden("Self-assignment is disabled", code="SELF_ASSIGN_DISABLED")

    technician = require_active_technician(db, current_user)

    ticket = db.query(Ticket).filter(Ticket.id == ticket_id).first()
    if not ticket:
        raise NotFound("Ticket not found", code="TICKET_NOT_FOUND")
    ensure_approved(ticket)
    if ticket.category != CATEGORY_INSTALL:
        raise Forbidden("Only installation tickets can be self-assigned", code="SELF_ASSIGN_INSTALL_ONLY")
    if ticket.status not in SELF_ASSIGN_STATUSES:
        raise NotOpen()
    if ticket.assignee_count:
        raise AlreadyAssigned()

    old_status = ticket.status
    now = now_utc()
    # The guard is re-evaluated by the database at write time; the checks
    # above only produce friendlier errors for the common case.
    claimed = (
        db.query(Ticket)
        .filter(
            Ticket.id == ticket.id,
            Ticket.status.in_(sorted(SELF_ASSIGN_STATUSES)),
            Ticket.approval == APPROVAL_APPROVED,
            Ticket.category == CATEGORY_INSTALL,
            Ticket.assignee_count == 0,
        )
        .update(
            {Ticket.status: STATUS_ASSIGNED, Ticket.assignee_count: 1, Ticket.updated_at: now},
            synchronize_session=False,
        )
    )
    if claimed == 0:
        db.rollback()
        logger.info("Self-assign on %s lost the race (technician %s)", ticket_id, technician.id)
        raise AlreadyAssigned()

    db.add(
        Assignment(
            ticket_id=ticket.id,
            technician_id=technician.id,
            role=ROLE_PRIMARY,
            assigned_at=now,
            accepted_at=now,
        )
    )
    envelope = customer_status_envelope(
        db,
        ticket=ticket,
        old_status=old_status,
        new_status=STATUS_ASSIGNED,
        names=[technician.name],
    )
    log_activity(
        db,
        ticket=ticket,
        action="ticket_self_assigned",
        actor=current_user,
        details={"technicianId": str(technician.id)},
    )
    db.commit()
    db.refresh(ticket)
    logger.info("Ticket %s self-assigned by technician %s", ticket.ticket_number, technician.id)

    hooks.after_commit(
        db,
        envelopes=[envelope] if envelope else [],
        event="ticket.self_assigned",
        payload={**ticket_event_payload(ticket), "technicianId": str(technician.id)},
    )
    return ticket


def _promote_next_primary(db: Session, ticket: Ticket) -> None:
    has_primary = db.query(Assignment).filter(
        Assignment.ticket_id == ticket.id,
        Assignment.role == ROLE_PRIMARY,
    ).first()
    if has_primary:
        return
    successor = (
        db.query(Assignment)
        .filter(Assignment.ticket_id == ticket.id)
        .order_by(Assignment.assigned_at)
        .first()
    )
    if successor:
        successor.role = ROLE_PRIMARY


def confirm_assignment_use_case(
    *,
    db: Session,
    ticket_id: UUID,
    technician_id: UUID,
    action: str,
    current_user: User,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> Ticket:
    """ACCEPT stamps the assignment; DECLINE removes it and may reopen the ticket."""
    normalized_action = (action or "").strip().upper()
    if normalized_action not in (ACTION_ACCEPT, ACTION_DECLINE):
        raise ValidationError(f"Unknown confirmation action: {action}", code="CONFIRM_ACTION_INVALID")

    ticket = get_ticket_for_update(db, ticket_id)
    ensure_approved(ticket)
    if ticket.status != STATUS_ASSIGNED:
        raise StateConflict(
            "Ticket is not awaiting confirmation",
            code="TICKET_NOT_AWAITING_CONFIRMATION",
            details={"status": ticket.status},
        )

    if not is_staff(current_user):
        caller = get_technician_for_user(db, current_user)
        if caller is None or caller.id != technician_id:
            raise Forbidden("Cannot confirm another technician's assignment", code="CONFIRM_FORBIDDEN")

    assignment = db.query(Assignment).filter(
        Assignment.ticket_id == ticket.id,
        Assignment.technician_id == technician_id,
    ).first()
    if not assignment:
        raise NotFound("Assignment not found", code="ASSIGNMENT_NOT_FOUND")

    technician = db.query(Technician).filter(Technician.id == technician_id).first()
    technician_name = technician.name if technician else str(technician_id)

    if normalized_action == ACTION_ACCEPT:
        assignment.accepted_at = now_utc()
        log_activity(
            db,
            ticket=ticket,
            action="assignment_accepted",
            actor=current_user,
            details={"technicianId": str(technician_id)},
        )
        db.commit()
        db.refresh(ticket)
        hooks.after_commit(
            db,
            event="ticket.confirmed",
            payload={**ticket_event_payload(ticket), "technicianId": str(technician_id)},
        )
        return ticket

    db.delete(assignment)
    db.flush()
    remaining = db.query(Assignment).filter(Assignment.ticket_id == ticket.id).count()
    ticket.assignee_count = remaining
    if remaining == 0:
        ticket.status = STATUS_OPEN
    else:
        _promote_next_primary(db, ticket)

    envelopes = []
    body = messages.decline_notice_for_staff(ticket, technician_name=technician_name, remaining=remaining)
    for staff in staff_recipients(db):
        envelopes.append(
            enqueue_envelope(
                db,
                kind="assignment_declined",
                recipient_address=staff.phone,
                body=body,
                ticket_id=ticket.id,
            )
        )
    log_activity(
        db,
        ticket=ticket,
        action="assignment_declined",
        actor=current_user,
        details={"technicianId": str(technician_id), "remaining": remaining},
    )
    db.commit()
    db.refresh(ticket)
    logger.info("Technician %s declined ticket %s (%s left)", technician_id, ticket.ticket_number, remaining)

    hooks.after_commit(
        db,
        envelopes=envelopes,
        event="ticket.declined",
        payload={**ticket_event_payload(ticket), "technicianId": str(technician_id), "remaining": remaining},
    )
    return ticket
