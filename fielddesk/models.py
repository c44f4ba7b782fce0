"""SQLAlchemy models for tickets, assignments, envelopes and one-time codes."""
from sqlalchemy import (
    Boolean, Column, String, Integer, DateTime, Text, JSON, Uuid,
    ForeignKey, CheckConstraint, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from .database import Base
from .services.ticket_rules import (
    APPROVAL_PENDING,
    APPROVAL_STATUSES,
    ROLE_PRIMARY,
    ROLE_SECONDARY,
    STATUS_OPEN,
    TICKET_CATEGORIES,
    TICKET_STATUSES,
    now_utc,
)

USER_ROLES = ("superadmin", "admin", "user", "technician", "system")
ENVELOPE_STATUSES = ("PENDING", "SENT", "FAILED")
CODE_PURPOSES = ("REGISTER", "RESET_PASSWORD")


def _in_list(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


class User(Base):
    """Caller identity. Authentication itself lives outside this service."""
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String(100), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, index=True)
    phone = Column(String(20), nullable=True, index=True)  # normalised, e.g. 628123456789
    is_active = Column(Boolean, default=True, nullable=False)
    # Bumped on password reset to revoke previously issued tokens.
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(f"role IN ({_in_list(USER_ROLES)})", name="chk_user_role"),
    )

    technician = relationship("Technician", back_populates="user", uselist=False)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tickets = relationship("Ticket", back_populates="customer")


class Technician(Base):
    """Field technician. Deactivation keeps historical assignments."""
    __tablename__ = "technicians"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, unique=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False, unique=True)  # contact address
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="technician")
    assignments = relationship("Assignment", back_populates="technician")


class Ticket(Base):
    """Field work order gated by approval, then driven by the status machine."""
    __tablename__ = "tickets"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ticket_number = Column(String(40), unique=True, nullable=False, index=True)
    category = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=STATUS_OPEN, index=True)
    approval = Column(String(20), nullable=False, default=APPROVAL_PENDING, index=True)

    customer_id = Column(Uuid(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    creator_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    address = Column(Text, nullable=False)
    details = Column(Text, nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)

    # Kept in step with the assignments table; the conditional writes in the
    # assignment use-cases compare against it.
    assignee_count = Column(Integer, nullable=False, default=0)

    approved_by_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_by_technician_id = Column(Uuid(as_uuid=True), ForeignKey("technicians.id"), nullable=True)
    evidence_ref = Column(String(500), nullable=True)
    completion_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(f"category IN ({_in_list(TICKET_CATEGORIES)})", name="chk_ticket_category"),
        CheckConstraint(f"status IN ({_in_list(TICKET_STATUSES)})", name="chk_ticket_status"),
        CheckConstraint(f"approval IN ({_in_list(APPROVAL_STATUSES)})", name="chk_ticket_approval"),
        CheckConstraint("assignee_count >= 0", name="chk_ticket_assignee_count"),
    )

    customer = relationship("Customer", back_populates="tickets")
    creator = relationship("User", foreign_keys=[creator_id])
    assignments = relationship(
        "Assignment",
        back_populates="ticket",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Assignment(Base):
    """Binding of one technician to one ticket."""
    __tablename__ = "assignments"

    ticket_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        primary_key=True,
    )
    technician_id = Column(Uuid(as_uuid=True), ForeignKey("technicians.id"), primary_key=True)
    role = Column(String(20), nullable=False, default=ROLE_PRIMARY)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    accepted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(f"role IN ({_in_list((ROLE_PRIMARY, ROLE_SECONDARY))})", name="chk_assignment_role"),
    )

    ticket = relationship("Ticket", back_populates="assignments")
    technician = relationship("Technician", back_populates="assignments")


class Envelope(Base):
    """
    Durable outbound message - ONE ROW PER RECIPIENT.
    Drained by the dispatch loop with SELECT FOR UPDATE SKIP LOCKED.
    """
    __tablename__ = "envelopes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel = Column(String(20), nullable=False, default="whatsapp")
    kind = Column(String(50), nullable=False)
    recipient_address = Column(String(100), nullable=False)
    body = Column(Text, nullable=False)

    status = Column(String(20), nullable=False, default="PENDING")
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    # Lookup only: tickets may be deleted while their envelopes remain.
    ticket_id = Column(Uuid(as_uuid=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(f"status IN ({_in_list(ENVELOPE_STATUSES)})", name="chk_envelope_status"),
        CheckConstraint("attempts >= 0", name="chk_envelope_attempts"),
        Index("idx_envelopes_status_created", "status", "created_at"),
    )


class OneTimeCode(Base):
    """Short-lived verification code. Only the hash is stored."""
    __tablename__ = "one_time_codes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_address = Column(String(100), nullable=False)
    purpose = Column(String(30), nullable=False)
    code_hash = Column(String(128), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint(f"purpose IN ({_in_list(CODE_PURPOSES)})", name="chk_code_purpose"),
        Index("idx_codes_subject_purpose", "subject_address", "purpose"),
    )


class TicketActivity(Base):
    """Append-only log of committed ticket transitions."""
    __tablename__ = "ticket_activities"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # No FK: the log outlives deleted tickets.
    ticket_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    actor_id = Column(Uuid(as_uuid=True), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
