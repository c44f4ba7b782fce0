"""Pydantic schemas for API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime
from uuid import UUID


# Customer schemas
class CustomerInline(BaseModel):
    """Customer created together with the ticket."""
    name: str = Field(min_length=1, max_length=255)
    phone: Optional[str] = None


class CustomerBrief(BaseModel):
    id: UUID
    name: str
    phone: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


# Ticket schemas
class TicketCreate(BaseModel):
    category: str
    customer_id: Optional[UUID] = None
    customer: Optional[CustomerInline] = None
    address: str
    details: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class AssignmentResponse(BaseModel):
    technician_id: UUID
    role: str
    assigned_at: datetime
    accepted_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class TicketResponse(BaseModel):
    id: UUID
    ticket_number: str
    category: str
    status: str
    approval: str
    customer: Optional[CustomerBrief] = None
    creator_id: Optional[UUID] = None
    address: str
    details: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    assignee_count: int
    approved_by_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by_technician_id: Optional[UUID] = None
    evidence_ref: Optional[str] = None
    completion_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assignments: list[AssignmentResponse] = []
    model_config = ConfigDict(from_attributes=True)


class TicketRejectRequest(BaseModel):
    reason: str


class TicketStatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = None
    evidence_ref: Optional[str] = None


class TicketAssignRequest(BaseModel):
    technician_ids: list[UUID]


class TicketConfirmRequest(BaseModel):
    action: str
    # Staff confirming on a technician's behalf pass the technician id.
    technician_id: Optional[UUID] = None


# Envelope schemas
class EnvelopeResponse(BaseModel):
    """Delivery record. The body is omitted: it may carry a one-time code."""
    id: UUID
    channel: str
    kind: str
    recipient_address: str
    status: str
    attempts: int
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    ticket_id: Optional[UUID] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class EnvelopeStats(BaseModel):
    pending: int
    sent: int
    failed: int


# One-time code schemas
class CodeIssueRequest(BaseModel):
    address: str
    purpose: str


class CodeIssueResponse(BaseModel):
    expires_at: datetime
    queued: bool


class CodeVerifyRequest(BaseModel):
    address: str
    purpose: str
    code: str = Field(min_length=1, max_length=16)


class CodeVerifyResponse(BaseModel):
    accepted: bool
    attempts: int


class PasswordResetRequest(BaseModel):
    address: str
    code: str = Field(min_length=1, max_length=16)
    new_password: str


# Technician schemas
class TechnicianCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    phone: str
    user_id: Optional[UUID] = None
    is_available: bool = True


class TechnicianUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    phone: Optional[str] = None
    is_active: Optional[bool] = None
    is_available: Optional[bool] = None


class TechnicianResponse(BaseModel):
    id: UUID
    user_id: Optional[UUID] = None
    name: str
    phone: str
    is_active: bool
    is_available: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


# Auth schemas
class AuthUserResponse(BaseModel):
    id: UUID
    username: str
    name: str
    role: str
    technician_id: Optional[UUID] = None
    permissions: dict[str, bool]
