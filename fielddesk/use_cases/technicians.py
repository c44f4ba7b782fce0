"""Technician roster management (staff only)."""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from ..domain_errors import NotFound, StateConflict, ValidationError
from ..models import Technician, User
from ..services.phone import normalize_phone

logger = logging.getLogger(__name__)


def _require_phone(phone: str | None) -> str:
    normalized = normalize_phone(phone)
    if not normalized:
        raise ValidationError("Technician phone number is invalid", code="TECHNICIAN_PHONE_INVALID")
    return normalized


def _ensure_phone_free(db: Session, phone: str, *, exclude_id: UUID | None = None) -> None:
    query = db.query(Technician).filter(Technician.phone == phone)
    if exclude_id is not None:
        query = query.filter(Technician.id != exclude_id)
    if query.first():
        raise StateConflict("Phone number already belongs to a technician", code="TECHNICIAN_PHONE_TAKEN")


def create_technician_use_case(
    *,
    db: Session,
    name: str,
    phone: str,
    user_id: UUID | None = None,
    is_available: bool = True,
) -> Technician:
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValidationError("Technician name is required", code="TECHNICIAN_NAME_REQUIRED")
    normalized_phone = _require_phone(phone)
    _ensure_phone_free(db, normalized_phone)

    if user_id is not None:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFound("User not found", code="USER_NOT_FOUND")
        if user.role != "technician":
            raise ValidationError("Linked user must have the technician role", code="TECHNICIAN_USER_ROLE")
        if db.query(Technician).filter(Technician.user_id == user_id).first():
            raise StateConflict("User is already linked to a technician", code="TECHNICIAN_USER_TAKEN")

    technician = Technician(
        name=clean_name,
        phone=normalized_phone,
        user_id=user_id,
        is_active=True,
        is_available=is_available,
    )
    db.add(technician)
    db.commit()
    db.refresh(technician)
    logger.info("Technician %s created", technician.id)
    return technician


def update_technician_use_case(
    *,
    db: Session,
    technician_id: UUID,
    name: str | None = None,
    phone: str | None = None,
    is_active: bool | None = None,
    is_available: bool | None = None,
) -> Technician:
    """Partial update. Deactivation keeps every historical assignment."""
    technician = db.query(Technician).filter(Technician.id == technician_id).first()
    if not technician:
        raise NotFound("Technician not found", code="TECHNICIAN_NOT_FOUND")

    if name is not None:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Technician name is required", code="TECHNICIAN_NAME_REQUIRED")
        technician.name = clean_name
    if phone is not None:
        normalized_phone = _require_phone(phone)
        _ensure_phone_free(db, normalized_phone, exclude_id=technician.id)
        technician.phone = normalized_phone
    if is_active is not None:
        technician.is_active = is_active
    if is_available is not None:
        technician.is_available = is_available

    db.commit()
    db.refresh(technician)
    return technician


def list_technicians(db: Session, *, active: bool | None = None) -> list[Technician]:
    query = db.query(Technician)
    if active is not None:
        query = query.filter(Technician.is_active == active)
    return query.order_by(Technician.name, Technician.id).all()
