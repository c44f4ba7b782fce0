"""Security helpers (role checks and caller-to-technician resolution)."""

from __future__ import annotations

from sqlalchemy.orm import Session

from .auth import check_permission
from .config import settings
from .domain_errors import Forbidden
from .models import Technician, User


def require_permission(user: User, permission: str) -> None:
    """Enforce a role permission inside a use-case."""
    if not check_permission(user, permission):
        raise Forbidden(f"Permission denied: {permission} required", code="PERMISSION_DENIED")


def is_staff(user: User) -> bool:
    return check_permission(user, "canManageTickets")


def get_technician_for_user(db: Session, user: User) -> Technician | None:
    """Technician record linked to the caller, if any."""
    return db.query(Technician).filter(Technician.user_id == user.id).first()


def require_active_technician(db: Session, user: User) -> Technician:
    technician = get_technician_for_user(db, user)
    if technician is None:
        raise Forbidden("Caller is not a registered technician", code="NOT_A_TECHNICIAN")
    if not technician.is_active:
        raise Forbidden("Technician is inactive", code="TECHNICIAN_INACTIVE")
    return technician


def staff_recipients(db: Session) -> list[User]:
    """Active staff users with a phone, in the roles configured for notices."""
    roles = settings.staff_notify_roles
    if not roles:
        return []
    return (
        db.query(User)
        .filter(
            User.role.in_(roles),
            User.is_active == True,  # noqa: E712
            User.phone.isnot(None),
        )
        .order_by(User.created_at, User.id)
        .all()
    )
