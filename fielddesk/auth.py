"""Authentication and authorization.

Tokens are issued elsewhere; this module only turns a bearer token into a
``User`` (identity + role) and gates routes by role permissions.
"""
from datetime import timedelta
from typing import Optional
import time
from uuid import UUID
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from .config import settings
from .database import get_db
from .domain_errors import ValidationError
from .models import User

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Bearer token scheme
security = HTTPBearer()


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def validate_new_password(*, new_password: str, username: str | None = None) -> None:
    """Server-side password policy validation."""
    if new_password is None:
        raise ValidationError("New password is required", code="PASSWORD_REQUIRED")

    pwd = new_password.strip("\n")
    if len(pwd) < settings.PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters",
            code="PASSWORD_TOO_SHORT",
        )
    if len(pwd) > settings.PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"Password must be at most {settings.PASSWORD_MAX_LENGTH} characters",
            code="PASSWORD_TOO_LONG",
        )
    if username and pwd.lower() == username.lower():
        raise ValidationError("Password must not match username", code="PASSWORD_MATCHES_USERNAME")


def get_password_hash(password: str) -> str:
    """Hash password."""
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token (integrations and tests; login lives elsewhere)."""
    to_encode = data.copy()
    now = int(time.time())
    if expires_delta:
        exp = now + int(expires_delta.total_seconds())
    else:
        exp = now + int(settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES) * 60
    to_encode.update({"exp": exp, "iat": now, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode JWT token with a small clock-skew leeway on ``exp``."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise _credentials_error()

    now = int(time.time())
    try:
        exp_int = int(payload["exp"])
    except (KeyError, TypeError, ValueError):
        raise _credentials_error()
    if now > exp_int + int(settings.JWT_LEEWAY_SECONDS):
        raise _credentials_error("Token expired")

    iat = payload.get("iat")
    if iat is not None:
        try:
            iat_int = int(iat)
        except (TypeError, ValueError):
            raise _credentials_error()
        # Reject tokens issued in the future.
        if iat_int > now + int(settings.JWT_LEEWAY_SECONDS):
            raise _credentials_error()
    return payload


def _parse_token_subject(payload: dict) -> UUID:
    sub = payload.get("sub")
    if not sub:
        raise _credentials_error()
    try:
        return UUID(str(sub))
    except ValueError:
        raise _credentials_error()


def _assert_token_not_revoked(user: User, payload: dict) -> None:
    try:
        token_ver = int(payload.get("ver", 0))
    except (TypeError, ValueError):
        raise _credentials_error()
    if user.token_version != token_ver:
        raise _credentials_error("Token has been revoked")


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user."""
    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    user_id = _parse_token_subject(payload)
    user = db.query(User).filter(User.id == user_id, User.is_active == True).first()  # noqa: E712
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    _assert_token_not_revoked(user, payload)
    return user


# Permission checks
class PermissionChecker:
    """Check user permissions based on role."""

    def __init__(self, required_permission: str):
        self.required_permission = required_permission

    def __call__(self, current_user: User = Depends(get_current_user)):
        if not check_permission(current_user, self.required_permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {self.required_permission} required"
            )
        return current_user


# Role permissions matrix
ROLE_PERMISSIONS = {
    "superadmin": {
        "canCreateTickets": True,
        "canViewAllTickets": True,
        "canApproveTickets": True,
        "canAssignTickets": True,
        "canManageTickets": True,
        "canDeleteTickets": True,
        "canSelfAssign": False,
        "canManageTechnicians": True,
        "canManageEnvelopes": True,
    },
    "admin": {
        "canCreateTickets": True,
        "canViewAllTickets": True,
        "canApproveTickets": True,
        "canAssignTickets": True,
        "canManageTickets": True,
        "canDeleteTickets": True,
        "canSelfAssign": False,
        "canManageTechnicians": True,
        "canManageEnvelopes": True,
    },
    "user": {
        "canCreateTickets": True,
        "canViewAllTickets": True,
        "canApproveTickets": False,
        "canAssignTickets": False,
        "canManageTickets": False,
        "canDeleteTickets": False,
        "canSelfAssign": False,
        "canManageTechnicians": False,
        "canManageEnvelopes": False,
    },
    "technician": {
        "canCreateTickets": False,
        "canViewAllTickets": False,
        "canApproveTickets": False,
        "canAssignTickets": False,
        "canManageTickets": False,
        "canDeleteTickets": False,
        "canSelfAssign": True,
        "canManageTechnicians": False,
        "canManageEnvelopes": False,
    },
    "system": {
        "canCreateTickets": True,
        "canViewAllTickets": True,
        "canApproveTickets": False,
        "canAssignTickets": False,
        "canManageTickets": False,
        "canDeleteTickets": False,
        "canSelfAssign": False,
        "canManageTechnicians": False,
        "canManageEnvelopes": False,
    },
}


PERMISSION_KEYS = (
    "canCreateTickets",
    "canViewAllTickets",
    "canApproveTickets",
    "canAssignTickets",
    "canManageTickets",
    "canDeleteTickets",
    "canSelfAssign",
    "canManageTechnicians",
    "canManageEnvelopes",
)


def get_role_permissions(role: str) -> dict[str, bool]:
    """Full permission map for a role; unknown roles get everything False."""
    permissions = ROLE_PERMISSIONS.get(role, {})
    return {key: bool(permissions.get(key, False)) for key in PERMISSION_KEYS}


def check_permission(user: User, permission: str) -> bool:
    """Check if user has specific permission."""
    permissions = ROLE_PERMISSIONS.get(user.role, {})
    return permissions.get(permission, False)
