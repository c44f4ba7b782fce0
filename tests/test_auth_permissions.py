from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from jose import jwt

from fielddesk.auth import (
    PERMISSION_KEYS,
    ROLE_PERMISSIONS,
    PermissionChecker,
    create_access_token,
    decode_token,
    get_role_permissions,
    validate_new_password,
)
from fielddesk.config import settings
from fielddesk.domain_errors import DomainError
from fielddesk.security import is_staff, require_permission

STAFF = {
    "canCreateTickets": True,
    "canViewAllTickets": True,
    "canApproveTickets": True,
    "canAssignTickets": True,
    "canManageTickets": True,
    "canDeleteTickets": True,
    "canSelfAssign": False,
    "canManageTechnicians": True,
    "canManageEnvelopes": True,
}
CREATE_AND_VIEW = {key: key in ("canCreateTickets", "canViewAllTickets") for key in PERMISSION_KEYS}


@pytest.mark.parametrize(
    ("role", "expected"),
    [
        ("superadmin", STAFF),
        ("admin", STAFF),
        ("user", CREATE_AND_VIEW),
        ("system", CREATE_AND_VIEW),
        ("technician", {key: key == "canSelfAssign" for key in PERMISSION_KEYS}),
    ],
)
def test_role_permissions_matrix_is_stable(role: str, expected: dict[str, bool]) -> None:
    assert get_role_permissions(role) == expected


def test_role_permissions_has_exact_keyset_for_each_role() -> None:
    for role in ROLE_PERMISSIONS:
        assert set(ROLE_PERMISSIONS[role].keys()) == set(PERMISSION_KEYS)


def test_unknown_role_denies_all_permissions() -> None:
    permissions = get_role_permissions("unknown-role")
    assert set(permissions.keys()) == set(PERMISSION_KEYS)
    assert all(value is False for value in permissions.values())


def test_permission_checker_and_use_case_guard() -> None:
    technician = SimpleNamespace(role="technician")
    admin = SimpleNamespace(role="admin")

    assert PermissionChecker("canSelfAssign")(current_user=technician) is technician
    with pytest.raises(HTTPException) as exc_info:
        PermissionChecker("canApproveTickets")(current_user=technician)
    assert exc_info.value.status_code == 403

    require_permission(admin, "canDeleteTickets")
    with pytest.raises(DomainError) as domain_exc:
        require_permission(technician, "canDeleteTickets")
    assert domain_exc.value.code == "PERMISSION_DENIED"

    assert is_staff(admin)
    assert not is_staff(technician)


def test_access_token_round_trip() -> None:
    token = create_access_token({"sub": "6b0d7c4e-7a51-4a8b-9d0e-2f1c3b4a5d6e", "ver": 0})

    payload = decode_token(token)
    assert payload["sub"] == "6b0d7c4e-7a51-4a8b-9d0e-2f1c3b4a5d6e"
    assert payload["type"] == "access"


def test_expired_token_is_rejected_after_leeway() -> None:
    token = create_access_token({"sub": "x"}, expires_delta=timedelta(seconds=-(settings.JWT_LEEWAY_SECONDS + 5)))

    with pytest.raises(HTTPException) as exc_info:
        decode_token(token)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Token expired"


def test_token_within_leeway_is_accepted() -> None:
    token = create_access_token({"sub": "x"}, expires_delta=timedelta(seconds=-1))
    assert decode_token(token)["sub"] == "x"


def test_token_signed_with_other_key_is_rejected() -> None:
    token = jwt.encode({"sub": "x", "exp": 9999999999}, "not-the-key", algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(HTTPException) as exc_info:
        decode_token(token)
    assert exc_info.value.status_code == 401


@pytest.mark.parametrize(
    ("password", "code"),
    [
        (None, "PASSWORD_REQUIRED"),
        ("short", "PASSWORD_TOO_SHORT"),
        ("x" * (settings.PASSWORD_MAX_LENGTH + 1), "PASSWORD_TOO_LONG"),
        ("Operator01", "PASSWORD_MATCHES_USERNAME"),
    ],
)
def test_password_policy(password, code) -> None:
    with pytest.raises(DomainError) as exc_info:
        validate_new_password(new_password=password, username="operator01")
    assert exc_info.value.code == code


def test_password_policy_accepts_reasonable_password() -> None:
    validate_new_password(new_password="correct-horse-battery", username="operator01")
