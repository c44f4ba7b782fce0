"""Auth endpoints: caller profile and password reset by one-time code."""
from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_role_permissions
from ..database import get_db
from ..models import User
from ..schemas import AuthUserResponse, PasswordResetRequest
from ..security import get_technician_for_user
from ..use_cases.one_time_codes import reset_password_use_case

router = APIRouter(prefix="/auth", tags=["auth"])


def _set_no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


@router.get("/me", response_model=AuthUserResponse)
def get_me(
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get current user info with the role's permission map."""
    _set_no_store(response)
    technician = get_technician_for_user(db, current_user)
    return AuthUserResponse(
        id=current_user.id,
        username=current_user.username,
        name=current_user.name,
        role=current_user.role,
        technician_id=technician.id if technician else None,
        permissions=get_role_permissions(current_user.role),
    )


@router.post("/password-reset")
def password_reset(payload: PasswordResetRequest, response: Response, db: Session = Depends(get_db)):
    """Set a new password using a RESET_PASSWORD code sent to the user's phone.

    Existing tokens are revoked (token version bump).
    """
    _set_no_store(response)
    reset_password_use_case(
        db=db,
        subject_address=payload.address,
        code=payload.code,
        new_password=payload.new_password,
    )
    return {"status": "ok"}
