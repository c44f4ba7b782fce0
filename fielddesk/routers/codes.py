"""One-time code endpoints (unauthenticated, rate limited per address)."""
from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_delivery_hooks
from ..domain_errors import ValidationError
from ..rate_limit import IssueRateLimiter, get_issue_rate_limiter
from ..schemas import CodeIssueRequest, CodeIssueResponse, CodeVerifyRequest, CodeVerifyResponse
from ..services.phone import normalize_phone
from ..use_cases.envelopes import DeliveryHooks
from ..use_cases.one_time_codes import (
    issue_code_use_case,
    resend_code_use_case,
    verify_code_use_case,
)

router = APIRouter(prefix="/codes", tags=["codes"])


def _set_no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"


def _enforce_issue_limit(limiter: IssueRateLimiter, data: CodeIssueRequest) -> None:
    address = normalize_phone(data.address)
    if not address:
        raise ValidationError("Address is invalid", code="ADDRESS_INVALID")
    limiter.check(address=address, purpose=data.purpose.strip().upper())


@router.post("/issue", response_model=CodeIssueResponse)
def issue_code(
    data: CodeIssueRequest,
    response: Response,
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
    limiter: IssueRateLimiter = Depends(get_issue_rate_limiter),
):
    """Send a fresh code to the address. The code itself is never returned."""
    _set_no_store(response)
    _enforce_issue_limit(limiter, data)
    issued = issue_code_use_case(db=db, subject_address=data.address, purpose=data.purpose, hooks=hooks)
    return CodeIssueResponse(expires_at=issued.expires_at, queued=issued.envelope is not None)


@router.post("/resend", response_model=CodeIssueResponse)
def resend_code(
    data: CodeIssueRequest,
    response: Response,
    db: Session = Depends(get_db),
    hooks: DeliveryHooks = Depends(get_delivery_hooks),
    limiter: IssueRateLimiter = Depends(get_issue_rate_limiter),
):
    _set_no_store(response)
    _enforce_issue_limit(limiter, data)
    issued = resend_code_use_case(db=db, subject_address=data.address, purpose=data.purpose, hooks=hooks)
    return CodeIssueResponse(expires_at=issued.expires_at, queued=issued.envelope is not None)


@router.post("/verify", response_model=CodeVerifyResponse)
def verify_code(data: CodeVerifyRequest, response: Response, db: Session = Depends(get_db)):
    """Check a code. Rejections are returned as problem+json with the reason as ``code``."""
    _set_no_store(response)
    result = verify_code_use_case(
        db=db,
        subject_address=data.address,
        purpose=data.purpose,
        candidate_code=data.code,
    )
    result.raise_if_rejected()
    return CodeVerifyResponse(accepted=True, attempts=result.attempts)
