"""One-time code issue/verify use-cases.

Only an HMAC of the code is stored. Issuing a code supersedes every earlier
code for the same (address, purpose), so the latest issue is the only one that
can ever be accepted.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth import get_password_hash, validate_new_password
from ..config import settings
from ..domain_errors import CodeRejected, NotFound, ValidationError
from ..models import CODE_PURPOSES, Envelope, OneTimeCode, User
from ..services import messages
from ..services.phone import mask_address, normalize_phone
from ..services.ticket_rules import as_utc, now_utc
from .envelopes import DeliveryHooks, enqueue_envelope

logger = logging.getLogger(__name__)

PURPOSE_REGISTER = "REGISTER"
PURPOSE_RESET_PASSWORD = "RESET_PASSWORD"

REASON_NO_ACTIVE_CODE = "NO_ACTIVE_CODE"
REASON_ALREADY_CONSUMED = "ALREADY_CONSUMED"
REASON_EXPIRED = "EXPIRED"
REASON_TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
REASON_MISMATCH = "MISMATCH"

_REASON_MESSAGES = {
    REASON_NO_ACTIVE_CODE: "No active code for this address",
    REASON_ALREADY_CONSUMED: "Code has already been used",
    REASON_EXPIRED: "Code has expired",
    REASON_TOO_MANY_ATTEMPTS: "Too many attempts",
    REASON_MISMATCH: "Code does not match",
}

_NO_HOOKS = DeliveryHooks()


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: datetime
    envelope: Envelope | None


@dataclass(frozen=True)
class VerificationResult:
    accepted: bool
    reason: str | None = None
    attempts: int = 0

    def raise_if_rejected(self) -> None:
        if not self.accepted:
            raise CodeRejected(self.reason, _REASON_MESSAGES.get(self.reason, self.reason), attempts=self.attempts)


def generate_numeric_code(length: int | None = None) -> str:
    size = length or settings.OTP_LENGTH
    return "".join(secrets.choice(string.digits) for _ in range(size))


def hash_code(subject_address: str, purpose: str, code: str) -> str:
    message = f"{subject_address}:{purpose}:{code}".encode("utf-8")
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _normalize_request(subject_address: str | None, purpose: str | None) -> tuple[str, str]:
    address = normalize_phone(subject_address)
    if not address:
        raise ValidationError("Address is invalid", code="ADDRESS_INVALID")
    normalized_purpose = (purpose or "").strip().upper()
    if normalized_purpose not in CODE_PURPOSES:
        raise ValidationError(f"Unknown code purpose: {purpose}", code="CODE_PURPOSE_INVALID")
    return address, normalized_purpose


def issue_code_use_case(
    *,
    db: Session,
    subject_address: str,
    purpose: str,
    generate_code: Callable[[], str] = generate_numeric_code,
    now: datetime | None = None,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> IssuedCode:
    """Issue a fresh code and queue it for delivery. Returns the plaintext once."""
    address, normalized_purpose = _normalize_request(subject_address, purpose)
    at = now or now_utc()

    superseded = (
        db.query(OneTimeCode)
        .filter(
            OneTimeCode.subject_address == address,
            OneTimeCode.purpose == normalized_purpose,
            OneTimeCode.superseded_at.is_(None),
        )
        .update({OneTimeCode.superseded_at: at}, synchronize_session=False)
    )

    code = generate_code()
    expires_at = at + timedelta(minutes=settings.OTP_TTL_MINUTES)
    db.add(
        OneTimeCode(
            subject_address=address,
            purpose=normalized_purpose,
            code_hash=hash_code(address, normalized_purpose, code),
            expires_at=expires_at,
            attempts=0,
            created_at=at,
        )
    )
    envelope = enqueue_envelope(
        db,
        kind="one_time_code",
        recipient_address=address,
        body=messages.one_time_code_message(
            code,
            purpose=normalized_purpose,
            ttl_minutes=settings.OTP_TTL_MINUTES,
        ),
    )
    db.commit()
    logger.info(
        "Issued %s code for %s (superseded %s)",
        normalized_purpose,
        mask_address(address),
        superseded,
    )

    hooks.after_commit(db, envelopes=[envelope] if envelope else [])
    return IssuedCode(code=code, expires_at=expires_at, envelope=envelope)


def resend_code_use_case(
    *,
    db: Session,
    subject_address: str,
    purpose: str,
    generate_code: Callable[[], str] = generate_numeric_code,
    now: datetime | None = None,
    hooks: DeliveryHooks = _NO_HOOKS,
) -> IssuedCode:
    """Same as issue: the previous code stops being valid."""
    return issue_code_use_case(
        db=db,
        subject_address=subject_address,
        purpose=purpose,
        generate_code=generate_code,
        now=now,
        hooks=hooks,
    )


def verify_code_use_case(
    *,
    db: Session,
    subject_address: str,
    purpose: str,
    candidate_code: str,
    now: datetime | None = None,
    max_attempts: int | None = None,
) -> VerificationResult:
    """Check a candidate against the active code.

    Every call against an existing code counts as an attempt and is committed,
    including rejected ones.
    """
    address, normalized_purpose = _normalize_request(subject_address, purpose)
    at = now or now_utc()
    ceiling = max_attempts if max_attempts is not None else settings.OTP_MAX_ATTEMPTS

    record = (
        db.query(OneTimeCode)
        .filter(
            OneTimeCode.subject_address == address,
            OneTimeCode.purpose == normalized_purpose,
            OneTimeCode.superseded_at.is_(None),
        )
        .order_by(OneTimeCode.created_at.desc())
        .populate_existing()
        .with_for_update()
        .first()
    )
    if record is None:
        db.rollback()
        return VerificationResult(accepted=False, reason=REASON_NO_ACTIVE_CODE, attempts=0)

    record.attempts = (record.attempts or 0) + 1
    attempts = record.attempts

    if record.consumed_at is not None:
        reason = REASON_ALREADY_CONSUMED
    elif as_utc(record.expires_at) <= at:
        reason = REASON_EXPIRED
    elif attempts > ceiling:
        reason = REASON_TOO_MANY_ATTEMPTS
    elif not hmac.compare_digest(record.code_hash, hash_code(address, normalized_purpose, (candidate_code or "").strip())):
        reason = REASON_MISMATCH
    else:
        reason = None
        record.consumed_at = at

    db.commit()
    if reason:
        logger.info("Rejected %s code for %s: %s", normalized_purpose, mask_address(address), reason)
        return VerificationResult(accepted=False, reason=reason, attempts=attempts)
    logger.info("Accepted %s code for %s", normalized_purpose, mask_address(address))
    return VerificationResult(accepted=True, attempts=attempts)


def reset_password_use_case(
    *,
    db: Session,
    subject_address: str,
    code: str,
    new_password: str,
    now: datetime | None = None,
) -> User:
    """Consume a RESET_PASSWORD code and set a new password for its owner."""
    address = normalize_phone(subject_address)
    if not address:
        raise ValidationError("Address is invalid", code="ADDRESS_INVALID")
    user = db.query(User).filter(User.phone == address, User.is_active == True).first()  # noqa: E712
    validate_new_password(new_password=new_password, username=user.username if user else None)

    verify_code_use_case(
        db=db,
        subject_address=address,
        purpose=PURPOSE_RESET_PASSWORD,
        candidate_code=code,
        now=now,
    ).raise_if_rejected()

    if user is None:
        raise NotFound("No active user for this address", code="USER_NOT_FOUND")
    user = db.query(User).filter(User.id == user.id).populate_existing().with_for_update().one()
    user.password_hash = get_password_hash(new_password)
    user.token_version = (user.token_version or 0) + 1
    db.commit()
    db.refresh(user)
    logger.info("Password reset for user %s", user.id)
    return user


def purge_stale_codes(db: Session, *, now: datetime | None = None, retention_hours: int | None = None) -> int:
    """Delete codes consumed, superseded or expired longer ago than the retention window."""
    at = now or now_utc()
    hours = retention_hours if retention_hours is not None else settings.OTP_RETENTION_HOURS
    cutoff = at - timedelta(hours=hours)
    deleted = (
        db.query(OneTimeCode)
        .filter(
            or_(
                OneTimeCode.consumed_at < cutoff,
                OneTimeCode.superseded_at < cutoff,
                OneTimeCode.expires_at < cutoff,
            )
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted
