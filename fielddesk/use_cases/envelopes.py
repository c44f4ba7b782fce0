"""Envelope store and dispatch use-cases.

Producers write an Envelope in the same transaction as the change it announces
and may try one inline delivery after commit. The dispatch loop drains whatever
is still PENDING. Status only moves PENDING -> SENT or PENDING -> FAILED; a staff
retry is the one way back to PENDING.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import NotFound, StateConflict
from ..models import Envelope
from ..services.phone import mask_address, normalize_phone
from ..services.ticket_rules import now_utc
from ..transport import Transport

logger = logging.getLogger(__name__)

ENVELOPE_PENDING = "PENDING"
ENVELOPE_SENT = "SENT"
ENVELOPE_FAILED = "FAILED"

RATE_LIMIT_PREFIX = "RATE_LIMIT:"


@dataclass(frozen=True)
class DispatchPolicy:
    max_attempts: int = 3
    backoff_base_seconds: int = 0
    backoff_max_seconds: int = 300

    @classmethod
    def from_settings(cls) -> "DispatchPolicy":
        return cls(
            max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
            backoff_base_seconds=settings.DISPATCH_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=settings.DISPATCH_BACKOFF_MAX_SECONDS,
        )

    def next_attempt_at(self, *, attempts: int, error: str | None, now: datetime) -> datetime | None:
        if error and error.startswith(RATE_LIMIT_PREFIX):
            try:
                retry_after = int(error[len(RATE_LIMIT_PREFIX):])
            except ValueError:
                retry_after = 60
            return now + timedelta(seconds=retry_after)
        if self.backoff_base_seconds <= 0:
            return None
        delay = min(self.backoff_base_seconds * 2 ** max(attempts - 1, 0), self.backoff_max_seconds)
        return now + timedelta(seconds=delay)


@dataclass
class DispatchReport:
    locked: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"locked": self.locked, "sent": self.sent, "retried": self.retried, "failed": self.failed}


@dataclass(frozen=True)
class DeliveryHooks:
    """Collaborators used after a producer commits."""

    transport: Transport | None = None
    broadcast: Callable[[str, dict[str, Any]], None] | None = None
    policy: DispatchPolicy = field(default_factory=DispatchPolicy.from_settings)

    def after_commit(
        self,
        db: Session,
        *,
        envelopes: Iterable[Envelope] = (),
        event: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        envelopes = [e for e in envelopes if e is not None]
        if envelopes and self.transport is not None:
            deliver_inline(db, envelopes=envelopes, transport=self.transport, policy=self.policy)
        if event and self.broadcast is not None:
            try:
                self.broadcast(event, payload or {})
            except Exception:
                logger.exception("Broadcast sink raised for %s (ignored)", event)


def enqueue_envelope(
    db: Session,
    *,
    kind: str,
    recipient_address: str | None,
    body: str,
    ticket_id: UUID | None = None,
    channel: str | None = None,
) -> Envelope | None:
    """Add a PENDING envelope to the caller's transaction (no commit)."""
    address = normalize_phone(recipient_address)
    if not address:
        logger.warning("Skipping %s envelope: unusable address %s", kind, mask_address(recipient_address))
        return None

    envelope = Envelope(
        channel=channel or settings.TRANSPORT_CHANNEL,
        kind=kind,
        recipient_address=address,
        body=body,
        status=ENVELOPE_PENDING,
        attempts=0,
        ticket_id=ticket_id,
        created_at=now_utc(),
    )
    db.add(envelope)
    return envelope


def _send_safely(transport: Transport, address: str, body: str) -> tuple[bool, str | None]:
    try:
        return transport.send(address, body)
    except Exception as e:
        return False, f"EXCEPTION: {e}"


def _apply_outcome(
    envelope: Envelope,
    *,
    delivered: bool,
    error: str | None,
    now: datetime,
    policy: DispatchPolicy,
) -> str:
    """Record one delivery attempt on a locked PENDING envelope; returns the outcome."""
    envelope.attempts = (envelope.attempts or 0) + 1
    envelope.last_attempt_at = now

    if delivered:
        envelope.status = ENVELOPE_SENT
        envelope.sent_at = now
        envelope.last_error = None
        envelope.next_attempt_at = None
        logger.info("✅ Sent envelope %s (%s)", envelope.id, envelope.kind)
        return "sent"

    envelope.last_error = error
    if envelope.attempts >= policy.max_attempts:
        envelope.status = ENVELOPE_FAILED
        envelope.failed_at = now
        envelope.next_attempt_at = None
        logger.error("❌ Envelope %s failed after %s attempts: %s", envelope.id, envelope.attempts, error)
        return "failed"

    envelope.next_attempt_at = policy.next_attempt_at(attempts=envelope.attempts, error=error, now=now)
    logger.warning(
        "🔄 Envelope %s attempt %s/%s failed: %s",
        envelope.id,
        envelope.attempts,
        policy.max_attempts,
        error,
    )
    return "retried"


def claim_pending_envelope_query(db: Session, envelope_id: UUID):
    return (
        db.query(Envelope)
        .filter(Envelope.id == envelope_id)
        .populate_existing()
        .with_for_update(skip_locked=True)
    )


def deliver_inline(
    db: Session,
    *,
    envelopes: Iterable[Envelope],
    transport: Transport,
    policy: DispatchPolicy | None = None,
    now: Callable[[], datetime] = now_utc,
) -> int:
    """Best-effort delivery right after the producer committed.

    Never raises: whatever is not delivered here stays PENDING for the loop.
    """
    policy = policy or DispatchPolicy.from_settings()
    envelope_ids = [e.id for e in envelopes]
    if not envelope_ids:
        return 0

    try:
        connected = transport.is_connected()
    except Exception:
        logger.exception("Transport connectivity check failed")
        connected = False
    if not connected:
        logger.debug("Transport offline; %s envelope(s) left for the dispatch loop", len(envelope_ids))
        return 0

    sent = 0
    for envelope_id in envelope_ids:
        try:
            envelope = claim_pending_envelope_query(db, envelope_id).first()
            # None: the dispatch loop holds the row right now.
            if envelope is None or envelope.status != ENVELOPE_PENDING:
                db.rollback()
                continue
            delivered, error = _send_safely(transport, envelope.recipient_address, envelope.body)
            if _apply_outcome(envelope, delivered=delivered, error=error, now=now(), policy=policy) == "sent":
                sent += 1
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Inline delivery of envelope %s failed; left for dispatch loop", envelope_id)
    return sent


def process_pending_envelopes_use_case(
    *,
    db: Session,
    transport: Transport,
    now: datetime | None = None,
    batch_size: int | None = None,
    policy: DispatchPolicy | None = None,
) -> DispatchReport:
    """One dispatch cycle: oldest due PENDING envelopes first."""
    policy = policy or DispatchPolicy.from_settings()
    at = now or now_utc()
    limit = batch_size or settings.DISPATCH_BATCH_SIZE
    report = DispatchReport()

    envelopes = (
        db.query(Envelope)
        .filter(
            Envelope.status == ENVELOPE_PENDING,
            or_(Envelope.next_attempt_at.is_(None), Envelope.next_attempt_at <= at),
        )
        .order_by(Envelope.created_at, Envelope.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    report.locked = len(envelopes)
    if envelopes:
        logger.info("📨 Locked %s envelopes for dispatch", len(envelopes))

    for envelope in envelopes:
        delivered, error = _send_safely(transport, envelope.recipient_address, envelope.body)
        outcome = _apply_outcome(envelope, delivered=delivered, error=error, now=at, policy=policy)
        if outcome == "sent":
            report.sent += 1
        elif outcome == "failed":
            report.failed += 1
        else:
            report.retried += 1

    db.commit()
    return report


def _get_envelope_for_update(db: Session, envelope_id: UUID) -> Envelope:
    envelope = (
        db.query(Envelope)
        .filter(Envelope.id == envelope_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not envelope:
        raise NotFound("Envelope not found", code="ENVELOPE_NOT_FOUND")
    return envelope


def retry_envelope_use_case(
    *,
    db: Session,
    envelope_id: UUID,
) -> Envelope:
    """Staff retry of a FAILED envelope: back to PENDING with a fresh attempt budget."""
    envelope = _get_envelope_for_update(db, envelope_id)
    if envelope.status != ENVELOPE_FAILED:
        raise StateConflict(
            "Only failed envelopes can be retried",
            code="ENVELOPE_NOT_FAILED",
            details={"status": envelope.status},
        )

    envelope.status = ENVELOPE_PENDING
    envelope.attempts = 0
    envelope.next_attempt_at = None
    envelope.failed_at = None
    db.commit()
    logger.info("Envelope %s reset for retry", envelope_id)
    db.refresh(envelope)
    return envelope


def list_envelopes(
    db: Session,
    *,
    status: str | None = None,
    ticket_id: UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Envelope]:
    query = db.query(Envelope)
    if status:
        query = query.filter(Envelope.status.in_([s.strip().upper() for s in status.split(",")]))
    if ticket_id:
        query = query.filter(Envelope.ticket_id == ticket_id)
    return query.order_by(Envelope.created_at.desc()).offset(offset).limit(limit).all()


def envelope_stats(db: Session) -> dict[str, int]:
    counts = {ENVELOPE_PENDING.lower(): 0, ENVELOPE_SENT.lower(): 0, ENVELOPE_FAILED.lower(): 0}
    rows = db.query(Envelope.status, func.count(Envelope.id)).group_by(Envelope.status).all()
    for status, count in rows:
        counts[status.lower()] = count
    return counts
