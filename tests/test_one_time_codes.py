from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import next_phone
from fielddesk.auth import pwd_context
from fielddesk.domain_errors import CodeRejected, DomainError, RateLimited
from fielddesk.models import Envelope, OneTimeCode
from fielddesk.rate_limit import IssueRateLimiter
from fielddesk.use_cases.one_time_codes import (
    generate_numeric_code,
    hash_code,
    issue_code_use_case,
    purge_stale_codes,
    reset_password_use_case,
    resend_code_use_case,
    verify_code_use_case,
)

T0 = datetime(2026, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
ADDRESS = "6281311112222"


def _issue(db, code: str, *, at: datetime = T0, purpose: str = "RESET_PASSWORD", address: str = ADDRESS):
    return issue_code_use_case(db=db, subject_address=address, purpose=purpose, generate_code=lambda: code, now=at)


def _verify(db, candidate: str, *, at: datetime = T0 + timedelta(minutes=1), **kwargs):
    return verify_code_use_case(
        db=db,
        subject_address=ADDRESS,
        purpose="RESET_PASSWORD",
        candidate_code=candidate,
        now=at,
        **kwargs,
    )


def test_mismatch_then_accept_then_already_consumed(db) -> None:
    issued = _issue(db, "482193")

    assert issued.code == "482193"
    assert issued.expires_at == T0 + timedelta(minutes=10)

    mismatch = _verify(db, "000000")
    assert (mismatch.accepted, mismatch.reason, mismatch.attempts) == (False, "MISMATCH", 1)

    accepted = _verify(db, "482193")
    assert accepted.accepted is True
    assert accepted.reason is None

    again = _verify(db, "482193")
    assert (again.accepted, again.reason) == (False, "ALREADY_CONSUMED")


def test_only_the_hash_is_stored_and_code_is_queued(db) -> None:
    _issue(db, "482193")

    record = db.query(OneTimeCode).one()
    assert record.code_hash == hash_code(ADDRESS, "RESET_PASSWORD", "482193")
    assert "482193" not in record.code_hash

    envelope = db.query(Envelope).filter(Envelope.kind == "one_time_code").one()
    assert envelope.recipient_address == ADDRESS
    assert "*482193*" in envelope.body
    assert envelope.status == "PENDING"


def test_expired_code_is_rejected(db) -> None:
    _issue(db, "482193")

    result = _verify(db, "482193", at=T0 + timedelta(minutes=10))

    assert result.reason == "EXPIRED"
    assert result.attempts == 1


def test_reissue_supersedes_previous_code(db) -> None:
    _issue(db, "111111")
    resend_code_use_case(
        db=db,
        subject_address="0813-1111-2222",
        purpose="reset_password",
        generate_code=lambda: "222222",
        now=T0 + timedelta(seconds=30),
    )

    assert _verify(db, "111111").reason == "MISMATCH"
    assert _verify(db, "222222").accepted is True
    assert db.query(OneTimeCode).filter(OneTimeCode.superseded_at.is_(None)).count() == 1


def test_purposes_are_independent(db) -> None:
    _issue(db, "111111", purpose="REGISTER")
    _issue(db, "222222", purpose="RESET_PASSWORD")

    register = verify_code_use_case(
        db=db, subject_address=ADDRESS, purpose="REGISTER", candidate_code="111111", now=T0
    )
    assert register.accepted is True
    assert _verify(db, "222222").accepted is True


def test_attempt_ceiling_blocks_even_the_right_code(db) -> None:
    _issue(db, "482193")

    assert _verify(db, "000001", max_attempts=2).reason == "MISMATCH"
    assert _verify(db, "000002", max_attempts=2).reason == "MISMATCH"
    blocked = _verify(db, "482193", max_attempts=2)

    assert blocked.reason == "TOO_MANY_ATTEMPTS"
    assert blocked.attempts == 3


def test_no_active_code(db) -> None:
    result = _verify(db, "482193")

    assert (result.accepted, result.reason, result.attempts) == (False, "NO_ACTIVE_CODE", 0)
    with pytest.raises(CodeRejected) as exc_info:
        result.raise_if_rejected()
    assert exc_info.value.code == "NO_ACTIVE_CODE"
    assert exc_info.value.http_status == 400


@pytest.mark.parametrize(
    ("address", "purpose", "code"),
    [
        ("12", "REGISTER", "ADDRESS_INVALID"),
        (ADDRESS, "LOGIN", "CODE_PURPOSE_INVALID"),
    ],
)
def test_issue_validates_request(db, address, purpose, code) -> None:
    with pytest.raises(DomainError) as exc_info:
        issue_code_use_case(db=db, subject_address=address, purpose=purpose)
    assert exc_info.value.code == code


def test_generated_codes_are_numeric() -> None:
    code = generate_numeric_code(8)
    assert len(code) == 8
    assert code.isdigit()


def test_purge_removes_only_stale_codes(db) -> None:
    _issue(db, "111111", at=T0)
    _issue(db, "222222", at=T0 + timedelta(minutes=5))
    _issue(db, "333333", at=T0 + timedelta(minutes=20))

    deleted = purge_stale_codes(db, now=T0 + timedelta(minutes=25), retention_hours=0)

    assert deleted == 2
    [kept] = db.query(OneTimeCode).all()
    assert kept.code_hash == hash_code(ADDRESS, "RESET_PASSWORD", "333333")


def test_reset_password_consumes_code_and_revokes_tokens(db, make_user) -> None:
    phone = next_phone()
    user = make_user(role="user", phone=phone, username="rina")
    issue_code_use_case(db=db, subject_address=phone, purpose="RESET_PASSWORD", generate_code=lambda: "482193", now=T0)

    updated = reset_password_use_case(
        db=db,
        subject_address=phone,
        code="482193",
        new_password="rahasia-baru-123",
        now=T0 + timedelta(minutes=2),
    )

    assert updated.id == user.id
    assert pwd_context.verify("rahasia-baru-123", updated.password_hash)
    assert updated.token_version == 1
    with pytest.raises(CodeRejected) as exc_info:
        reset_password_use_case(
            db=db, subject_address=phone, code="482193", new_password="lain-lagi-456", now=T0 + timedelta(minutes=3)
        )
    assert exc_info.value.code == "ALREADY_CONSUMED"


def test_reset_password_policy_is_checked_before_code_is_spent(db, make_user) -> None:
    phone = next_phone()
    make_user(role="user", phone=phone, username="rinawati")
    issue_code_use_case(db=db, subject_address=phone, purpose="RESET_PASSWORD", generate_code=lambda: "482193", now=T0)

    with pytest.raises(DomainError) as exc_info:
        reset_password_use_case(db=db, subject_address=phone, code="482193", new_password="short", now=T0)
    assert exc_info.value.code == "PASSWORD_TOO_SHORT"

    with pytest.raises(DomainError) as exc_info:
        reset_password_use_case(db=db, subject_address=phone, code="482193", new_password="RINAWATI", now=T0)
    assert exc_info.value.code == "PASSWORD_MATCHES_USERNAME"

    record = db.query(OneTimeCode).one()
    assert record.attempts == 0
    assert record.consumed_at is None


def test_reset_password_without_account(db) -> None:
    _issue(db, "482193")

    with pytest.raises(DomainError) as exc_info:
        reset_password_use_case(db=db, subject_address=ADDRESS, code="482193", new_password="rahasia-baru-123", now=T0)
    assert exc_info.value.code == "USER_NOT_FOUND"


class FakeRedis:
    def __init__(self):
        self.counters: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key, seconds):
        self.ttls[key] = seconds

    def ttl(self, key):
        return self.ttls.get(key, -1)


class BrokenRedis:
    def incr(self, key):
        raise RedisConnectionError("redis unavailable")


def test_issue_rate_limiter_counts_per_address_and_purpose() -> None:
    client = FakeRedis()
    limiter = IssueRateLimiter(client, limit=2, window_seconds=3600)

    limiter.check(address=ADDRESS, purpose="reset_password")
    limiter.check(address=ADDRESS, purpose="RESET_PASSWORD")
    with pytest.raises(RateLimited) as exc_info:
        limiter.check(address=ADDRESS, purpose="RESET_PASSWORD")

    assert exc_info.value.http_status == 429
    assert exc_info.value.details == {"retryAfter": 3600}
    assert client.ttls == {f"codes:rl:issue:RESET_PASSWORD:{ADDRESS}": 3600}

    # Other purposes keep their own budget.
    limiter.check(address=ADDRESS, purpose="REGISTER")


def test_issue_rate_limiter_fails_open_when_redis_is_down() -> None:
    limiter = IssueRateLimiter(BrokenRedis(), limit=1)

    limiter.check(address=ADDRESS, purpose="REGISTER")
    limiter.check(address=ADDRESS, purpose="REGISTER")
