from __future__ import annotations

import itertools
import os

# The package engine is built at import time; tests use their own engines.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fielddesk import models  # noqa: F401
from fielddesk.database import Base
from fielddesk.models import Technician, User
from fielddesk.use_cases.envelopes import DeliveryHooks, DispatchPolicy
from fielddesk.use_cases.ticket_lifecycle import create_ticket_use_case

_phone_numbers = itertools.count(1000001)


def next_phone() -> str:
    return f"62812{next(_phone_numbers):07d}"


class FakeTransport:
    """Records deliveries; ``failures`` are returned (in order) before any success."""

    def __init__(self, *, connected: bool = True, failures=None):
        self.connected = connected
        self.failures = list(failures or [])
        self.sent: list[tuple[str, str]] = []
        self.send_calls = 0

    def is_connected(self) -> bool:
        return self.connected

    def send(self, address: str, body: str):
        self.send_calls += 1
        if not self.connected:
            return False, "NOT_CONNECTED"
        if self.failures:
            return False, self.failures.pop(0)
        self.sent.append((address, body))
        return True, None


class RecordingBroadcaster:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fielddesk-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def transport():
    return FakeTransport(connected=False)


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def hooks(transport, broadcaster):
    return DeliveryHooks(
        transport=transport,
        broadcast=broadcaster,
        policy=DispatchPolicy(max_attempts=3),
    )


@pytest.fixture
def make_user(db):
    def _make(*, role: str = "admin", phone: str | None = None, username: str | None = None) -> User:
        user = User(
            username=username or f"{role}-{next(_phone_numbers)}",
            name=f"{role.title()} User",
            role=role,
            phone=phone,
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_technician(db, make_user):
    def _make(*, name: str = "Budi", active: bool = True, with_user: bool = True) -> Technician:
        phone = next_phone()
        user = make_user(role="technician", phone=phone) if with_user else None
        technician = Technician(
            user_id=user.id if user else None,
            name=name,
            phone=phone,
            is_active=active,
        )
        db.add(technician)
        db.commit()
        db.refresh(technician)
        return technician

    return _make


@pytest.fixture
def staff(make_user):
    return make_user(role="admin", phone=next_phone())


@pytest.fixture
def office_user(make_user):
    return make_user(role="user")


@pytest.fixture
def system_user(make_user):
    return make_user(role="system")


@pytest.fixture
def make_ticket(db, office_user, system_user):
    """Create a ticket; ``approved=True`` goes through the trusted-caller path."""

    def _make(*, category: str = "INSTALL", approved: bool = True, hooks: DeliveryHooks | None = None):
        return create_ticket_use_case(
            db=db,
            current_user=system_user if approved else office_user,
            category=category,
            address="Jl. Merdeka No. 10, Bandung",
            details="Paket 20 Mbps",
            customer_name="Siti Aminah",
            customer_phone="0812-3456-7890",
            hooks=hooks or DeliveryHooks(),
        )

    return _make
