from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from conftest import FakeTransport
from fielddesk.auth import get_current_user
from fielddesk.broadcast import get_broadcaster
from fielddesk.database import get_db
from fielddesk.evidence import LocalEvidenceStore, get_evidence_store
from fielddesk.main import app
from fielddesk.models import Envelope, Ticket, User
from fielddesk.rate_limit import IssueRateLimiter, get_issue_rate_limiter
from fielddesk.transport import get_transport
from fielddesk.use_cases.assignments import admin_assign_use_case
from fielddesk.use_cases.ticket_lifecycle import update_status_use_case

TICKET_BODY = {
    "category": "INSTALL",
    "address": "Jl. Dago 45, Bandung",
    "details": "Paket 30 Mbps",
    "customer": {"name": "Dewi", "phone": "0812-7777-8888"},
}


class CountingRedis:
    def __init__(self):
        self.counters: dict[str, int] = {}

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key, seconds):
        return True

    def ttl(self, key):
        return 1800


def _caller(user: User) -> SimpleNamespace:
    return SimpleNamespace(id=user.id, role=user.role, username=user.username, name=user.name)


@pytest.fixture
def api(session_factory, broadcaster, tmp_path):
    caller: dict[str, SimpleNamespace] = {}
    transport = FakeTransport(connected=False)
    limiter = IssueRateLimiter(CountingRedis(), limit=2)
    store = LocalEvidenceStore(tmp_path, max_size=1024, allowed_extensions=["jpg", "png"])

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = lambda: caller["user"]
    app.dependency_overrides[get_transport] = lambda: transport
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[get_issue_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_evidence_store] = lambda: store

    client = TestClient(app)

    def _as(user: User) -> TestClient:
        caller["user"] = _caller(user)
        return client

    yield SimpleNamespace(as_user=_as, client=client, transport=transport, store=store)
    app.dependency_overrides.clear()


def _tech_user(db, technician) -> User:
    return db.query(User).filter(User.id == technician.user_id).one()


def test_ticket_creation_and_approval_flow(api, db, staff, office_user, make_technician, broadcaster) -> None:
    make_technician(name="Budi")

    response = api.as_user(office_user).post("/api/v1/tickets", json=TICKET_BODY)
    assert response.status_code == 201
    created = response.json()
    assert created["approval"] == "PENDING"
    assert created["customer"]["phone"] == "6281277778888"

    queue = api.as_user(staff).get("/api/v1/tickets/pending-approval")
    assert [t["id"] for t in queue.json()] == [created["id"]]

    response = api.as_user(office_user).post(f"/api/v1/tickets/{created['id']}/approve")
    assert response.status_code == 403

    response = api.as_user(staff).post(f"/api/v1/tickets/{created['id']}/approve")
    assert response.status_code == 200
    assert response.json()["approval"] == "APPROVED"
    assert db.query(Envelope).filter(Envelope.kind == "ticket_new").count() == 1
    assert broadcaster.names == ["ticket.pending_approval", "ticket.created"]


def test_technician_cannot_create_tickets(api, db, make_technician) -> None:
    technician = make_technician()

    response = api.as_user(_tech_user(db, technician)).post("/api/v1/tickets", json=TICKET_BODY)

    assert response.status_code == 403


def test_self_assign_conflict_is_problem_json(api, db, make_ticket, make_technician) -> None:
    first = make_technician(name="Budi")
    second = make_technician(name="Agus")
    ticket = make_ticket(category="INSTALL")

    response = api.as_user(_tech_user(db, first)).post(f"/api/v1/tickets/{ticket.id}/self-assign")
    assert response.status_code == 200
    assert response.json()["status"] == "ASSIGNED"
    assert response.json()["assignments"][0]["technician_id"] == str(first.id)

    response = api.as_user(_tech_user(db, second)).post(f"/api/v1/tickets/{ticket.id}/self-assign")
    assert response.status_code == 409
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["code"] == "TICKET_ALREADY_ASSIGNED"
    assert response.json()["instance"] == f"/api/v1/tickets/{ticket.id}/self-assign"


def test_technician_sees_open_and_own_tickets_only(api, db, make_ticket, make_technician, staff) -> None:
    mine = make_technician(name="Budi")
    other = make_technician(name="Agus")
    open_ticket = make_ticket(category="INSTALL")
    my_ticket = make_ticket(category="REPAIR")
    other_ticket = make_ticket(category="REPAIR")
    pending = make_ticket(approved=False)
    admin_assign_use_case(db=db, ticket_id=my_ticket.id, technician_ids=[mine.id], current_user=staff)
    admin_assign_use_case(db=db, ticket_id=other_ticket.id, technician_ids=[other.id], current_user=staff)

    client = api.as_user(_tech_user(db, mine))
    visible = {t["id"] for t in client.get("/api/v1/tickets").json()}

    assert visible == {str(open_ticket.id), str(my_ticket.id)}
    assert client.get(f"/api/v1/tickets/{other_ticket.id}").status_code == 404
    assert client.get(f"/api/v1/tickets/{pending.id}").status_code == 404
    assert api.as_user(staff).get("/api/v1/tickets", params={"status": "assigned"}).json()[0]["status"] == "ASSIGNED"


def test_confirm_resolves_caller_technician(api, db, make_ticket, make_technician, staff) -> None:
    technician = make_technician()
    ticket = make_ticket(category="REPAIR")
    admin_assign_use_case(db=db, ticket_id=ticket.id, technician_ids=[technician.id], current_user=staff)

    response = api.as_user(staff).post(f"/api/v1/tickets/{ticket.id}/confirm", json={"action": "DECLINE"})
    assert response.status_code == 422
    assert response.json()["code"] == "TECHNICIAN_ID_REQUIRED"

    response = api.as_user(_tech_user(db, technician)).post(
        f"/api/v1/tickets/{ticket.id}/confirm", json={"action": "decline"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "OPEN"
    assert response.json()["assignments"] == []


def test_complete_with_upload_then_download_evidence(api, db, make_ticket, make_technician, staff) -> None:
    technician = make_technician()
    ticket = make_ticket(category="REPAIR")
    admin_assign_use_case(db=db, ticket_id=ticket.id, technician_ids=[technician.id], current_user=staff)
    update_status_use_case(db=db, ticket_id=ticket.id, current_user=staff, new_status="IN_PROGRESS")
    client = api.as_user(_tech_user(db, technician))

    response = client.post(
        f"/api/v1/tickets/{ticket.id}/complete",
        files={"file": ("rumah.jpg", b"\xff\xd8photo", "image/jpeg")},
        data={"notes": "ONT terpasang"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "COMPLETED"
    assert body["completion_notes"] == "ONT terpasang"
    assert body["completed_by_technician_id"] == str(technician.id)

    download = client.get(body["evidence_ref"])
    assert download.status_code == 200
    assert download.content == b"\xff\xd8photo"


def test_rejected_completion_discards_upload(api, db, make_ticket, make_technician, staff) -> None:
    technician = make_technician()
    ticket = make_ticket(category="REPAIR")
    admin_assign_use_case(db=db, ticket_id=ticket.id, technician_ids=[technician.id], current_user=staff)

    response = api.as_user(_tech_user(db, technician)).post(
        f"/api/v1/tickets/{ticket.id}/complete",
        files={"file": ("rumah.jpg", b"\xff\xd8photo", "image/jpeg")},
    )

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_TRANSITION"
    assert list(api.store.root.iterdir()) == []


def test_delete_ticket_returns_no_content(api, db, make_ticket, staff, office_user) -> None:
    ticket = make_ticket()

    assert api.as_user(office_user).delete(f"/api/v1/tickets/{ticket.id}").status_code == 403
    assert api.as_user(staff).delete(f"/api/v1/tickets/{ticket.id}").status_code == 204
    db.expunge_all()
    assert db.query(Ticket).filter(Ticket.id == ticket.id).first() is None


def test_code_issue_never_returns_code_and_is_rate_limited(api, db) -> None:
    request = {"address": "0813-1111-2222", "purpose": "register"}

    response = api.client.post("/api/v1/codes/issue", json=request)
    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    assert set(response.json()) == {"expires_at", "queued"}
    assert response.json()["queued"] is True

    assert api.client.post("/api/v1/codes/resend", json=request).status_code == 200

    response = api.client.post("/api/v1/codes/issue", json=request)
    assert response.status_code == 429
    assert response.headers["retry-after"] == "1800"
    assert response.json()["code"] == "RATE_LIMITED"


def test_code_verify_rejection_is_problem_json(api) -> None:
    response = api.client.post(
        "/api/v1/codes/verify",
        json={"address": "081311112222", "purpose": "REGISTER", "code": "123456"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "NO_ACTIVE_CODE"


def test_envelope_admin_endpoints(api, db, make_ticket, staff, make_technician) -> None:
    technician = make_technician()
    make_ticket()

    listing = api.as_user(staff).get("/api/v1/envelopes", params={"status": "PENDING"})
    assert listing.status_code == 200
    assert listing.json()
    assert all("body" not in item for item in listing.json())

    stats = api.as_user(staff).get("/api/v1/envelopes/stats").json()
    assert stats["pending"] == len(listing.json())

    envelope_id = listing.json()[0]["id"]
    response = api.as_user(staff).post(f"/api/v1/envelopes/{envelope_id}/retry")
    assert response.status_code == 409
    assert response.json()["code"] == "ENVELOPE_NOT_FAILED"

    assert api.as_user(_tech_user(db, technician)).get("/api/v1/envelopes").status_code == 403


def test_technician_roster_endpoints(api, staff) -> None:
    client = api.as_user(staff)

    response = client.post("/api/v1/technicians", json={"name": "Budi", "phone": "0813-5555-6666"})
    assert response.status_code == 201
    created = response.json()
    assert created["phone"] == "6281355556666"

    response = client.post("/api/v1/technicians", json={"name": "Budi 2", "phone": "6281355556666"})
    assert response.status_code == 409
    assert response.json()["code"] == "TECHNICIAN_PHONE_TAKEN"

    response = client.patch(f"/api/v1/technicians/{created['id']}", json={"is_active": False})
    assert response.json()["is_active"] is False
    assert client.get("/api/v1/technicians", params={"active": True}).json() == []


def test_me_returns_role_permissions(api, db, make_technician) -> None:
    technician = make_technician()

    response = api.as_user(_tech_user(db, technician)).get("/api/v1/auth/me")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    body = response.json()
    assert body["technician_id"] == str(technician.id)
    assert body["permissions"]["canSelfAssign"] is True
    assert body["permissions"]["canManageTickets"] is False


def test_health_reports_dependencies(api, monkeypatch) -> None:
    from fielddesk import main

    class _Ping:
        def ping(self):
            return True

    built: list[_Ping] = []

    def _from_url(*args, **kwargs):
        built.append(_Ping())
        return built[-1]

    monkeypatch.setattr(main, "_redis_client", None)
    monkeypatch.setattr(main.redis, "from_url", _from_url)

    body = api.client.get("/api/v1/system/health").json()
    assert api.client.get("/api/v1/system/health").status_code == 200
    assert len(built) == 1

    assert body == {
        "status": "ok",
        "version": "1.0.0",
        "database": "ok",
        "redis": "ok",
        "transport": "disconnected",
    }
