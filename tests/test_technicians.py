from __future__ import annotations

import uuid

import pytest

from fielddesk.domain_errors import DomainError
from fielddesk.models import Assignment
from fielddesk.use_cases.assignments import admin_assign_use_case
from fielddesk.use_cases.technicians import (
    create_technician_use_case,
    list_technicians,
    update_technician_use_case,
)


def test_create_technician_normalizes_phone_and_links_user(db, make_user) -> None:
    user = make_user(role="technician")

    technician = create_technician_use_case(db=db, name=" Budi ", phone="+62 813 5555 6666", user_id=user.id)

    assert technician.name == "Budi"
    assert technician.phone == "6281355556666"
    assert technician.user_id == user.id
    assert technician.is_active is True


@pytest.mark.parametrize(
    ("kwargs", "code"),
    [
        ({"name": "  "}, "TECHNICIAN_NAME_REQUIRED"),
        ({"phone": "123"}, "TECHNICIAN_PHONE_INVALID"),
        ({"user_id": uuid.uuid4()}, "USER_NOT_FOUND"),
    ],
)
def test_create_technician_validation(db, kwargs, code) -> None:
    params = {"name": "Budi", "phone": "081355556666"}
    params.update(kwargs)

    with pytest.raises(DomainError) as exc_info:
        create_technician_use_case(db=db, **params)
    assert exc_info.value.code == code


def test_create_technician_conflicts(db, make_user) -> None:
    office = make_user(role="user")
    tech_user = make_user(role="technician")
    create_technician_use_case(db=db, name="Budi", phone="081355556666", user_id=tech_user.id)

    with pytest.raises(DomainError) as exc_info:
        create_technician_use_case(db=db, name="Budi KW", phone="6281355556666")
    assert exc_info.value.code == "TECHNICIAN_PHONE_TAKEN"

    with pytest.raises(DomainError) as exc_info:
        create_technician_use_case(db=db, name="Agus", phone="081399990000", user_id=office.id)
    assert exc_info.value.code == "TECHNICIAN_USER_ROLE"

    with pytest.raises(DomainError) as exc_info:
        create_technician_use_case(db=db, name="Agus", phone="081399990000", user_id=tech_user.id)
    assert exc_info.value.code == "TECHNICIAN_USER_TAKEN"


def test_deactivation_keeps_assignments(db, make_ticket, make_technician, staff) -> None:
    technician = make_technician()
    ticket = make_ticket()
    admin_assign_use_case(db=db, ticket_id=ticket.id, technician_ids=[technician.id], current_user=staff)

    updated = update_technician_use_case(db=db, technician_id=technician.id, is_active=False, is_available=False)

    assert updated.is_active is False
    assert updated.is_available is False
    assert db.query(Assignment).filter(Assignment.technician_id == technician.id).count() == 1
    assert list_technicians(db, active=True) == []
    assert [t.id for t in list_technicians(db, active=False)] == [technician.id]


def test_update_technician_guards(db, make_technician) -> None:
    first = make_technician(name="Budi")
    second = make_technician(name="Agus")

    with pytest.raises(DomainError) as exc_info:
        update_technician_use_case(db=db, technician_id=second.id, phone=first.phone)
    assert exc_info.value.code == "TECHNICIAN_PHONE_TAKEN"

    with pytest.raises(DomainError) as exc_info:
        update_technician_use_case(db=db, technician_id=uuid.uuid4(), name="X")
    assert exc_info.value.code == "TECHNICIAN_NOT_FOUND"

    renamed = update_technician_use_case(db=db, technician_id=second.id, phone=second.phone, name="Agus S")
    assert renamed.name == "Agus S"
