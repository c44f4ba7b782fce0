"""Ticket status/approval vocabulary and transition invariants."""

from __future__ import annotations

from datetime import datetime, timezone

CATEGORY_INSTALL = "INSTALL"
CATEGORY_REPAIR = "REPAIR"
TICKET_CATEGORIES: tuple[str, ...] = (CATEGORY_INSTALL, CATEGORY_REPAIR)

STATUS_OPEN = "OPEN"
STATUS_ASSIGNED = "ASSIGNED"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
TICKET_STATUSES: tuple[str, ...] = (
    STATUS_OPEN,
    STATUS_ASSIGNED,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
)

APPROVAL_PENDING = "PENDING"
APPROVAL_APPROVED = "APPROVED"
APPROVAL_REJECTED = "REJECTED"
APPROVAL_STATUSES: tuple[str, ...] = (APPROVAL_PENDING, APPROVAL_APPROVED, APPROVAL_REJECTED)

ROLE_PRIMARY = "PRIMARY"
ROLE_SECONDARY = "SECONDARY"

ACTION_ACCEPT = "ACCEPT"
ACTION_DECLINE = "DECLINE"

TERMINAL_STATUSES: frozenset[str] = frozenset({STATUS_COMPLETED, STATUS_CANCELLED})
SELF_ASSIGN_STATUSES: frozenset[str] = frozenset({STATUS_OPEN, STATUS_ASSIGNED})

# Edges reachable through update_status. OPEN -> ASSIGNED and ASSIGNED -> OPEN
# only happen through the assignment use-cases.
_STATUS_UPDATE_EDGES: dict[str, frozenset[str]] = {
    STATUS_OPEN: frozenset({STATUS_CANCELLED}),
    STATUS_ASSIGNED: frozenset({STATUS_IN_PROGRESS, STATUS_CANCELLED}),
    STATUS_IN_PROGRESS: frozenset({STATUS_COMPLETED, STATUS_CANCELLED}),
    STATUS_COMPLETED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}

# Every edge of the ticket state machine, assignment edges included.
STATE_MACHINE_EDGES: frozenset[tuple[str, str]] = frozenset(
    {(current, nxt) for current, targets in _STATUS_UPDATE_EDGES.items() for nxt in targets}
    | {
        (STATUS_OPEN, STATUS_ASSIGNED),
        (STATUS_ASSIGNED, STATUS_ASSIGNED),
        (STATUS_ASSIGNED, STATUS_OPEN),
    }
)

CATEGORY_LABELS = {
    CATEGORY_INSTALL: "Pemasangan WiFi",
    CATEGORY_REPAIR: "Perbaikan Gangguan",
}
_NUMBER_PREFIX = {CATEGORY_INSTALL: "PSB", CATEGORY_REPAIR: "GNG"}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_category(category: str | None) -> str:
    value = (category or "").strip().upper()
    # Legacy labels from the office screens.
    if value in {"PSB", "INSTALLATION"}:
        return CATEGORY_INSTALL
    if value in {"GANGGUAN", "GNG"}:
        return CATEGORY_REPAIR
    if value not in TICKET_CATEGORIES:
        raise ValueError(f"Unknown ticket category: {category}")
    return value


def normalize_status(status: str | None) -> str:
    value = (status or "").strip().upper()
    if value not in TICKET_STATUSES:
        raise ValueError(f"Unknown ticket status: {status}")
    return value


def is_terminal_status(status: str | None) -> bool:
    return (status or "").upper() in TERMINAL_STATUSES


def is_status_update_allowed(*, current_status: str, next_status: str) -> bool:
    return next_status in _STATUS_UPDATE_EDGES.get(current_status, frozenset())


def is_state_machine_edge(current_status: str, next_status: str) -> bool:
    return (current_status, next_status) in STATE_MACHINE_EDGES


def ticket_number_for(category: str, *, at: datetime, suffix: str) -> str:
    prefix = _NUMBER_PREFIX.get(category, "JOB")
    return f"{prefix}-{at.strftime('%Y%m%d%H%M%S')}-{suffix[:4].upper()}"
