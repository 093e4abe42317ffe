"""Obligation status derivation and payment-intent transitions."""

from datetime import datetime, timezone


OBLIGATION_STATUSES = ("pending", "partial", "paid", "overdue")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "created": {"paid", "failed"},
    "paid": set(),
    "failed": set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the intent state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def due_amount(total_minor: int, paid_minor: int) -> int:
    return max(0, total_minor - paid_minor)


def derive_obligation_status(
    total_minor: int,
    paid_minor: int,
    due_date: datetime | None,
    now: datetime,
) -> str:
    """Compute obligation status from amounts and due date.

    The stored `status` column is only a cache of this value; readers call this
    again instead of trusting it.
    """

    if due_amount(total_minor, paid_minor) <= 0:
        return "paid"
    if paid_minor > 0:
        return "partial"
    if due_date is not None and as_utc(due_date) < as_utc(now):
        return "overdue"
    return "pending"
