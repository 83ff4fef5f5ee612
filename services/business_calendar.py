"""
============================================================================
ChangeWLD Exchange - Business Calendar
============================================================================

Reliability Level: L5 High
Input Constraints: Timestamps must be timezone-aware
Side Effects: None (pure functions)

The exchange operates on a fixed UTC offset (Colombia, UTC-5, no DST).
Two derived values are computed here:

- business_day_start: local midnight of the current business day, used as
  the lower bound of the per-identity daily quota window.
- inventory_date: the payout-batching date of an order.

INVENTORY CUTOFFS (local time):
    - Sunday            -> Monday
    - Monday - Thursday -> next day from 17:00, else same day
    - Friday            -> Saturday from 17:00, else same day
    - Saturday          -> Monday from 15:00, else same day

============================================================================
"""

from datetime import date, datetime, time, timedelta, timezone

WEEKDAY_CUTOFF = time(17, 0)
SATURDAY_CUTOFF = time(15, 0)

SATURDAY, SUNDAY = 5, 6


def business_timezone(offset_hours: int) -> timezone:
    return timezone(timedelta(hours=offset_hours))


def to_local(now: datetime, offset_hours: int) -> datetime:
    if now.tzinfo is None:
        raise ValueError("Timestamp must be timezone-aware")
    return now.astimezone(business_timezone(offset_hours))


def business_day_start(now: datetime, offset_hours: int) -> datetime:
    """
    Local midnight of the business day containing `now`, returned in UTC.

    The quota window is a calendar day in the business timezone, not a
    sliding 24h window and not UTC midnight.
    """
    local = to_local(now, offset_hours)
    midnight = datetime.combine(local.date(), time(0, 0), tzinfo=local.tzinfo)
    return midnight.astimezone(timezone.utc)


def inventory_date(now: datetime, offset_hours: int) -> date:
    """Payout-batching date for an order created at `now`."""
    local = to_local(now, offset_hours)
    today = local.date()
    weekday = local.weekday()
    clock = local.time()

    if weekday == SUNDAY:
        return today + timedelta(days=1)

    if weekday == SATURDAY:
        if clock >= SATURDAY_CUTOFF:
            return today + timedelta(days=2)
        return today

    # Monday through Friday share the 17:00 cutoff; Friday rolls to Saturday
    if clock >= WEEKDAY_CUTOFF:
        return today + timedelta(days=1)
    return today


__all__ = [
    "business_timezone",
    "to_local",
    "business_day_start",
    "inventory_date",
]
