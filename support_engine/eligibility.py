"""
Eligibility Policy
==================
Pure time-window rule deciding whether a cancellation or address change is
still operationally possible. Identical for both request kinds.

Rule, evaluated in the store's local time:
  - Created Friday at/after 12:00, or any time Saturday/Sunday:
      eligible until the following Monday 12:00 (weekend grace window)
  - Any order, including one whose weekend window has closed:
      eligible while now - created_at <= 24 hours

Unknown timezones fall back to UTC. A missing timestamp or a creation time in
the future cannot be judged; the result is ineligible with certain=False and
the engine routes it to human review instead of guessing.

No I/O, no clock access: callers pass `now` explicitly.
"""
import logging
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import EligibilityResult

logger = logging.getLogger(__name__)

STANDARD_WINDOW = timedelta(hours=24)
GRACE_CUTOFF    = time(12, 0)

FRIDAY, SATURDAY, SUNDAY = 4, 5, 6


def resolve_timezone(name: str | None) -> ZoneInfo | timezone:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("[eligibility] Unknown store timezone %r, using UTC", name)
        return timezone.utc


def _as_aware(value: datetime) -> datetime:
    # Naive timestamps from order systems are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def grace_deadline(created_local: datetime) -> datetime | None:
    """
    Return the Monday-noon deadline if `created_local` falls inside the
    weekend grace window, else None.
    """
    weekday = created_local.weekday()
    in_window = (
        (weekday == FRIDAY and created_local.time() >= GRACE_CUTOFF)
        or weekday in (SATURDAY, SUNDAY)
    )
    if not in_window:
        return None
    days_ahead = 7 - weekday
    monday = (created_local + timedelta(days=days_ahead)).date()
    return datetime.combine(monday, GRACE_CUTOFF, tzinfo=created_local.tzinfo)


def evaluate_eligibility(
    created_at: datetime | None,
    now: datetime,
    store_timezone: str | None = "UTC",
) -> EligibilityResult:
    tz_name = store_timezone or "UTC"
    tz      = resolve_timezone(tz_name)

    if created_at is None:
        return EligibilityResult(
            is_eligible=False,
            reason="Order creation time unknown; eligibility cannot be determined",
            order_created_at=None,
            store_timezone=tz_name,
            certain=False,
        )

    created = _as_aware(created_at)
    current = _as_aware(now)

    if created > current:
        return EligibilityResult(
            is_eligible=False,
            reason="Order creation time is in the future; eligibility cannot be determined",
            order_created_at=created,
            store_timezone=tz_name,
            certain=False,
        )

    created_local = created.astimezone(tz)
    current_local = current.astimezone(tz)

    deadline = grace_deadline(created_local)
    if deadline is not None and current_local <= deadline:
        return EligibilityResult(
            is_eligible=True,
            reason=f"Order placed during weekend window, eligible until Monday 12:00 ({deadline.isoformat()})",
            order_created_at=created,
            store_timezone=tz_name,
        )

    # A closed weekend window still leaves the 24 hour rule.
    age = current - created
    hours = age.total_seconds() / 3600
    if age <= STANDARD_WINDOW:
        return EligibilityResult(
            is_eligible=True,
            reason=f"Order placed {hours:.1f} hours ago, within the 24 hour window",
            order_created_at=created,
            store_timezone=tz_name,
        )
    return EligibilityResult(
        is_eligible=False,
        reason=f"Order placed {hours:.1f} hours ago, outside the 24 hour window",
        order_created_at=created,
        store_timezone=tz_name,
    )
