"""
Business timezone helpers.

All wall-clock interpretation in the app (meal times, weekday/weekend
grouping, bank notification timestamps) uses a fixed UTC+7 offset,
independent of the server or client locale.
"""

from datetime import datetime, timedelta, timezone
from typing import Union

BUSINESS_TZ = timezone(timedelta(hours=7))


def to_business_time(value: Union[str, datetime]) -> datetime:
    """
    Convert an ISO-8601 string or datetime to an aware datetime in UTC+7.

    Values without an offset are treated as UTC. Raises ValueError for
    unparsable strings.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(BUSINESS_TZ)


def now_in_business_time() -> datetime:
    return datetime.now(BUSINESS_TZ)
