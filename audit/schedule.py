# audit/schedule.py
"""
EventBridge cron expressions for the weekly trigger.

Only the shape this project deploys is supported: a fixed minute and hour on
a single day of the week, `?` for day-of-month and `*` for month and year.
Firing times are UTC. A firing missed during an outage is not replayed, so
the sequence is simply every matching instant after `start`.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List

# EventBridge numbers days 1 (SUN) to 7 (SAT)
WEEKDAY_NAMES = ["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"]

_CRON = re.compile(r"^cron\((.+)\)$")


@dataclass(frozen=True)
class WeeklyCron:
    minute: int
    hour: int
    weekday: int  # Python numbering, Monday == 0

    @property
    def expression(self) -> str:
        day = WEEKDAY_NAMES[(self.weekday + 1) % 7]
        return f"cron({self.minute} {self.hour} ? * {day} *)"


def _parse_weekday(field: str) -> int:
    field = field.upper()
    if field in WEEKDAY_NAMES:
        eventbridge_day = WEEKDAY_NAMES.index(field) + 1
    elif field.isdigit() and 1 <= int(field) <= 7:
        eventbridge_day = int(field)
    else:
        raise ValueError(f"Unsupported day-of-week field: {field!r}")
    # 1 (SUN) -> 6, 2 (MON) -> 0, ...
    return (eventbridge_day + 5) % 7


def _parse_fixed(field: str, name: str, upper: int) -> int:
    if not field.isdigit() or not 0 <= int(field) <= upper:
        raise ValueError(f"Unsupported {name} field: {field!r}")
    return int(field)


def parse_cron(expression: str) -> WeeklyCron:
    """
    Parse `cron(minute hour day-of-month month day-of-week year)`.
    Raise ValueError for anything that is not a fixed weekly schedule.
    """
    match = _CRON.match(expression.strip())
    if not match:
        raise ValueError(f"Not a cron expression: {expression!r}")
    fields = match.group(1).split()
    if len(fields) != 6:
        raise ValueError(f"Expected 6 cron fields, got {len(fields)}: {expression!r}")
    minute, hour, day_of_month, month, day_of_week, year = fields
    if day_of_month != "?" or month != "*" or year != "*":
        raise ValueError(f"Only weekly schedules are supported: {expression!r}")
    return WeeklyCron(
        minute=_parse_fixed(minute, "minute", 59),
        hour=_parse_fixed(hour, "hour", 23),
        weekday=_parse_weekday(day_of_week),
    )


def schedule_expression(schedule: Dict[str, str]) -> str:
    """
    Render a config schedule ({"minute", "hour", "week_day"}) the way
    EventBridge receives it.
    """
    return (
        f"cron({schedule.get('minute', '*')} {schedule.get('hour', '*')} "
        f"? * {schedule.get('week_day', '*')} *)"
    )


def next_firings(expression: str, start: datetime, count: int = 1) -> List[datetime]:
    """
    Return the next `count` firing times strictly after `start`, in UTC.
    Naive datetimes are taken to be UTC.
    """
    cron = parse_cron(expression)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    start = start.astimezone(timezone.utc)

    days_ahead = (cron.weekday - start.weekday()) % 7
    first = (start + timedelta(days=days_ahead)).replace(
        hour=cron.hour, minute=cron.minute, second=0, microsecond=0
    )
    if first <= start:
        first += timedelta(days=7)
    return [first + timedelta(weeks=i) for i in range(count)]
