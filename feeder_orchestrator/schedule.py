"""
Feeding interval expressions.

An interval is the six-token cron form used by the external scheduler, limited
to minute and hour lists:

    <minutes> <hours> * * ? *

e.g. ``0,30 9,21 * * ? *`` fires at 09:00, 09:30, 21:00 and 21:30 UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import List

# Day-of-month, month, day-of-week and year are fixed
FIXED_TAIL = ("*", "*", "?", "*")
WILDCARD = "*"


def _parse_field(token: str, upper: int, label: str) -> List[int]:
    if token == WILDCARD:
        return list(range(upper + 1))
    values = set()
    for part in token.split(","):
        if not part.isdigit():
            raise ValueError(f"invalid {label} value {part!r}")
        value = int(part)
        if value > upper:
            raise ValueError(f"{label} {value} out of range 0-{upper}")
        values.add(value)
    return sorted(values)


class IntervalSchedule:
    """Parsed feeding interval"""

    def __init__(self, minutes: List[int], hours: List[int]):
        self.minutes = minutes
        self.hours = hours

    @classmethod
    def parse(cls, expression: str) -> "IntervalSchedule":
        """
        Parse and validate an interval expression.

        Raises:
            ValueError: If the expression is not in the accepted form
        """
        if not isinstance(expression, str):
            raise ValueError("interval must be a string")
        tokens = expression.split()
        if len(tokens) != 6:
            raise ValueError(f"expected 6 fields, got {len(tokens)}")
        if tuple(tokens[2:]) != FIXED_TAIL:
            raise ValueError(f"trailing fields must be {' '.join(FIXED_TAIL)!r}")
        return cls(
            minutes=_parse_field(tokens[0], 59, "minute"),
            hours=_parse_field(tokens[1], 23, "hour"),
        )

    def next_after(self, epoch_ms: int) -> int:
        """First fire time strictly after ``epoch_ms`` (UTC), in epoch ms"""
        after = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
        day = after.replace(hour=0, minute=0, second=0, microsecond=0)
        for offset in range(2):
            base = day + timedelta(days=offset)
            for hour in self.hours:
                for minute in self.minutes:
                    candidate = base.replace(hour=hour, minute=minute)
                    if candidate > after:
                        return int(candidate.timestamp() * 1000)
        # unreachable: every schedule fires at least once per day
        raise RuntimeError("no fire time found")


def validate_interval(expression: str) -> None:
    """Raise ValueError if the interval expression is not accepted"""
    IntervalSchedule.parse(expression)


def is_valid_interval(expression: str) -> bool:
    try:
        IntervalSchedule.parse(expression)
    except ValueError:
        return False
    return True
