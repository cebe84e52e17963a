"""Five-field cron expressions, parsed once and matched per minute.

Fields: minute hour day_of_month month day_of_week

Each field accepts ``*``, ``N``, ``N-M``, ``*/S``, ``N-M/S`` and comma
separated lists of those. Day of week runs 0-6 from Sunday; 7 is also
Sunday.

Examples:
    "0 * * * *"      -> top of every hour
    "0 1 * * *"      -> daily at 01:00
    "*/15 9-17 * * 1-5" -> every 15 minutes during office hours
"""

from __future__ import annotations

from datetime import datetime

# (name, lowest, highest)
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)


class CronError(ValueError):
    pass


class CronExpression:
    """A parsed cron expression.

    Usage:
        expr = CronExpression("0 9 * * 1")
        expr.matches(datetime(2026, 10, 19, 9, 0))  # Monday 09:00 -> True
    """

    def __init__(self, expression: str) -> None:
        self.expression = expression.strip()
        parts = self.expression.split()
        if len(parts) != 5:
            raise CronError(f"Invalid cron expression (need 5 fields): {expression!r}")

        values = [_parse_field(part, name, low, high) for part, (name, low, high) in zip(parts, _FIELDS)]
        self.minutes, self.hours, self.days, self.months, dow = values
        self.weekdays = frozenset(d % 7 for d in dow)
        # Restricted day fields combine with OR, as in classic cron
        self._dom_any = parts[2] == "*"
        self._dow_any = parts[4] == "*"

    def matches(self, dt: datetime) -> bool:
        if dt.minute not in self.minutes or dt.hour not in self.hours or dt.month not in self.months:
            return False
        dom_ok = dt.day in self.days
        dow_ok = dt.isoweekday() % 7 in self.weekdays
        if self._dom_any or self._dow_any:
            return dom_ok and dow_ok
        return dom_ok or dow_ok

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"


def _parse_field(field: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in field.split(","):
        if not part:
            raise CronError(f"Empty item in cron {name} field: {field!r}")
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise CronError(f"Invalid cron step in {name}: {part!r}")
            step = int(step_text)

        if base == "*":
            start, end = low, high
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start, end = _number(start_text, name), _number(end_text, name)
        else:
            start = _number(base, name)
            end = high if step_text else start

        if not (low <= start <= high and low <= end <= high) or start > end:
            raise CronError(f"Cron {name} value out of range {low}-{high}: {part!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def _number(text: str, name: str) -> int:
    if not text.isdigit():
        raise CronError(f"Invalid cron {name} value: {text!r}")
    return int(text)


def cron_matches(expression: str, dt: datetime) -> bool:
    """Check a datetime against an expression without keeping the parse."""
    return CronExpression(expression).matches(dt)


def validate(expression: str) -> str:
    """Return the expression unchanged, raising CronError if it does not parse."""
    CronExpression(expression)
    return expression
