from __future__ import annotations

from datetime import datetime

import pytest

from scheduler.cron import CronError, CronExpression, cron_matches, validate


def test_top_of_the_hour():
    expr = CronExpression("0 * * * *")
    assert expr.matches(datetime(2026, 3, 4, 17, 0))
    assert not expr.matches(datetime(2026, 3, 4, 17, 1))


def test_steps_ranges_and_lists():
    expr = CronExpression("*/15 9-17 * * 1-5")
    monday = datetime(2026, 10, 19, 9, 45)
    assert expr.matches(monday)
    assert not expr.matches(monday.replace(minute=50))
    assert not expr.matches(monday.replace(hour=18, minute=0))
    # Saturday
    assert not expr.matches(datetime(2026, 10, 24, 9, 45))

    assert CronExpression("0 6,18 * * *").hours == frozenset({6, 18})
    assert CronExpression("0 0-12/4 * * *").hours == frozenset({0, 4, 8, 12})
    assert CronExpression("5/20 * * * *").minutes == frozenset({5, 25, 45})


def test_seven_is_sunday():
    sunday = datetime(2026, 10, 18, 0, 0)
    assert cron_matches("0 0 * * 7", sunday)
    assert cron_matches("0 0 * * 0", sunday)


def test_restricted_day_fields_combine_with_or():
    expr = CronExpression("0 0 1 * 1")
    assert expr.matches(datetime(2026, 10, 1, 0, 0))   # the 1st, a Thursday
    assert expr.matches(datetime(2026, 10, 19, 0, 0))  # a Monday
    assert not expr.matches(datetime(2026, 10, 20, 0, 0))


@pytest.mark.parametrize(
    "expression",
    ["", "* * * *", "60 * * * *", "* 24 * * *", "* * 0 * *", "* * * 13 *", "*/0 * * * *", "a * * * *", "5-1 * * * *", "1,,2 * * * *"],
)
def test_invalid_expressions(expression):
    with pytest.raises(CronError):
        CronExpression(expression)


def test_validate_returns_expression():
    assert validate("0 3 * * *") == "0 3 * * *"
