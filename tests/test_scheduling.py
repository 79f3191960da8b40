from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from taskweave.models import CronSchedule, IntervalSchedule, schedule_adapter
from taskweave.scheduling import (
    calculate_next_run,
    describe,
    interval_delay,
    is_valid_cron,
)

NOW = datetime(2025, 3, 10, 8, 15, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("value", "unit", "expected"),
    [
        (30, "minutes", timedelta(minutes=30)),
        (2, "hours", timedelta(hours=2)),
        (1, "days", timedelta(days=1)),
        (1, "weeks", timedelta(weeks=1)),
    ],
)
def test_interval_is_exactly_now_plus_period(
    value: int, unit: str, expected: timedelta
) -> None:
    spec = IntervalSchedule(value=value, unit=unit)  # type: ignore[arg-type]
    assert calculate_next_run(spec, NOW) == NOW + expected
    assert interval_delay(spec) == expected


def test_cron_next_run_is_next_match() -> None:
    spec = CronSchedule(expression="0 9 * * *")
    assert calculate_next_run(spec, NOW) == datetime(
        2025, 3, 10, 9, 0, tzinfo=timezone.utc
    )
    assert interval_delay(spec) is None


def test_cron_next_run_is_strictly_after_now() -> None:
    on_the_hour = datetime(2025, 3, 10, 9, 0, 0, tzinfo=timezone.utc)
    spec = CronSchedule(expression="0 9 * * *")

    next_run = calculate_next_run(spec, on_the_hour)

    assert next_run is not None
    assert next_run > on_the_hour
    assert next_run == datetime(2025, 3, 11, 9, 0, tzinfo=timezone.utc)


def test_cron_is_pure_function_of_inputs() -> None:
    spec = CronSchedule(expression="*/15 * * * *")
    assert calculate_next_run(spec, NOW) == calculate_next_run(spec, NOW)


def test_invalid_cron_yields_none() -> None:
    assert calculate_next_run(CronSchedule(expression="not a cron"), NOW) is None
    assert calculate_next_run(CronSchedule(expression="61 * * * *"), NOW) is None


def test_is_valid_cron() -> None:
    assert is_valid_cron("0 9 * * 1-5")
    assert not is_valid_cron("every day")
    assert not is_valid_cron("   ")


def test_schedule_union_discriminates_on_type() -> None:
    cron = schedule_adapter.validate_python({"type": "cron", "expression": "0 * * * *"})
    interval = schedule_adapter.validate_python(
        {"type": "interval", "value": 5, "unit": "hours"}
    )
    assert isinstance(cron, CronSchedule)
    assert isinstance(interval, IntervalSchedule)


@pytest.mark.parametrize(
    "data",
    [
        {"type": "interval", "value": 0, "unit": "minutes"},
        {"type": "interval", "value": 5, "unit": "seconds"},
        {"type": "once", "value": "2025-01-01"},
        {"type": "cron", "expression": ""},
    ],
)
def test_schedule_union_rejects_malformed(data: dict) -> None:
    with pytest.raises(ValidationError):
        schedule_adapter.validate_python(data)


def test_describe() -> None:
    assert describe(IntervalSchedule(value=1, unit="hours")) == "Every 1 hour"
    assert describe(IntervalSchedule(value=3, unit="days")) == "Every 3 days"
    assert (
        describe(CronSchedule(expression="0 9 * * *"), NOW)
        == "Cron: 0 9 * * * (next: 2025-03-10T09:00:00+00:00)"
    )
    assert describe(CronSchedule(expression="bogus")) == "Cron: bogus (invalid)"
