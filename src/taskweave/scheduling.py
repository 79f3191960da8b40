import logging
from datetime import datetime, timedelta, timezone

from croniter import croniter

from taskweave.models import CronSchedule, IntervalSchedule

log = logging.getLogger(__name__)

_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
}


def interval_delay(spec: CronSchedule | IntervalSchedule) -> timedelta | None:
    """Return the fixed period of an interval spec, ``None`` for cron specs."""
    if isinstance(spec, IntervalSchedule):
        return timedelta(seconds=spec.value * _UNIT_SECONDS[spec.unit])
    return None


def is_valid_cron(expression: str) -> bool:
    try:
        return bool(expression.strip()) and croniter.is_valid(expression)
    except Exception:
        return False


def calculate_next_run(
    spec: CronSchedule | IntervalSchedule, now: datetime | None = None
) -> datetime | None:
    """Compute the next run time for a schedule.

    - interval: exactly ``now + value * unit``
    - cron: the next fire time strictly after ``now``

    Returns ``None`` when the spec cannot be evaluated (malformed cron
    expression); callers must treat that as "do not schedule".
    """
    if now is None:
        now = datetime.now(timezone.utc)

    delay = interval_delay(spec)
    if delay is not None:
        return now + delay

    try:
        next_run = croniter(spec.expression, now).get_next(datetime)
    except Exception as e:
        log.warning("Cannot compute next run for cron %r: %s", spec.expression, e)
        return None
    if next_run <= now:
        # croniter can return `now` itself for second-precision bases
        next_run = croniter(spec.expression, now + timedelta(seconds=1)).get_next(
            datetime
        )
    return next_run


def describe(spec: CronSchedule | IntervalSchedule, now: datetime | None = None) -> str:
    if isinstance(spec, IntervalSchedule):
        unit = spec.unit if spec.value != 1 else spec.unit.rstrip("s")
        return f"Every {spec.value} {unit}"
    next_run = calculate_next_run(spec, now)
    if next_run is None:
        return f"Cron: {spec.expression} (invalid)"
    return f"Cron: {spec.expression} (next: {next_run.isoformat()})"
