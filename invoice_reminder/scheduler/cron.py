"""Quartz-style cron expressions on top of APScheduler.

Schedules are written in the Quartz dialect used by the invoice reminder
API clients:

    second minute hour day-of-month month day-of-week [year]

``?`` means "no specific value" and exactly one of day-of-month and
day-of-week must be ``?``. Day-of-week numbers run 1 (SUN) to 7 (SAT).
APScheduler's CronTrigger speaks a different dialect (0 = MON, no ``?``),
so expressions are translated field by field before building the trigger.

Examples:
    "0 0/5 * * * ?"      every five minutes, on the minute
    "0 0 9 ? * MON-FRI"  09:00 on weekdays
    "0 30 8 L * ?"       08:30 on the last day of every month
    "0 0 12 ? * 6#3"     12:00 on the third Friday of every month
"""

from __future__ import annotations

from datetime import datetime, timedelta, tzinfo

from apscheduler.triggers.cron import CronTrigger

from invoice_reminder.exceptions import InvalidScheduleError

QUARTZ_WEEKDAYS: dict[int, str] = {
    1: "sun",
    2: "mon",
    3: "tue",
    4: "wed",
    5: "thu",
    6: "fri",
    7: "sat",
}
WEEKDAY_NUMBERS: dict[str, int] = {name: number for number, name in QUARTZ_WEEKDAYS.items()}
ORDINALS: dict[int, str] = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th", 5: "5th"}

NO_SPECIFIC_VALUE = "?"


def _invalid(expression: str, reason: str) -> InvalidScheduleError:
    return InvalidScheduleError(
        f"Invalid cron expression {expression!r}: {reason}",
        cron_expression=expression,
    )


def _weekday_number(value: str, expression: str) -> int:
    if value.isdigit():
        number = int(value)
        if number not in QUARTZ_WEEKDAYS:
            raise _invalid(expression, f"day-of-week value {number} out of range 1-7")
        return number
    try:
        return WEEKDAY_NUMBERS[value.lower()]
    except KeyError:
        raise _invalid(expression, f"unknown day-of-week {value!r}") from None


def _expand_weekday_token(token: str, expression: str) -> list[int]:
    """Expand one comma-separated day-of-week token into Quartz day numbers."""
    step = 1
    base = token
    if "/" in token:
        base, step_text = token.split("/", 1)
        if not step_text.isdigit() or int(step_text) == 0:
            raise _invalid(expression, f"bad day-of-week increment {token!r}")
        step = int(step_text)

    if base == "*":
        start, end = 1, 7
    elif "-" in base:
        first, last = base.split("-", 1)
        start = _weekday_number(first, expression)
        end = _weekday_number(last, expression)
    else:
        start = _weekday_number(base, expression)
        end = 7 if "/" in token else start

    if start <= end:
        days = list(range(start, end + 1))
    else:
        # Wrap-around range such as FRI-MON
        days = list(range(start, 8)) + list(range(1, end + 1))
    return days[::step]


def _translate_day_of_month(value: str, expression: str) -> str:
    upper = value.upper()
    if upper == "L":
        return "last"
    if "W" in upper or "L" in upper:
        raise _invalid(expression, f"day-of-month option {value!r} is not supported")
    return value.lower()


def _translate_day_of_week(value: str, expression: str) -> tuple[str, str]:
    """Return the (day, day_of_week) APScheduler fields for a Quartz day-of-week."""
    upper = value.upper()

    if "#" in value:
        weekday, _, nth = value.partition("#")
        if not nth.isdigit() or int(nth) not in ORDINALS:
            raise _invalid(expression, f"bad nth-weekday {value!r} (expected 1-5 after '#')")
        name = QUARTZ_WEEKDAYS[_weekday_number(weekday, expression)]
        return f"{ORDINALS[int(nth)]} {name}", "*"

    if upper == "L":
        return "*", QUARTZ_WEEKDAYS[7]

    if upper.endswith("L"):
        name = QUARTZ_WEEKDAYS[_weekday_number(value[:-1], expression)]
        return f"last {name}", "*"

    days: list[int] = []
    for token in value.split(","):
        if not token:
            raise _invalid(expression, "empty day-of-week list item")
        for day in _expand_weekday_token(token, expression):
            if day not in days:
                days.append(day)
    return "*", ",".join(QUARTZ_WEEKDAYS[day] for day in days)


def parse_cron_expression(expression: str, timezone: str | tzinfo = "UTC") -> CronTrigger:
    """Build an APScheduler CronTrigger from a Quartz-style cron expression.

    Args:
        expression: 6-field cron (optionally 7 with a trailing year)
        timezone: Timezone the expression is evaluated in

    Returns:
        CronTrigger ready to be handed to the scheduler

    Raises:
        InvalidScheduleError: The expression is empty, malformed or uses an
            unsupported Quartz option
    """
    if expression is None or not str(expression).strip():
        raise InvalidScheduleError("Cron expression is empty", cron_expression=expression)

    fields = expression.split()
    if len(fields) not in (6, 7):
        raise _invalid(
            expression,
            "expected 6 fields (second minute hour day-of-month month day-of-week) "
            f"plus an optional year, got {len(fields)}",
        )

    second, minute, hour, day_of_month, month, day_of_week, *rest = fields
    year = rest[0] if rest else "*"

    for label, value in (
        ("second", second),
        ("minute", minute),
        ("hour", hour),
        ("month", month),
        ("year", year),
    ):
        if NO_SPECIFIC_VALUE in value:
            raise _invalid(expression, f"'?' is not allowed in the {label} field")

    dom_unspecified = day_of_month == NO_SPECIFIC_VALUE
    dow_unspecified = day_of_week == NO_SPECIFIC_VALUE
    if dom_unspecified == dow_unspecified:
        raise _invalid(
            expression,
            "exactly one of day-of-month and day-of-week must be '?'",
        )

    if dow_unspecified:
        day = _translate_day_of_month(day_of_month, expression)
        weekday = "*"
    else:
        day, weekday = _translate_day_of_week(day_of_week, expression)

    try:
        return CronTrigger(
            year=year,
            month=month.lower(),
            day=day,
            day_of_week=weekday,
            hour=hour,
            minute=minute,
            second=second,
            timezone=timezone,
        )
    except (ValueError, TypeError, KeyError) as e:
        raise _invalid(expression, str(e)) from e


def is_valid_cron_expression(expression: str) -> bool:
    """Check an expression without raising."""
    try:
        parse_cron_expression(expression)
    except InvalidScheduleError:
        return False
    return True


def next_fire_times(
    expression: str,
    count: int = 5,
    timezone: str | tzinfo = "UTC",
    start: datetime | None = None,
) -> list[datetime]:
    """Preview the next ``count`` firings of an expression.

    Args:
        expression: Quartz-style cron expression
        count: How many fire times to compute
        timezone: Evaluation timezone
        start: Aware datetime to start from (defaults to now)

    Raises:
        InvalidScheduleError: The expression cannot be parsed
    """
    trigger = parse_cron_expression(expression, timezone)
    now = start or datetime.now(trigger.timezone)
    times: list[datetime] = []
    previous: datetime | None = None

    while len(times) < count:
        next_time = trigger.get_next_fire_time(previous, now)
        if next_time is None:
            break
        times.append(next_time)
        previous = next_time
        now = next_time + timedelta(microseconds=1)

    return times
