"""Next-run-time computation for cron and human-interval patterns.

Manifesto:
    A schedule's interval is a string a human wrote: either a cron pattern
    (``*/2 * * * * *``) or a duration phrase (``5 minutes``). Turning it into
    "the next instant this schedule should fire" must be pure, deterministic
    given the clock, and must never hand back an instant in the past, since
    that instant becomes a store TTL.

Grammar dispatch:
    ::

        parse_interval(pattern)
            ├── cron grammar (croniter)      → Ok(CronInterval)
            ├── human grammar (this module)  → Ok(HumanInterval)
            └── neither                      → Err(InvalidPattern)

    Cron wins whenever a string is syntactically valid cron. The two grammars
    do not overlap in practice: every cron field is digits, ``*``, ranges,
    steps or month/day names, while every human term pairs a number with a
    time unit.

Positive-delta correction:
    If the computed instant is not strictly after *now* (a stale
    ``last_run_at`` after a long idle period, clock drift), the computation
    is redone from *now*.

Cron forms:
    - 5 fields: ``minute hour day month weekday``
    - 6 fields: ``second minute hour day month weekday`` (seconds first)
    - ``@hourly`` / ``@daily`` / ... aliases understood by croniter

Tags:
    keybeat, scheduling, cron, croniter, human-interval, time

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from keybeat.core.errors import InvalidPattern
from keybeat.core.result import Err, Ok, Result, try_result

MILLISECOND = 1
SECOND = 1000 * MILLISECOND
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE
DAY = 24 * HOUR
WEEK = 7 * DAY
MONTH = 2_628_000_000  # 30.4 days, matches common human-interval parsers
YEAR = 365 * DAY

UNIT_MILLISECONDS: dict[str, int] = {
    "ms": MILLISECOND,
    "millisecond": MILLISECOND,
    "milliseconds": MILLISECOND,
    "sec": SECOND,
    "secs": SECOND,
    "second": SECOND,
    "seconds": SECOND,
    "min": MINUTE,
    "mins": MINUTE,
    "minute": MINUTE,
    "minutes": MINUTE,
    "hr": HOUR,
    "hrs": HOUR,
    "hour": HOUR,
    "hours": HOUR,
    "day": DAY,
    "days": DAY,
    "week": WEEK,
    "weeks": WEEK,
    "month": MONTH,
    "months": MONTH,
    "year": YEAR,
    "years": YEAR,
}

WORD_NUMBERS: dict[str, int] = {
    "a": 1,
    "an": 1,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
}

_TOKEN_RE = re.compile(r"\d+(?:\.\d+)?|[a-z]+")
_ALLOWED_RE = re.compile(r"^[a-z0-9.,\s]+$")
_BARE_NUMBER_RE = re.compile(r"^\d+$")


def _now() -> datetime:
    return datetime.now(UTC)


# ── Parsed intervals ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class CronInterval:
    """A pattern accepted by the cron grammar."""

    grammar: ClassVar[str] = "cron"

    pattern: str
    expression: str  # croniter field order (seconds last)

    def next_after(self, moment: datetime) -> datetime:
        return croniter(self.expression, moment).get_next(datetime)


@dataclass(frozen=True)
class HumanInterval:
    """A pattern accepted by the human-interval grammar."""

    grammar: ClassVar[str] = "human"

    pattern: str
    milliseconds: int

    @property
    def duration(self) -> timedelta:
        return timedelta(milliseconds=self.milliseconds)

    def next_after(self, moment: datetime) -> datetime:
        return moment + self.duration


Interval = CronInterval | HumanInterval


# ── Grammars ─────────────────────────────────────────────────────────────


def parse_cron(pattern: str) -> CronInterval:
    """Parse a 5-field, 6-field (leading seconds) or ``@alias`` cron pattern.

    Raises:
        InvalidPattern: If croniter rejects the expression
    """
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidPattern("Empty cron pattern", pattern=str(pattern))

    fields = pattern.split()
    if len(fields) == 6:
        fields = fields[1:] + fields[:1]
    elif len(fields) != 5 and not (len(fields) == 1 and fields[0].startswith("@")):
        raise InvalidPattern(
            f"Cron pattern must have 5 or 6 fields, got {len(fields)}", pattern=pattern
        )

    expression = " ".join(fields)
    try:
        croniter(expression, _now())
    except (ValueError, KeyError, TypeError) as e:
        raise InvalidPattern(f"Invalid cron pattern: {e}", pattern=pattern, cause=e) from e

    return CronInterval(pattern=pattern, expression=expression)


def parse_human_interval(pattern: str) -> int:
    """Parse a duration phrase into milliseconds.

    Accepts terms like ``2 seconds``, ``1.5 hours``, ``an hour`` joined by
    whitespace, commas or ``and``. A bare integer is milliseconds.

    Examples:
        >>> parse_human_interval("5 minutes")
        300000
        >>> parse_human_interval("1 hour and 30 minutes")
        5400000

    Raises:
        InvalidPattern: For unknown units, dangling numbers or a
            non-positive total
    """
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidPattern("Empty human interval", pattern=str(pattern))

    text = pattern.strip().lower()
    if _BARE_NUMBER_RE.match(text):
        total = int(text)
    else:
        if not _ALLOWED_RE.match(text):
            raise InvalidPattern(f"Invalid human interval: {pattern!r}", pattern=pattern)

        tokens = [t for t in _TOKEN_RE.findall(text) if t != "and"]
        if not tokens or len(tokens) % 2:
            raise InvalidPattern(f"Invalid human interval: {pattern!r}", pattern=pattern)

        total = 0.0
        for number, unit in zip(tokens[::2], tokens[1::2]):
            if number in WORD_NUMBERS:
                amount = float(WORD_NUMBERS[number])
            else:
                try:
                    amount = float(number)
                except ValueError:
                    raise InvalidPattern(
                        f"Invalid number {number!r} in human interval", pattern=pattern
                    ) from None
            if unit not in UNIT_MILLISECONDS:
                raise InvalidPattern(f"Unknown time unit {unit!r}", pattern=pattern)
            total += amount * UNIT_MILLISECONDS[unit]
        total = round(total)

    if total <= 0:
        raise InvalidPattern("Human interval must be a positive duration", pattern=pattern)
    return int(total)


def parse_human(pattern: str) -> HumanInterval:
    return HumanInterval(pattern=pattern, milliseconds=parse_human_interval(pattern))


def parse_interval(pattern: str) -> Result[Interval]:
    """Parse a pattern with the cron grammar first, then the human grammar.

    Returns:
        Ok(CronInterval) / Ok(HumanInterval), or Err(InvalidPattern) naming
        both grammar failures
    """
    cron = try_result(lambda: parse_cron(pattern))
    if cron.is_ok():
        return cron

    human = try_result(lambda: parse_human(pattern))
    if human.is_ok():
        return human

    return Err(
        InvalidPattern(
            f"Pattern {pattern!r} matched no grammar "
            f"(cron: {cron.error}; human: {human.error})",
            pattern=str(pattern),
        )
    )


# ── Next run computation ─────────────────────────────────────────────────


def _zone_for(timezone: str | None) -> tzinfo | None:
    if not timezone:
        return None
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidPattern(f"Unknown timezone {timezone!r}", cause=e).with_context(
            timezone=timezone
        ) from e


def _localize(moment: datetime, zone: tzinfo | None) -> datetime:
    # Naive datetimes are local wall-clock time
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.astimezone(zone) if zone else moment.astimezone()


def _next_run_time(
    interval: Interval,
    last_run_at: datetime | None,
    timezone: str | None,
) -> datetime:
    zone = _zone_for(timezone)
    now = _now()
    next_run = interval.next_after(_localize(last_run_at or now, zone))

    if next_run <= now:
        next_run = interval.next_after(_localize(now, zone))

    return next_run


def next_cron_run_time_for(
    pattern: str,
    last_run_at: datetime | None = None,
    timezone: str | None = None,
) -> datetime:
    """Compute the soonest instant strictly after ``last_run_at`` matching a cron pattern.

    Args:
        pattern: 5- or 6-field cron pattern
        last_run_at: Base instant (default: now)
        timezone: IANA timezone for evaluating the pattern (default: local)

    Returns:
        Timezone-aware datetime strictly in the future

    Raises:
        InvalidPattern: If the pattern is not valid cron

    Example:
        >>> next_cron_run_time_for("*/5 * * * * *", timezone="Africa/Nairobi")
    """
    return _next_run_time(parse_cron(pattern), last_run_at, timezone)


def next_human_run_time_for(
    pattern: str,
    last_run_at: datetime | None = None,
    timezone: str | None = None,
) -> datetime:
    """Compute ``last_run_at + duration`` for a human interval.

    Raises:
        InvalidPattern: If the phrase is not a valid human interval
    """
    return _next_run_time(parse_human(pattern), last_run_at, timezone)


def next_run_time_for(
    pattern: str,
    last_run_at: datetime | None = None,
    timezone: str | None = None,
) -> datetime:
    """Compute the next run time from either grammar (cron first).

    Raises:
        InvalidPattern: If no grammar matched
    """
    match parse_interval(pattern):
        case Ok(interval):
            return _next_run_time(interval, last_run_at, timezone)
        case Err(error):
            raise error


def upcoming_run_times(
    pattern: str,
    count: int = 5,
    start: datetime | None = None,
    timezone: str | None = None,
) -> list[datetime]:
    """Preview the next ``count`` trigger instants of a pattern.

    Raises:
        InvalidPattern: If no grammar matched
    """
    interval = parse_interval(pattern).unwrap()
    zone = _zone_for(timezone)

    times: list[datetime] = []
    moment = _next_run_time(interval, start, timezone)
    while len(times) < count:
        times.append(moment)
        moment = interval.next_after(_localize(moment, zone))
    return times


__all__ = [
    "CronInterval",
    "HumanInterval",
    "Interval",
    "parse_cron",
    "parse_human",
    "parse_human_interval",
    "parse_interval",
    "next_cron_run_time_for",
    "next_human_run_time_for",
    "next_run_time_for",
    "upcoming_run_times",
]
