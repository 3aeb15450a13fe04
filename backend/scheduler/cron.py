"""Cron expression parsing, validation and next-run computation.

Accepts standard 5-field expressions (``minute hour day-of-month month
day-of-week``) and 6-field expressions with a leading seconds field.
Each field supports ``*``, integers, ranges (``a-b``), lists (``a,b``)
and steps (``*/n``, ``a-b/n``, ``a/n``). Day-of-week is 0-6 with
0 = Sunday; 7 is accepted as an alias for Sunday.

Occurrences are searched with croniter over *local wall-clock* time and
then mapped to UTC with zoneinfo:

- a wall time that does not exist (spring-forward gap) fires at the
  first instant after the gap;
- a wall time that occurs twice (fall-back overlap) fires on its first
  occurrence only.

All returned instants are **naive UTC**, matching the storage columns.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from core.constants import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

# Bounded search horizon; an expression with no match inside it has no next run
SEARCH_HORIZON = timedelta(days=4 * 366 + 1)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class CronField(NamedTuple):
    name: str
    low: int
    high: int


SECOND = CronField("second", 0, 59)
MINUTE = CronField("minute", 0, 59)
HOUR = CronField("hour", 0, 23)
DAY_OF_MONTH = CronField("day-of-month", 1, 31)
MONTH = CronField("month", 1, 12)
DAY_OF_WEEK = CronField("day-of-week", 0, 6)

FIVE_FIELDS = (MINUTE, HOUR, DAY_OF_MONTH, MONTH, DAY_OF_WEEK)
SIX_FIELDS = (SECOND,) + FIVE_FIELDS


class CronSyntaxError(ValueError):
    """Raised by :func:`parse_expression` for a malformed expression."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


@dataclass(frozen=True)
class CronExpression:
    """A parsed cron expression: the matching values of every field."""

    expression: str
    tokens: tuple[str, ...]
    seconds: Optional[frozenset[int]]
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]

    @property
    def has_seconds(self) -> bool:
        return self.seconds is not None

    @property
    def dom_restricted(self) -> bool:
        return self.tokens[-3] != "*"

    @property
    def dow_restricted(self) -> bool:
        return self.tokens[-1] != "*"

    def croniter_expression(self) -> str:
        """Render the parsed sets in the form croniter expects.

        croniter takes seconds as a trailing sixth field. When both day
        fields are restricted, POSIX cron matches either; if one of them
        already covers every day the schedule runs daily, so both are
        rendered as ``*`` to keep croniter from applying AND semantics
        to a collapsed full range.
        """
        dom = _render(self.days_of_month, DAY_OF_MONTH, self.dom_restricted)
        dow = _render(self.days_of_week, DAY_OF_WEEK, self.dow_restricted)
        if self.dom_restricted and self.dow_restricted and "*" in (dom, dow):
            dom = dow = "*"
        parts = [
            _render(self.minutes, MINUTE),
            _render(self.hours, HOUR),
            dom,
            _render(self.months, MONTH),
            dow,
        ]
        if self.seconds is not None:
            parts.append(_render(self.seconds, SECOND))
        return " ".join(parts)

    def can_ever_match(self) -> bool:
        """False when the day-of-month/month combination never exists.

        ``0 0 31 2 *`` and ``0 0 30 2 *`` never fire. February 29th counts
        as possible; croniter finds the next leap year.
        """
        if not self.dom_restricted or self.dow_restricted:
            return True
        return any(
            day <= calendar.monthrange(2000, month)[1]
            for month in self.months
            for day in self.days_of_month
        )


@dataclass
class CronParseResult:
    """Outcome of validating an expression for display or persistence."""

    is_valid: bool
    description: Optional[str] = None
    next_run: Optional[datetime] = None
    error: Optional[str] = None


def _render(values: frozenset[int], field: CronField, restricted: bool = True) -> str:
    if not restricted or len(values) == field.high - field.low + 1:
        return "*"
    return ",".join(str(v) for v in sorted(values))


def _to_int(text: str) -> Optional[int]:
    if text and text.isascii() and text.isdigit():
        return int(text)
    return None


def _parse_field(token: str, field: CronField) -> frozenset[int]:
    """Expand one field token into the set of values it matches."""
    # Day-of-week accepts 7 as Sunday
    high = 7 if field is DAY_OF_WEEK else field.high

    def fail(reason: str) -> CronSyntaxError:
        return CronSyntaxError(f"Invalid {field.name} field '{token}': {reason}", field.name)

    values: set[int] = set()
    for part in token.split(","):
        if not part:
            raise fail("empty list element")

        base, has_step, step_text = part.partition("/")
        step = 1
        if has_step:
            step = _to_int(step_text)
            if step is None or step == 0:
                raise fail(f"step '{step_text}' must be a positive integer")

        if base == "*":
            start, end = field.low, field.high
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start, end = _to_int(start_text), _to_int(end_text)
            if start is None or end is None:
                raise fail(f"range '{base}' must be two integers")
            if start > end:
                raise fail(f"range start {start} is greater than end {end}")
        else:
            start = _to_int(base)
            if start is None:
                raise fail(f"'{base}' is not a number")
            # An open step stops at Saturday; 7 only names Sunday explicitly
            end = max(start, field.high) if has_step else start

        for value in (start, end):
            if value < field.low or value > high:
                raise fail(
                    f"value {value} out of range {field.low}-{field.high}"
                )

        values.update(range(start, end + 1, step))

    if field is DAY_OF_WEEK and 7 in values:
        values.discard(7)
        values.add(0)
    return frozenset(values)


def parse_expression(expression: str) -> CronExpression:
    """Parse a cron expression.

    Raises:
        TypeError: If ``expression`` is not a string.
        CronSyntaxError: If the expression is malformed or out of range.
    """
    if not isinstance(expression, str):
        raise TypeError(f"cron expression must be a string, not {type(expression).__name__}")

    tokens = tuple(expression.split())
    if len(tokens) == 5:
        fields = FIVE_FIELDS
    elif len(tokens) == 6:
        fields = SIX_FIELDS
    else:
        raise CronSyntaxError(
            "Cron expression must have 5 fields (minute hour day-of-month month "
            "day-of-week) or 6 with a leading seconds field; "
            f"got {len(tokens)}"
        )

    parsed = [_parse_field(token, field) for token, field in zip(tokens, fields)]
    seconds = parsed.pop(0) if len(fields) == 6 else None
    minutes, hours, days_of_month, months, days_of_week = parsed

    return CronExpression(
        expression=" ".join(tokens),
        tokens=tokens,
        seconds=seconds,
        minutes=minutes,
        hours=hours,
        days_of_month=days_of_month,
        months=months,
        days_of_week=days_of_week,
    )


def validate_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA time-zone name.

    Raises:
        ValueError: If the name is not a known time zone.
    """
    if not isinstance(name, str) or not name:
        raise ValueError("Time zone must be a non-empty IANA name")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown time zone '{name}'") from None


def _as_utc(moment: datetime) -> datetime:
    """Aware UTC view of ``moment``; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _wall_time(instant: datetime, tz: ZoneInfo) -> datetime:
    return instant.astimezone(tz).replace(tzinfo=None)


def _resolve_wall_time(wall: datetime, tz: ZoneInfo) -> datetime:
    """Map a local wall-clock time to an aware UTC instant.

    Ambiguous times take the first occurrence (``fold=0``). Times inside
    a spring-forward gap resolve to the transition instant, found by
    bisecting between the two offsets the gap lies between.
    """
    first = wall.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)
    if _wall_time(first, tz) == wall:
        return first

    other = wall.replace(tzinfo=tz, fold=1).astimezone(timezone.utc)
    lo = int(min(first, other).timestamp())
    hi = int(max(first, other).timestamp())
    if _wall_time(datetime.fromtimestamp(lo, timezone.utc), tz) >= wall:
        return datetime.fromtimestamp(lo, timezone.utc)
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if _wall_time(datetime.fromtimestamp(mid, timezone.utc), tz) >= wall:
            hi = mid
        else:
            lo = mid
    return datetime.fromtimestamp(hi, timezone.utc)


def next_run_after(
    expression: "str | CronExpression",
    tz_name: str,
    after: datetime,
) -> Optional[datetime]:
    """Earliest matching instant strictly after ``after``.

    Args:
        expression: Cron expression (string or already parsed).
        tz_name: IANA time zone the expression is evaluated in.
        after: Reference instant; naive values are taken as UTC.

    Returns:
        Naive UTC datetime, or None when nothing matches within the
        search horizon.

    Raises:
        CronSyntaxError: If ``expression`` is a malformed string.
        ValueError: If ``tz_name`` is unknown.
    """
    cron = expression if isinstance(expression, CronExpression) else parse_expression(expression)
    tz = validate_timezone(tz_name)

    if not cron.can_ever_match():
        return None

    after_utc = _as_utc(after)
    horizon = after_utc + SEARCH_HORIZON
    iterator = croniter(
        cron.croniter_expression(),
        _wall_time(after_utc, tz),
        max_years_between_matches=5,
    )

    while True:
        try:
            wall = iterator.get_next(datetime)
        except (CroniterBadDateError, CroniterBadCronError) as exc:
            logger.debug(f"No occurrence for '{cron.expression}' in {tz_name}: {exc}")
            return None

        candidate = _resolve_wall_time(wall, tz)
        if candidate > horizon:
            return None
        # Wall times replayed by a fall-back overlap map before ``after``
        if candidate > after_utc:
            return candidate.replace(tzinfo=None)


def describe(cron: CronExpression) -> str:
    """Human-readable summary of common expression shapes."""
    minute, hour, dom, month, dow = cron.tokens[-5:]

    if cron.has_seconds and cron.tokens[0] != "0":
        if all(token == "*" for token in cron.tokens):
            return "Every second"
        return f"Custom: {cron.expression}"

    rest_any = dom == "*" and month == "*" and dow == "*"
    if minute == "*" and hour == "*" and rest_any:
        return "Every minute"
    if minute.startswith("*/") and _to_int(minute[2:]) is not None and hour == "*" and rest_any:
        return f"Every {int(minute[2:])} minutes"
    if _to_int(minute) is not None and hour == "*" and rest_any:
        return f"Every hour at minute {int(minute)}"

    if _to_int(minute) is None or _to_int(hour) is None:
        return f"Custom: {cron.expression}"
    at = f"{int(hour):02d}:{int(minute):02d}"

    if rest_any:
        return f"Daily at {at}"
    if dom == "*" and month == "*" and _to_int(dow) is not None:
        return f"Weekly on {DAY_NAMES[int(dow) % 7]} at {at}"
    if _to_int(dom) is not None and month == "*" and dow == "*":
        return f"Monthly on day {int(dom)} at {at}"
    return f"Custom: {cron.expression}"


def parse(
    expression: str,
    timezone_name: str = DEFAULT_TIMEZONE,
    now: Optional[datetime] = None,
) -> CronParseResult:
    """Validate an expression and compute its next run.

    Never raises for bad input text; the problem is reported in
    ``error``. Passing a non-string expression is a programming error
    and raises TypeError.
    """
    try:
        cron = parse_expression(expression)
    except CronSyntaxError as exc:
        return CronParseResult(is_valid=False, error=str(exc))

    try:
        validate_timezone(timezone_name)
    except ValueError as exc:
        return CronParseResult(is_valid=False, error=str(exc))

    reference = now if now is not None else datetime.now(timezone.utc)
    return CronParseResult(
        is_valid=True,
        description=describe(cron),
        next_run=next_run_after(cron, timezone_name, reference),
    )
