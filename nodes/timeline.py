"""
Timeline Resolver Node - Relative Deadline Resolution

Turns the structured timeline events carried on the final terms into
absolute dates. An event is either pinned to a specified date or expressed
as N calendar/business days before/after another event, which may itself be
relative ("buyer review period" -> "seller disclosures" -> "acceptance").

Resolution is a memoized depth-first walk over the anchor graph. A cycle or
a missing anchor leaves the affected events unresolved (None) and records an
issue; nothing is ever defaulted to today.

Business-day arithmetic skips weekends and U.S. federal holidays (observed
dates). Calendar-day arithmetic lands on the raw date and then rolls
forward to the next business day if it hits a weekend or holiday.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from errors import SchemaViolationError

logger = logging.getLogger(__name__)


# ============================================================================
# Event Model
# ============================================================================

# Reserved root of every anchor chain
ACCEPTANCE = "acceptance"

STANDARD_EVENT_KEYS = (
    "acceptance",
    "initialDeposit",
    "sellerDisclosures",
    "buyerReviewPeriod",
    "inspectionContingency",
    "appraisalContingency",
    "loanContingency",
    "closing",
)


class DateType(str, Enum):
    SPECIFIED = "specified"
    RELATIVE = "relative"


class Direction(str, Enum):
    AFTER = "after"
    BEFORE = "before"


class DayType(str, Enum):
    CALENDAR = "calendar"
    BUSINESS = "business"


@dataclass(frozen=True)
class SpecifiedEvent:
    """A deadline pinned to an absolute date."""
    event_key: str
    specified_date: date
    display_name: Optional[str] = None
    description: Optional[str] = None

    @property
    def date_type(self) -> DateType:
        return DateType.SPECIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_key": self.event_key,
            "date_type": self.date_type.value,
            "specified_date": self.specified_date.isoformat(),
            "display_name": self.display_name,
            "description": self.description,
        }


@dataclass(frozen=True)
class RelativeEvent:
    """A deadline N days before/after another event."""
    event_key: str
    relative_days: int
    anchor_point: str = ACCEPTANCE
    direction: Direction = Direction.AFTER
    day_type: DayType = DayType.CALENDAR
    display_name: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self):
        if self.relative_days < 0:
            raise ValueError(f"{self.event_key}: relative_days must be >= 0")
        if not self.anchor_point:
            raise ValueError(f"{self.event_key}: relative event needs an anchor_point")

    @property
    def date_type(self) -> DateType:
        return DateType.RELATIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_key": self.event_key,
            "date_type": self.date_type.value,
            "relative_days": self.relative_days,
            "anchor_point": self.anchor_point,
            "direction": self.direction.value,
            "day_type": self.day_type.value,
            "display_name": self.display_name,
            "description": self.description,
        }


TimelineEvent = Union[SpecifiedEvent, RelativeEvent]


def timeline_event_from_dict(data: Mapping[str, Any]) -> TimelineEvent:
    """
    Build a TimelineEvent from its ``to_dict`` form.

    Raises SchemaViolationError for combinations the event types cannot
    represent (e.g. a relative event without a day count).
    """
    key = data.get("event_key")
    if not key:
        raise SchemaViolationError("timeline_event", "event_key is required")

    date_type = data.get("date_type")
    try:
        if date_type == DateType.SPECIFIED.value:
            raw = data.get("specified_date")
            if raw is None:
                raise ValueError("specified event needs specified_date")
            specified = raw if isinstance(raw, date) else date.fromisoformat(str(raw))
            return SpecifiedEvent(
                event_key=key,
                specified_date=specified,
                display_name=data.get("display_name"),
                description=data.get("description"),
            )
        if date_type == DateType.RELATIVE.value:
            if data.get("relative_days") is None:
                raise ValueError("relative event needs relative_days")
            return RelativeEvent(
                event_key=key,
                relative_days=int(data["relative_days"]),
                anchor_point=data.get("anchor_point") or ACCEPTANCE,
                direction=Direction(data.get("direction") or Direction.AFTER.value),
                day_type=DayType(data.get("day_type") or DayType.CALENDAR.value),
                display_name=data.get("display_name"),
                description=data.get("description"),
            )
    except ValueError as e:
        raise SchemaViolationError("timeline_event", f"{key}: {e}") from e

    raise SchemaViolationError("timeline_event", f"{key}: unknown date_type {date_type!r}")


# ============================================================================
# Business-Day Calendar
# ============================================================================

def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    """n-th (1-based) given weekday of a month. Monday is 0."""
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def _last_weekday(year: int, month: int, weekday: int) -> date:
    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def _observed(day: date) -> date:
    """Saturday holidays are observed Friday, Sunday holidays Monday."""
    if day.weekday() == 5:
        return day - timedelta(days=1)
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


@lru_cache(maxsize=64)
def federal_holidays(year: int) -> FrozenSet[date]:
    """
    U.S. federal holidays falling in ``year``, actual and observed dates.

    New Year's Day of the following year is included when it is observed
    on December 31st.
    """
    fixed = [
        date(year, 1, 1),
        date(year, 7, 4),
        date(year, 11, 11),
        date(year, 12, 25),
    ]
    if year >= 2021:
        fixed.append(date(year, 6, 19))

    floating = [
        _nth_weekday(year, 1, 0, 3),   # Martin Luther King Jr. Day
        _nth_weekday(year, 2, 0, 3),   # Washington's Birthday
        _last_weekday(year, 5, 0),     # Memorial Day
        _nth_weekday(year, 9, 0, 1),   # Labor Day
        _nth_weekday(year, 10, 0, 2),  # Columbus Day
        _nth_weekday(year, 11, 3, 4),  # Thanksgiving
    ]

    days = set(floating)
    for day in fixed:
        days.add(day)
        days.add(_observed(day))

    next_new_year = _observed(date(year + 1, 1, 1))
    if next_new_year.year == year:
        days.add(next_new_year)

    return frozenset(d for d in days if d.year == year)


class BusinessCalendar:
    """Weekend + federal holiday calendar, with optional extra closure dates."""

    def __init__(self, extra_closures: Iterable[date] = ()):
        self.extra_closures = frozenset(extra_closures)

    def is_holiday(self, day: date) -> bool:
        return day in federal_holidays(day.year) or day in self.extra_closures

    def is_business_day(self, day: date) -> bool:
        return day.weekday() < 5 and not self.is_holiday(day)

    def roll_forward(self, day: date) -> date:
        while not self.is_business_day(day):
            day += timedelta(days=1)
        return day

    def add_business_days(
        self,
        start: date,
        days: int,
        direction: Direction = Direction.AFTER,
    ) -> date:
        """Step one day at a time, counting only business days."""
        step = timedelta(days=1 if direction == Direction.AFTER else -1)
        current = start
        counted = 0
        while counted < days:
            current += step
            if self.is_business_day(current):
                counted += 1
        return current

    def add_calendar_days(
        self,
        start: date,
        days: int,
        direction: Direction = Direction.AFTER,
    ) -> date:
        """Raw day offset, then roll forward off weekends/holidays."""
        delta = timedelta(days=days)
        landing = start + delta if direction == Direction.AFTER else start - delta
        return self.roll_forward(landing)


DEFAULT_CALENDAR = BusinessCalendar()


def add_business_days(start: date, days: int, calendar: Optional[BusinessCalendar] = None) -> date:
    """Add (days >= 0) or subtract (days < 0) business days."""
    calendar = calendar or DEFAULT_CALENDAR
    direction = Direction.AFTER if days >= 0 else Direction.BEFORE
    return calendar.add_business_days(start, abs(days), direction)


def add_calendar_days(start: date, days: int, calendar: Optional[BusinessCalendar] = None) -> date:
    calendar = calendar or DEFAULT_CALENDAR
    direction = Direction.AFTER if days >= 0 else Direction.BEFORE
    return calendar.add_calendar_days(start, abs(days), direction)


# ============================================================================
# Graph Resolution
# ============================================================================

@dataclass
class TimelineResolution:
    """Outcome of resolving one document's timeline."""
    dates: Dict[str, Optional[date]] = field(default_factory=dict)
    unresolved: Dict[str, str] = field(default_factory=dict)  # event_key -> reason
    cycles: List[List[str]] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unresolved

    def iso_dates(self) -> Dict[str, Optional[str]]:
        return {k: (v.isoformat() if v else None) for k, v in self.dates.items()}

    def issues(self) -> List[Dict[str, Any]]:
        return [
            {"event_key": key, "reason": reason}
            for key, reason in sorted(self.unresolved.items())
        ]


def resolve_timeline(
    events: Mapping[str, TimelineEvent],
    acceptance_date: Optional[date],
    calendar: Optional[BusinessCalendar] = None,
) -> TimelineResolution:
    """
    Resolve every event to an absolute date.

    ``acceptance`` is the reserved root. It takes ``acceptance_date`` when
    given, else a specified ``acceptance`` event from ``events`` if present.
    """
    calendar = calendar or DEFAULT_CALENDAR
    result = TimelineResolution()
    resolved: Dict[str, Optional[date]] = {}

    root = acceptance_date
    root_event = events.get(ACCEPTANCE)
    if root is None and isinstance(root_event, SpecifiedEvent):
        root = root_event.specified_date
    elif isinstance(root_event, RelativeEvent):
        logger.warning("Ignoring relative definition of reserved 'acceptance' event")

    resolved[ACCEPTANCE] = root
    if root is None:
        result.unresolved[ACCEPTANCE] = "acceptance date is unknown"

    for key in events:
        _resolve_event(key, events, resolved, [], calendar, result)

    result.dates = {key: resolved.get(key) for key in [ACCEPTANCE, *events.keys()]}
    if result.unresolved:
        logger.warning(f"Timeline left {len(result.unresolved)} event(s) unresolved")
    return result


def _resolve_event(
    key: str,
    events: Mapping[str, TimelineEvent],
    resolved: Dict[str, Optional[date]],
    in_progress: List[str],
    calendar: BusinessCalendar,
    result: TimelineResolution,
) -> Optional[date]:
    """
    Depth-first resolution of one event.

    ``resolved`` is the memo of finished events (None = unresolved) and
    ``in_progress`` the current anchor path, used to detect cycles.
    """
    if key in resolved:
        return resolved[key]

    if key in in_progress:
        cycle = in_progress[in_progress.index(key):] + [key]
        result.cycles.append(cycle)
        logger.warning(f"Timeline dependency cycle: {' -> '.join(cycle)}")
        return None

    event = events.get(key)
    if event is None:
        return None

    if isinstance(event, SpecifiedEvent):
        resolved[key] = event.specified_date
        return event.specified_date

    in_progress.append(key)
    anchor_date = _resolve_event(event.anchor_point, events, resolved, in_progress, calendar, result)
    in_progress.pop()

    if anchor_date is None:
        resolved[key] = None
        result.unresolved[key] = _unresolved_reason(key, event.anchor_point, events, result)
        return None

    if event.day_type == DayType.BUSINESS:
        value = calendar.add_business_days(anchor_date, event.relative_days, event.direction)
    else:
        value = calendar.add_calendar_days(anchor_date, event.relative_days, event.direction)

    resolved[key] = value
    return value


def _unresolved_reason(
    key: str,
    anchor: str,
    events: Mapping[str, TimelineEvent],
    result: TimelineResolution,
) -> str:
    for cycle in result.cycles:
        if key in cycle:
            return "dependency cycle: " + " -> ".join(cycle)
    if anchor != ACCEPTANCE and anchor not in events:
        return f"anchor '{anchor}' is not defined"
    return f"anchor '{anchor}' could not be resolved"


# ============================================================================
# Display
# ============================================================================

def format_timeline_event_display(event: TimelineEvent, effective_date: Optional[date]) -> str:
    """
    Human-readable deadline, e.g. ``03/05/2026 (3 business days after acceptance)``.
    """
    if effective_date is None:
        return "Not set"

    display_date = effective_date.strftime("%m/%d/%Y")
    if isinstance(event, SpecifiedEvent):
        return f"{display_date} (specified)"

    day_text = "business days" if event.day_type == DayType.BUSINESS else "days"
    return (
        f"{display_date} ({event.relative_days} {day_text} "
        f"{event.direction.value} {event.anchor_point})"
    )


# ============================================================================
# Main Node Function
# ============================================================================

def timeline_resolver_node(state: Dict[str, Any]) -> dict:
    """
    Node: Timeline Resolver

    Resolves ``final_terms["timeline_events_structured"]`` against the merged
    acceptance date.

    Returns:
        dict with resolved_dates, timeline_display, timeline_issues, merge_log
    """
    print("--- NODE: Timeline Resolver ---")

    final_terms = state.get("final_terms") or {}
    events: Mapping[str, TimelineEvent] = final_terms.get("timeline_events_structured") or {}
    acceptance_iso = state.get("acceptance_date")
    acceptance = date.fromisoformat(acceptance_iso) if acceptance_iso else None

    resolution = resolve_timeline(events, acceptance)

    display = {
        key: format_timeline_event_display(event, resolution.dates.get(key))
        for key, event in events.items()
    }
    log = [
        f"Timeline: {key} unresolved ({reason})"
        for key, reason in sorted(resolution.unresolved.items())
    ]

    logger.info(
        f"Resolved {sum(1 for v in resolution.dates.values() if v)} of "
        f"{len(resolution.dates)} timeline event(s)"
    )

    return {
        "resolved_dates": resolution.iso_dates(),
        "timeline_display": display,
        "timeline_issues": resolution.issues(),
        "merge_log": log,
    }
