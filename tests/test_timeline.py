"""
Tests for the timeline resolver node.

Covers business-day arithmetic (weekends + federal holidays), calendar-day
roll-forward, multi-hop anchor chains and cycle handling.
"""

import pytest
from datetime import date

from errors import SchemaViolationError
from nodes.timeline import (
    ACCEPTANCE,
    BusinessCalendar,
    DayType,
    Direction,
    RelativeEvent,
    SpecifiedEvent,
    add_business_days,
    add_calendar_days,
    federal_holidays,
    format_timeline_event_display,
    resolve_timeline,
    timeline_event_from_dict,
    timeline_resolver_node,
)


# ============================================================================
# Federal Holidays
# ============================================================================

class TestFederalHolidays:
    """Tests for the U.S. federal holiday table."""

    def test_fixed_holidays(self):
        holidays = federal_holidays(2026)
        assert date(2026, 1, 1) in holidays
        assert date(2026, 11, 11) in holidays
        assert date(2026, 12, 25) in holidays

    def test_floating_holidays_2026(self):
        holidays = federal_holidays(2026)
        assert date(2026, 1, 19) in holidays   # MLK
        assert date(2026, 5, 25) in holidays   # Memorial Day
        assert date(2026, 9, 7) in holidays    # Labor Day
        assert date(2026, 11, 26) in holidays  # Thanksgiving

    def test_saturday_holiday_observed_friday(self):
        """July 4th 2026 is a Saturday."""
        holidays = federal_holidays(2026)
        assert date(2026, 7, 4) in holidays
        assert date(2026, 7, 3) in holidays

    def test_juneteenth_only_from_2021(self):
        assert date(2020, 6, 19) not in federal_holidays(2020)
        assert date(2021, 6, 19) in federal_holidays(2021)

    def test_new_year_observed_on_previous_december_31(self):
        """Jan 1st 2028 is a Saturday, observed Friday Dec 31st 2027."""
        assert date(2027, 12, 31) in federal_holidays(2027)

    def test_only_dates_in_year(self):
        assert all(d.year == 2027 for d in federal_holidays(2027))


# ============================================================================
# Day Arithmetic
# ============================================================================

class TestAddBusinessDays:
    """Tests for business-day arithmetic."""

    def test_skips_weekend(self):
        """Friday + 3 business days is the following Wednesday."""
        assert add_business_days(date(2026, 1, 2), 3) == date(2026, 1, 7)

    def test_skips_observed_holiday(self):
        """Thursday + 1 business day skips observed July 4th and the weekend."""
        assert add_business_days(date(2026, 7, 2), 1) == date(2026, 7, 6)

    def test_zero_days_is_start(self):
        assert add_business_days(date(2026, 1, 3), 0) == date(2026, 1, 3)

    def test_negative_days_count_backwards(self):
        assert add_business_days(date(2026, 1, 7), -3) == date(2026, 1, 2)

    def test_extra_closures(self):
        calendar = BusinessCalendar(extra_closures=[date(2026, 1, 5)])
        assert calendar.add_business_days(date(2026, 1, 2), 1) == date(2026, 1, 6)


class TestAddCalendarDays:
    """Tests for calendar-day arithmetic with roll-forward."""

    def test_weekday_landing_unchanged(self):
        assert add_calendar_days(date(2026, 3, 2), 3) == date(2026, 3, 5)

    def test_saturday_rolls_to_monday(self):
        assert add_calendar_days(date(2026, 3, 2), 5) == date(2026, 3, 9)

    def test_holiday_monday_rolls_to_tuesday(self):
        """Lands Saturday before Memorial Day 2026, rolls to Tuesday."""
        assert add_calendar_days(date(2026, 5, 18), 5) == date(2026, 5, 26)

    def test_before_direction_also_rolls_forward(self):
        calendar = BusinessCalendar()
        # Monday - 2 days = Saturday -> Monday again
        assert calendar.add_calendar_days(date(2026, 3, 9), 2, Direction.BEFORE) == date(2026, 3, 9)


# ============================================================================
# Events
# ============================================================================

class TestTimelineEvents:
    """Tests for the event types."""

    def test_relative_rejects_negative_days(self):
        with pytest.raises(ValueError):
            RelativeEvent("closing", -1)

    def test_relative_defaults(self):
        event = RelativeEvent("closing", 30)
        assert event.anchor_point == ACCEPTANCE
        assert event.direction == Direction.AFTER
        assert event.day_type == DayType.CALENDAR

    def test_from_dict_relative(self):
        event = timeline_event_from_dict({
            "event_key": "inspectionContingency",
            "date_type": "relative",
            "relative_days": 17,
            "anchor_point": None,
        })
        assert isinstance(event, RelativeEvent)
        assert event.anchor_point == ACCEPTANCE

    def test_from_dict_round_trip_specified(self):
        event = SpecifiedEvent("closing", date(2026, 4, 15), display_name="Close of Escrow")
        assert timeline_event_from_dict(event.to_dict()) == event

    def test_from_dict_relative_without_days_is_schema_violation(self):
        with pytest.raises(SchemaViolationError):
            timeline_event_from_dict({"event_key": "closing", "date_type": "relative"})

    def test_from_dict_unknown_date_type(self):
        with pytest.raises(SchemaViolationError):
            timeline_event_from_dict({"event_key": "closing", "date_type": "floating"})


# ============================================================================
# Resolution
# ============================================================================

@pytest.fixture
def chained_events():
    """acceptance -> sellerDisclosures -> buyerReviewPeriod -> inspectionContingency."""
    return {
        "sellerDisclosures": RelativeEvent("sellerDisclosures", 7),
        "buyerReviewPeriod": RelativeEvent("buyerReviewPeriod", 17, anchor_point="sellerDisclosures"),
        "inspectionContingency": RelativeEvent(
            "inspectionContingency", 3,
            anchor_point="buyerReviewPeriod",
            day_type=DayType.BUSINESS,
        ),
        "closing": SpecifiedEvent("closing", date(2026, 4, 15)),
    }


class TestResolveTimeline:
    """Tests for anchor-graph resolution."""

    def test_multi_hop_chain(self, chained_events):
        result = resolve_timeline(chained_events, date(2026, 3, 2))

        assert result.is_complete
        assert result.dates[ACCEPTANCE] == date(2026, 3, 2)
        assert result.dates["sellerDisclosures"] == date(2026, 3, 9)
        assert result.dates["buyerReviewPeriod"] == date(2026, 3, 26)
        assert result.dates["inspectionContingency"] == date(2026, 3, 31)
        assert result.dates["closing"] == date(2026, 4, 15)

    def test_order_of_events_does_not_matter(self, chained_events):
        reversed_events = dict(reversed(list(chained_events.items())))
        forward = resolve_timeline(chained_events, date(2026, 3, 2))
        backward = resolve_timeline(reversed_events, date(2026, 3, 2))
        assert forward.dates == backward.dates

    def test_cycle_leaves_both_unresolved(self):
        events = {
            "a": RelativeEvent("a", 1, anchor_point="b"),
            "b": RelativeEvent("b", 1, anchor_point="a"),
            "closing": RelativeEvent("closing", 30),
        }
        result = resolve_timeline(events, date(2026, 3, 2))

        assert result.dates["a"] is None
        assert result.dates["b"] is None
        assert result.dates["closing"] == date(2026, 4, 1)
        assert result.cycles
        assert "dependency cycle" in result.unresolved["a"]
        assert "dependency cycle" in result.unresolved["b"]

    def test_undefined_anchor(self):
        events = {"closing": RelativeEvent("closing", 5, anchor_point="ghost")}
        result = resolve_timeline(events, date(2026, 3, 2))

        assert result.dates["closing"] is None
        assert result.unresolved["closing"] == "anchor 'ghost' is not defined"

    def test_unknown_acceptance_is_never_today(self, chained_events):
        result = resolve_timeline(chained_events, None)

        assert result.dates[ACCEPTANCE] is None
        assert result.dates["sellerDisclosures"] is None
        assert result.dates["inspectionContingency"] is None
        # Specified dates do not depend on acceptance
        assert result.dates["closing"] == date(2026, 4, 15)
        assert not result.is_complete

    def test_specified_acceptance_event_is_root(self):
        events = {
            ACCEPTANCE: SpecifiedEvent(ACCEPTANCE, date(2026, 3, 2)),
            "closing": RelativeEvent("closing", 3),
        }
        result = resolve_timeline(events, None)
        assert result.dates["closing"] == date(2026, 3, 5)

    def test_issues_sorted_by_key(self):
        events = {
            "z": RelativeEvent("z", 1, anchor_point="missing"),
            "a": RelativeEvent("a", 1, anchor_point="missing"),
        }
        issues = resolve_timeline(events, date(2026, 3, 2)).issues()
        assert [i["event_key"] for i in issues] == ["a", "z"]


class TestFormatTimelineEventDisplay:
    """Tests for the human-readable deadline text."""

    def test_not_set(self):
        assert format_timeline_event_display(RelativeEvent("closing", 30), None) == "Not set"

    def test_specified(self):
        event = SpecifiedEvent("closing", date(2026, 4, 15))
        assert format_timeline_event_display(event, date(2026, 4, 15)) == "04/15/2026 (specified)"

    def test_relative_business(self):
        event = RelativeEvent(
            "inspectionContingency", 3,
            anchor_point="buyerReviewPeriod",
            day_type=DayType.BUSINESS,
        )
        text = format_timeline_event_display(event, date(2026, 3, 31))
        assert text == "03/31/2026 (3 business days after buyerReviewPeriod)"

    def test_relative_calendar_before(self):
        event = RelativeEvent("walkthrough", 5, anchor_point="closing", direction=Direction.BEFORE)
        text = format_timeline_event_display(event, date(2026, 4, 10))
        assert text == "04/10/2026 (5 days before closing)"


class TestTimelineResolverNode:
    """Tests for the graph node wrapper."""

    def test_node_output(self, chained_events):
        state = {
            "final_terms": {"timeline_events_structured": chained_events},
            "acceptance_date": "2026-03-02",
        }
        result = timeline_resolver_node(state)

        assert result["resolved_dates"]["buyerReviewPeriod"] == "2026-03-26"
        assert result["timeline_display"]["closing"] == "04/15/2026 (specified)"
        assert result["timeline_issues"] == []
        assert result["merge_log"] == []

    def test_node_reports_unresolved(self):
        state = {
            "final_terms": {"timeline_events_structured": {"closing": RelativeEvent("closing", 30)}},
            "acceptance_date": None,
        }
        result = timeline_resolver_node(state)

        assert result["resolved_dates"]["closing"] is None
        assert result["timeline_display"]["closing"] == "Not set"
        assert any(i["event_key"] == "closing" for i in result["timeline_issues"])
        assert result["merge_log"]
