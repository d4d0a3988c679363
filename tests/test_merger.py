"""
Tests for the field merge node: merge ordering, non-interference,
acceptance date selection and the counter chain.
"""

import copy
import json

from nodes.counters import CounterOfferUnit, CounterType, build_counter_units
from nodes.merger import (
    MergeDocument,
    build_counter_chain,
    build_merge_sequence,
    determine_acceptance_date,
    field_merge_node,
    merge_terms,
)
from nodes.timeline import RelativeEvent
from state import PageRole

from conftest import make_page


BASE_TERMS = {
    "purchase_price": 500000.0,
    "closing_date": None,
    "effective_date": None,
    "financing": {"is_all_cash": False, "loan_type": "FHA", "loan_amount": 400000.0},
    "contingencies": {"inspection_days": 17, "appraisal_days": None},
}


def unit(counter_type, number, first_page, buyer=(), seller=(), issues=(), fields=None):
    page = make_page(first_page, counter_type.value, PageRole.COUNTER_OFFER, buyer=buyer, seller=seller)
    return CounterOfferUnit(
        type=counter_type,
        number=number,
        pages=(page,),
        modified_fields=fields or {},
        issues=tuple(issues),
    )


def document(label, priority, fields, signed=None, page=1, counter=None):
    return MergeDocument(
        label=label,
        priority=priority,
        latest_signature_date=signed,
        first_page=page,
        modified_fields=fields,
        unit=counter,
    )


# ============================================================================
# Merge
# ============================================================================

class TestMergeTerms:
    """Tests for field-level merging."""

    def test_unmentioned_fields_keep_base_values(self):
        docs = [document("SCO #1", 2, {"financing": {"loan_amount": 380000.0}})]
        result = merge_terms(BASE_TERMS, docs, "RPA")

        assert result.final_terms["financing"] == {"is_all_cash": False, "loan_type": "FHA", "loan_amount": 380000.0}
        assert result.final_terms["purchase_price"] == 500000.0
        # base None stays None
        assert result.final_terms["closing_date"] is None

    def test_base_terms_not_mutated(self):
        before = copy.deepcopy(BASE_TERMS)
        merge_terms(BASE_TERMS, [document("SCO #1", 2, {"purchase_price": 510000.0})])
        assert BASE_TERMS == before

    def test_later_document_wins(self):
        docs = [
            document("SCO #1", 2, {"purchase_price": 510000.0}),
            document("BCO #1", 2, {"purchase_price": 505000.0}),
        ]
        result = merge_terms(BASE_TERMS, docs, "RPA")

        assert result.final_terms["purchase_price"] == 505000.0
        assert result.provenance["purchase_price"] == "BCO #1"

    def test_provenance_and_log(self):
        docs = [document("SCO #1", 2, {"contingencies": {"inspection_days": 10}})]
        result = merge_terms(BASE_TERMS, docs, "RPA")

        assert result.provenance["contingencies.inspection_days"] == "SCO #1"
        assert result.provenance["purchase_price"] == "RPA"
        assert result.log == ["SCO #1: contingencies.inspection_days 17 -> 10"]

    def test_restated_event_moves_day_count(self):
        base = dict(BASE_TERMS, timeline_events_structured={
            "inspectionContingency": RelativeEvent("inspectionContingency", 17),
        })
        restated = {"timeline_events_structured": {
            "inspectionContingency": RelativeEvent("inspectionContingency", 10),
        }}
        result = merge_terms(base, [document("SCO #1", 2, restated)], "RPA")

        assert result.final_terms["timeline_events_structured"]["inspectionContingency"].relative_days == 10
        assert result.final_terms["contingencies"]["inspection_days"] == 10
        assert result.provenance["contingencies.inspection_days"] == "SCO #1"
        assert "SCO #1: contingencies.inspection_days 17 -> 10 (from timeline)" in result.log
        # untouched counts keep their base values
        assert result.final_terms["contingencies"]["appraisal_days"] is None
        assert result.provenance["financing.loan_amount"] == "RPA"

    def test_explicit_day_count_beats_restated_event(self):
        fields = {
            "contingencies": {"inspection_days": 12},
            "timeline_events_structured": {"inspectionContingency": RelativeEvent("inspectionContingency", 10)},
        }
        result = merge_terms(BASE_TERMS, [document("SCO #1", 2, fields)], "RPA")
        assert result.final_terms["contingencies"]["inspection_days"] == 12

    def test_all_cash_keeps_loan_days_empty(self):
        base = dict(BASE_TERMS, financing={"is_all_cash": True, "loan_type": None, "loan_amount": None},
                    contingencies={"inspection_days": 17, "loan_days": None})
        fields = {"timeline_events_structured": {"loanContingency": RelativeEvent("loanContingency", 21)}}
        result = merge_terms(base, [document("ADM (p. 4)", 2, fields)], "RPA")
        assert result.final_terms["contingencies"]["loan_days"] is None

    def test_idempotent(self):
        docs = [
            document("SCO #1", 2, {"purchase_price": 510000.0}),
            document("ADM (p. 7)", 2.5, {"closing_date": "2026-04-30"}),
        ]
        first = merge_terms(BASE_TERMS, docs, "RPA")
        second = merge_terms(BASE_TERMS, docs, "RPA")

        assert json.dumps(first.final_terms, sort_keys=True) == json.dumps(second.final_terms, sort_keys=True)
        assert first.provenance == second.provenance


class TestBuildMergeSequence:
    """Tests for assembling merge documents."""

    def test_invalid_units_skipped(self):
        units = [
            unit(CounterType.SCO, 1, 2, buyer=["2026-03-04"], seller=["2026-03-03"], fields={"purchase_price": 510000.0}),
            unit(CounterType.BCO, 1, 3, buyer=["2026-03-05"], issues=["missing seller signature"]),
        ]
        docs, skipped = build_merge_sequence([], {2: 2, 3: 2}, units, {})

        assert [d.label for d in docs] == ["SCO #1"]
        assert skipped == ["BCO #1 not merged: missing seller signature"]

    def test_addendum_with_fields_included(self):
        pages = [
            make_page(1, "RPA", PageRole.MAIN_CONTRACT),
            make_page(4, "ADM", PageRole.ADDENDUM, buyer=["2026-03-10"]),
            make_page(5, role=PageRole.SIGNATURES),
            make_page(6, "ADM", PageRole.ADDENDUM),
        ]
        page_fields = {
            1: {"purchase_price": 1.0},
            4: {"closing_date": "2026-04-30"},
            5: {"purchase_price": 2.0},
        }
        docs, _ = build_merge_sequence(pages, {1: 1, 4: 2, 5: 3, 6: 2}, [], page_fields)

        assert [d.label for d in docs] == ["ADM (p. 4)"]

    def test_merge_order(self):
        counter = unit(CounterType.SCO, 1, 2, buyer=["2026-03-04"], seller=["2026-03-03"])
        pages = [
            make_page(3, "ADM", PageRole.ADDENDUM, buyer=["2026-03-05"]),
            make_page(8, role=PageRole.BROKER_INFO),
        ]
        page_fields = {3: {"closing_date": "2026-04-30"}, 8: {"sellers_broker": {"agent_name": "Pat"}}}
        docs, _ = build_merge_sequence(pages, {2: 2, 3: 2.5, 8: 4}, [counter], page_fields)

        assert [d.label for d in docs] == ["SCO #1", "ADM (p. 3)", "BROKER_INFO (p. 8)"]


# ============================================================================
# Acceptance Date
# ============================================================================

class TestDetermineAcceptanceDate:
    """Tests for acceptance date selection."""

    def test_highest_valid_counter_decides(self):
        """BCO #1 valid, SCO #2 invalid, BCO #3 valid: BCO #3's seller date."""
        units = [
            unit(CounterType.BCO, 1, 2, buyer=["2026-03-04"], seller=["2026-03-05"]),
            unit(CounterType.SCO, 2, 3, seller=["2026-03-06"], issues=["missing buyer signature"]),
            unit(CounterType.BCO, 3, 5, buyer=["2026-03-08"], seller=["2026-03-09"]),
        ]
        decision = determine_acceptance_date(units, [])

        assert decision.date == "2026-03-09"
        assert decision.source == "BCO #3 seller signature"

    def test_seller_counter_accepted_by_buyer(self):
        units = [unit(CounterType.SCO, 1, 2, buyer=["2026-03-04"], seller=["2026-03-03"])]
        decision = determine_acceptance_date(units, [])

        assert decision.date == "2026-03-04"
        assert decision.source == "SCO #1 buyer signature"

    def test_no_counters_uses_base_signatures(self):
        pages = [
            make_page(1, "RPA", PageRole.MAIN_CONTRACT, buyer=["2026-03-01"]),
            make_page(2, "RPA", PageRole.SIGNATURES, seller=["2026-03-02"]),
            make_page(3, "ADM", PageRole.ADDENDUM, seller=["2026-03-20"]),
        ]
        decision = determine_acceptance_date([], pages)

        assert decision.date == "2026-03-02"
        assert decision.source == "base contract signatures"

    def test_invalid_counters_fall_back_to_base(self):
        units = [unit(CounterType.SCO, 1, 2, seller=["2026-03-03"], issues=["missing buyer signature"])]
        pages = [make_page(1, "RPA", PageRole.MAIN_CONTRACT, buyer=["2026-03-01"], seller=["2026-03-02"])]

        assert determine_acceptance_date(units, pages).date == "2026-03-02"

    def test_unknown_type_never_decides(self):
        units = [unit(CounterType.UNKNOWN, 1, 2, buyer=["2026-03-09"], seller=["2026-03-09"])]
        pages = [make_page(1, "RPA", PageRole.MAIN_CONTRACT, buyer=["2026-03-01"], seller=["2026-03-02"])]

        assert determine_acceptance_date(units, pages).date == "2026-03-02"

    def test_extracted_date_fallback(self):
        decision = determine_acceptance_date([], [], fallback_date="2026-03-02")
        assert decision.date == "2026-03-02"
        assert decision.source == "extracted acceptance date"

    def test_no_dates(self):
        assert determine_acceptance_date([], []).date is None


class TestCounterChain:
    """Tests for the human-readable counter chain."""

    def test_chain_lists_counters_only(self):
        sco = unit(CounterType.SCO, 1, 2)
        docs = [
            document("SCO #1", 2, {}, counter=sco),
            document("ADM (p. 4)", 2, {"closing_date": "2026-04-30"}),
        ]
        assert build_counter_chain("RPA", docs) == "RPA → SCO #1"

    def test_no_counters(self):
        assert build_counter_chain("RPA", []) == "RPA"


# ============================================================================
# Node
# ============================================================================

class TestFieldMergeNode:
    """Tests for the graph node wrapper."""

    def test_node_output(self):
        pages = [
            make_page(1, "RPA", PageRole.MAIN_CONTRACT, buyer=["2026-03-01"], seller=["2026-03-02"]),
            make_page(2, "SCO", PageRole.COUNTER_OFFER, seller=["2026-03-03"]),
            make_page(3, "SCO", PageRole.COUNTER_OFFER, buyer=["2026-03-04"]),
        ]
        page_fields = {2: {"purchase_price": 510000.0}}
        state = {
            "pages": pages,
            "page_priorities": {1: 1, 2: 2, 3: 2},
            "page_fields": page_fields,
            "counter_units": build_counter_units(pages, page_fields),
            "base_terms": BASE_TERMS,
        }
        result = field_merge_node(state)

        assert result["final_terms"]["purchase_price"] == 510000.0
        assert result["final_terms"]["effective_date"] == "2026-03-04"
        assert result["acceptance_source"] == "SCO #1 buyer signature"
        assert result["counter_chain"] == "RPA → SCO #1"
        assert result["provenance"]["purchase_price"] == "SCO #1"
        assert "Counter chain: RPA → SCO #1" in result["merge_log"]
