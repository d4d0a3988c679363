import json
import logging
import sys
from typing import Any, Dict, List, Optional

from langgraph.graph import StateGraph, START, END
from dotenv import load_dotenv

# Import State
from state import ReconciliationState

# Import Nodes
from nodes.extractor import intake_node
from nodes.classifier import page_classifier_node
from nodes.priority import document_priority_node
from nodes.counters import counter_offer_node
from nodes.merger import field_merge_node
from nodes.timeline import timeline_resolver_node
from nodes.review import ConfidenceReport, ReviewReason, build_review_entry, review_gate_node

# Load Env
load_dotenv()


def review_queue_node(state: ReconciliationState):
    """
    Node: Review Queue
    Records why the transaction needs a human before it is handed on.
    """
    print("--- NODE: Review Queue ---")
    report_data = state.get("confidence_report") or {}
    report = ConfidenceReport(
        overall_confidence=report_data.get("overall_confidence", 0.0),
        missing_required=report_data.get("missing_required", []),
        below_threshold=report_data.get("below_threshold", []),
        reasons=[ReviewReason(r) for r in report_data.get("reasons", [])],
    )
    entry = build_review_entry(report, state.get("document_id"))
    return {
        "review_queue": [entry],
        "merge_log": [f"Queued for review ({entry['priority']} priority): {entry['notes']}"],
    }


def build_graph():
    """
    Constructs the LangGraph state machine.
    """
    builder = StateGraph(ReconciliationState)

    # 1. Add Nodes
    builder.add_node("intake", intake_node)
    builder.add_node("classifier", page_classifier_node)
    builder.add_node("priority", document_priority_node)
    builder.add_node("counters", counter_offer_node)
    builder.add_node("merger", field_merge_node)
    builder.add_node("timeline", timeline_resolver_node)
    builder.add_node("review", review_gate_node)
    builder.add_node("review_queue", review_queue_node)

    # 2. Add Edges (The Flow)
    builder.add_edge(START, "intake")
    builder.add_edge("intake", "classifier")
    builder.add_edge("classifier", "priority")
    builder.add_edge("priority", "counters")
    builder.add_edge("counters", "merger")
    builder.add_edge("merger", "timeline")
    builder.add_edge("timeline", "review")

    # Conditional logic: does a human need to look at it?
    def check_review(state):
        if state.get("status") == "NEEDS_REVIEW":
            return "review_queue"
        return END

    builder.add_conditional_edges("review", check_review)
    builder.add_edge("review_queue", END)

    # 3. Compile
    return builder.compile()


def reconcile_document(
    page_texts: List[str],
    base_extraction: Dict[str, Any],
    page_extractions: Optional[List[Dict[str, Any]]] = None,
    page_labels: Optional[Any] = None,
    declared_page_count: Optional[int] = None,
    document_id: str = "",
) -> ReconciliationState:
    """
    Run one document through the pipeline.

    Structural mismatches and schema violations raise (see ``errors``);
    everything else ends up on the returned state.
    """
    initial_state: ReconciliationState = {
        "document_id": document_id,
        "declared_page_count": declared_page_count if declared_page_count is not None else len(page_texts),
        "page_texts": list(page_texts),
        "page_labels": page_labels,
        "base_extraction": base_extraction,
        "page_extractions": list(page_extractions or []),
        "review_queue": [],
        "merge_log": [],
    }
    return build_graph().invoke(initial_state)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) != 2:
        print("usage: python main.py <document.json>")
        sys.exit(2)

    # {"page_texts": [...], "base_extraction": {...}, "page_extractions": [...], "page_labels": {...}}
    with open(sys.argv[1]) as f:
        document = json.load(f)

    print("Starting reconciliation...")
    result = reconcile_document(
        document["page_texts"],
        document["base_extraction"],
        page_extractions=document.get("page_extractions"),
        page_labels=document.get("page_labels"),
        declared_page_count=document.get("declared_page_count"),
        document_id=document.get("document_id", ""),
    )

    print(f"Status: {result['status']}")
    print(f"Chain: {result['counter_chain']}")
    print(f"Acceptance: {result['acceptance_date']} ({result['acceptance_source']})")
    for key, text in (result.get("timeline_display") or {}).items():
        print(f"  {key}: {text}")
    for line in result.get("merge_log", []):
        print(f"  - {line}")
