"""
Review Gate Node - Confidence-Driven Routing

Decides whether a reconciled transaction can be accepted automatically or
needs a human to look at it. The gate only routes; it never changes the
merged values.

A transaction NEEDS_REVIEW when any of these holds:
- overall confidence is below 80
- a required field has no value at all (the loan contingency is not
  required on an all-cash offer)
- a critical field's confidence is below its tier threshold (95)

Important (85) and optional (75) tiers are reported but do not route.
"""

import os
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from state import PageMetadata

logger = logging.getLogger(__name__)


# ============================================================================
# Tiers & Required Fields
# ============================================================================

class FieldTier(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"


class ReviewStatus(str, Enum):
    COMPLETED = "COMPLETED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class ReviewReason(Enum):
    """Reasons why a transaction was routed to human review."""
    LOW_OVERALL_CONFIDENCE = "low_overall_confidence"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    LOW_CRITICAL_CONFIDENCE = "low_critical_confidence"


@dataclass(frozen=True)
class RequiredField:
    name: str
    tier: FieldTier
    value_path: Tuple[str, ...]
    confidence_key: Optional[str] = None
    required: bool = True
    # a truthy value here exempts the field entirely
    exempt_path: Optional[Tuple[str, ...]] = None


REQUIRED_FIELDS: Tuple[RequiredField, ...] = (
    RequiredField("purchase_price", FieldTier.CRITICAL, ("purchase_price",), "purchase_price"),
    RequiredField("property_address", FieldTier.CRITICAL, ("property_address", "full"), "property_address"),
    RequiredField("acceptance_date", FieldTier.CRITICAL, ("effective_date",), "final_acceptance_date"),
    RequiredField("closing_date", FieldTier.CRITICAL, ("closing_date",), "timeline_events"),
    RequiredField("inspection_days", FieldTier.CRITICAL, ("contingencies", "inspection_days"), "timeline_events"),
    RequiredField("appraisal_days", FieldTier.CRITICAL, ("contingencies", "appraisal_days"), "timeline_events"),
    RequiredField(
        "loan_days", FieldTier.CRITICAL, ("contingencies", "loan_days"), "timeline_events",
        exempt_path=("financing", "is_all_cash"),
    ),
    RequiredField("buyer_names", FieldTier.IMPORTANT, ("buyer_names",), "buyer_names"),
    RequiredField("deposit_amount", FieldTier.IMPORTANT, ("earnest_money_deposit", "amount")),
    RequiredField("deposit_due", FieldTier.IMPORTANT, ("timeline_events_structured", "initialDeposit")),
    RequiredField("loan_type", FieldTier.IMPORTANT, ("financing", "loan_type"), "loan_type", required=False),
    RequiredField("broker_contacts", FieldTier.OPTIONAL, ("sellers_broker",), "brokerage_info", required=False),
    RequiredField("home_warranty", FieldTier.OPTIONAL, ("home_warranty",), "home_warranty", required=False),
)


@dataclass
class ReviewConfig:
    """Thresholds for the review gate (0-100 scale)."""
    overall_threshold: float = 80.0
    tier_thresholds: Dict[FieldTier, float] = field(default_factory=lambda: {
        FieldTier.CRITICAL: 95.0,
        FieldTier.IMPORTANT: 85.0,
        FieldTier.OPTIONAL: 75.0,
    })
    low_page_confidence: float = 70.0


# ============================================================================
# Confidence Report
# ============================================================================

@dataclass
class ConfidenceReport:
    """Everything the gate looked at, and what it decided."""
    overall_confidence: float
    field_confidence: Dict[str, float] = field(default_factory=dict)
    missing_required: List[str] = field(default_factory=list)
    below_threshold: List[Dict[str, Any]] = field(default_factory=list)
    reasons: List[ReviewReason] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    page_confidence: Dict[str, Any] = field(default_factory=dict)
    handwriting_detected: bool = False

    @property
    def status(self) -> ReviewStatus:
        return ReviewStatus.NEEDS_REVIEW if self.reasons else ReviewStatus.COMPLETED

    @property
    def critical_failures(self) -> List[str]:
        return [b["field"] for b in self.below_threshold if b["tier"] == FieldTier.CRITICAL.value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "overall_confidence": self.overall_confidence,
            "field_confidence": dict(self.field_confidence),
            "missing_required": list(self.missing_required),
            "below_threshold": list(self.below_threshold),
            "reasons": [r.value for r in self.reasons],
            "warnings": list(self.warnings),
            "page_confidence": dict(self.page_confidence),
            "handwriting_detected": self.handwriting_detected,
        }


def _lookup(values: Mapping[str, Any], path: Sequence[str]) -> Any:
    node: Any = values
    for part in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, Mapping):
        return all(is_missing(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def collect_review_values(
    final_terms: Mapping[str, Any],
    resolved_dates: Optional[Mapping[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """Final terms, with the closing date filled from the resolved timeline."""
    values = dict(final_terms)
    closing = (resolved_dates or {}).get("closing")
    if is_missing(values.get("closing_date")) and closing:
        values["closing_date"] = closing
    return values


def summarize_page_confidence(pages: Sequence[PageMetadata], low_threshold: float) -> Dict[str, Any]:
    if not pages:
        return {}
    scores = [p.confidence for p in pages]
    return {
        "min": min(scores),
        "avg": round(sum(scores) / len(scores), 2),
        "low_confidence_pages": [p.page_number for p in pages if p.confidence < low_threshold],
    }


def validate_terms(values: Mapping[str, Any]) -> List[str]:
    """Sanity warnings on merged terms; advisory only."""
    warnings = []
    if is_missing(values.get("buyer_names")):
        warnings.append("No buyer names")
    if is_missing(values.get("seller_names")):
        warnings.append("No seller names")
    address = _lookup(values, ("property_address", "full"))
    if address and len(address.strip()) < 10:
        warnings.append(f"Property address looks incomplete: {address!r}")
    price = values.get("purchase_price")
    if price is not None and price <= 0:
        warnings.append(f"Purchase price is not positive: {price}")
    if is_missing(values.get("effective_date")):
        warnings.append("No acceptance (effective) date")
    closing = values.get("closing_date")
    effective = values.get("effective_date")
    if closing and effective and closing < effective:
        warnings.append(f"Closing date {closing} is before acceptance {effective}")
    return warnings


def evaluate_confidence(
    confidence: Mapping[str, float],
    values: Mapping[str, Any],
    config: Optional[ReviewConfig] = None,
    pages: Sequence[PageMetadata] = (),
    handwriting_detected: bool = False,
    required_fields: Sequence[RequiredField] = REQUIRED_FIELDS,
) -> ConfidenceReport:
    """Apply the gate rules to one transaction."""
    config = config or ReviewConfig()
    overall = float(confidence.get("overall_confidence", 0.0))
    report = ConfidenceReport(
        overall_confidence=overall,
        page_confidence=summarize_page_confidence(pages, config.low_page_confidence),
        handwriting_detected=handwriting_detected,
        warnings=validate_terms(values),
    )

    if overall < config.overall_threshold:
        report.reasons.append(ReviewReason.LOW_OVERALL_CONFIDENCE)

    for rule in required_fields:
        if rule.exempt_path and _lookup(values, rule.exempt_path):
            continue
        if rule.required and is_missing(_lookup(values, rule.value_path)):
            report.missing_required.append(rule.name)

        if rule.confidence_key is None or rule.confidence_key not in confidence:
            continue
        score = float(confidence[rule.confidence_key])
        report.field_confidence[rule.name] = score
        threshold = config.tier_thresholds[rule.tier]
        if score < threshold:
            report.below_threshold.append({
                "field": rule.name,
                "tier": rule.tier.value,
                "confidence": score,
                "threshold": threshold,
            })

    if report.missing_required:
        report.reasons.append(ReviewReason.MISSING_REQUIRED_FIELD)
    if report.critical_failures:
        report.reasons.append(ReviewReason.LOW_CRITICAL_CONFIDENCE)

    return report


# ============================================================================
# Review Queue Entry
# ============================================================================

def _review_priority(report: ConfidenceReport) -> str:
    if report.overall_confidence < 50 or len(report.reasons) >= 3:
        return "high"
    if ReviewReason.MISSING_REQUIRED_FIELD in report.reasons:
        return "high"
    if report.reasons == [ReviewReason.LOW_CRITICAL_CONFIDENCE] and len(report.critical_failures) == 1:
        return "low"
    return "normal"


def _suggested_action(report: ConfidenceReport) -> str:
    if ReviewReason.MISSING_REQUIRED_FIELD in report.reasons:
        return "fill_missing_fields"
    if ReviewReason.LOW_CRITICAL_CONFIDENCE in report.reasons:
        return "verify_critical_fields"
    return "manual_review"


def build_review_entry(report: ConfidenceReport, document_id: Optional[str]) -> Dict[str, Any]:
    notes = []
    if ReviewReason.LOW_OVERALL_CONFIDENCE in report.reasons:
        notes.append(f"Overall confidence {report.overall_confidence:.0f} below threshold")
    if report.missing_required:
        notes.append("Missing: " + ", ".join(report.missing_required))
    if report.critical_failures:
        notes.append("Low confidence: " + ", ".join(report.critical_failures))
    return {
        "document_id": document_id,
        "reasons": [r.value for r in report.reasons],
        "priority": _review_priority(report),
        "suggested_action": _suggested_action(report),
        "notes": "; ".join(notes) or None,
    }


# ============================================================================
# Main Node Function
# ============================================================================

def review_gate_node(state: Dict[str, Any]) -> dict:
    """
    Node: Review Gate

    Returns:
        dict with confidence_report, status, merge_log
    """
    print("--- NODE: Review Gate ---")

    config = ReviewConfig(
        overall_threshold=float(os.getenv("REVIEW_OVERALL_THRESHOLD", "80")),
        tier_thresholds={
            FieldTier.CRITICAL: float(os.getenv("REVIEW_CRITICAL_THRESHOLD", "95")),
            FieldTier.IMPORTANT: float(os.getenv("REVIEW_IMPORTANT_THRESHOLD", "85")),
            FieldTier.OPTIONAL: float(os.getenv("REVIEW_OPTIONAL_THRESHOLD", "75")),
        },
    )

    values = collect_review_values(state.get("final_terms") or {}, state.get("resolved_dates"))
    report = evaluate_confidence(
        state.get("confidence") or {},
        values,
        config,
        pages=state.get("pages") or [],
        handwriting_detected=bool(state.get("handwriting_detected")),
    )

    status = report.status.value
    logger.info(f"Review gate: {status} (overall {report.overall_confidence:.0f})")

    return {
        "confidence_report": report.to_dict(),
        "status": status,
        "merge_log": [f"Review gate: {status}" + (
            f" ({', '.join(r.value for r in report.reasons)})" if report.reasons else ""
        )],
    }
