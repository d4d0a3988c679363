"""Shared fixtures: provider payloads and page builders."""

import pytest

from state import ContentCategory, PageMetadata, PageRole, UNKNOWN_FORM_CODE


CONFIDENCE_KEYS = (
    "overall_confidence",
    "purchase_price",
    "property_address",
    "buyer_names",
    "timeline_events",
    "final_acceptance_date",
    "home_warranty",
    "brokerage_info",
    "loan_type",
)


def confidence_scores(value=97, **overrides):
    scores = {key: value for key in CONFIDENCE_KEYS}
    scores.update(overrides)
    return scores


def make_page(
    page_number,
    form_code=UNKNOWN_FORM_CODE,
    role=PageRole.OTHER,
    buyer=(),
    seller=(),
    title="",
    text="",
    category=ContentCategory.OTHER,
    confidence=85.0,
):
    return PageMetadata(
        page_number=page_number,
        form_code=form_code,
        role=role,
        content_category=category,
        confidence=confidence,
        buyer_signature_dates=tuple(buyer),
        seller_signature_dates=tuple(seller),
        title_snippet=title,
        text=text,
    )


@pytest.fixture
def base_extraction():
    """Extraction payload for a financed $500,000 RPA."""
    return {
        "extracted": {
            "buyer_names": "John Buyer and Jane Buyer",
            "seller_names": ["Sam Seller"],
            "property_address": "123 Main Street, Sacramento, CA 95814",
            "purchase_price": "$500,000",
            "all_cash": False,
            "loan_type": "Conventional",
            "loan_amount": "$400,000",
            "initial_deposit": "$15,000",
            "escrow_holder": "First American Title",
            "final_acceptance_date": "03/02/2026",
            "timeline_events": [
                {"event_key": "initialDeposit", "date_type": "relative", "relative_days": 3, "day_type": "business"},
                {"event_key": "inspectionContingency", "date_type": "relative", "relative_days": 17},
                {"event_key": "appraisalContingency", "date_type": "relative", "relative_days": 17},
                {"event_key": "loanContingency", "date_type": "relative", "relative_days": 21},
                {"event_key": "closing", "date_type": "relative", "relative_days": 30},
            ],
            "home_warranty": {"ordered_by": "Seller", "seller_max_cost": "$500"},
            "sellers_broker": {"brokerage_name": "Acme Realty", "agent_name": "Pat Agent"},
        },
        "confidence": confidence_scores(),
        "handwriting_detected": False,
    }
