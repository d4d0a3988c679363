"""
Page Classifier Node - Per-Page Form, Role and Content Classification

Every physical page of a contract packet gets a PageMetadata record:

- form code (RPA, SCO, BCO, ADM, ...) from an ordered regex table,
  first match wins, no match -> UNKNOWN
- structural role (main_contract, counter_offer, addendum, ...) from the
  form code when it is a known form, else from ordered keyword rules
- content category (transaction_terms, signatures, ...) from keyword
  rules with a dollar-amount / signature heuristic fallback
- a conservative filled-fields flag
- a title snippet

When an LLM page-labelling result is available, its non-null fields
override the heuristic per field. Once such a result is supplied it must be
complete and valid for the whole document; see ``nodes.labeler``.

Rule tables are immutable data bundled in ClassificationRules so a
different jurisdiction (or a test) can pass its own.
"""

import os
import re
import logging
from dataclasses import dataclass, field, replace
from re import Pattern
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from state import ContentCategory, PageMetadata, PageRole, UNKNOWN_FORM_CODE
from nodes.labeler import PageLabel, parse_page_labels

logger = logging.getLogger(__name__)


# ============================================================================
# Rule Tables
# ============================================================================

def _patterns(*sources: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(s, re.IGNORECASE) for s in sources)


def _keywords(*words: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(r"\b" + re.escape(w) + r"\b", re.IGNORECASE) for w in words)


# Precedence when matching the full text; headers go by position (detect_form_code)
FORM_CODE_PATTERNS: Tuple[Tuple[str, Tuple[Pattern, ...]], ...] = (
    ("RPA", _patterns(
        r"\bRPA(?:[-\s]?CA)?\b",
        r"residential\s+purchase\s+agreement",
    )),
    ("TREC 20-16", _patterns(r"\bTREC\s*(?:NO\.?\s*)?20-1[5-7]\b", r"one\s+to\s+four\s+family\s+residential\s+contract")),
    ("FAR/BAR-6", _patterns(r"\bFAR\s*/\s*BAR\b", r"as\s+is\s+residential\s+contract\s+for\s+sale")),
    ("NVAR", _patterns(r"\bNVAR\b", r"northern\s+virginia\s+association\s+of\s+realtors")),
    ("SMCO", _patterns(r"\bSMCO\b", r"seller\s+multiple\s+counter\s+offer")),
    ("SCO", _patterns(r"\bSCO\b", r"seller\s+counter\s+offer")),
    ("BCO", _patterns(r"\bBCO\b", r"buyer\s+counter\s+offer")),
    ("ADM", _patterns(r"\bADM\b", r"^\s*addendum\b")),
    ("AEA", _patterns(r"\bAEA\b", r"amendment\s+of\s+existing\s+agreement")),
    ("CR-B", _patterns(r"\bCR-B\b", r"contingency\s+removal")),
    ("RR", _patterns(r"\bRR\b", r"request\s+for\s+repair")),
    ("AD", _patterns(r"\bC\.A\.R\.\s+Form\s+AD\b", r"disclosure\s+regarding\s+real\s+estate\s+agency")),
    ("TDS", _patterns(r"\bTDS\b", r"transfer\s+disclosure\s+statement")),
    ("SPQ", _patterns(r"\bSPQ\b", r"seller\s+property\s+questionnaire")),
)

PRIMARY_CONTRACT_FORMS = frozenset({"RPA", "TREC 20-16", "FAR/BAR-6", "NVAR"})

FORM_CODE_ROLES: Mapping[str, PageRole] = {
    **{code: PageRole.MAIN_CONTRACT for code in PRIMARY_CONTRACT_FORMS},
    "SMCO": PageRole.COUNTER_OFFER,
    "SCO": PageRole.COUNTER_OFFER,
    "BCO": PageRole.COUNTER_OFFER,
    "ADM": PageRole.ADDENDUM,
    "AEA": PageRole.ADDENDUM,
    "CR-B": PageRole.CONTINGENCY_RELEASE,
    "RR": PageRole.CONTINGENCY_RELEASE,
    "AD": PageRole.DISCLOSURE,
    "TDS": PageRole.DISCLOSURE,
    "SPQ": PageRole.DISCLOSURE,
}

ROLE_KEYWORDS: Tuple[Tuple[PageRole, Tuple[Pattern, ...]], ...] = (
    (PageRole.COUNTER_OFFER, _keywords("counter offer", "counteroffer", "multiple counter")),
    (PageRole.LOCAL_ADDENDUM, _keywords("local addendum", "city addendum", "county addendum")),
    (PageRole.ADDENDUM, _keywords("addendum", "amendment")),
    (PageRole.CONTINGENCY_RELEASE, _keywords("contingency removal", "contingency release", "removal of contingencies")),
    (PageRole.MAIN_CONTRACT, _keywords("purchase agreement", "joint escrow instructions", "offer to purchase")),
    (PageRole.DISCLOSURE, _keywords("disclosure", "advisory", "questionnaire")),
    (PageRole.BROKER_INFO, _keywords("real estate brokers", "broker compensation", "confirmation of agency")),
    (PageRole.TITLE_PAGE, _keywords("table of contents", "cover sheet", "transaction summary")),
    (PageRole.SIGNATURES, _keywords("signature page", "acceptance of offer")),
)

CATEGORY_KEYWORDS: Tuple[Tuple[ContentCategory, Tuple[Pattern, ...]], ...] = (
    (ContentCategory.TRANSACTION_TERMS, _keywords("purchase price", "close of escrow", "initial deposit", "down payment", "loan amount")),
    (ContentCategory.SIGNATURES, _keywords("date signed", "signature of buyer", "signature of seller", "acceptance")),
    (ContentCategory.BROKER_INFO, _keywords("real estate broker", "dre lic", "agent", "brokerage")),
    (ContentCategory.DISCLOSURES, _keywords("disclosure", "advisory", "hazard")),
)

FILLED_FIELD_SIGNALS: Tuple[Pattern, ...] = (
    re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"\$\d{1,3}(,\d{3})*(\.\d{2})?"),
    re.compile(r"\b(yes|no|x)\b", re.IGNORECASE),
    re.compile(r"\bchecked\b", re.IGNORECASE),
)

DOLLAR_PATTERN = re.compile(r"\$\s?\d")
DATE_TOKEN_PATTERN = re.compile(r"\bdate\b", re.IGNORECASE)
SIGNATURE_TOKEN_PATTERN = re.compile(r"\bsignature\b|\bdate signed\b", re.IGNORECASE)

TITLE_PATTERNS: Tuple[Pattern, ...] = _patterns(
    r"^(?:CALIFORNIA\s+)?RESIDENTIAL.*(?:AGREEMENT|CONTRACT)",
    r"^.*COUNTER\s*OFFER.*",
    r"^ADDENDUM.*",
    r"^.*DISCLOSURE.*",
    r"^AMENDMENT.*",
    r"^.*CONTINGENCY\s+REMOVAL.*",
)


@dataclass(frozen=True)
class ClassificationRules:
    """Ordered rule tables used by the heuristic classifier."""
    form_codes: Tuple[Tuple[str, Tuple[Pattern, ...]], ...] = FORM_CODE_PATTERNS
    form_code_roles: Mapping[str, PageRole] = field(default_factory=lambda: dict(FORM_CODE_ROLES))
    role_keywords: Tuple[Tuple[PageRole, Tuple[Pattern, ...]], ...] = ROLE_KEYWORDS
    category_keywords: Tuple[Tuple[ContentCategory, Tuple[Pattern, ...]], ...] = CATEGORY_KEYWORDS
    # Pages not matching this pattern never get a form code
    jurisdiction_pattern: Optional[Pattern] = None


DEFAULT_RULES = ClassificationRules()


# ============================================================================
# Classifier Configuration
# ============================================================================

@dataclass
class ClassifierConfig:
    """Configuration for page classification."""

    heuristic_confidence: float = 85.0
    title_snippet_length: int = 120
    title_search_lines: int = 5
    min_filled_field_signals: int = 4
    min_dollar_amounts: int = 3


# ============================================================================
# Heuristic Detection
# ============================================================================

def _earliest_form_code(region: str, form_codes: Sequence[Tuple[str, Tuple[Pattern, ...]]]) -> Optional[str]:
    """Form code whose wording appears first in ``region``; table order breaks ties."""
    best: Optional[Tuple[int, int, str]] = None
    for order, (code, patterns) in enumerate(form_codes):
        starts = [m.start() for m in (p.search(region) for p in patterns) if m]
        if starts and (best is None or (min(starts), order) < best[:2]):
            best = (min(starts), order, code)
    return best[2] if best else None


def detect_form_code(
    text: str,
    rules: ClassificationRules = DEFAULT_RULES,
    header_lines: int = 5,
) -> str:
    """
    Form code of a page.

    In the page header the form named first wins: a counter offer's title
    comes before the "counter offer to the: Residential Purchase Agreement"
    line naming the form it amends. Without a header match the full text is
    searched in rule-table order.
    """
    if not text:
        return UNKNOWN_FORM_CODE
    if rules.jurisdiction_pattern is not None and not rules.jurisdiction_pattern.search(text):
        return UNKNOWN_FORM_CODE

    header = "\n".join([line for line in text.strip().split("\n") if line.strip()][:header_lines])
    code = _earliest_form_code(header, rules.form_codes)
    if code is not None:
        return code
    for code, patterns in rules.form_codes:
        if any(p.search(text) for p in patterns):
            return code
    return UNKNOWN_FORM_CODE


def detect_role(
    text: str,
    form_code: str = UNKNOWN_FORM_CODE,
    rules: ClassificationRules = DEFAULT_RULES,
) -> PageRole:
    known = rules.form_code_roles.get(form_code)
    if known is not None:
        return known
    for role, patterns in rules.role_keywords:
        if any(p.search(text or "") for p in patterns):
            return role
    return PageRole.OTHER


def detect_content_category(
    text: str,
    rules: ClassificationRules = DEFAULT_RULES,
    config: Optional[ClassifierConfig] = None,
) -> ContentCategory:
    config = config or ClassifierConfig()
    text = text or ""
    for category, patterns in rules.category_keywords:
        if any(p.search(text) for p in patterns):
            return category

    if len(DOLLAR_PATTERN.findall(text)) >= config.min_dollar_amounts and DATE_TOKEN_PATTERN.search(text):
        return ContentCategory.TRANSACTION_TERMS
    if SIGNATURE_TOKEN_PATTERN.search(text):
        return ContentCategory.SIGNATURES
    return ContentCategory.BOILERPLATE


def has_filled_fields(text: str, min_signals: int = 4) -> bool:
    """
    True only when enough distinct filled-in signals are present
    (date, dollar amount, yes/no/x mark, "checked").
    """
    if not text:
        return False
    signals = sum(1 for p in FILLED_FIELD_SIGNALS if p.search(text))
    return signals >= min_signals


def extract_title_snippet(text: str, config: Optional[ClassifierConfig] = None) -> str:
    """Title-looking line near the top of the page, else the first line."""
    config = config or ClassifierConfig()
    if not text:
        return ""

    lines = [line.strip().lstrip("#").strip() for line in text.strip().split("\n")]
    lines = [line for line in lines if line]
    if not lines:
        return ""

    for line in lines[:config.title_search_lines]:
        if 10 < len(line) < 100 and any(p.match(line) for p in TITLE_PATTERNS):
            return line[:config.title_snippet_length]

    return lines[0][:config.title_snippet_length]


# ============================================================================
# Page Classification
# ============================================================================

def classify_page(
    page_number: int,
    text: str,
    rules: ClassificationRules = DEFAULT_RULES,
    config: Optional[ClassifierConfig] = None,
    buyer_signature_dates: Sequence[str] = (),
    seller_signature_dates: Sequence[str] = (),
) -> PageMetadata:
    """Heuristic classification of one page."""
    config = config or ClassifierConfig()
    form_code = detect_form_code(text, rules)
    return PageMetadata(
        page_number=page_number,
        form_code=form_code,
        role=detect_role(text, form_code, rules),
        content_category=detect_content_category(text, rules, config),
        has_filled_fields=has_filled_fields(text, config.min_filled_field_signals),
        confidence=config.heuristic_confidence,
        buyer_signature_dates=tuple(buyer_signature_dates),
        seller_signature_dates=tuple(seller_signature_dates),
        title_snippet=extract_title_snippet(text, config),
        text=text or "",
    )


def apply_page_label(page: PageMetadata, label: Optional[PageLabel]) -> PageMetadata:
    """Overlay the non-null fields of an LLM label onto a heuristic result."""
    if label is None:
        return page

    overrides: Dict[str, Any] = {}
    if label.form_code:
        overrides["form_code"] = label.form_code.upper()
    if label.role is not None:
        overrides["role"] = label.role
    if label.content_category is not None:
        overrides["content_category"] = label.content_category
    if label.has_filled_fields is not None:
        overrides["has_filled_fields"] = label.has_filled_fields
    if label.confidence is not None:
        overrides["confidence"] = label.confidence
    if label.title_snippet:
        overrides["title_snippet"] = label.title_snippet[:120]

    return replace(page, **overrides) if overrides else page


def classify_pages(
    page_texts: Sequence[str],
    labels: Optional[Sequence[Optional[PageLabel]]] = None,
    signatures: Optional[Mapping[int, Tuple[Sequence[str], Sequence[str]]]] = None,
    rules: ClassificationRules = DEFAULT_RULES,
    config: Optional[ClassifierConfig] = None,
) -> List[PageMetadata]:
    """
    Classify every page, in page order.

    Args:
        page_texts: OCR text per page
        labels: validated LLM labels, one slot per page (None = no label)
        signatures: page_number -> (buyer_dates, seller_dates)
    """
    config = config or ClassifierConfig()
    signatures = signatures or {}

    pages = []
    for index, text in enumerate(page_texts):
        page_number = index + 1
        buyer_dates, seller_dates = signatures.get(page_number, ((), ()))
        page = classify_page(page_number, text, rules, config, buyer_dates, seller_dates)
        if labels is not None:
            page = apply_page_label(page, labels[index])
        pages.append(page)
    return pages


# ============================================================================
# Package Summary
# ============================================================================

MERGE_ROLES = frozenset({
    PageRole.MAIN_CONTRACT,
    PageRole.COUNTER_OFFER,
    PageRole.ADDENDUM,
    PageRole.BROKER_INFO,
    PageRole.SIGNATURES,
})


def select_critical_pages(pages: Sequence[PageMetadata]) -> List[int]:
    """Pages worth sending to field extraction."""
    return [
        p.page_number for p in pages
        if p.form_code != UNKNOWN_FORM_CODE or p.role in MERGE_ROLES
    ]


def summarize_package(pages: Sequence[PageMetadata]) -> Dict[str, Any]:
    form_codes = []
    for p in pages:
        if p.form_code != UNKNOWN_FORM_CODE and p.form_code not in form_codes:
            form_codes.append(p.form_code)

    role_counts: Dict[str, int] = {}
    for p in pages:
        role_counts[p.role.value] = role_counts.get(p.role.value, 0) + 1

    return {
        "page_count": len(pages),
        "detected_form_codes": form_codes,
        "has_multiple_forms": len(form_codes) > 1,
        "role_counts": role_counts,
    }


# ============================================================================
# Main Node Function
# ============================================================================

def page_classifier_node(state: Dict[str, Any]) -> dict:
    """
    Node: Page Classifier

    Classifies every page and overlays the LLM page labels when the
    upstream labelling pass produced them. A label result that does not
    cover exactly the document's pages aborts the run.

    Returns:
        dict with pages, critical_pages, package_summary, merge_log
    """
    print("--- NODE: Page Classifier ---")

    page_texts = state.get("page_texts") or []
    config = ClassifierConfig(
        heuristic_confidence=float(os.getenv("CLASSIFIER_HEURISTIC_CONFIDENCE", "85")),
    )

    labels = None
    raw_labels = state.get("page_labels")
    if raw_labels is not None:
        labels = parse_page_labels(raw_labels, expected_page_count=len(page_texts))

    pages = classify_pages(
        page_texts,
        labels=labels,
        signatures=state.get("page_signatures") or {},
        config=config,
    )

    summary = summarize_package(pages)
    source = "llm labels" if labels is not None else "heuristics"
    logger.info(
        f"Classified {len(pages)} page(s) using {source}; "
        f"forms detected: {', '.join(summary['detected_form_codes']) or 'none'}"
    )

    return {
        "pages": pages,
        "critical_pages": select_critical_pages(pages),
        "package_summary": summary,
        "merge_log": [f"Classified {len(pages)} page(s) using {source}"],
    }
