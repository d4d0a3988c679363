"""
Counter Offer Node - Counter-Offer Grouping, Origin and Validation

Pages classified as counter offers are grouped into CounterOfferUnits
(contiguous pages with the same form code and counter number). Each unit
then gets an origin, decided by the first rule that gives an answer:

1. form code      BCO -> buyer, SCO/SMCO -> seller
2. title snippet  "buyer counter" / "seller counter"
3. signatures     only one party signed -> that party wrote it
4. position       one counter -> seller; two -> seller then buyer by
                  signature date; three or more alternate seller/buyer
                  by signature date (best effort)

A unit is invalid, and left out of the merge, when either signature is
missing or when a form-coded unit does not have its form's page count
(BCO one page, SCO/SMCO two). Invalid units stay on the result for audit.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from nodes.extractor import deep_merge
from state import PageMetadata, PageRole

logger = logging.getLogger(__name__)


class CounterType(str, Enum):
    BCO = "BCO"
    SCO = "SCO"
    SMCO = "SMCO"
    UNKNOWN = "UNKNOWN"


class CounterOrigin(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    UNKNOWN = "unknown"


class OriginRule(str, Enum):
    FORM_CODE = "form_code"
    TITLE = "title"
    SIGNATURES = "signatures"
    POSITION = "position"
    UNRESOLVED = "unresolved"


FORM_CODE_ORIGINS: Dict[str, CounterOrigin] = {
    "BCO": CounterOrigin.BUYER,
    "SCO": CounterOrigin.SELLER,
    "SMCO": CounterOrigin.SELLER,
}

EXPECTED_PAGE_COUNTS: Dict[CounterType, int] = {
    CounterType.BCO: 1,
    CounterType.SCO: 2,
    CounterType.SMCO: 2,
}

COUNTER_NUMBER_PATTERN = re.compile(r"\bCOUNTER(?:\s*OFFER)?\s*(?:NO\.?|NUMBER|#)\s*(\d+)", re.IGNORECASE)

TITLE_ORIGINS: Tuple[Tuple[re.Pattern, CounterOrigin], ...] = (
    (re.compile(r"buyer\s+counter", re.IGNORECASE), CounterOrigin.BUYER),
    (re.compile(r"seller\s+(?:multiple\s+)?counter", re.IGNORECASE), CounterOrigin.SELLER),
)


def extract_counter_number(text: str, default: Optional[int] = 1) -> Optional[int]:
    """Counter number from "Counter Offer No. 2" / "Counter #2" wording; ``default`` when absent."""
    match = COUNTER_NUMBER_PATTERN.search(text or "")
    if match:
        return int(match.group(1))
    return default


# ============================================================================
# Counter Offer Unit
# ============================================================================

@dataclass(frozen=True)
class CounterOfferUnit:
    """One counter offer instance, possibly spanning several pages."""
    type: CounterType
    number: int
    pages: Tuple[PageMetadata, ...]
    origin: CounterOrigin = CounterOrigin.UNKNOWN
    origin_rule: OriginRule = OriginRule.UNRESOLVED
    modified_fields: Mapping[str, Any] = field(default_factory=dict)
    issues: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def has_buyer_signature(self) -> bool:
        return any(p.has_buyer_signature for p in self.pages)

    @property
    def has_seller_signature(self) -> bool:
        return any(p.has_seller_signature for p in self.pages)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    @property
    def page_numbers(self) -> List[int]:
        return [p.page_number for p in self.pages]

    @property
    def first_page(self) -> int:
        return self.pages[0].page_number

    @property
    def latest_buyer_signature(self) -> Optional[str]:
        dates = [d for p in self.pages for d in p.buyer_signature_dates]
        return max(dates) if dates else None

    @property
    def latest_seller_signature(self) -> Optional[str]:
        dates = [d for p in self.pages for d in p.seller_signature_dates]
        return max(dates) if dates else None

    @property
    def latest_signature_date(self) -> Optional[str]:
        dates = [d for d in (self.latest_buyer_signature, self.latest_seller_signature) if d]
        return max(dates) if dates else None

    @property
    def label(self) -> str:
        name = "COUNTER" if self.type == CounterType.UNKNOWN else self.type.value
        return f"{name} #{self.number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "number": self.number,
            "label": self.label,
            "pages": self.page_numbers,
            "origin": self.origin.value,
            "origin_rule": self.origin_rule.value,
            "has_buyer_signature": self.has_buyer_signature,
            "has_seller_signature": self.has_seller_signature,
            "is_valid": self.is_valid,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "modified_fields": sorted(self.modified_fields),
        }


@dataclass
class CounterConfig:
    """Configuration for counter-offer validation."""
    # A form-coded unit with the wrong page count is invalid (else only a warning)
    enforce_page_count: bool = True


# ============================================================================
# Grouping
# ============================================================================

@dataclass
class _PageGroup:
    form_code: str
    number: Optional[int]
    pages: List[PageMetadata] = field(default_factory=list)

    @property
    def last_page(self) -> int:
        return self.pages[-1].page_number


def _page_header(text: str, lines: int = 5) -> str:
    return "\n".join([line for line in (text or "").split("\n") if line.strip()][:lines])


def group_counter_pages(
    pages: Sequence[PageMetadata],
    counter_numbers: Optional[Mapping[int, int]] = None,
) -> List[_PageGroup]:
    """
    Contiguous counter-offer pages with the same form code and counter
    number form one group. A page with no number of its own continues the
    group before it.
    """
    counter_numbers = counter_numbers or {}
    groups: List[_PageGroup] = []

    for page in pages:
        if page.role != PageRole.COUNTER_OFFER:
            continue
        number = counter_numbers.get(page.page_number) or extract_counter_number(_page_header(page.text), default=None)
        previous = groups[-1] if groups else None
        continues = (
            previous is not None
            and page.page_number == previous.last_page + 1
            and page.form_code == previous.form_code
            and (number is None or previous.number is None or number == previous.number)
        )
        if continues:
            previous.pages.append(page)
            if previous.number is None:
                previous.number = number
        else:
            groups.append(_PageGroup(form_code=page.form_code, number=number, pages=[page]))

    return groups


# ============================================================================
# Origin Detection
# ============================================================================

def _group_signatures(group: _PageGroup) -> Tuple[bool, bool]:
    return (
        any(p.has_buyer_signature for p in group.pages),
        any(p.has_seller_signature for p in group.pages),
    )


def _group_latest_signature(group: _PageGroup) -> Optional[str]:
    dates = [p.latest_signature_date for p in group.pages if p.latest_signature_date]
    return max(dates) if dates else None


def origin_from_evidence(group: _PageGroup) -> Tuple[CounterOrigin, OriginRule]:
    """Rules 1-3: form code, title snippet, signature asymmetry."""
    origin = FORM_CODE_ORIGINS.get(group.form_code)
    if origin is not None:
        return origin, OriginRule.FORM_CODE

    for page in group.pages:
        for pattern, title_origin in TITLE_ORIGINS:
            if pattern.search(page.title_snippet or ""):
                return title_origin, OriginRule.TITLE

    buyer_signed, seller_signed = _group_signatures(group)
    if buyer_signed and not seller_signed:
        return CounterOrigin.BUYER, OriginRule.SIGNATURES
    if seller_signed and not buyer_signed:
        return CounterOrigin.SELLER, OriginRule.SIGNATURES

    return CounterOrigin.UNKNOWN, OriginRule.UNRESOLVED


def origin_by_position(groups: Sequence[_PageGroup]) -> Dict[int, CounterOrigin]:
    """
    Rule 4, keyed by group index. A guess used only when nothing on the
    page says who wrote the counter.
    """
    if len(groups) == 1:
        return {0: CounterOrigin.SELLER}

    dated = [(i, _group_latest_signature(g)) for i, g in enumerate(groups)]
    dated = [(i, d) for i, d in dated if d is not None]
    dated.sort(key=lambda item: (item[1], groups[item[0]].pages[0].page_number))

    origins: Dict[int, CounterOrigin] = {}
    for position, (index, _) in enumerate(dated):
        origins[index] = CounterOrigin.SELLER if position % 2 == 0 else CounterOrigin.BUYER
    return origins


def _counter_type(form_code: str, origin: CounterOrigin) -> CounterType:
    if form_code in FORM_CODE_ORIGINS:
        return CounterType(form_code)
    if origin == CounterOrigin.BUYER:
        return CounterType.BCO
    if origin == CounterOrigin.SELLER:
        return CounterType.SCO
    return CounterType.UNKNOWN


# ============================================================================
# Validation
# ============================================================================

def validate_unit_structure(
    group: _PageGroup,
    counter_type: CounterType,
    config: CounterConfig,
) -> Tuple[List[str], List[str]]:
    """Returns (issues, warnings). Any issue makes the unit invalid."""
    issues: List[str] = []
    warnings: List[str] = []

    buyer_signed, seller_signed = _group_signatures(group)
    if not buyer_signed:
        issues.append("missing buyer signature")
    if not seller_signed:
        issues.append("missing seller signature")

    expected = EXPECTED_PAGE_COUNTS.get(counter_type)
    if expected is not None and group.form_code in FORM_CODE_ORIGINS and len(group.pages) != expected:
        message = f"{counter_type.value} has {len(group.pages)} page(s), expected {expected}"
        if config.enforce_page_count:
            issues.append(message)
        else:
            warnings.append(message)

    return issues, warnings


def _merge_fields(group: _PageGroup, page_fields: Mapping[int, Mapping[str, Any]]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for page in group.pages:
        merged = deep_merge(merged, page_fields.get(page.page_number) or {})
    return merged


def build_counter_units(
    pages: Sequence[PageMetadata],
    page_fields: Optional[Mapping[int, Mapping[str, Any]]] = None,
    counter_numbers: Optional[Mapping[int, int]] = None,
    config: Optional[CounterConfig] = None,
) -> List[CounterOfferUnit]:
    """Group, type and validate every counter offer in the packet."""
    config = config or CounterConfig()
    page_fields = page_fields or {}
    groups = group_counter_pages(pages, counter_numbers)

    evidence = [origin_from_evidence(g) for g in groups]
    positional = origin_by_position(groups) if groups else {}

    units = []
    for index, group in enumerate(groups):
        origin, rule = evidence[index]
        if origin == CounterOrigin.UNKNOWN and index in positional:
            origin, rule = positional[index], OriginRule.POSITION

        counter_type = _counter_type(group.form_code, origin)
        issues, warnings = validate_unit_structure(group, counter_type, config)

        unit = CounterOfferUnit(
            type=counter_type,
            number=group.number or 1,
            pages=tuple(group.pages),
            origin=origin,
            origin_rule=rule,
            modified_fields=_merge_fields(group, page_fields),
            issues=tuple(issues),
            warnings=tuple(warnings),
        )
        for problem in (*issues, *warnings):
            logger.warning(f"{unit.label} (pages {unit.page_numbers}): {problem}")
        units.append(unit)

    return units


# ============================================================================
# Main Node Function
# ============================================================================

def counter_offer_node(state: Dict[str, Any]) -> dict:
    """
    Node: Counter Offer Validator

    Returns:
        dict with counter_units and merge_log
    """
    print("--- NODE: Counter Offer Validator ---")

    config = CounterConfig(
        enforce_page_count=os.getenv("ENFORCE_COUNTER_PAGE_COUNT", "true").lower() == "true",
    )
    units = build_counter_units(
        state.get("pages") or [],
        page_fields=state.get("page_fields") or {},
        counter_numbers=state.get("counter_numbers") or {},
        config=config,
    )

    log = []
    for unit in units:
        status = "valid" if unit.is_valid else "excluded: " + "; ".join(unit.issues)
        log.append(
            f"{unit.label} on page(s) {unit.page_numbers}, {unit.origin.value} origin "
            f"by {unit.origin_rule.value}: {status}"
        )
        for warning in unit.warnings:
            log.append(f"{unit.label}: warning: {warning}")

    logger.info(f"{len(units)} counter offer(s), {sum(1 for u in units if u.is_valid)} valid")

    return {"counter_units": units, "merge_log": log}
