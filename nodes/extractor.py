"""
Extraction Boundary - Provider Payload Validation & Coercion

The field-extraction provider (an LLM, outside this package) returns JSON
for the base contract and explicit-field maps for individual pages. This
module is the only place that JSON enters the pipeline:

- ``parse_extraction_payload`` validates the document-level payload
  (extracted terms + confidence + timeline events) with pydantic.
- ``build_base_terms`` turns a validated payload into FinalTerms.
- ``parse_page_extractions`` validates the per-page payloads (explicit
  fields, signature dates, counter number).
- ``coerce_page_fields`` maps a page's explicit fields onto FinalTerms
  paths, coercing currency/dates/day counts.

Any shape or enum violation raises SchemaViolationError; values are never
defaulted to stand in for bad data.
"""

import re
import json
import logging
from datetime import datetime, date
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, model_validator

from errors import SchemaViolationError, StructuralMismatchError
from nodes.timeline import (
    ACCEPTANCE,
    DayType,
    Direction,
    RelativeEvent,
    SpecifiedEvent,
    TimelineEvent,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Date Parsing
# ============================================================================

# Common date formats in real estate documents
DATE_FORMATS = [
    "%Y-%m-%d",      # 2025-12-31 (ISO)
    "%m/%d/%Y",      # 12/31/2025
    "%m-%d-%Y",      # 12-31-2025
    "%B %d, %Y",     # December 31, 2025
    "%b %d, %Y",     # Dec 31, 2025
    "%B %d %Y",      # December 31 2025
    "%b %d %Y",      # Dec 31 2025
    "%d %B %Y",      # 31 December 2025
    "%d %b %Y",      # 31 Dec 2025
]

SHORT_YEAR_PATTERN = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2})$")

# Two-digit years up to this value are 20xx, above it 19xx
SHORT_YEAR_PIVOT = 50


def parse_date(text: str) -> Optional[Tuple[date, str, str]]:
    """
    Parse a date from text trying multiple formats.

    Args:
        text: Text that may contain a date

    Returns:
        Tuple of (parsed_date, matched_text, format_used) or None
    """
    if not text:
        return None

    text = text.strip().rstrip(".")

    short = SHORT_YEAR_PATTERN.match(text)
    if short:
        month, day, year = (int(g) for g in short.groups())
        year += 2000 if year <= SHORT_YEAR_PIVOT else 1900
        try:
            return (date(year, month, day), text, "%m/%d/%y")
        except ValueError:
            return None

    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        # Validate year is reasonable
        if 1990 <= parsed.year <= 2100:
            return (parsed.date(), text, fmt)

    return None


def normalize_date_string(value: Any) -> Optional[str]:
    """Normalize a provider date to ISO ``YYYY-MM-DD``; None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    parsed = parse_date(str(value))
    return parsed[0].isoformat() if parsed else None


# ============================================================================
# Value Coercion
# ============================================================================

def parse_currency_amount(text: str) -> Optional[Tuple[float, str]]:
    """
    Parse a currency amount from text.

    Handles formats:
    - $1,234.56
    - $1.5M or $1.5 million
    - 1,234.56

    Returns:
        Tuple of (amount, original_match_text) or None if no match
    """
    if not text:
        return None

    text = text.strip()

    # Check for million/M suffix
    million_match = re.fullmatch(
        r"\$?\s*([\d,]+(?:\.\d+)?)\s*(?:million|mil|m)",
        text, re.IGNORECASE,
    )
    if million_match:
        num_str = million_match.group(1).replace(",", "")
        return (float(num_str) * 1_000_000, million_match.group(0))

    currency_match = re.fullmatch(r"-?\$?\s*(-?[\d,]*\d(?:\.\d+)?)", text.replace(" ", ""))
    if currency_match:
        num_str = currency_match.group(1).replace(",", "")
        amount = float(num_str)
        if text.startswith("-") and amount > 0:
            amount = -amount
        return (amount, currency_match.group(0))

    return None


def coerce_number(value: Any) -> Optional[float]:
    """Numbers pass through; strings have $, commas and spaces stripped."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if not value.strip():
            return None
        parsed = parse_currency_amount(value)
        return parsed[0] if parsed else None
    return None


def coerce_int(value: Any) -> Optional[int]:
    number = coerce_number(value)
    if number is None:
        return None
    return int(round(number))


def coerce_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_string_array(value: Any) -> List[str]:
    """Accept a list of names or a single comma/'and'-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        parts = re.split(r",|\band\b|&", value)
        return [p.strip() for p in parts if p.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [str(value).strip()]


LOAN_TYPES = ("Conventional", "FHA", "VA", "USDA", "Other")


def normalize_loan_type(value: Any) -> Optional[str]:
    """Map provider loan wording onto Conventional | FHA | VA | USDA | Other."""
    text = coerce_string(value)
    if text is None:
        return None
    lowered = text.lower()
    if "conv" in lowered:
        return "Conventional"
    if "fha" in lowered:
        return "FHA"
    if re.search(r"\bva\b", lowered) or "veteran" in lowered:
        return "VA"
    if "usda" in lowered or "rural" in lowered:
        return "USDA"
    return "Other"


def _strict_currency(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    amount = coerce_number(value)
    if amount is None:
        raise ValueError(f"not a currency amount: {value!r}")
    return amount


def _strict_int(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    number = coerce_int(value)
    if number is None:
        raise ValueError(f"not a whole number: {value!r}")
    return number


def _strict_date(value: Any) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    normalized = normalize_date_string(value)
    if normalized is None:
        raise ValueError(f"not a date: {value!r}")
    return normalized


def _strict_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("yes", "true", "y", "x", "checked"):
        return True
    if text in ("no", "false", "n", ""):
        return False
    raise ValueError(f"not a yes/no value: {value!r}")


Currency = Annotated[Optional[float], BeforeValidator(_strict_currency)]
DayCount = Annotated[Optional[int], BeforeValidator(_strict_int)]
DateString = Annotated[Optional[str], BeforeValidator(_strict_date)]
NameList = Annotated[List[str], BeforeValidator(coerce_string_array)]
LoanType = Annotated[Optional[str], BeforeValidator(normalize_loan_type)]
OptionalText = Annotated[Optional[str], BeforeValidator(coerce_string)]


def _date_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, date)):
        value = [value]
    dates = (_strict_date(v) for v in value)
    return [d for d in dates if d]


SignatureDates = Annotated[List[str], BeforeValidator(_date_list)]


# ============================================================================
# Provider Schemas
# ============================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TimelineEventPayload(_Payload):
    """One entry of the provider's ``timeline_events`` array."""
    event_key: str = Field(min_length=1)
    display_name: OptionalText = None
    date_type: Literal["specified", "relative"]
    specified_date: DateString = None
    relative_days: Optional[int] = Field(default=None, ge=0)
    anchor_point: OptionalText = None
    direction: Optional[Literal["after", "before"]] = None
    day_type: Optional[Literal["calendar", "business"]] = None
    description: OptionalText = None

    @model_validator(mode="after")
    def _check_variant(self) -> "TimelineEventPayload":
        if self.date_type == "specified" and self.specified_date is None:
            raise ValueError(f"{self.event_key}: specified event without specified_date")
        if self.date_type == "relative" and self.relative_days is None:
            raise ValueError(f"{self.event_key}: relative event without relative_days")
        return self

    def to_event(self) -> TimelineEvent:
        if self.date_type == "specified":
            return SpecifiedEvent(
                event_key=self.event_key,
                specified_date=date.fromisoformat(self.specified_date),
                display_name=self.display_name,
                description=self.description,
            )
        return RelativeEvent(
            event_key=self.event_key,
            relative_days=self.relative_days,
            anchor_point=self.anchor_point or ACCEPTANCE,
            direction=Direction(self.direction or Direction.AFTER.value),
            day_type=DayType(self.day_type or DayType.CALENDAR.value),
            display_name=self.display_name,
            description=self.description,
        )


class BrokerPayload(_Payload):
    brokerage_name: OptionalText = None
    agent_name: OptionalText = None
    email: OptionalText = None
    phone: OptionalText = None


class PropertyAddressPayload(_Payload):
    full: OptionalText = None
    street: OptionalText = None
    city: OptionalText = None
    state: OptionalText = None
    zip: OptionalText = None


class HomeWarrantyPayload(_Payload):
    ordered_by: Optional[Literal["Buyer", "Seller", "Both", "Waived"]] = None
    seller_max_cost: Currency = None
    provider: OptionalText = None


class ExtractedTermsPayload(_Payload):
    buyer_names: NameList = Field(default_factory=list)
    seller_names: NameList = Field(default_factory=list)
    property_address: Optional[PropertyAddressPayload] = None
    purchase_price: Currency = None
    all_cash: Optional[bool] = None
    loan_type: LoanType = None
    loan_amount: Currency = None
    initial_deposit: Currency = None
    escrow_holder: OptionalText = None
    seller_credit_to_buyer: Currency = None
    cop_contingency: Optional[bool] = None
    home_warranty: Optional[HomeWarrantyPayload] = None
    final_acceptance_date: DateString = None
    closing_date: DateString = None
    personal_property_included: NameList = Field(default_factory=list)
    timeline_events: List[TimelineEventPayload] = Field(default_factory=list)
    buyers_broker: Optional[BrokerPayload] = None
    sellers_broker: Optional[BrokerPayload] = None

    @model_validator(mode="before")
    @classmethod
    def _address_from_string(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("property_address"), str):
            data = dict(data)
            data["property_address"] = {"full": data["property_address"]}
        return data


Score = Annotated[float, Field(ge=0, le=100)]


class ConfidencePayload(_Payload):
    overall_confidence: Score
    purchase_price: Score
    property_address: Score
    buyer_names: Score
    timeline_events: Score
    final_acceptance_date: Score
    home_warranty: Score
    brokerage_info: Score
    loan_type: Score


class ExtractionPayload(_Payload):
    extracted: ExtractedTermsPayload
    confidence: ConfidencePayload
    handwriting_detected: bool = False


class PageExtractionPayload(_Payload):
    """Explicit fields and signature dates read from one page."""
    page_number: int = Field(ge=1)
    fields: Dict[str, Any] = Field(default_factory=dict)
    buyer_signature_dates: SignatureDates = Field(default_factory=list)
    seller_signature_dates: SignatureDates = Field(default_factory=list)
    counter_number: Optional[int] = Field(default=None, ge=1)


# ============================================================================
# Payload Parsing
# ============================================================================

def load_json_payload(raw: Union[str, Mapping[str, Any], List[Any]], source: str) -> Any:
    """
    Accept an already-decoded payload or model text. Fenced ```json blocks
    are unwrapped before decoding.
    """
    if not isinstance(raw, str):
        return raw

    text = raw
    # Handle potential markdown code blocks
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    try:
        return json.loads(text.strip())
    except json.JSONDecodeError as e:
        logger.error(f"{source}: response is not valid JSON: {e}")
        raise SchemaViolationError(source, f"invalid JSON: {e}") from e


def parse_extraction_payload(
    raw: Union[str, Mapping[str, Any]],
    source: str = "field_extraction",
) -> ExtractionPayload:
    data = load_json_payload(raw, source)
    try:
        return ExtractionPayload.model_validate(data)
    except ValidationError as e:
        logger.error(f"{source}: payload failed validation ({e.error_count()} error(s))")
        raise SchemaViolationError(source, e.errors()) from e


def parse_page_extractions(
    raw: Optional[List[Mapping[str, Any]]],
    page_count: int,
    source: str = "page_extraction",
) -> Dict[int, PageExtractionPayload]:
    """Validate per-page payloads, keyed by page number."""
    result: Dict[int, PageExtractionPayload] = {}
    for item in raw or []:
        try:
            page = PageExtractionPayload.model_validate(item)
        except ValidationError as e:
            raise SchemaViolationError(source, e.errors()) from e
        if page.page_number > page_count:
            raise StructuralMismatchError(source, expected=page_count, received=page.page_number)
        if page.page_number in result:
            raise SchemaViolationError(source, f"page {page.page_number} reported twice")
        result[page.page_number] = page
    return result


# ============================================================================
# Base Terms
# ============================================================================

def derive_contingency_days(events: Mapping[str, TimelineEvent]) -> Dict[str, Optional[int]]:
    """Day counts for the classic contingency fields, read off relative events."""
    def days(key: str) -> Optional[int]:
        event = events.get(key)
        return event.relative_days if isinstance(event, RelativeEvent) else None

    return {
        "inspection_days": days("inspectionContingency"),
        "appraisal_days": days("appraisalContingency"),
        "loan_days": days("loanContingency"),
    }


def _broker_dict(broker: Optional[BrokerPayload]) -> Dict[str, Optional[str]]:
    broker = broker or BrokerPayload()
    return broker.model_dump()


def build_base_terms(payload: ExtractionPayload) -> Dict[str, Any]:
    """Initial FinalTerms from the base contract's extraction."""
    extracted = payload.extracted
    events = {e.event_key: e.to_event() for e in extracted.timeline_events}

    contingencies = derive_contingency_days(events)
    contingencies["sale_of_buyer_property"] = extracted.cop_contingency
    if extracted.all_cash:
        contingencies["loan_days"] = None

    closing_date = extracted.closing_date
    closing_event = events.get("closing")
    if closing_date is None and isinstance(closing_event, SpecifiedEvent):
        closing_date = closing_event.specified_date.isoformat()

    address = extracted.property_address or PropertyAddressPayload()
    warranty = extracted.home_warranty or HomeWarrantyPayload()

    return {
        "buyer_names": list(extracted.buyer_names),
        "seller_names": list(extracted.seller_names),
        "property_address": address.model_dump(),
        "purchase_price": extracted.purchase_price,
        "earnest_money_deposit": {
            "amount": extracted.initial_deposit,
            "holder": extracted.escrow_holder,
        },
        "closing_date": closing_date,
        "effective_date": None,
        "financing": {
            "is_all_cash": extracted.all_cash,
            "loan_type": None if extracted.all_cash else extracted.loan_type,
            "loan_amount": extracted.loan_amount,
        },
        "contingencies": contingencies,
        "closing_costs": {"seller_credit_amount": extracted.seller_credit_to_buyer},
        "buyers_broker": _broker_dict(extracted.buyers_broker),
        "sellers_broker": _broker_dict(extracted.sellers_broker),
        "home_warranty": warranty.model_dump(),
        "personal_property_included": list(extracted.personal_property_included),
        "escrow_holder": extracted.escrow_holder,
        "timeline_events_structured": events,
    }


# ============================================================================
# Page Field Coercion
# ============================================================================

# Provider field name -> FinalTerms path
FIELD_PATHS: Dict[str, Tuple[str, ...]] = {
    "initial_deposit": ("earnest_money_deposit", "amount"),
    "deposit_amount": ("earnest_money_deposit", "amount"),
    "all_cash": ("financing", "is_all_cash"),
    "loan_type": ("financing", "loan_type"),
    "loan_amount": ("financing", "loan_amount"),
    "inspection_days": ("contingencies", "inspection_days"),
    "appraisal_days": ("contingencies", "appraisal_days"),
    "loan_days": ("contingencies", "loan_days"),
    "cop_contingency": ("contingencies", "sale_of_buyer_property"),
    "seller_credit_to_buyer": ("closing_costs", "seller_credit_amount"),
}

GROUP_KEYS = frozenset({
    "property_address",
    "earnest_money_deposit",
    "financing",
    "contingencies",
    "closing_costs",
    "buyers_broker",
    "sellers_broker",
    "home_warranty",
})

PATH_COERCERS = {
    ("purchase_price",): _strict_currency,
    ("closing_date",): _strict_date,
    ("effective_date",): _strict_date,
    ("buyer_names",): coerce_string_array,
    ("seller_names",): coerce_string_array,
    ("personal_property_included",): coerce_string_array,
    ("escrow_holder",): coerce_string,
    ("earnest_money_deposit", "amount"): _strict_currency,
    ("financing", "is_all_cash"): _strict_bool,
    ("financing", "loan_type"): normalize_loan_type,
    ("financing", "loan_amount"): _strict_currency,
    ("contingencies", "inspection_days"): _strict_int,
    ("contingencies", "appraisal_days"): _strict_int,
    ("contingencies", "loan_days"): _strict_int,
    ("contingencies", "sale_of_buyer_property"): _strict_bool,
    ("closing_costs", "seller_credit_amount"): _strict_currency,
    ("home_warranty", "seller_max_cost"): _strict_currency,
}


def coerce_page_fields(fields: Mapping[str, Any], source: str = "page_extraction") -> Dict[str, Any]:
    """
    Map a page's explicit fields onto FinalTerms paths.

    ``None`` values are dropped: an explicit-field map only carries what
    the page actually states.
    """
    out: Dict[str, Any] = {}
    try:
        for key, value in fields.items():
            if value is None:
                continue
            if key in ("timeline_events", "timeline_events_structured"):
                out["timeline_events_structured"] = _coerce_events(value)
            elif key == "property_address" and isinstance(value, str):
                _assign(out, ("property_address", "full"), value)
            elif key in GROUP_KEYS and isinstance(value, Mapping):
                for sub_key, sub_value in value.items():
                    if sub_value is not None:
                        _assign(out, (key, sub_key), sub_value)
            else:
                _assign(out, FIELD_PATHS.get(key, (key,)), value)
    except (ValueError, ValidationError) as e:
        raise SchemaViolationError(source, str(e)) from e
    return out


def _coerce_events(value: Any) -> Dict[str, TimelineEvent]:
    items = value.values() if isinstance(value, Mapping) else value
    events = {}
    for item in items:
        event = TimelineEventPayload.model_validate(item).to_event()
        events[event.event_key] = event
    return events


def _assign(target: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    coercer = PATH_COERCERS.get(path)
    if coercer is not None:
        value = coercer(value)
        if value is None:
            return
    node = target
    for part in path[:-1]:
        node = node.setdefault(part, {})
    node[path[-1]] = value


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    New dict with ``override`` laid over ``base``.

    Nested dicts merge key by key, anything else is replaced. ``None`` in
    the override means "not mentioned" and leaves the base value alone.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = deep_merge(current, value)
        elif isinstance(value, Mapping):
            merged[key] = deep_merge({}, value)
        else:
            merged[key] = value
    return merged


# ============================================================================
# Intake
# ============================================================================

def validate_page_texts(declared_page_count: Optional[int], page_texts: List[str]) -> None:
    """The OCR batch must carry exactly one text per declared page."""
    if declared_page_count is None:
        return
    if declared_page_count != len(page_texts):
        logger.error(f"OCR returned {len(page_texts)} page(s) for a {declared_page_count}-page document")
        raise StructuralMismatchError("ocr", expected=declared_page_count, received=len(page_texts))


def intake_node(state: Dict[str, Any]) -> dict:
    """
    Node: Intake

    Validates every provider input before reconciliation starts:
    1. OCR page texts against the declared page count
    2. The base-contract extraction payload -> base terms + confidence
    3. Per-page extractions -> explicit fields, signature dates, counter numbers

    Returns:
        dict with base_terms, confidence, handwriting_detected,
        extracted_acceptance_date, page_fields, page_signatures,
        counter_numbers, merge_log
    """
    print("--- NODE: Intake ---")

    page_texts = state.get("page_texts") or []
    validate_page_texts(state.get("declared_page_count"), page_texts)

    payload = parse_extraction_payload(state.get("base_extraction"))
    base_terms = build_base_terms(payload)

    page_payloads = parse_page_extractions(state.get("page_extractions"), len(page_texts))
    page_fields = {
        number: coerce_page_fields(page.fields, source=f"page {number} extraction")
        for number, page in page_payloads.items()
    }
    page_signatures = {
        number: (tuple(page.buyer_signature_dates), tuple(page.seller_signature_dates))
        for number, page in page_payloads.items()
    }
    counter_numbers = {
        number: page.counter_number
        for number, page in page_payloads.items()
        if page.counter_number is not None
    }

    logger.info(
        f"Intake: {len(page_texts)} page(s), {len(base_terms['timeline_events_structured'])} "
        f"timeline event(s), {len(page_payloads)} page extraction(s)"
    )

    return {
        "base_terms": base_terms,
        "confidence": payload.confidence.model_dump(),
        "handwriting_detected": payload.handwriting_detected,
        "extracted_acceptance_date": payload.extracted.final_acceptance_date,
        "page_fields": {n: f for n, f in page_fields.items() if f},
        "page_signatures": page_signatures,
        "counter_numbers": counter_numbers,
        "merge_log": [f"Intake accepted {len(page_texts)} page(s)"],
    }
