"""
Field Merge Node - Final Terms Reconciliation

Starts from the base contract's terms and applies, in merge order, every
valid counter offer, then addenda and broker-info pages. Each document
overwrites only the fields it explicitly states; a field no document
mentions keeps its base-contract value, even when that value is None.

Also decides the acceptance date:

- no valid counter offers: the later of the base contract's buyer and
  seller signature dates
- otherwise the highest-numbered valid counter decides: a buyer counter
  (BCO) is accepted by the seller's signature, a seller counter (SCO/SMCO)
  by the buyer's. Counters of unknown type are merged but never decide
  the acceptance date.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from nodes.counters import CounterOfferUnit, CounterType
from nodes.extractor import deep_merge, derive_contingency_days
from nodes.priority import BASE_PRIORITIES, merge_sort_key
from state import PageMetadata, PageRole, UNKNOWN_FORM_CODE

logger = logging.getLogger(__name__)

CHAIN_SEPARATOR = " → "
DEFAULT_BASE_LABEL = "CONTRACT"

BASE_SIGNATURE_ROLES = frozenset({PageRole.MAIN_CONTRACT, PageRole.SIGNATURES})
OVERRIDE_PAGE_ROLES = frozenset({PageRole.ADDENDUM, PageRole.BROKER_INFO})


# ============================================================================
# Merge Documents
# ============================================================================

@dataclass(frozen=True)
class MergeDocument:
    """One document applied on top of the base terms."""
    label: str
    priority: float
    latest_signature_date: Optional[str]
    first_page: int
    modified_fields: Mapping[str, Any] = field(default_factory=dict)
    unit: Optional[CounterOfferUnit] = None

    @property
    def sort_key(self) -> Tuple[float, str, int]:
        return merge_sort_key(self.priority, self.latest_signature_date, self.first_page)


def _page_label(page: PageMetadata) -> str:
    name = page.form_code if page.form_code != UNKNOWN_FORM_CODE else page.role.value.upper()
    return f"{name} (p. {page.page_number})"


def build_merge_sequence(
    pages: Sequence[PageMetadata],
    priorities: Mapping[int, Optional[float]],
    units: Sequence[CounterOfferUnit],
    page_fields: Mapping[int, Mapping[str, Any]],
) -> Tuple[List[MergeDocument], List[str]]:
    """
    Valid counter offers plus addendum/broker pages that state fields,
    in merge order. Returns (documents, log lines for what was skipped).
    """
    documents: List[MergeDocument] = []
    skipped: List[str] = []

    for unit in units:
        if not unit.is_valid:
            skipped.append(f"{unit.label} not merged: {'; '.join(unit.issues)}")
            continue
        priority = priorities.get(unit.first_page)
        documents.append(MergeDocument(
            label=unit.label,
            priority=priority if priority is not None else BASE_PRIORITIES[PageRole.COUNTER_OFFER],
            latest_signature_date=unit.latest_signature_date,
            first_page=unit.first_page,
            modified_fields=unit.modified_fields,
            unit=unit,
        ))

    for page in pages:
        priority = priorities.get(page.page_number)
        fields = page_fields.get(page.page_number)
        if page.role not in OVERRIDE_PAGE_ROLES or priority is None or not fields:
            continue
        documents.append(MergeDocument(
            label=_page_label(page),
            priority=priority,
            latest_signature_date=page.latest_signature_date,
            first_page=page.page_number,
            modified_fields=fields,
        ))

    documents.sort(key=lambda d: d.sort_key)
    return documents, skipped


# ============================================================================
# Merge
# ============================================================================

@dataclass
class MergeResult:
    final_terms: Dict[str, Any]
    provenance: Dict[str, str]
    log: List[str]


def _leaf_paths(values: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, Any]]:
    leaves = []
    for key, value in values.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping) and value:
            leaves.extend(_leaf_paths(value, path + "."))
        elif value is not None:
            leaves.append((path, value))
    return leaves


def _lookup(values: Mapping[str, Any], path: str) -> Any:
    node: Any = values
    for part in path.split("."):
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _restated_contingency_days(document: MergeDocument, terms: Mapping[str, Any]) -> Dict[str, int]:
    """
    Day counts implied by the contingency events a document restates,
    minus any count the document also sets directly.
    """
    events = document.modified_fields.get("timeline_events_structured") or {}
    explicit = document.modified_fields.get("contingencies") or {}
    derived = {}
    for key, days in derive_contingency_days(events).items():
        if days is None or explicit.get(key) is not None:
            continue
        if key == "loan_days" and _lookup(terms, "financing.is_all_cash"):
            continue
        derived[key] = days
    return derived


def merge_terms(
    base_terms: Mapping[str, Any],
    documents: Sequence[MergeDocument],
    base_label: str = DEFAULT_BASE_LABEL,
) -> MergeResult:
    """
    Apply ``documents`` in the given order on a copy of ``base_terms``.

    A document that restates a contingency event also moves the matching
    ``contingencies.*_days`` count, so the two never disagree.
    """
    terms = copy.deepcopy(dict(base_terms))
    provenance = {path: base_label for path, _ in _leaf_paths(terms)}
    log: List[str] = []

    for document in documents:
        for path, value in _leaf_paths(document.modified_fields):
            previous = _lookup(terms, path)
            if previous != value:
                log.append(f"{document.label}: {path} {previous!r} -> {value!r}")
            provenance[path] = document.label
        terms = deep_merge(terms, copy.deepcopy(dict(document.modified_fields)))

        derived = _restated_contingency_days(document, terms)
        for key, days in derived.items():
            path = f"contingencies.{key}"
            previous = _lookup(terms, path)
            if previous != days:
                log.append(f"{document.label}: {path} {previous!r} -> {days!r} (from timeline)")
            provenance[path] = document.label
        if derived:
            terms = deep_merge(terms, {"contingencies": derived})

    return MergeResult(final_terms=terms, provenance=provenance, log=log)


# ============================================================================
# Acceptance Date
# ============================================================================

@dataclass
class AcceptanceDecision:
    date: Optional[str]
    source: str


def _latest(dates: Sequence[Optional[str]]) -> Optional[str]:
    present = [d for d in dates if d]
    return max(present) if present else None


def determine_acceptance_date(
    units: Sequence[CounterOfferUnit],
    pages: Sequence[PageMetadata],
    fallback_date: Optional[str] = None,
) -> AcceptanceDecision:
    """
    The last qualifying countersignature forms the agreement.

    Only valid counters of known type count; among them the highest
    number wins (ties: later signature, then later page).
    """
    deciding = [u for u in units if u.is_valid and u.type != CounterType.UNKNOWN]
    if deciding:
        top = max(deciding, key=lambda u: (u.number, u.latest_signature_date or "", u.first_page))
        if top.type == CounterType.BCO:
            return AcceptanceDecision(top.latest_seller_signature, f"{top.label} seller signature")
        return AcceptanceDecision(top.latest_buyer_signature, f"{top.label} buyer signature")

    base_pages = [p for p in pages if p.role in BASE_SIGNATURE_ROLES]
    buyer = _latest([p.latest_buyer_signature for p in base_pages])
    seller = _latest([p.latest_seller_signature for p in base_pages])
    latest = _latest([buyer, seller])
    if latest:
        return AcceptanceDecision(latest, "base contract signatures")

    if fallback_date:
        return AcceptanceDecision(fallback_date, "extracted acceptance date")
    return AcceptanceDecision(None, "no signature dates found")


def base_contract_label(pages: Sequence[PageMetadata]) -> str:
    for page in pages:
        if page.role == PageRole.MAIN_CONTRACT and page.form_code != UNKNOWN_FORM_CODE:
            return page.form_code
    return DEFAULT_BASE_LABEL


def build_counter_chain(base_label: str, documents: Sequence[MergeDocument]) -> str:
    """``RPA → SCO #1 → BCO #1``: the base form then each merged counter."""
    labels = [base_label] + [d.label for d in documents if d.unit is not None]
    return CHAIN_SEPARATOR.join(labels)


# ============================================================================
# Main Node Function
# ============================================================================

def field_merge_node(state: Dict[str, Any]) -> dict:
    """
    Node: Field Merge

    Process:
    1. Build the merge sequence from valid counters and override pages
    2. Apply it to the base terms, field by field
    3. Decide the acceptance date and stamp it as the effective date

    Returns:
        dict with final_terms, provenance, acceptance_date,
        acceptance_source, counter_chain, merge_log
    """
    print("--- NODE: Field Merge ---")

    pages = state.get("pages") or []
    units = state.get("counter_units") or []

    documents, skipped = build_merge_sequence(
        pages,
        state.get("page_priorities") or {},
        units,
        state.get("page_fields") or {},
    )

    base_label = base_contract_label(pages)
    result = merge_terms(state.get("base_terms") or {}, documents, base_label)

    acceptance = determine_acceptance_date(units, pages, state.get("extracted_acceptance_date"))
    final_terms = result.final_terms
    final_terms["effective_date"] = acceptance.date
    result.provenance["effective_date"] = acceptance.source

    chain = build_counter_chain(base_label, documents)
    log = skipped + result.log + [
        f"Acceptance date {acceptance.date or 'unknown'} from {acceptance.source}",
        f"Counter chain: {chain}",
    ]

    if acceptance.date is None:
        logger.warning("No acceptance date could be determined")
    logger.info(f"Merged {len(documents)} document(s) onto {base_label}: {chain}")

    return {
        "final_terms": final_terms,
        "provenance": result.provenance,
        "acceptance_date": acceptance.date,
        "acceptance_source": acceptance.source,
        "counter_chain": chain,
        "merge_log": log,
    }
