from typing import TypedDict, List, Dict, Optional, Any, Tuple
import operator
from typing import Annotated
from dataclasses import dataclass, field
from enum import Enum

# ============================================================================
# Page Model
# ============================================================================

UNKNOWN_FORM_CODE = "UNKNOWN"


class PageRole(str, Enum):
    """Structural role of a page within a contract packet."""
    MAIN_CONTRACT = "main_contract"
    COUNTER_OFFER = "counter_offer"
    ADDENDUM = "addendum"
    LOCAL_ADDENDUM = "local_addendum"
    CONTINGENCY_RELEASE = "contingency_release"
    DISCLOSURE = "disclosure"
    BROKER_INFO = "broker_info"
    TITLE_PAGE = "title_page"
    SIGNATURES = "signatures"
    OTHER = "other"


class ContentCategory(str, Enum):
    """What kind of content dominates a page."""
    TRANSACTION_TERMS = "transaction_terms"
    SIGNATURES = "signatures"
    BROKER_INFO = "broker_info"
    DISCLOSURES = "disclosures"
    BOILERPLATE = "boilerplate"
    OTHER = "other"


@dataclass(frozen=True)
class PageMetadata:
    """
    Classification of one physical page.

    Created once by the classifier and read-only afterwards. Signature
    dates are ISO (YYYY-MM-DD) strings in the order they were found.
    """
    page_number: int
    form_code: str = UNKNOWN_FORM_CODE
    role: PageRole = PageRole.OTHER
    content_category: ContentCategory = ContentCategory.OTHER
    has_filled_fields: bool = False
    confidence: float = 0.0
    buyer_signature_dates: Tuple[str, ...] = field(default_factory=tuple)
    seller_signature_dates: Tuple[str, ...] = field(default_factory=tuple)
    title_snippet: str = ""
    text: str = field(default="", repr=False, compare=False)

    @property
    def has_buyer_signature(self) -> bool:
        return bool(self.buyer_signature_dates)

    @property
    def has_seller_signature(self) -> bool:
        return bool(self.seller_signature_dates)

    @property
    def latest_buyer_signature(self) -> Optional[str]:
        return max(self.buyer_signature_dates) if self.buyer_signature_dates else None

    @property
    def latest_seller_signature(self) -> Optional[str]:
        return max(self.seller_signature_dates) if self.seller_signature_dates else None

    @property
    def latest_signature_date(self) -> Optional[str]:
        dates = self.buyer_signature_dates + self.seller_signature_dates
        return max(dates) if dates else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_number": self.page_number,
            "form_code": self.form_code,
            "role": self.role.value,
            "content_category": self.content_category.value,
            "has_filled_fields": self.has_filled_fields,
            "confidence": self.confidence,
            "buyer_signature_dates": list(self.buyer_signature_dates),
            "seller_signature_dates": list(self.seller_signature_dates),
            "title_snippet": self.title_snippet,
        }


# ============================================================================
# Final Terms
# ============================================================================

class PropertyAddress(TypedDict, total=False):
    full: Optional[str]
    street: Optional[str]
    city: Optional[str]
    state: Optional[str]
    zip: Optional[str]


class Financing(TypedDict, total=False):
    is_all_cash: Optional[bool]
    loan_type: Optional[str]  # Conventional | FHA | VA | USDA | Other
    loan_amount: Optional[float]


class Contingencies(TypedDict, total=False):
    inspection_days: Optional[int]
    appraisal_days: Optional[int]
    loan_days: Optional[int]
    sale_of_buyer_property: Optional[bool]


class BrokerContact(TypedDict, total=False):
    brokerage_name: Optional[str]
    agent_name: Optional[str]
    email: Optional[str]
    phone: Optional[str]


class HomeWarranty(TypedDict, total=False):
    ordered_by: Optional[str]  # Buyer | Seller | Both | Waived
    seller_max_cost: Optional[float]
    provider: Optional[str]


class FinalTerms(TypedDict, total=False):
    """
    The merged transaction terms.

    Grouped keys (financing, contingencies, ...) merge key-by-key.
    ``timeline_events_structured`` maps event_key -> TimelineEvent.
    """
    buyer_names: List[str]
    seller_names: List[str]
    property_address: PropertyAddress
    purchase_price: Optional[float]
    earnest_money_deposit: Dict[str, Any]
    closing_date: Optional[str]
    effective_date: Optional[str]
    financing: Financing
    contingencies: Contingencies
    closing_costs: Dict[str, Any]
    buyers_broker: BrokerContact
    sellers_broker: BrokerContact
    home_warranty: HomeWarranty
    personal_property_included: List[str]
    escrow_holder: Optional[str]
    timeline_events_structured: Dict[str, Any]


class ConfidenceScores(TypedDict, total=False):
    overall_confidence: float
    purchase_price: float
    property_address: float
    buyer_names: float
    timeline_events: float
    final_acceptance_date: float
    home_warranty: float
    brokerage_info: float
    loan_type: float


# ============================================================================
# Main Reconciliation State
# ============================================================================

class ReconciliationState(TypedDict, total=False):
    """
    The state passed between graph nodes.
    Each node returns only the keys it updates.
    """
    # Inputs
    document_id: str
    declared_page_count: int
    page_texts: List[str]
    page_labels: Optional[Any]  # raw LLM page-classification payload (dict or JSON text)
    base_extraction: Dict[str, Any]  # document-level extraction payload
    page_extractions: List[Dict[str, Any]]  # per-page explicit fields + signature dates

    # Intake
    page_fields: Dict[int, Dict[str, Any]]  # coerced explicit fields per page
    page_signatures: Dict[int, Tuple[Tuple[str, ...], Tuple[str, ...]]]  # (buyer, seller) dates
    counter_numbers: Dict[int, int]
    extracted_acceptance_date: Optional[str]

    # Classification
    pages: List[PageMetadata]
    critical_pages: List[int]
    package_summary: Dict[str, Any]

    # Ordering
    page_priorities: Dict[int, Optional[float]]
    merge_order: List[int]
    attached_addenda: Dict[int, int]  # addendum page -> counter page

    # Counter offers
    counter_units: List[Any]  # CounterOfferUnit

    # Merge
    base_terms: FinalTerms
    final_terms: FinalTerms
    provenance: Dict[str, str]
    acceptance_date: Optional[str]
    acceptance_source: Optional[str]
    counter_chain: str

    # Timeline
    resolved_dates: Dict[str, Optional[str]]
    timeline_display: Dict[str, str]
    timeline_issues: List[Dict[str, Any]]

    # Review
    confidence: ConfidenceScores
    handwriting_detected: bool
    confidence_report: Dict[str, Any]
    status: str  # 'COMPLETED' | 'NEEDS_REVIEW'
    review_queue: List[Dict[str, Any]]

    # Audit trail, appended to by every node
    merge_log: Annotated[List[str], operator.add]
