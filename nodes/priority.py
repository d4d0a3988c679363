"""
Document Priority Node - Merge Ordering of Classified Pages

Assigns each page the priority its role carries in the merge:

    main_contract  1
    counter_offer  2
    addendum       2   (2.5 when attached to a counter offer)
    signatures     3
    broker_info    4

Other roles carry no priority and take no part in the merge.

An addendum is "attached" to a counter offer when its latest signature date
falls within a small window (1 day by default) of some counter page's latest
signature date; it is then merged after the counter offers instead of
alongside them.

Merge order: ascending priority, then latest signature date, then page.
"""

import os
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from state import PageMetadata, PageRole

logger = logging.getLogger(__name__)


BASE_PRIORITIES: Dict[PageRole, float] = {
    PageRole.MAIN_CONTRACT: 1,
    PageRole.COUNTER_OFFER: 2,
    PageRole.ADDENDUM: 2,
    PageRole.SIGNATURES: 3,
    PageRole.BROKER_INFO: 4,
}

ATTACHED_ADDENDUM_OFFSET = 0.5

# Sorts undated pages after dated ones within a priority tier
UNDATED = "9999-12-31"


@dataclass
class PriorityConfig:
    """Configuration for merge ordering."""
    attachment_window_days: int = 1


def _days_apart(a: str, b: str) -> int:
    return abs((date.fromisoformat(a) - date.fromisoformat(b)).days)


def find_attached_counter(
    addendum: PageMetadata,
    counter_pages: Sequence[PageMetadata],
    window_days: int = 1,
) -> Optional[PageMetadata]:
    """The first counter page signed within ``window_days`` of the addendum."""
    signed = addendum.latest_signature_date
    if signed is None:
        return None
    for counter in counter_pages:
        counter_signed = counter.latest_signature_date
        if counter_signed and _days_apart(signed, counter_signed) <= window_days:
            return counter
    return None


def resolve_priorities(
    pages: Sequence[PageMetadata],
    config: Optional[PriorityConfig] = None,
) -> Tuple[Dict[int, Optional[float]], Dict[int, int]]:
    """
    Priority per page number.

    Returns:
        (priorities, attachments) where attachments maps an attached
        addendum page to the counter page it was matched with.
    """
    config = config or PriorityConfig()
    counter_pages = [p for p in pages if p.role == PageRole.COUNTER_OFFER]

    priorities: Dict[int, Optional[float]] = {}
    attachments: Dict[int, int] = {}
    for page in pages:
        priority = BASE_PRIORITIES.get(page.role)
        if page.role == PageRole.ADDENDUM:
            counter = find_attached_counter(page, counter_pages, config.attachment_window_days)
            if counter is not None:
                priority = BASE_PRIORITIES[PageRole.COUNTER_OFFER] + ATTACHED_ADDENDUM_OFFSET
                attachments[page.page_number] = counter.page_number
        priorities[page.page_number] = priority
    return priorities, attachments


def merge_sort_key(priority: float, latest_signature_date: Optional[str], page_number: int) -> Tuple[float, str, int]:
    return (priority, latest_signature_date or UNDATED, page_number)


def order_pages(
    pages: Sequence[PageMetadata],
    priorities: Mapping[int, Optional[float]],
) -> List[int]:
    """Page numbers of merge-relevant pages in merge order."""
    ranked = [p for p in pages if priorities.get(p.page_number) is not None]
    ranked.sort(key=lambda p: merge_sort_key(priorities[p.page_number], p.latest_signature_date, p.page_number))
    return [p.page_number for p in ranked]


# ============================================================================
# Main Node Function
# ============================================================================

def document_priority_node(state: Dict[str, Any]) -> dict:
    """
    Node: Document Priority

    Returns:
        dict with page_priorities, merge_order, attached_addenda, merge_log
    """
    print("--- NODE: Document Priority ---")

    pages = state.get("pages") or []
    config = PriorityConfig(
        attachment_window_days=int(os.getenv("ADDENDUM_ATTACHMENT_WINDOW_DAYS", "1")),
    )

    priorities, attachments = resolve_priorities(pages, config)
    merge_order = order_pages(pages, priorities)

    log = [
        f"Addendum on page {addendum} attached to counter offer on page {counter}"
        for addendum, counter in sorted(attachments.items())
    ]
    logger.info(f"{len(merge_order)} merge-relevant page(s), {len(attachments)} attached addend(a)")

    return {
        "page_priorities": priorities,
        "merge_order": merge_order,
        "attached_addenda": attachments,
        "merge_log": log,
    }
