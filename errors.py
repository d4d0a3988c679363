"""
Fatal error types for the reconciliation pipeline.

Anything raised from here aborts the whole document. Non-fatal anomalies
(invalid counters, unresolved timeline events, low confidence) are recorded
on the result instead of raised.
"""

from typing import Any, List, Optional


class ReconciliationError(Exception):
    """Base class for document-level reconciliation failures."""

    def __init__(self, message: str, document_id: Optional[str] = None):
        self.message = message
        self.document_id = document_id
        super().__init__(message)


class StructuralMismatchError(ReconciliationError):
    """
    An upstream provider disagreed with itself or with the batch about
    how many pages / entries there are.
    """

    def __init__(
        self,
        source: str,
        expected: int,
        received: int,
        document_id: Optional[str] = None,
    ):
        self.source = source
        self.expected = expected
        self.received = received
        super().__init__(
            f"{source}: expected {expected} page(s), received {received}",
            document_id=document_id,
        )


class SchemaViolationError(ReconciliationError):
    """A provider payload did not match the required shape or enum values."""

    def __init__(
        self,
        source: str,
        details: Any = None,
        document_id: Optional[str] = None,
    ):
        self.source = source
        self.details: List[str] = _normalize_details(details)
        summary = "; ".join(self.details) if self.details else "invalid payload"
        super().__init__(f"{source}: {summary}", document_id=document_id)


class ProviderError(ReconciliationError):
    """An upstream LLM call was attempted and did not produce a usable result."""

    def __init__(self, provider: str, message: str, document_id: Optional[str] = None):
        self.provider = provider
        super().__init__(f"{provider}: {message}", document_id=document_id)


def _normalize_details(details: Any) -> List[str]:
    if details is None:
        return []
    if isinstance(details, str):
        return [details]
    # pydantic ValidationError.errors() style
    if isinstance(details, list):
        out = []
        for item in details:
            if isinstance(item, dict) and "msg" in item:
                loc = ".".join(str(p) for p in item.get("loc", ()))
                out.append(f"{loc}: {item['msg']}" if loc else item["msg"])
            else:
                out.append(str(item))
        return out
    return [str(details)]
