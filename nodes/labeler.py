"""
LLM Page Labelling - Upstream Page-Classification Provider

The labelling pass asks a chat model (OpenAI or Anthropic through
LangChain) to label every page of a packet. Its result is consumed by the
page classifier, which overlays the non-null label fields onto the
heuristic classification.

The result is all-or-nothing: the page count must match the document,
every label must use the known role/category values, and a failed call is
an error. There is no heuristic-only fallback once this pass is attempted.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Union

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from errors import ProviderError, SchemaViolationError, StructuralMismatchError
from nodes.extractor import load_json_payload
from state import ContentCategory, PageRole

logger = logging.getLogger(__name__)

SOURCE = "page_classification"


# ============================================================================
# Label Schema
# ============================================================================

class _LabelModel(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class PageLabel(_LabelModel):
    """What the labelling model says about one page."""
    pdf_page: Optional[int] = Field(default=None, ge=1)
    form_code: Optional[str] = None
    form_page: Optional[int] = None
    role: Optional[PageRole] = None
    content_category: Optional[ContentCategory] = None
    has_filled_fields: Optional[bool] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    title_snippet: Optional[str] = None


class PageClassificationOutput(_LabelModel):
    page_count: int = Field(ge=0)
    pages: List[Optional[PageLabel]]


def parse_page_labels(
    raw: Union[str, Mapping[str, Any]],
    expected_page_count: int,
) -> List[Optional[PageLabel]]:
    """
    Validate a labelling result against the document.

    Raises:
        SchemaViolationError: bad JSON, unknown role/category, bad types
        StructuralMismatchError: label count disagrees with the pages
    """
    data = load_json_payload(raw, SOURCE)
    try:
        output = PageClassificationOutput.model_validate(data)
    except ValidationError as e:
        logger.error(f"Page labels failed validation ({e.error_count()} error(s))")
        raise SchemaViolationError(SOURCE, e.errors()) from e

    if len(output.pages) != output.page_count:
        logger.error(f"Page labels declare {output.page_count} page(s) but carry {len(output.pages)}")
        raise StructuralMismatchError(SOURCE, expected=output.page_count, received=len(output.pages))

    if output.page_count != expected_page_count:
        logger.error(f"Page labels cover {output.page_count} page(s); document has {expected_page_count}")
        raise StructuralMismatchError(SOURCE, expected=expected_page_count, received=output.page_count)

    for index, label in enumerate(output.pages):
        if label is not None and label.pdf_page is not None and label.pdf_page != index + 1:
            raise SchemaViolationError(
                SOURCE, f"label in slot {index + 1} is for page {label.pdf_page}"
            )

    return output.pages


# ============================================================================
# Labeller Configuration
# ============================================================================

@dataclass
class LabelerConfig:
    """Configuration for the upstream labelling call."""

    llm_provider: str = "openai"  # "openai", "anthropic"
    llm_model: str = "gpt-4o-mini"  # or "claude-3-5-haiku-latest"
    llm_temperature: float = 0.0
    max_chars_per_page: int = 3000

    @classmethod
    def from_env(cls) -> "LabelerConfig":
        return cls(
            llm_provider=os.getenv("LABELER_LLM_PROVIDER", "openai"),
            llm_model=os.getenv("LABELER_LLM_MODEL", "gpt-4o-mini"),
            max_chars_per_page=int(os.getenv("LABELER_MAX_CHARS_PER_PAGE", "3000")),
        )


LABELING_SYSTEM_PROMPT = f"""You label the pages of a real estate purchase contract packet.

For EVERY page, return one entry (or null if the page is blank) with:
- formCode: the form identifier printed on the page (e.g. RPA, SCO, BCO, SMCO, ADM), or null
- formPage: the page number within that form, or null
- role: one of {", ".join(r.value for r in PageRole)}
- contentCategory: one of {", ".join(c.value for c in ContentCategory)}
- hasFilledFields: true if the page carries filled-in values (amounts, dates, checked boxes)
- confidence: 0-100
- titleSnippet: the page title, at most 120 characters

Respond in JSON format:
{{"pageCount": <number of pages>, "pages": [ ...one entry per page, in order... ]}}"""


def _build_chat_model(config: LabelerConfig):
    if config.llm_provider == "openai":
        if not os.getenv("OPENAI_API_KEY"):
            raise ProviderError("openai", "OPENAI_API_KEY not set")
        return ChatOpenAI(model=config.llm_model, temperature=config.llm_temperature)
    if config.llm_provider == "anthropic":
        if not os.getenv("ANTHROPIC_API_KEY"):
            raise ProviderError("anthropic", "ANTHROPIC_API_KEY not set")
        return ChatAnthropic(  # type: ignore[call-arg]
            model_name=config.llm_model,
            temperature=config.llm_temperature,
        )
    raise ProviderError(config.llm_provider, "unknown LLM provider")


def build_labeling_prompt(page_texts: Sequence[str], max_chars_per_page: int) -> str:
    parts = [f"This packet has {len(page_texts)} page(s).\n"]
    for index, text in enumerate(page_texts):
        parts.append(f"=== PAGE {index + 1} ===\n{(text or '')[:max_chars_per_page]}\n")
    return "\n".join(parts)


def request_page_labels(
    page_texts: Sequence[str],
    config: Optional[LabelerConfig] = None,
    llm: Any = None,
) -> List[Optional[PageLabel]]:
    """
    Run the labelling pass over a packet and validate the answer.

    ``llm`` is any LangChain chat model; one is built from ``config``
    when omitted.
    """
    config = config or LabelerConfig.from_env()
    llm = llm or _build_chat_model(config)

    messages = [
        SystemMessage(content=LABELING_SYSTEM_PROMPT),
        HumanMessage(content=build_labeling_prompt(page_texts, config.max_chars_per_page)),
    ]

    try:
        response = llm.invoke(messages)
    except Exception as e:
        logger.error(f"Page labelling call failed: {e}")
        raise ProviderError(config.llm_provider, f"labelling call failed: {e}") from e

    return parse_page_labels(str(response.content), expected_page_count=len(page_texts))
