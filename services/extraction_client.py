"""Structured extraction on top of the LM Studio generation endpoint.

Every call walks the configured model chain in order. A model that errors,
returns nothing, or returns text that does not parse into the expected shape
is recorded and the next model is tried; :class:`ExtractionError` is raised
only once the whole chain has failed.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from pydantic import ValidationError

from config.settings import settings
from services.lmstudio_client import LMStudioClient, get_lmstudio_client
from services.schemas import ComparisonResult, ExtractedTerms, StructuredSolicitation

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_BODY_CHARS = 500

TERMS_PROMPT = """You are a procurement analyst. Extract the following information from this vendor proposal email and output as JSON:
- total_price: number or null
- line_item_prices: array of objects with {{item: string, price: number}} or empty array
- warranty_terms: string or null
- delivery_time: string or null
- additional_notes: string or null

If information is not found, use null. Output ONLY valid JSON, no explanations.

Vendor Email:
\"\"\"
{body}
\"\"\"

JSON Output:"""

SUMMARY_PROMPT = """Summarize this vendor proposal in 2-3 sentences, highlighting the key terms (price, delivery, warranty):

Extracted Data: {terms}

Original Email (for context):
{excerpt}...

Summary:"""

COMPARISON_PROMPT = """Act as a procurement manager. Compare these vendor proposals against the original RFP requirements.

ORIGINAL RFP:
Title: {title}
Budget: {budget}
Requirements: {requirements}

VENDOR PROPOSALS:
{proposals}

For each proposal, evaluate:
1. Price competitiveness (vs budget and other proposals)
2. Completeness of response
3. Delivery timeline
4. Warranty/terms offered

Output a JSON object with:
{{
  "scores": [
    {{
      "proposalId": "uuid",
      "vendorName": "string",
      "score": number (0-100),
      "strengths": ["string"],
      "weaknesses": ["string"]
    }}
  ],
  "recommendedProposalId": "uuid of best proposal",
  "recommendedVendorName": "name of best vendor",
  "summary": "2-3 sentence explanation of why this vendor is recommended",
  "comparisonNotes": "Brief overview of how proposals compare"
}}

Output ONLY valid JSON, no markdown code blocks, no explanations."""

SOLICITATION_PROMPT = """You are a procurement expert. Convert this user query into a JSON object with fields: title, lineItems (array of objects with item, quantity, specs), budget (number or null if not specified), deliveryDate (ISO date string or null), paymentTerms (string or null). Output ONLY valid JSON, no markdown code blocks, no explanations.

User Query: "{query}"

JSON Output:"""


@dataclass(frozen=True)
class AttemptFailure:
    model: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"model": self.model, "error": self.error}


class ExtractionError(RuntimeError):
    """Raised when every model in the fallback chain failed."""

    def __init__(self, message: str, attempts: Sequence[AttemptFailure] = ()) -> None:
        super().__init__(message)
        self.attempts: List[AttemptFailure] = list(attempts)


def sanitize_json_response(text: str) -> str:
    """Strip code fences and any prose around the outermost JSON object."""

    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    return cleaned


def parse_json_object(text: str) -> Dict[str, Any]:
    payload = json.loads(sanitize_json_response(text))
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


class ExtractionClient:
    """Runs prompt templates through an ordered list of models."""

    def __init__(
        self,
        *,
        models: Optional[Sequence[str]] = None,
        client: Optional[LMStudioClient] = None,
        temperature: Optional[float] = None,
    ) -> None:
        chain = [name for name in (models if models is not None else settings.extraction_models) if name]
        if not chain:
            raise ValueError("At least one extraction model is required")
        self.models: List[str] = list(dict.fromkeys(chain))
        self._client = client
        self.temperature = settings.extraction_temperature if temperature is None else temperature

    @property
    def client(self) -> LMStudioClient:
        if self._client is None:
            self._client = get_lmstudio_client()
        return self._client

    def _run_chain(
        self,
        purpose: str,
        prompt: str,
        parse: Callable[[str], T],
        *,
        json_mode: bool,
    ) -> T:
        attempts: List[AttemptFailure] = []
        for model in self.models:
            try:
                text = self.client.generate(
                    model=model,
                    prompt=prompt,
                    json_mode=json_mode,
                    options={"temperature": self.temperature},
                )
                if not text or not text.strip():
                    raise ValueError("empty response")
                result = parse(text)
            except (ValueError, ValidationError) as exc:
                logger.warning("Model %s returned unusable %s output: %s", model, purpose, exc)
                attempts.append(AttemptFailure(model, f"malformed output: {exc}"))
                continue
            except Exception as exc:
                logger.warning("Model %s failed during %s: %s", model, purpose, exc)
                attempts.append(AttemptFailure(model, str(exc) or exc.__class__.__name__))
                continue
            if attempts:
                logger.info("%s succeeded with fallback model %s", purpose, model)
            return result

        raise ExtractionError(
            f"All {len(self.models)} models failed during {purpose}", attempts
        )

    def extract_terms(self, body: str) -> ExtractedTerms:
        prompt = TERMS_PROMPT.format(body=body or "")
        return self._run_chain(
            "terms extraction",
            prompt,
            lambda text: ExtractedTerms.model_validate(parse_json_object(text)),
            json_mode=True,
        )

    def summarize(self, terms: ExtractedTerms, body: str) -> str:
        prompt = SUMMARY_PROMPT.format(
            terms=json.dumps(terms.model_dump(), ensure_ascii=False),
            excerpt=(body or "")[:SUMMARY_BODY_CHARS],
        )
        return self._run_chain("summary", prompt, lambda text: text.strip(), json_mode=False)

    def compare(
        self,
        *,
        title: str,
        budget: Optional[float],
        requirements: Dict[str, Any],
        proposals: Sequence[Dict[str, Any]],
    ) -> ComparisonResult:
        prompt = COMPARISON_PROMPT.format(
            title=title,
            budget=budget if budget is not None else "Not specified",
            requirements=json.dumps(requirements or {}, ensure_ascii=False),
            proposals=json.dumps(list(proposals), indent=2, ensure_ascii=False, default=str),
        )
        return self._run_chain(
            "proposal comparison",
            prompt,
            lambda text: ComparisonResult.model_validate(parse_json_object(text)),
            json_mode=True,
        )

    def structure_solicitation(self, query: str) -> StructuredSolicitation:
        prompt = SOLICITATION_PROMPT.format(query=query)
        return self._run_chain(
            "solicitation structuring",
            prompt,
            lambda text: StructuredSolicitation.model_validate(parse_json_object(text)),
            json_mode=True,
        )


__all__ = [
    "AttemptFailure",
    "ExtractionClient",
    "ExtractionError",
    "parse_json_object",
    "sanitize_json_response",
]
