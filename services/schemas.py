from __future__ import annotations

import re
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def coerce_amount(value: Any) -> Optional[float]:
    """Turn ``12500``, ``"12,500.00"`` or ``"$12,500 USD"`` into a float."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_RE.search(value.replace(",", ""))
        if match:
            return float(match.group(0))
    return None


def clamp_score(value: Any) -> Optional[float]:
    number = coerce_amount(value)
    if number is None:
        return None
    return round(min(100.0, max(0.0, number)), 2)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LineItemPrice(_Model):
    item: Optional[str] = None
    price: Optional[float] = None

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, value):
        return coerce_amount(value)


class ExtractedTerms(_Model):
    """Commercial terms pulled out of a vendor reply."""

    total_price: Optional[float] = Field(None, alias="totalPrice")
    line_item_prices: List[LineItemPrice] = Field(default_factory=list, alias="lineItemPrices")
    warranty_terms: Optional[str] = Field(None, alias="warrantyTerms")
    delivery_time: Optional[str] = Field(None, alias="deliveryTime")
    additional_notes: Optional[str] = Field(None, alias="additionalNotes")

    @field_validator("total_price", mode="before")
    @classmethod
    def _total(cls, value):
        return coerce_amount(value)

    @field_validator("line_item_prices", mode="before")
    @classmethod
    def _lines(cls, value):
        if value is None:
            return []
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]

    @field_validator("warranty_terms", "delivery_time", "additional_notes", mode="before")
    @classmethod
    def _text(cls, value):
        if value is None:
            return None
        return str(value)


class RequirementLine(_Model):
    item: Optional[str] = None
    quantity: Optional[float] = None
    specs: Optional[str] = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value):
        return coerce_amount(value)

    @field_validator("specs", mode="before")
    @classmethod
    def _specs(cls, value):
        if value is None:
            return None
        if isinstance(value, dict):
            return ", ".join(f"{key}: {val}" for key, val in value.items())
        return str(value)


class StructuredSolicitation(_Model):
    title: str = "Untitled request"
    line_items: List[RequirementLine] = Field(default_factory=list, alias="lineItems")
    budget: Optional[float] = None
    delivery_date: Optional[str] = Field(None, alias="deliveryDate")
    payment_terms: Optional[str] = Field(None, alias="paymentTerms")

    @field_validator("budget", mode="before")
    @classmethod
    def _budget(cls, value):
        return coerce_amount(value)

    def requirements(self) -> dict:
        return self.model_dump(include={"line_items", "delivery_date", "payment_terms"})


class ProposalScore(_Model):
    proposal_id: str = Field(..., alias="proposalId")
    vendor_name: Optional[str] = Field(None, alias="vendorName")
    score: Optional[float] = None
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)

    @field_validator("proposal_id", mode="before")
    @classmethod
    def _ident(cls, value):
        return str(value).strip() if value is not None else value

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, value):
        return clamp_score(value)

    @field_validator("strengths", "weaknesses", mode="before")
    @classmethod
    def _notes(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]


class ComparisonResult(_Model):
    scores: List[ProposalScore] = Field(default_factory=list)
    recommended_proposal_id: Optional[str] = Field(None, alias="recommendedProposalId")
    recommended_vendor_name: Optional[str] = Field(None, alias="recommendedVendorName")
    summary: Optional[str] = None
    comparison_notes: Optional[str] = Field(None, alias="comparisonNotes")

    @field_validator("recommended_proposal_id", mode="before")
    @classmethod
    def _recommended(cls, value):
        if value is None:
            return None
        text = str(value).strip()
        return text or None


__all__ = [
    "ComparisonResult",
    "ExtractedTerms",
    "LineItemPrice",
    "ProposalScore",
    "RequirementLine",
    "StructuredSolicitation",
    "clamp_score",
    "coerce_amount",
]
