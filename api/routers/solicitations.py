"""Solicitation (RFP) routes."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator
from starlette.concurrency import run_in_threadpool

from repositories import solicitation_repo
from services.extraction_client import ExtractionClient, ExtractionError
from services.scoring import SolicitationNotFound, compare_solicitation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/solicitations", tags=["Solicitations"])


def _require_text(value: Any, name: str) -> str:
    if value is None:
        raise ValueError(f"{name} is required")
    text = str(value).strip()
    if not text:
        raise ValueError(f"{name} must not be empty")
    return text


class GenerateRequest(BaseModel):
    query: str = Field(..., description="Natural-language procurement request.")

    @field_validator("query", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return _require_text(value, "query")


class SolicitationCreateRequest(BaseModel):
    title: str
    natural_language_query: Optional[str] = None
    requirements: Dict[str, Any] = Field(default_factory=dict)
    budget: Optional[float] = Field(default=None, ge=0)
    status: str = "draft"

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return _require_text(value, "title")

    @field_validator("status")
    @classmethod
    def _status(cls, value: str) -> str:
        if value not in solicitation_repo.STATUSES:
            raise ValueError(f"status must be one of {', '.join(solicitation_repo.STATUSES)}")
        return value


def get_extraction_client(request: Request) -> ExtractionClient:
    client = getattr(request.app.state, "extraction_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Extraction service is not available",
        )
    return client


@router.post("/generate")
async def generate_solicitation(payload: GenerateRequest, request: Request) -> Dict[str, Any]:
    """Turn a free-text request into a structured solicitation draft."""

    client = get_extraction_client(request)
    try:
        structured = await run_in_threadpool(client.structure_solicitation, payload.query)
    except ExtractionError as exc:
        logger.warning("Structured solicitation generation failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to generate structured solicitation: {exc}",
        ) from exc
    return {"success": True, "data": structured.model_dump(), "original_query": payload.query}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_solicitation(payload: SolicitationCreateRequest) -> Dict[str, Any]:
    row = solicitation_repo.create_solicitation(
        title=payload.title,
        requirements=payload.requirements,
        budget=payload.budget,
        natural_language_query=payload.natural_language_query,
        status=payload.status,
    )
    return {"success": True, "data": row.to_dict()}


@router.get("")
def list_solicitations() -> Dict[str, Any]:
    return {"success": True, "data": [row.to_dict() for row in solicitation_repo.list_solicitations()]}


@router.get("/{solicitation_id}")
def get_solicitation(solicitation_id: str) -> Dict[str, Any]:
    row = solicitation_repo.get_solicitation(solicitation_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Solicitation not found")
    return {"success": True, "data": row.to_dict()}


@router.get("/{solicitation_id}/compare")
async def compare(solicitation_id: str, request: Request) -> Dict[str, Any]:
    """Rank the proposals received for a solicitation."""

    client = get_extraction_client(request)
    try:
        result = await run_in_threadpool(compare_solicitation, solicitation_id, client)
    except SolicitationNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ExtractionError as exc:
        logger.warning("Comparison for solicitation %s failed: %s", solicitation_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to compare proposals: {exc}",
        ) from exc
    return {"success": True, "data": result}
