"""Vendor (counterparty) routes."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from repositories import vendor_repo

router = APIRouter(prefix="/vendors", tags=["Vendors"])


class VendorCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    contact_info: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        address = vendor_repo.normalise_email(value)
        if "@" not in address:
            raise ValueError("email must be a valid address")
        return address


@router.post("", status_code=status.HTTP_201_CREATED)
def create_vendor(payload: VendorCreateRequest) -> Dict[str, Any]:
    if vendor_repo.find_by_email(payload.email) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A vendor with this email already exists",
        )
    try:
        row = vendor_repo.create_vendor(
            name=payload.name.strip(), email=payload.email, contact_info=payload.contact_info
        )
    except vendor_repo.DuplicateVendorEmail as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return {"success": True, "data": row.to_dict()}


@router.get("")
def list_vendors() -> Dict[str, Any]:
    return {"success": True, "data": [row.to_dict() for row in vendor_repo.list_vendors()]}
