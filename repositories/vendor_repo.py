from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2

from services.db import get_conn

DDL_PG = """
CREATE SCHEMA IF NOT EXISTS proc;

CREATE TABLE IF NOT EXISTS proc.vendors (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    contact_info JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT vendors_email_unique UNIQUE (email)
);
"""

DDL_SQLITE = """
CREATE TABLE IF NOT EXISTS vendors (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    contact_info TEXT,
    created_at TEXT NOT NULL
);
"""


class DuplicateVendorEmail(ValueError):
    """Raised when another vendor already owns the email address."""

    def __init__(self, email: str) -> None:
        super().__init__(f"A vendor with email {email} already exists")
        self.email = email


@dataclass
class VendorRow:
    id: str
    name: str
    email: str
    contact_info: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "contact_info": self.contact_info,
        }


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.executescript(DDL_SQLITE)
        else:
            cur.execute(DDL_PG)
        cur.close()


def normalise_email(address: Optional[str]) -> str:
    return (address or "").strip().casefold()


def _row_from_record(record: Any) -> VendorRow:
    ident, name, email, contact_info = record
    if isinstance(contact_info, str):
        contact_info = json.loads(contact_info) if contact_info else {}
    return VendorRow(id=str(ident), name=name, email=email, contact_info=contact_info or {})


def create_vendor(
    *,
    name: str,
    email: str,
    contact_info: Optional[Dict[str, Any]] = None,
    vendor_id: Optional[str] = None,
) -> VendorRow:
    row = VendorRow(
        id=vendor_id or str(uuid.uuid4()),
        name=name,
        email=normalise_email(email),
        contact_info=dict(contact_info or {}),
    )
    if not row.email:
        raise ValueError("vendor email is required")
    payload = json.dumps(row.contact_info, ensure_ascii=False)
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            try:
                cur.execute(
                    "INSERT INTO vendors (id, name, email, contact_info, created_at) VALUES (?, ?, ?, ?, ?)",
                    (row.id, row.name, row.email, payload, datetime.now(timezone.utc).isoformat()),
                )
            except sqlite3.IntegrityError as exc:
                cur.close()
                raise DuplicateVendorEmail(row.email) from exc
            conn.commit()
        else:
            try:
                cur.execute(
                    "INSERT INTO proc.vendors (id, name, email, contact_info) VALUES (%s, %s, %s, %s::jsonb)",
                    (row.id, row.name, row.email, payload),
                )
            except psycopg2.IntegrityError as exc:
                cur.close()
                raise DuplicateVendorEmail(row.email) from exc
        cur.close()
    return row


def get_vendor(vendor_id: str) -> Optional[VendorRow]:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute("SELECT id, name, email, contact_info FROM vendors WHERE id = ?", (vendor_id,))
        else:
            cur.execute("SELECT id, name, email, contact_info FROM proc.vendors WHERE id = %s", (vendor_id,))
        record = cur.fetchone()
        cur.close()
    return _row_from_record(record) if record else None


def find_by_email(address: Optional[str]) -> Optional[VendorRow]:
    """Exact, case-folded email lookup."""

    email = normalise_email(address)
    if not email:
        return None
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute("SELECT id, name, email, contact_info FROM vendors WHERE email = ?", (email,))
        else:
            cur.execute("SELECT id, name, email, contact_info FROM proc.vendors WHERE email = %s", (email,))
        record = cur.fetchone()
        cur.close()
    return _row_from_record(record) if record else None


def list_vendors() -> List[VendorRow]:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute("SELECT id, name, email, contact_info FROM vendors ORDER BY name ASC")
        else:
            cur.execute("SELECT id, name, email, contact_info FROM proc.vendors ORDER BY name ASC")
        records = cur.fetchall()
        cur.close()
    return [_row_from_record(record) for record in records]
