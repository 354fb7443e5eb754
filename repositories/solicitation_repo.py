from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from services.db import get_conn

STATUSES = ("draft", "sent", "active", "closed")

DDL_PG = """
CREATE SCHEMA IF NOT EXISTS proc;

CREATE TABLE IF NOT EXISTS proc.solicitations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    natural_language_query TEXT,
    requirements JSONB,
    budget NUMERIC(15, 2),
    status TEXT NOT NULL DEFAULT 'draft',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

DDL_SQLITE = """
CREATE TABLE IF NOT EXISTS solicitations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    natural_language_query TEXT,
    requirements TEXT,
    budget REAL,
    status TEXT NOT NULL DEFAULT 'draft',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_COLUMNS = "id, title, natural_language_query, requirements, budget, status, created_at"


@dataclass
class SolicitationRow:
    id: str
    title: str
    natural_language_query: Optional[str] = None
    requirements: Dict[str, Any] = field(default_factory=dict)
    budget: Optional[float] = None
    status: str = "draft"
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "natural_language_query": self.natural_language_query,
            "requirements": self.requirements,
            "budget": self.budget,
            "status": self.status,
            "created_at": self.created_at,
        }


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.executescript(DDL_SQLITE)
        else:
            cur.execute(DDL_PG)
        cur.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    return float(value)


def _row_from_record(record: Any) -> SolicitationRow:
    ident, title, query, requirements, budget, status, created_at = record
    if isinstance(requirements, str):
        requirements = json.loads(requirements) if requirements else {}
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    return SolicitationRow(
        id=str(ident),
        title=title,
        natural_language_query=query,
        requirements=requirements or {},
        budget=_to_float(budget),
        status=status,
        created_at=created_at,
    )


def create_solicitation(
    *,
    title: str,
    requirements: Optional[Dict[str, Any]] = None,
    budget: Optional[float] = None,
    natural_language_query: Optional[str] = None,
    status: str = "draft",
    solicitation_id: Optional[str] = None,
) -> SolicitationRow:
    if status not in STATUSES:
        raise ValueError(f"Unknown solicitation status: {status}")
    row = SolicitationRow(
        id=solicitation_id or str(uuid.uuid4()),
        title=title,
        natural_language_query=natural_language_query,
        requirements=dict(requirements or {}),
        budget=budget,
        status=status,
        created_at=_now(),
    )
    payload = json.dumps(row.requirements, ensure_ascii=False)
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute(
                "INSERT INTO solicitations (id, title, natural_language_query, requirements, budget, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    row.id, row.title, row.natural_language_query, payload, row.budget,
                    row.status, row.created_at.isoformat(), row.created_at.isoformat(),
                ),
            )
            conn.commit()
        else:
            cur.execute(
                "INSERT INTO proc.solicitations (id, title, natural_language_query, requirements, budget, status) "
                "VALUES (%s, %s, %s, %s::jsonb, %s, %s)",
                (row.id, row.title, row.natural_language_query, payload, row.budget, row.status),
            )
        cur.close()
    return row


def get_solicitation(solicitation_id: str) -> Optional[SolicitationRow]:
    if not solicitation_id:
        return None
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute(f"SELECT {_COLUMNS} FROM solicitations WHERE id = ?", (solicitation_id,))
        else:
            cur.execute(f"SELECT {_COLUMNS} FROM proc.solicitations WHERE id = %s", (solicitation_id,))
        record = cur.fetchone()
        cur.close()
    return _row_from_record(record) if record else None


def list_solicitations() -> List[SolicitationRow]:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute(f"SELECT {_COLUMNS} FROM solicitations ORDER BY created_at DESC")
        else:
            cur.execute(f"SELECT {_COLUMNS} FROM proc.solicitations ORDER BY created_at DESC")
        records = cur.fetchall()
        cur.close()
    return [_row_from_record(record) for record in records]


def mark_sent(solicitation_id: str) -> bool:
    """Move a solicitation to ``sent`` after a successful outbound delivery.

    Only ``draft`` and ``active`` solicitations move; returns ``True`` when
    the row was updated.
    """

    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute(
                "UPDATE solicitations SET status = 'sent', updated_at = ? "
                "WHERE id = ? AND status IN ('draft', 'active')",
                (_now().isoformat(), solicitation_id),
            )
            conn.commit()
        else:
            cur.execute(
                "UPDATE proc.solicitations SET status = 'sent', updated_at = NOW() "
                "WHERE id = %s AND status IN ('draft', 'active')",
                (solicitation_id,),
            )
        updated = cur.rowcount == 1
        cur.close()
    return updated
