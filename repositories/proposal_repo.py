from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from services.db import get_conn

logger = logging.getLogger(__name__)

DDL_PG = """
CREATE SCHEMA IF NOT EXISTS proc;

CREATE TABLE IF NOT EXISTS proc.proposals (
    id TEXT PRIMARY KEY,
    solicitation_id TEXT NOT NULL REFERENCES proc.solicitations (id),
    vendor_id TEXT NOT NULL REFERENCES proc.vendors (id),
    email_content TEXT,
    extracted_terms JSONB,
    score NUMERIC(5, 2),
    summary TEXT,
    received_at TIMESTAMPTZ,
    email_message_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT proposals_email_message_unique UNIQUE (email_message_id)
);

CREATE INDEX IF NOT EXISTS idx_proposals_solicitation
ON proc.proposals (solicitation_id);
"""

DDL_SQLITE = """
CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    solicitation_id TEXT NOT NULL,
    vendor_id TEXT NOT NULL,
    email_content TEXT,
    extracted_terms TEXT,
    score REAL,
    summary TEXT,
    received_at TEXT,
    email_message_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_proposals_solicitation
ON proposals (solicitation_id);
"""

_SELECT = (
    "SELECT p.id, p.solicitation_id, p.vendor_id, p.email_content, p.extracted_terms, "
    "p.score, p.summary, p.received_at, p.email_message_id, v.name "
    "FROM {proposals} p LEFT JOIN {vendors} v ON v.id = p.vendor_id"
)


@dataclass
class ProposalRow:
    id: str
    solicitation_id: str
    vendor_id: str
    email_message_id: str
    email_content: Optional[str] = None
    extracted_terms: Dict[str, Any] = field(default_factory=dict)
    score: Optional[float] = None
    summary: Optional[str] = None
    received_at: Optional[datetime] = None
    vendor_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "solicitation_id": self.solicitation_id,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "email_content": self.email_content,
            "extracted_terms": self.extracted_terms,
            "score": self.score,
            "summary": self.summary,
            "received_at": self.received_at,
            "email_message_id": self.email_message_id,
        }


def init_schema() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.executescript(DDL_SQLITE)
        else:
            cur.execute(DDL_PG)
        cur.close()


def _select(conn: Any) -> str:
    if isinstance(conn, sqlite3.Connection):
        return _SELECT.format(proposals="proposals", vendors="vendors")
    return _SELECT.format(proposals="proc.proposals", vendors="proc.vendors")


def _row_from_record(record: Any) -> ProposalRow:
    (
        ident,
        solicitation_id,
        vendor_id,
        email_content,
        extracted_terms,
        score,
        summary,
        received_at,
        message_id,
        vendor_name,
    ) = record
    if isinstance(extracted_terms, str):
        extracted_terms = json.loads(extracted_terms) if extracted_terms else {}
    if isinstance(received_at, str):
        received_at = datetime.fromisoformat(received_at)
    if isinstance(score, Decimal):
        score = float(score)
    return ProposalRow(
        id=str(ident),
        solicitation_id=str(solicitation_id),
        vendor_id=str(vendor_id),
        email_message_id=message_id,
        email_content=email_content,
        extracted_terms=extracted_terms or {},
        score=score,
        summary=summary,
        received_at=received_at,
        vendor_name=vendor_name,
    )


def _as_utc(value: datetime) -> datetime:
    # stored as ISO text in SQLite, so ordering needs a single offset
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def exists_message_id(message_id: str) -> bool:
    if not message_id:
        return False
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute("SELECT 1 FROM proposals WHERE email_message_id = ? LIMIT 1", (message_id,))
        else:
            cur.execute("SELECT 1 FROM proc.proposals WHERE email_message_id = %s LIMIT 1", (message_id,))
        found = cur.fetchone() is not None
        cur.close()
    return found


def insert_proposal(
    *,
    solicitation_id: str,
    vendor_id: str,
    email_message_id: str,
    email_content: Optional[str],
    extracted_terms: Dict[str, Any],
    score: Optional[float],
    summary: Optional[str],
    received_at: Optional[datetime],
) -> Optional[ProposalRow]:
    """Insert a proposal unless ``email_message_id`` is already stored.

    The unique constraint on ``email_message_id`` decides; ``None`` is
    returned when another writer got there first.
    """

    if not email_message_id:
        raise ValueError("email_message_id is required")

    row = ProposalRow(
        id=str(uuid.uuid4()),
        solicitation_id=solicitation_id,
        vendor_id=vendor_id,
        email_message_id=email_message_id,
        email_content=email_content,
        extracted_terms=dict(extracted_terms or {}),
        score=score,
        summary=summary,
        received_at=_as_utc(received_at or datetime.now(timezone.utc)),
    )
    terms_serial = json.dumps(row.extracted_terms, ensure_ascii=False)

    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute(
                """
INSERT OR IGNORE INTO proposals
(id, solicitation_id, vendor_id, email_content, extracted_terms, score, summary, received_at, email_message_id, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
""",
                (
                    row.id, row.solicitation_id, row.vendor_id, row.email_content, terms_serial,
                    row.score, row.summary, row.received_at.isoformat(), row.email_message_id,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            inserted = cur.rowcount == 1
            conn.commit()
        else:
            cur.execute(
                """
INSERT INTO proc.proposals
(id, solicitation_id, vendor_id, email_content, extracted_terms, score, summary, received_at, email_message_id)
VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s)
ON CONFLICT (email_message_id) DO NOTHING
RETURNING id
""",
                (
                    row.id, row.solicitation_id, row.vendor_id, row.email_content, terms_serial,
                    row.score, row.summary, row.received_at, row.email_message_id,
                ),
            )
            inserted = cur.fetchone() is not None
        cur.close()

    if not inserted:
        logger.info("Proposal for message %s already stored; insert ignored", email_message_id)
        return None
    return row


def get_proposal(proposal_id: str) -> Optional[ProposalRow]:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute(_select(conn) + " WHERE p.id = ?", (proposal_id,))
        else:
            cur.execute(_select(conn) + " WHERE p.id = %s", (proposal_id,))
        record = cur.fetchone()
        cur.close()
    return _row_from_record(record) if record else None


def list_for_solicitation(solicitation_id: str) -> List[ProposalRow]:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute(
                _select(conn) + " WHERE p.solicitation_id = ? ORDER BY p.received_at DESC",
                (solicitation_id,),
            )
        else:
            cur.execute(
                _select(conn) + " WHERE p.solicitation_id = %s ORDER BY p.received_at DESC",
                (solicitation_id,),
            )
        records = cur.fetchall()
        cur.close()
    return [_row_from_record(record) for record in records]


def list_proposals(
    *, solicitation_id: Optional[str] = None, vendor_id: Optional[str] = None
) -> List[ProposalRow]:
    clauses: List[str] = []
    params: List[Any] = []
    with get_conn() as conn:
        marker = "?" if isinstance(conn, sqlite3.Connection) else "%s"
        if solicitation_id:
            clauses.append(f"p.solicitation_id = {marker}")
            params.append(solicitation_id)
        if vendor_id:
            clauses.append(f"p.vendor_id = {marker}")
            params.append(vendor_id)
        query = _select(conn)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY p.received_at DESC"
        cur = conn.cursor()
        cur.execute(query, tuple(params))
        records = cur.fetchall()
        cur.close()
    return [_row_from_record(record) for record in records]


def update_score(proposal_id: str, score: Optional[float]) -> bool:
    with get_conn() as conn:
        cur = conn.cursor()
        if isinstance(conn, sqlite3.Connection):
            cur.execute("UPDATE proposals SET score = ? WHERE id = ?", (score, proposal_id))
            conn.commit()
        else:
            cur.execute("UPDATE proc.proposals SET score = %s WHERE id = %s", (score, proposal_id))
        updated = cur.rowcount == 1
        cur.close()
    return updated


def update_scores(scores: Iterable[tuple]) -> int:
    """Apply ``(proposal_id, score)`` pairs; returns the number of rows touched."""

    touched = 0
    for proposal_id, score in scores:
        if update_score(proposal_id, score):
            touched += 1
    return touched
