import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from services import db
from services.mailbox_gateway import MailboxFilter, MailboxGateway, MarkReadResult, RawMessage


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Point every repository at a fresh SQLite file."""

    from repositories import proposal_repo, solicitation_repo, vendor_repo

    monkeypatch.setattr(db, "_pg_dsn", lambda: None)
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "intake.sqlite3"))
    solicitation_repo.init_schema()
    vendor_repo.init_schema()
    proposal_repo.init_schema()
    return tmp_path / "intake.sqlite3"


class ScriptedLLM:
    """Stands in for the LM Studio client.

    ``responder`` receives ``(model, prompt, json_mode)`` and returns text or
    raises; every call is recorded in ``calls``.
    """

    def __init__(self, responder: Callable[[str, str, bool], str]):
        self.responder = responder
        self.calls: List[Dict[str, object]] = []

    def generate(self, *, model, prompt, json_mode=False, options=None):
        self.calls.append({"model": model, "prompt": prompt, "json_mode": json_mode})
        return self.responder(model, prompt, json_mode)


def proposal_responder(
    terms: Optional[dict] = None,
    summary: str = "Vendor offers the full scope within budget.",
) -> Callable[[str, str, bool], str]:
    payload = terms if terms is not None else {
        "total_price": 100000,
        "line_item_prices": [{"item": "Laptop", "price": 1000}],
        "warranty_terms": "2 years",
        "delivery_time": "30 days",
        "additional_notes": None,
    }

    def respond(model, prompt, json_mode):
        if json_mode:
            return "```json\n" + json.dumps(payload) + "\n```"
        return summary

    return respond


class FakeGateway(MailboxGateway):
    def __init__(self, messages: Iterable[RawMessage] = (), *, fail_ids: Iterable[str] = ()):
        self.messages = list(messages)
        self.fail_ids = set(fail_ids)
        self.filters: List[MailboxFilter] = []
        self.marked: List[List[str]] = []

    def list_candidates(self, mailbox_filter):
        self.filters.append(mailbox_filter)
        return list(self.messages)

    def mark_read(self, transport_ids):
        ids = [str(value) for value in transport_ids]
        self.marked.append(ids)
        return MarkReadResult(requested=set(ids), failed=set(ids) & self.fail_ids)


def make_message(
    transport_id: str,
    subject: str,
    *,
    sender: str = "sales@acme.example",
    message_id: Optional[str] = None,
    body: str = "We can deliver 100 laptops for $100,000 within 30 days.",
) -> RawMessage:
    return RawMessage(
        transport_id=transport_id,
        external_message_id=message_id or f"<{transport_id}@acme.example>",
        sender_address=sender,
        sender_name="Acme Sales",
        subject=subject,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        plain_text=body,
    )
