import sys
import time
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from pathlib import Path
from types import SimpleNamespace

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from services.mailbox_gateway import (
    ImapMailboxGateway,
    MailboxConnectionError,
    MailboxFilter,
    parse_message_bytes,
)

SOLICITATION = "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"


def _raw(
    subject,
    *,
    body="Price: 10,000 USD",
    html=None,
    message_id="<abc@vendor.example>",
    date="Wed, 01 May 2024 12:00:00 +0000",
):
    message = EmailMessage()
    message["From"] = "Acme Sales <Sales@Acme.example>"
    message["To"] = "procurement@buyer.example"
    message["Subject"] = subject
    if date:
        message["Date"] = date
    if message_id:
        message["Message-ID"] = message_id
    if body is not None:
        message.set_content(body)
        if html:
            message.add_alternative(html, subtype="html")
    else:
        message.set_content(html, subtype="html")
    return message.as_bytes()


class FakeImap:
    def __init__(self, messages, *, store_status=None, fetch_error=None):
        self.messages = messages
        self.store_status = store_status or {}
        self.fetch_error = fetch_error
        self.searches = []
        self.stored = []
        self.logged_out = False

    def select(self, mailbox):
        return "OK", [b"1"]

    def uid(self, command, *args):
        if command == "SEARCH":
            self.searches.append(args[1:])
            return "OK", [" ".join(self.messages).encode()]
        if command == "FETCH":
            if self.fetch_error is not None:
                raise self.fetch_error
            uid = args[0]
            return "OK", [(f"{uid} (BODY[] {{100}}".encode(), self.messages[uid]), b")"]
        if command == "STORE":
            uid = args[0]
            self.stored.append(uid)
            return self.store_status.get(uid, "OK"), [b""]
        raise AssertionError(command)

    def logout(self):
        self.logged_out = True


def _gateway(client):
    return ImapMailboxGateway(
        host="imap.example",
        username="buyer",
        password="secret",
        client_factory=lambda *args, **kwargs: client,
    )


def test_parse_prefers_plain_text_and_strips_message_id_brackets():
    raw = _raw(f"RFP: {SOLICITATION}", html="<p>Ignored</p>")

    message = parse_message_bytes("7", raw)

    assert message.transport_id == "7"
    assert message.external_message_id == "abc@vendor.example"
    assert message.sender_address == "Sales@Acme.example"
    assert message.sender_name == "Acme Sales"
    assert message.body == "Price: 10,000 USD"
    assert message.timestamp.year == 2024


def test_parse_falls_back_to_html_body():
    raw = _raw("Proposal", body=None, html="<html><body><h1>Offer</h1><p>Total 5,000</p></body></html>")

    message = parse_message_bytes("8", raw)

    assert message.plain_text == ""
    assert message.body == "Offer Total 5,000"


def test_missing_message_id_gets_stable_fallback():
    raw = _raw("Proposal", message_id=None)

    first = parse_message_bytes("1", raw)
    second = parse_message_bytes("2", raw)

    assert first.external_message_id.startswith("sha256:")
    assert first.external_message_id == second.external_message_id


def test_fallback_id_without_date_header_is_stable_across_parses():
    raw = _raw("Proposal", message_id=None, date=None)

    first = parse_message_bytes("1", raw)
    time.sleep(0.01)
    second = parse_message_bytes("1", raw)

    assert first.external_message_id.startswith("sha256:")
    assert first.external_message_id == second.external_message_id
    dated = parse_message_bytes("1", _raw("Proposal", message_id=None))
    assert dated.external_message_id != first.external_message_id


def test_timestamp_is_normalised_to_utc():
    raw = _raw("Proposal", date="Wed, 01 May 2024 14:00:00 +0200")

    parsed = parse_message_bytes("1", raw)

    assert parsed.timestamp == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert parsed.timestamp.utcoffset() == timedelta(0)


def test_filter_criteria_and_relevance():
    mailbox_filter = MailboxFilter(subject_marker="RFP")

    assert mailbox_filter.imap_criteria() == ["UNSEEN", "SUBJECT", '"RFP"']
    assert mailbox_filter.is_relevant(f"Re: {SOLICITATION}")
    assert mailbox_filter.is_relevant("rfp response")
    assert mailbox_filter.is_relevant("Our Proposal")
    assert not mailbox_filter.is_relevant("Lunch on Friday?")


def test_list_candidates_applies_relevance_filter():
    client = FakeImap(
        {
            "11": _raw(f"RFP: {SOLICITATION}"),
            "12": _raw("Newsletter", message_id="<news@vendor.example>"),
        }
    )

    messages = _gateway(client).list_candidates(MailboxFilter())

    assert [message.transport_id for message in messages] == ["11"]
    assert client.searches == [("UNSEEN", "SUBJECT", '"RFP"')]
    assert client.logged_out


def test_mark_read_reports_partial_failure():
    client = FakeImap({}, store_status={"12": "NO"})

    result = _gateway(client).mark_read(["11", "12"])

    assert client.stored == ["11", "12"]
    assert result.failed == {"12"}
    assert result.partial
    assert not result.success


def test_missing_credentials_is_a_connection_error():
    gateway = ImapMailboxGateway(host=None, username=None, password=None)

    with pytest.raises(MailboxConnectionError):
        gateway.list_candidates(MailboxFilter())


def test_connect_failure_marks_everything_failed():
    def refuse(*args, **kwargs):
        raise OSError("connection refused")

    gateway = ImapMailboxGateway(host="imap.example", username="u", password="p", client_factory=refuse)

    result = gateway.mark_read(["1", "2"])

    assert result.failed == {"1", "2"}
    assert not result.partial


def test_from_settings_reads_imap_fields():
    source = SimpleNamespace(
        imap_host="imap.example",
        imap_username="buyer",
        imap_password="secret",
        imap_mailbox="Proposals",
        imap_port=1993,
        imap_use_ssl=False,
        imap_timeout=5,
    )

    gateway = ImapMailboxGateway.from_settings(source)

    assert gateway.mailbox == "Proposals"
    assert gateway.port == 1993
    assert gateway.use_ssl is False


def test_socket_error_during_fetch_is_a_connection_error():
    client = FakeImap({"11": _raw(f"RFP: {SOLICITATION}")}, fetch_error=OSError("connection reset"))

    with pytest.raises(MailboxConnectionError):
        _gateway(client).list_candidates(MailboxFilter())

    assert client.logged_out
