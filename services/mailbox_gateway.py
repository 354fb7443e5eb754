"""IMAP access for vendor replies.

The orchestrator only depends on :class:`MailboxGateway`; the IMAP
implementation lives here together with the RFC822 parsing helpers.
"""
from __future__ import annotations

import hashlib
import imaplib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime
from html.parser import HTMLParser
from typing import Any, Iterable, List, Optional, Sequence, Set

from services.correlator import resolve_solicitation_id

try:  # pragma: no cover - settings import may fail in minimal environments
    from config.settings import settings as app_settings
except Exception:  # pragma: no cover - fallback when settings module unavailable
    app_settings = None

logger = logging.getLogger(__name__)


class MailboxError(RuntimeError):
    """Base class for mailbox failures."""


class MailboxConnectionError(MailboxError):
    """Raised when the mailbox cannot be reached, authenticated or opened."""


@dataclass(slots=True)
class RawMessage:
    """Inbound message as returned by the mailbox."""

    transport_id: str
    external_message_id: str
    sender_address: str
    sender_name: Optional[str]
    subject: str
    timestamp: datetime
    plain_text: str = ""
    html_text: Optional[str] = None

    @property
    def body(self) -> str:
        """Plain text when present, otherwise the HTML part reduced to text."""

        if self.plain_text and self.plain_text.strip():
            return self.plain_text.strip()
        if self.html_text:
            return strip_html_tags(self.html_text)
        return ""


@dataclass(slots=True)
class MailboxFilter:
    subject_marker: str = "RFP"
    unread_only: bool = True

    def imap_criteria(self) -> List[str]:
        criteria: List[str] = []
        if self.unread_only:
            criteria.append("UNSEEN")
        if self.subject_marker:
            criteria.extend(["SUBJECT", f'"{self.subject_marker}"'])
        return criteria or ["ALL"]

    def is_relevant(self, subject: Optional[str]) -> bool:
        text = subject or ""
        lowered = text.lower()
        if resolve_solicitation_id(text, marker=self.subject_marker):
            return True
        if self.subject_marker and self.subject_marker.lower() in lowered:
            return True
        return "proposal" in lowered


@dataclass(slots=True)
class MarkReadResult:
    requested: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.failed) and self.failed != self.requested


class MailboxGateway(ABC):
    """Capability consumed by the ingestion orchestrator."""

    @abstractmethod
    def list_candidates(self, mailbox_filter: MailboxFilter) -> List[RawMessage]:
        """Return messages matching ``mailbox_filter`` in mailbox order."""

    @abstractmethod
    def mark_read(self, transport_ids: Iterable[str]) -> MarkReadResult:
        """Flag ``transport_ids`` as seen."""


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class _BodyHTMLStripper(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self._parts: List[str] = []

    def handle_data(self, data: str) -> None:
        if data:
            self._parts.append(data)

    @property
    def text(self) -> str:
        return " ".join(part.strip() for part in self._parts if part.strip())


def strip_html_tags(html: str) -> str:
    parser = _BodyHTMLStripper()
    parser.feed(html)
    parser.close()
    return parser.text


def _decode_message(raw: bytes) -> EmailMessage:
    return BytesParser(policy=policy.default).parsebytes(raw)


def _extract_bodies(message: EmailMessage) -> tuple[str, Optional[str]]:
    text_content: Optional[str] = None
    html_content: Optional[str] = None

    if message.is_multipart():
        for part in message.walk():
            ctype = part.get_content_type()
            disp = (part.get("Content-Disposition") or "").lower()
            if "attachment" in disp or ctype not in ("text/plain", "text/html"):
                continue
            try:
                candidate = part.get_content()
            except (LookupError, ValueError) as exc:
                logger.warning("Failed to extract %s content: %s", ctype, exc)
                continue
            if not isinstance(candidate, str) or not candidate.strip():
                continue
            if ctype == "text/plain" and text_content is None:
                text_content = candidate.strip()
            elif ctype == "text/html" and html_content is None:
                html_content = candidate
    else:
        payload = message.get_content()
        if isinstance(payload, str):
            if message.get_content_type() == "text/html":
                html_content = payload
            else:
                text_content = payload.strip()

    return text_content or "", html_content


def _fallback_message_id(sender: str, subject: str, date_header: str, body: str) -> str:
    """Stable id derived only from content present in the message itself."""

    digest = hashlib.sha256(
        "\n".join([sender, subject, date_header, body]).encode("utf-8")
    ).hexdigest()
    return f"sha256:{digest[:40]}"


def parse_message_bytes(transport_id: str, raw: bytes) -> RawMessage:
    """Parse raw RFC822 bytes into a :class:`RawMessage`."""

    message = _decode_message(raw)
    plain_text, html_text = _extract_bodies(message)

    subject = str(message.get("Subject") or "").strip()
    sender_name, sender_address = parseaddr(str(message.get("From") or ""))

    date_header = message.get("Date")
    try:
        timestamp = parsedate_to_datetime(date_header) if date_header else None
    except (TypeError, ValueError):
        timestamp = None
    timestamp = timestamp or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    timestamp = timestamp.astimezone(timezone.utc)

    message_id = str(message.get("Message-ID") or "").strip().strip("<>").strip()
    if not message_id:
        message_id = _fallback_message_id(
            sender_address, subject, str(date_header or "").strip(), plain_text or html_text or ""
        )

    return RawMessage(
        transport_id=str(transport_id),
        external_message_id=message_id,
        sender_address=sender_address,
        sender_name=sender_name or None,
        subject=subject,
        timestamp=timestamp,
        plain_text=plain_text,
        html_text=html_text,
    )


def _parse_search_results(response: Sequence[Any]) -> List[str]:
    identifiers: List[str] = []
    for chunk in response:
        if not chunk:
            continue
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="ignore")
        identifiers.extend(token for token in str(chunk).split() if token.isdigit())
    return identifiers


# ---------------------------------------------------------------------------
# IMAP implementation
# ---------------------------------------------------------------------------


def _imap_client(
    host: str,
    username: str,
    password: str,
    *,
    port: int = 993,
    use_ssl: bool = True,
    timeout: Optional[float] = None,
) -> imaplib.IMAP4:
    if use_ssl:
        client: imaplib.IMAP4 = imaplib.IMAP4_SSL(host, port, timeout=timeout)
    else:  # pragma: no cover - plain IMAP only used in limited environments
        client = imaplib.IMAP4(host, port, timeout=timeout)
    client.login(username, password)
    return client


class ImapMailboxGateway(MailboxGateway):
    """Reads and flags messages on an IMAP server."""

    def __init__(
        self,
        *,
        host: Optional[str],
        username: Optional[str],
        password: Optional[str],
        mailbox: str = "INBOX",
        port: int = 993,
        use_ssl: bool = True,
        timeout: Optional[float] = 30,
        client_factory=_imap_client,
    ) -> None:
        self.host = host
        self.username = username
        self.password = password
        self.mailbox = mailbox
        self.port = port
        self.use_ssl = use_ssl
        self.timeout = timeout
        self._client_factory = client_factory

    @classmethod
    def from_settings(cls, settings: Any = None) -> "ImapMailboxGateway":
        source = settings or app_settings
        return cls(
            host=getattr(source, "imap_host", None),
            username=getattr(source, "imap_username", None),
            password=getattr(source, "imap_password", None),
            mailbox=getattr(source, "imap_mailbox", "INBOX") or "INBOX",
            port=int(getattr(source, "imap_port", 993) or 993),
            use_ssl=bool(getattr(source, "imap_use_ssl", True)),
            timeout=getattr(source, "imap_timeout", 30),
        )

    def _connect(self) -> imaplib.IMAP4:
        if not all([self.host, self.username, self.password]):
            raise MailboxConnectionError("IMAP credentials are not configured")
        try:
            client = self._client_factory(
                self.host,
                self.username,
                self.password,
                port=self.port,
                use_ssl=self.use_ssl,
                timeout=self.timeout,
            )
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailboxConnectionError(f"IMAP connection to {self.host} failed: {exc}") from exc
        try:
            status, data = client.select(self.mailbox)
        except (imaplib.IMAP4.error, OSError) as exc:
            self._logout(client)
            raise MailboxConnectionError(f"Unable to open mailbox {self.mailbox}: {exc}") from exc
        if status != "OK":
            self._logout(client)
            raise MailboxConnectionError(f"Unable to open mailbox {self.mailbox}: {data}")
        return client

    @staticmethod
    def _logout(client: imaplib.IMAP4) -> None:
        try:
            client.logout()
        except (imaplib.IMAP4.error, OSError):
            logger.debug("Failed to logout IMAP client", exc_info=True)

    def list_candidates(self, mailbox_filter: MailboxFilter) -> List[RawMessage]:
        client = self._connect()
        try:
            criteria = mailbox_filter.imap_criteria()
            try:
                status, data = client.uid("SEARCH", None, *criteria)
            except (imaplib.IMAP4.error, OSError) as exc:
                raise MailboxConnectionError(f"IMAP search failed: {exc}") from exc
            if status != "OK":
                raise MailboxConnectionError(f"IMAP search failed: {status} {data}")

            identifiers = _parse_search_results(data)
            logger.info("Found %d unread messages matching %s", len(identifiers), criteria)

            messages: List[RawMessage] = []
            for identifier in identifiers:
                # BODY.PEEK leaves the \Seen flag untouched
                try:
                    status, payload = client.uid("FETCH", identifier, "(BODY.PEEK[])")
                except (imaplib.IMAP4.abort, OSError) as exc:
                    raise MailboxConnectionError(f"IMAP connection dropped: {exc}") from exc
                except imaplib.IMAP4.error:
                    logger.warning("Failed to fetch message %s", identifier, exc_info=True)
                    continue
                if status != "OK":
                    logger.warning("Failed to fetch message %s: %s", identifier, status)
                    continue
                for part in payload or []:
                    if not isinstance(part, tuple) or len(part) < 2:
                        continue
                    raw = part[1]
                    if not isinstance(raw, (bytes, bytearray)):
                        continue
                    try:
                        parsed = parse_message_bytes(identifier, bytes(raw))
                    except Exception:
                        logger.exception("Failed to parse message %s", identifier)
                        continue
                    if mailbox_filter.is_relevant(parsed.subject):
                        messages.append(parsed)
                    else:
                        logger.debug("Ignoring unrelated message %s: %s", identifier, parsed.subject)
            return messages
        finally:
            self._logout(client)

    def mark_read(self, transport_ids: Iterable[str]) -> MarkReadResult:
        result = MarkReadResult(requested={str(uid) for uid in transport_ids if uid})
        if not result.requested:
            return result
        try:
            client = self._connect()
        except MailboxConnectionError:
            logger.exception("Unable to connect to mark %d messages read", len(result.requested))
            result.failed = set(result.requested)
            return result
        try:
            for uid in sorted(result.requested, key=lambda value: int(value) if value.isdigit() else 0):
                try:
                    status, _ = client.uid("STORE", uid, "+FLAGS", "(\\Seen)")
                except (imaplib.IMAP4.error, OSError):
                    logger.warning("Failed to mark message %s read", uid, exc_info=True)
                    status = "NO"
                if status != "OK":
                    result.failed.add(uid)
        finally:
            self._logout(client)
        return result


__all__ = [
    "ImapMailboxGateway",
    "MailboxConnectionError",
    "MailboxError",
    "MailboxFilter",
    "MailboxGateway",
    "MarkReadResult",
    "RawMessage",
    "parse_message_bytes",
    "strip_html_tags",
]
