"""Match inbound messages to solicitations and known vendors."""
from __future__ import annotations

import re
from typing import Callable, Optional

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_UUID_RE = re.compile(rf"(?<![0-9a-f-])({_UUID})(?![0-9a-f-])", re.IGNORECASE)
_SEPARATOR = r"[\s:#\-]+"

DEFAULT_MARKER = "RFP"


def _marker_pattern(marker: str) -> re.Pattern:
    return re.compile(
        rf"{re.escape(marker)}{_SEPARATOR}({_UUID})(?![0-9a-f-])", re.IGNORECASE
    )


def _single(matches) -> Optional[str]:
    distinct = {match.lower() for match in matches}
    if len(distinct) == 1:
        return distinct.pop()
    return None


def resolve_solicitation_id(subject: Optional[str], *, marker: str = DEFAULT_MARKER) -> Optional[str]:
    """Return the solicitation id referenced by ``subject``.

    ``<marker><separator><uuid>`` wins over a bare UUID anywhere in the
    subject. Several distinct candidates at the winning level yield ``None``.
    """

    if not subject:
        return None
    if marker:
        marked = _marker_pattern(marker).findall(subject)
        if marked:
            return _single(marked)
    return _single(_UUID_RE.findall(subject))


def resolve_counterparty(
    sender_address: Optional[str],
    lookup: Optional[Callable[[str], Optional[object]]] = None,
):
    """Case-folded exact match of ``sender_address`` against known vendors."""

    address = (sender_address or "").strip().casefold()
    if not address:
        return None
    if lookup is None:
        from repositories import vendor_repo

        lookup = vendor_repo.find_by_email
    return lookup(address)


__all__ = ["DEFAULT_MARKER", "resolve_counterparty", "resolve_solicitation_id"]
