"""Lightweight envelope extraction from a message's header block.

Uses ``email.parser.BytesHeaderParser`` which parses *only* the headers,
so metadata for a 20 MB message costs a few hundred bytes on the wire.
"""

from __future__ import annotations

import email.header
import email.parser
import email.utils
from typing import Any


def extract_envelope(header_bytes: bytes) -> dict[str, Any]:
    """Extract envelope headers from raw RFC 822 header bytes.

    Returns a dict with: message_id, subject, from, date.
    """
    parser = email.parser.BytesHeaderParser()
    headers = parser.parsebytes(header_bytes)

    return {
        "message_id": (headers.get("Message-ID") or "").strip(),
        "subject": _decode(headers.get("Subject")),
        "from": ", ".join(_parse_address_list(headers.get("From"))),
        "date": headers.get("Date", ""),
    }


def fallback_message_id(uid: int) -> str:
    """Synthetic identity for messages that carry no Message-ID header."""
    return f"imap-uid-{uid}"


def _decode(header_value: str | None) -> str:
    if not header_value:
        return ""
    try:
        return str(email.header.make_header(email.header.decode_header(header_value)))
    except (UnicodeDecodeError, LookupError):
        return str(header_value)


def _parse_address_list(header_value: str | None) -> list[str]:
    """Parse an RFC 2822 address list into a list of email addresses."""
    if not header_value:
        return []
    return [addr for _, addr in email.utils.getaddresses([header_value]) if addr]
