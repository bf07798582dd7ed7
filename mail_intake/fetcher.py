"""Fetch and decode the bytes of one selected MIME part under a hard cap."""

from __future__ import annotations

import base64
import binascii
import quopri
import re

import structlog

from .errors import PartDecodeError, PartTooLargeError
from .imap_session import MailSession
from .selector import SelectedPart

logger = structlog.get_logger()

_BASE64_JUNK = re.compile(rb"[^A-Za-z0-9+/=]")


def wire_limit(max_bytes: int, encoding: str | None) -> int:
    """Largest encoded size that can still decode to at most *max_bytes*."""
    if encoding == "base64":
        encoded = 4 * ((max_bytes + 2) // 3)
        # CRLF after every line; mailers wrap at 76 but some go as low as 60
        return encoded + 2 * (encoded // 60 + 1)
    if encoding == "quoted-printable":
        # every octet may become "=XX", plus soft line breaks
        encoded = 3 * max_bytes
        return encoded + 3 * (encoded // 73 + 1)
    return max_bytes


def decode_body(raw: bytes, encoding: str | None) -> bytes:
    """Undo a Content-Transfer-Encoding.  Unknown encodings pass through."""
    if encoding == "base64":
        cleaned = _BASE64_JUNK.sub(b"", raw).rstrip(b"=")
        cleaned += b"=" * (-len(cleaned) % 4)
        return base64.b64decode(cleaned)
    if encoding == "quoted-printable":
        return quopri.decodestring(raw)
    return raw


class PartFetcher:
    """Pulls one part's body from the mail session and decodes it."""

    def __init__(self, max_attachment_bytes: int) -> None:
        self.max_attachment_bytes = max_attachment_bytes

    async def fetch(self, session: MailSession, uid: int, part: SelectedPart) -> bytes:
        limit = wire_limit(self.max_attachment_bytes, part.encoding)
        if part.size is not None and part.size > limit:
            raise PartTooLargeError(uid, part.path, part.size, limit)

        raw = await session.fetch_part_bytes(uid, part.path, limit)

        try:
            data = decode_body(raw, part.encoding)
        except (binascii.Error, ValueError) as exc:
            raise PartDecodeError(uid, part.path, part.encoding, str(exc)) from exc

        if len(data) > self.max_attachment_bytes:
            raise PartTooLargeError(uid, part.path, len(data), self.max_attachment_bytes)

        logger.debug(
            "part_fetched",
            uid=uid,
            part=part.path,
            encoding=part.encoding,
            wire_bytes=len(raw),
            size=len(data),
        )
        return data
