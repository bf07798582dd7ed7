"""Read-only IMAP session wrapping stdlib imaplib with asyncio.to_thread.

The session never changes mailbox state: the folder is opened with
``EXAMINE`` and every body fetch uses ``BODY.PEEK`` so ``\\Seen`` is never
set.  No STORE, COPY, MOVE, EXPUNGE or CLOSE command is ever issued.
FETCH responses are decoded with imapclient's response parser.
"""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from imapclient.exceptions import ProtocolError
from imapclient.response_parser import parse_fetch_response

from .config import ImapConfig
from .envelope import extract_envelope, fallback_message_id
from .errors import (
    MailSessionError,
    MailTimeout,
    MetadataFetchError,
    NotConfiguredError,
    PartTooLargeError,
)
from .mime import MimePart, parse_bodystructure

logger = structlog.get_logger()

T = TypeVar("T")

ImapConnection = imaplib.IMAP4_SSL | imaplib.IMAP4


@dataclass
class MessageMetadata:
    """Envelope headers and MIME layout of one message (no body bytes)."""

    uid: int
    message_id: str
    subject: str
    sender: str
    date: str
    mime_tree: MimePart


class MailSession:
    """Async-friendly, read-only IMAP session bound to one mailbox.

    All blocking ``imaplib`` operations run via ``asyncio.to_thread()``
    under an ``asyncio.wait_for`` deadline, and the socket timeout is set
    to the same value so an abandoned worker thread unblocks as well.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: ImapConnection | None = None

    @property
    def mailbox(self) -> str:
        return self._config.mailbox

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def __aenter__(self) -> MailSession:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect, login, and EXAMINE the configured mailbox."""
        missing = [
            name
            for name, value in (
                ("IMAP_HOST", self._config.host),
                ("IMAP_USERNAME", self._config.username),
                ("IMAP_PASSWORD", self._config.password.get_secret_value()),
            )
            if not value
        ]
        if missing:
            raise NotConfiguredError(missing)

        cfg = self._config
        self._conn = await self._call(
            "connect",
            self._connect_sync,
            cfg.connect_timeout_seconds + cfg.greeting_timeout_seconds,
        )
        await self._call("login", self._examine_sync, cfg.auth_timeout_seconds)
        logger.info("imap_session_opened", host=cfg.host, mailbox=cfg.mailbox)

    def _connect_sync(self) -> ImapConnection:
        cfg = self._config
        timeout = max(cfg.connect_timeout_seconds, cfg.greeting_timeout_seconds)
        if cfg.use_ssl:
            return imaplib.IMAP4_SSL(cfg.host, cfg.port, timeout=timeout)
        return imaplib.IMAP4(cfg.host, cfg.port, timeout=timeout)

    def _examine_sync(self) -> None:
        conn = self._require()
        conn.sock.settimeout(self._config.auth_timeout_seconds)
        conn.login(self._config.username, self._config.password.get_secret_value())
        status, data = conn.select(_quote_mailbox(self._config.mailbox), readonly=True)
        if status != "OK":
            raise MailSessionError(
                f"EXAMINE {self._config.mailbox} failed",
                response=_first_line(data),
            )

    async def reconnect(self) -> None:
        """Drop the current connection (if any) and open a fresh one."""
        logger.warning("imap_session_reconnecting", mailbox=self._config.mailbox)
        await self.close()
        await self.open()

    async def close(self) -> None:
        """Logout.  Never raises; a dead connection is simply dropped."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(conn.logout),
                timeout=self._config.step_timeout_seconds,
            )
        except (TimeoutError, OSError, imaplib.IMAP4.error):
            _shutdown_quietly(conn)
        logger.info("imap_session_closed", mailbox=self._config.mailbox)

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    async def search(self, criteria: str = "ALL") -> list[int]:
        """Return matching message UIDs in ascending order."""

        def _search() -> list[int]:
            conn = self._require()
            conn.sock.settimeout(self._config.step_timeout_seconds)
            status, data = conn.uid("SEARCH", None, criteria)
            if status != "OK":
                raise MailSessionError("UID SEARCH failed", response=_first_line(data))
            raw = b" ".join(item for item in data if isinstance(item, bytes))
            return sorted(int(uid) for uid in raw.split())

        return await self._call("search", _search, self._config.step_timeout_seconds)

    async def fetch_metadata(self, uid: int) -> MessageMetadata:
        """Fetch envelope headers and BODYSTRUCTURE for one message."""

        def _fetch() -> list[Any]:
            conn = self._require()
            conn.sock.settimeout(self._config.step_timeout_seconds)
            status, data = conn.uid("FETCH", str(uid), "(UID BODYSTRUCTURE BODY.PEEK[HEADER])")
            if status != "OK" or not data or data[0] is None:
                raise MetadataFetchError(uid, f"server returned {status} with no data")
            return data

        data = await self._call("fetch metadata", _fetch, self._config.step_timeout_seconds)

        try:
            parsed = parse_fetch_response(data, normalise_times=True, uid_is_key=True)
            items = parsed[uid] if uid in parsed else next(iter(parsed.values()))
            mime_tree = parse_bodystructure(items[b"BODYSTRUCTURE"])
            header_bytes = items.get(b"BODY[HEADER]") or b""
        except (ProtocolError, StopIteration, KeyError, ValueError, IndexError) as exc:
            raise MetadataFetchError(uid, f"unparseable FETCH response: {exc}") from exc

        envelope = extract_envelope(header_bytes)
        return MessageMetadata(
            uid=uid,
            message_id=envelope["message_id"] or fallback_message_id(uid),
            subject=envelope["subject"],
            sender=envelope["from"],
            date=envelope["date"],
            mime_tree=mime_tree,
        )

    async def fetch_part_bytes(self, uid: int, part_path: str, max_bytes: int) -> bytes:
        """Fetch at most ``max_bytes`` of one part's (still encoded) body.

        Uses a partial fetch of ``max_bytes + 1`` octets so an oversized
        part is detected without buffering all of it.
        """

        def _fetch() -> list[Any]:
            conn = self._require()
            conn.sock.settimeout(self._config.fetch_timeout_seconds)
            status, data = conn.uid(
                "FETCH",
                str(uid),
                f"(UID BODY.PEEK[{part_path}]<0.{max_bytes + 1}>)",
            )
            if status != "OK":
                raise MailSessionError(
                    "UID FETCH part failed",
                    uid=uid,
                    part=part_path,
                    response=_first_line(data),
                )
            return data

        data = await self._call("fetch part", _fetch, self._config.fetch_timeout_seconds)
        payload = _part_payload(data)
        if len(payload) > max_bytes:
            raise PartTooLargeError(uid, part_path, len(payload), max_bytes)
        return payload

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self) -> ImapConnection:
        if self._conn is None:
            raise MailSessionError("IMAP session is not open", mailbox=self._config.mailbox)
        return self._conn

    async def _call(self, operation: str, fn: Callable[[], T], timeout: float) -> T:
        """Run blocking *fn* in a thread under a deadline, mapping failures."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout)
        except TimeoutError as exc:
            self._abandon()
            raise MailTimeout(operation, timeout) from exc
        except imaplib.IMAP4.abort as exc:
            self._abandon()
            if "timed out" in str(exc).lower():
                raise MailTimeout(operation, timeout) from exc
            raise MailSessionError(f"IMAP {operation} aborted: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise MailSessionError(f"IMAP {operation} failed: {exc}") from exc
        except OSError as exc:
            self._abandon()
            raise MailSessionError(f"IMAP {operation} connection error: {exc}") from exc

    def _abandon(self) -> None:
        """Forget a connection whose state is unknown after a failure."""
        conn, self._conn = self._conn, None
        if conn is not None:
            _shutdown_quietly(conn)


def _shutdown_quietly(conn: ImapConnection) -> None:
    try:
        conn.shutdown()
    except OSError:
        pass


def _quote_mailbox(name: str) -> str:
    if name.startswith('"') or not any(ch in name for ch in ' ()"\\'):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _part_payload(data: list[Any]) -> bytes:
    for item in data:
        if isinstance(item, tuple) and b"BODY[" in item[0].upper():
            return item[1]
    # Zero-length sections come back as a quoted "" with no literal
    return b""


def _first_line(data: list[Any] | None) -> str:
    if not data:
        return ""
    first = data[0]
    if isinstance(first, tuple):
        first = first[0]
    if isinstance(first, bytes):
        return first.decode("utf-8", errors="replace")[:200]
    return str(first)[:200]
