"""Exception taxonomy for the intake pipeline.

Only infrastructure failures are exceptions.  "No eligible attachment" and
"duplicate content" are ordinary skip outcomes (see ``SkipReason``).
"""

from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base exception for the mail intake pipeline."""

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class NotConfiguredError(IntakeError):
    """Required credentials or endpoints are missing."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Not configured: missing {', '.join(missing)}", missing=missing)


class MailTimeout(IntakeError):
    """A bounded mail operation exceeded its deadline."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"IMAP {operation} timed out",
            operation=operation,
            timeout_seconds=timeout_seconds,
        )


class MailSessionError(IntakeError):
    """The IMAP server rejected a command or the connection broke."""


class MetadataFetchError(MailSessionError):
    """Envelope/BODYSTRUCTURE for a message could not be fetched."""

    def __init__(self, uid: int, reason: str) -> None:
        self.uid = uid
        super().__init__(f"Metadata fetch failed: {reason}", uid=uid)


class PartTooLargeError(IntakeError):
    """A MIME part exceeds the attachment byte cap."""

    def __init__(self, uid: int, part_path: str, size: int, limit: int) -> None:
        self.uid = uid
        self.part_path = part_path
        self.size = size
        self.limit = limit
        super().__init__(
            "Attachment exceeds size limit",
            uid=uid,
            part=part_path,
            size=size,
            limit=limit,
        )


class PartDecodeError(IntakeError):
    """A part's transfer encoding could not be decoded."""

    def __init__(self, uid: int, part_path: str, encoding: str | None, reason: str) -> None:
        self.uid = uid
        self.part_path = part_path
        super().__init__(
            f"Could not decode {encoding or 'part'} body: {reason}",
            uid=uid,
            part=part_path,
        )


class UploadError(IntakeError):
    """The object store rejected a write."""
