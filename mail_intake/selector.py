"""Content selector: pick at most one document attachment per message.

Inbound mail is sloppy about ``Content-Disposition`` and ``Content-Type``,
so a part qualifies by MIME type *or* filename extension.  The allowlist is
narrow on purpose: PDFs and photo/scan image formats only, so inline logos
(GIF/SVG) and text bodies are never picked.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from enum import Enum

from .mime import MimePart, rank_parts

PDF_MIME_TYPES = frozenset({"application/pdf", "application/x-pdf"})
PDF_EXTENSIONS = (".pdf",)

IMAGE_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/pjpeg",
    "image/png",
    "image/tiff",
    "image/heic",
    "image/heif",
    "image/webp",
})
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".tif", ".tiff", ".heic", ".heif", ".webp")


class PartKind(str, Enum):
    PDF = "pdf"
    IMAGE = "image"


class MatchedVia(str, Enum):
    MIME = "mime"
    FILENAME = "filename"


@dataclass(frozen=True)
class SelectedPart:
    """The single part chosen for download from one message."""

    path: str
    declared_mime: str
    mime_type: str
    filename: str
    size: int | None
    encoding: str | None
    kind: PartKind
    via: MatchedVia
    attachment_index: int


def classify(part: MimePart) -> tuple[PartKind, MatchedVia] | None:
    """Return the document kind of *part* and how it was recognised."""
    mime = part.content_type
    name = part.filename.lower()

    if mime in PDF_MIME_TYPES:
        return PartKind.PDF, MatchedVia.MIME
    if name.endswith(PDF_EXTENSIONS):
        return PartKind.PDF, MatchedVia.FILENAME
    if mime in IMAGE_MIME_TYPES:
        return PartKind.IMAGE, MatchedVia.MIME
    if name.endswith(IMAGE_EXTENSIONS):
        return PartKind.IMAGE, MatchedVia.FILENAME
    return None


def is_candidate(part: MimePart) -> bool:
    if not part.is_leaf:
        return False
    match = classify(part)
    if match is None:
        return False
    _, via = match

    if part.disposition == "attachment":
        return True
    if part.disposition is None:
        return via is MatchedVia.MIME or bool(part.filename)
    if part.disposition == "inline":
        return part.filename.lower().endswith(PDF_EXTENSIONS + IMAGE_EXTENSIONS)
    return False


def score(part: MimePart) -> tuple[int, int]:
    """Rank key: PDFs beat images, MIME matches beat filename matches."""
    match = classify(part)
    if match is None:
        return (0, 0)
    kind, via = match
    return (2 if kind is PartKind.PDF else 1, 2 if via is MatchedVia.MIME else 1)


def rank_candidates(mime_tree: MimePart) -> list[SelectedPart]:
    """All eligible parts, best first."""
    ranked = rank_parts(mime_tree, is_candidate, score)
    return [_to_selected(part, order) for _, order, part in ranked]


def select_attachment(mime_tree: MimePart) -> SelectedPart | None:
    """Choose the single best attachment, or ``None`` when nothing qualifies."""
    ranked = rank_parts(mime_tree, is_candidate, score)
    if not ranked:
        return None
    _, order, part = ranked[0]
    return _to_selected(part, order)


def _to_selected(part: MimePart, order: int) -> SelectedPart:
    match = classify(part)
    assert match is not None
    kind, via = match
    return SelectedPart(
        path=part.path,
        declared_mime=part.content_type,
        mime_type=_effective_mime(part, kind),
        filename=part.filename,
        size=part.size,
        encoding=part.encoding,
        kind=kind,
        via=via,
        attachment_index=order,
    )


def _effective_mime(part: MimePart, kind: PartKind) -> str:
    if kind is PartKind.PDF:
        return "application/pdf"
    if part.content_type in IMAGE_MIME_TYPES:
        return "image/jpeg" if part.content_type in ("image/jpg", "image/pjpeg") else part.content_type
    guessed, _ = mimetypes.guess_type(part.filename)
    return guessed if guessed in IMAGE_MIME_TYPES else "image/jpeg"
