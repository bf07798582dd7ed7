"""IMAP ``BODYSTRUCTURE`` parsing and MIME tree walking.

The server describes a message's MIME layout without sending any body
bytes.  We turn that description into a :class:`MimePart` tree whose
``path`` values are IMAP section specs (``"1"``, ``"2.1"``, ...) usable in
``BODY.PEEK[<path>]``.
"""

from __future__ import annotations

import email.errors
import email.header
import email.utils
import urllib.parse
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, TypeVar

from imapclient.response_types import BodyData

S = TypeVar("S")


@dataclass
class MimePart:
    """One node of a message's MIME tree."""

    path: str
    content_type: str
    params: dict[str, str] = field(default_factory=dict)
    disposition: str | None = None
    disposition_params: dict[str, str] = field(default_factory=dict)
    encoding: str | None = None
    size: int | None = None
    children: list[MimePart] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children and not self.content_type.startswith("multipart/")

    @property
    def filename(self) -> str:
        return self.disposition_params.get("filename") or self.params.get("name") or ""


# ------------------------------------------------------------------
# Walking
# ------------------------------------------------------------------


def walk_parts(
    root: MimePart,
    predicate: Callable[[MimePart], bool] | None = None,
) -> Iterator[MimePart]:
    """Depth-first, document-order walk yielding parts matching *predicate*."""
    stack = [root]
    while stack:
        part = stack.pop()
        if predicate is None or predicate(part):
            yield part
        stack.extend(reversed(part.children))


def rank_parts(
    root: MimePart,
    predicate: Callable[[MimePart], bool],
    scorer: Callable[[MimePart], S],
) -> list[tuple[S, int, MimePart]]:
    """Return ``(score, order, part)`` for every matching part, best first.

    *order* is the part's position among matches in document order; ties
    on score go to the earlier part.
    """
    matches = [
        (scorer(part), order, part)
        for order, part in enumerate(walk_parts(root, predicate))
    ]
    matches.sort(key=lambda item: (item[0], -item[1]), reverse=True)
    return matches


def summarize_parts(root: MimePart, cap: int = 40) -> list[dict[str, Any]]:
    """Flat diagnostic view of the tree, for logs and the status page."""
    summary: list[dict[str, Any]] = []
    for part in walk_parts(root):
        if len(summary) >= cap:
            break
        summary.append({
            "path": part.path or "(root)",
            "mime": part.content_type,
            "disposition": part.disposition,
            "filename": part.filename,
            "size": part.size,
            "is_leaf": part.is_leaf,
        })
    return summary




# ------------------------------------------------------------------
# BODYSTRUCTURE → MimePart
# ------------------------------------------------------------------


def parse_bodystructure(node: Any) -> MimePart:
    """Build a :class:`MimePart` tree from a parsed ``BODYSTRUCTURE``.

    *node* is what ``imapclient.response_parser.parse_fetch_response``
    returns for the item: nested tuples with strings as ``bytes``, numbers
    as ``int`` and ``NIL`` as ``None``.
    """
    if not isinstance(node, tuple) or not node:
        raise ValueError("BODYSTRUCTURE must be a non-empty list")
    return _build(BodyData.create(node), "")


def _build(node: BodyData, path: str) -> MimePart:
    if node.is_multipart:
        return _build_multipart(node, path)
    return _build_single(node, path or "1")


def _build_multipart(node: BodyData, path: str) -> MimePart:
    subtype = _text(_at(node, 1)).lower() or "mixed"
    ext = node[2:]
    disposition, disposition_params = _disposition(ext[1] if len(ext) > 1 else None)

    part = MimePart(
        path=path,
        content_type=f"multipart/{subtype}",
        params=_params(ext[0] if ext else None),
        disposition=disposition,
        disposition_params=disposition_params,
    )
    part.children = [
        _build(BodyData.create(child), _child_path(path, position))
        for position, child in enumerate(node[0], start=1)
    ]
    return part


def _build_single(node: BodyData, path: str) -> MimePart:
    maintype = _text(_at(node, 0)).lower() or "application"
    subtype = _text(_at(node, 1)).lower() or "octet-stream"
    content_type = f"{maintype}/{subtype}"

    nested: Any = None
    if content_type == "message/rfc822" and len(node) > 9:
        nested = node[8]
        ext_start = 10
    elif maintype == "text":
        ext_start = 8
    else:
        ext_start = 7

    ext = node[ext_start:]
    disposition, disposition_params = _disposition(ext[1] if len(ext) > 1 else None)

    part = MimePart(
        path=path,
        content_type=content_type,
        params=_params(_at(node, 2)),
        disposition=disposition,
        disposition_params=disposition_params,
        encoding=_text(_at(node, 5)).lower() or None,
        size=_int(_at(node, 6)),
    )

    # An attached message's own parts are numbered beneath it (RFC 3501 6.4.5)
    if isinstance(nested, tuple) and nested:
        inner = BodyData.create(nested)
        if inner.is_multipart:
            part.children = _build_multipart(inner, path).children
        else:
            part.children = [_build_single(inner, f"{path}.1")]
    return part


def _child_path(parent: str, position: int) -> str:
    return f"{parent}.{position}" if parent else str(position)


def _at(node: tuple[Any, ...], index: int) -> Any:
    return node[index] if index < len(node) else None


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    return ""


def _int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _params(value: Any) -> dict[str, str]:
    if not isinstance(value, tuple):
        return {}
    params: dict[str, str] = {}
    for raw_key, raw_value in zip(value[::2], value[1::2]):
        key = _text(raw_key).lower()
        text = _text(raw_value)
        if key.endswith("*"):
            key = key.rstrip("*")
            text = _decode_extended(text)
        params[key] = _decode_words(text)
    return params


def _disposition(value: Any) -> tuple[str | None, dict[str, str]]:
    if not isinstance(value, tuple) or not value:
        return None, {}
    kind = _text(value[0]).lower() or None
    return kind, _params(value[1] if len(value) > 1 else None)


def _decode_extended(value: str) -> str:
    """Decode an RFC 2231 extended value (``utf-8''Rechnung%20M%C3%A4rz.pdf``)."""
    charset, _, encoded = email.utils.decode_rfc2231(value)
    try:
        return urllib.parse.unquote(encoded, encoding=charset or "utf-8", errors="replace")
    except LookupError:
        return urllib.parse.unquote(encoded)


def _decode_words(value: str) -> str:
    """Decode RFC 2047 encoded-words (``=?utf-8?b?...?=``) in a parameter."""
    if "=?" not in value:
        return value
    try:
        return str(email.header.make_header(email.header.decode_header(value)))
    except (UnicodeDecodeError, LookupError, email.errors.HeaderParseError):
        return value
