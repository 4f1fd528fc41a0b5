"""Resolve the book a companion note links to.

The link lives in the note's front matter, either as a wikilink
(``[[Books/Dune.epub]]``, optionally with ``|alias``) or as a plain path.
"""

from __future__ import annotations

import logging
import posixpath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marginalia.reader.protocols import DocumentStore

logger = logging.getLogger(__name__)


class DocumentLinkError(LookupError):
    """The companion note has no usable link to a book."""


def normalize_link_path(raw: str) -> str:
    """Normalise a plain path: POSIX separators, no ``./`` or leading ``/``."""
    path = raw.strip().replace("\\", "/")
    path = posixpath.normpath(path).lstrip("/")
    return "" if path == "." else path


def parse_link(raw: str) -> str:
    """Return the link target written in ``raw``.

    Wikilink brackets and an ``|alias`` suffix are removed; plain paths are
    normalised.
    """
    text = raw.strip()
    if text.startswith("[[") and text.endswith("]]"):
        target = text[2:-2].split("|", 1)[0].strip()
        logger.debug("Resolving wikilink: %s", target)
        return target
    logger.debug("Treating as plain path: %s", text)
    return normalize_link_path(text)


async def resolve_book_link(
    raw: object,
    companion_path: str,
    store: DocumentStore,
) -> str:
    """Resolve the book link ``raw`` found in ``companion_path``.

    Raises:
        DocumentLinkError: The link is missing, blank, or points nowhere.
    """
    if raw is None or not str(raw).strip():
        msg = f"No book link found in {companion_path}"
        raise DocumentLinkError(msg)

    target = parse_link(str(raw))
    if not target:
        msg = f"Book link in {companion_path} is empty: {raw!r}"
        raise DocumentLinkError(msg)

    resolved = await store.resolve_link(target, companion_path)
    logger.debug("Resolved book file: %s", resolved or "not found")
    if resolved is None:
        msg = f"Could not find book {target!r} linked from {companion_path}"
        raise DocumentLinkError(msg)
    return resolved
