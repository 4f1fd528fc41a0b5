"""Annotation records hidden inside Markdown as HTML comments.

Each record is stored as a single marker line:

    <!-- EPUB_ANNOTATION: {"id":"...","cfi":"...","text":"...",...} -->

Markdown renderers hide the comment, so the note stays readable while the
record survives every rewrite of the file.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from dataclasses import dataclass

from pydantic import TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

MARKER_TEMPLATE = "<!-- EPUB_ANNOTATION: {} -->"
MARKER_PATTERN = re.compile(r"<!--\s*EPUB_ANNOTATION:\s*(\{.*?\})\s*-->")

# JSON escapes for characters that would end the comment early or split the
# marker across lines. json.dumps already escapes \n, \r and other C0 controls.
_MARKER_ESCAPES = str.maketrans(
    {
        "<": "\\u003c",
        ">": "\\u003e",
        "\x85": "\\u0085",
        "\u2028": "\\u2028",
        "\u2029": "\\u2029",
    }
)


@dataclass(frozen=True)
class AnnotationRecord:
    """A highlight made in the book, as stored in the companion note.

    Attributes:
        id: Unique identifier, derived from the creation time.
        cfi: Location of the highlighted range. Opaque to marginalia; only the
            renderer knows how to interpret it.
        text: The highlighted text.
        color: Highlight colour, also the key into the colour mappings.
        timestamp: Creation time in milliseconds since the epoch.
        note: Optional note the reader attached to the highlight.
    """

    id: str
    cfi: str
    text: str
    color: str
    timestamp: int
    note: str | None = None

    def with_note(self, note: str | None) -> AnnotationRecord:
        """Return a copy carrying ``note`` (empty notes are stored as None)."""
        return dataclasses.replace(self, note=note or None)


_RECORD_ADAPTER: TypeAdapter[AnnotationRecord] = TypeAdapter(AnnotationRecord)


def serialize_annotation(record: AnnotationRecord) -> str:
    """Encode a record as a single marker line (no trailing newline)."""
    payload: dict[str, str | int] = {
        "id": record.id,
        "cfi": record.cfi,
        "text": record.text,
        "color": record.color,
    }
    if record.note is not None:
        payload["note"] = record.note
    payload["timestamp"] = record.timestamp

    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return MARKER_TEMPLATE.format(body.translate(_MARKER_ESCAPES))


def parse_annotations(content: str) -> list[AnnotationRecord]:
    """Extract every annotation record embedded in ``content``.

    Records are returned in document order. A marker that cannot be decoded
    is logged and skipped so one damaged line never hides the others.
    """
    records: list[AnnotationRecord] = []
    for match in MARKER_PATTERN.finditer(content):
        try:
            records.append(_RECORD_ADAPTER.validate_json(match.group(1), strict=True))
        except ValidationError as exc:
            line_no = content.count("\n", 0, match.start()) + 1
            logger.warning(
                "Skipping malformed annotation marker on line %d: %s",
                line_no,
                exc.errors(include_url=False),
            )
    return records


def strip_markers(content: str) -> str:
    """Remove every annotation marker from ``content``.

    Lines that held nothing but a marker are dropped entirely; other text on
    a line with a marker is kept.
    """
    kept: list[str] = []
    for line in content.split("\n"):
        if MARKER_PATTERN.search(line):
            line = MARKER_PATTERN.sub("", line).rstrip()
            if not line.strip():
                continue
        kept.append(line)
    return "\n".join(kept)
