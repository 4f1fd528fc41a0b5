"""Render annotation records into Markdown using ``{{placeholder}}`` templates.

Recognised placeholders: ``{{text}}``, ``{{note}}``, ``{{link}}``,
``{{color}}`` and ``{{cfi}}``. Anything else inside double braces is left
exactly as written. Rendering never fails; missing values become "".
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import quote

if TYPE_CHECKING:
    from marginalia.annotations.codec import AnnotationRecord

DEFAULT_LINK_PROTOCOL = "epub-reader"

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_]+)\s*\}\}")


def build_annotation_link(
    record: AnnotationRecord,
    companion_path: str | None,
    protocol: str = DEFAULT_LINK_PROTOCOL,
) -> str:
    """Build a deep link that reopens the book at the highlight.

    Returns "" when there is no companion note to point at.
    """
    if not companion_path:
        return ""
    document = quote(companion_path, safe="")
    location = quote(record.cfi or "", safe="")
    return f"{protocol}://annotation?document={document}&location={location}"


def _default_render(record: AnnotationRecord) -> str:
    note = f" - {record.note}" if record.note else ""
    return f"- {record.text or ''}{note}"


def render_annotation(
    template: str | None,
    record: AnnotationRecord,
    companion_path: str | None = None,
    *,
    protocol: str = DEFAULT_LINK_PROTOCOL,
) -> str:
    """Render ``record`` through ``template``.

    Args:
        template: Placeholder template. None or blank selects the default
            ``- <text> - <note>`` rendering.
        record: The annotation to render.
        companion_path: Path of the companion note, used by ``{{link}}``.
        protocol: URL scheme for ``{{link}}``.

    Returns:
        The rendered Markdown fragment.
    """
    if not template or not template.strip():
        return _default_render(record)

    values = {
        "text": record.text or "",
        "note": record.note or "",
        "color": record.color or "",
        "cfi": record.cfi or "",
    }

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name == "link":
            return build_annotation_link(record, companion_path, protocol)
        return values.get(name, match.group(0))

    return PLACEHOLDER_PATTERN.sub(substitute, template)
