"""Colour-keyed annotation sections in the companion note.

Every highlight colour maps to a section heading (``ColourMapping``). A
section is the heading line, a blank line, then one entry per annotation:
the rendered template text followed by the annotation's marker line.

Two write paths keep those sections up to date:

- ``insert_annotation`` adds one new entry directly below its heading, or
  appends a new section at the end of the note.
- ``reorganize`` rebuilds every section from a list of records. It is
  idempotent: running it on its own output changes nothing.

Both paths leave the note in a state where ``parse_annotations`` returns
exactly the expected records.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from marginalia.annotations.codec import (
    MARKER_PATTERN,
    parse_annotations,
    serialize_annotation,
    strip_markers,
)
from marginalia.annotations.templates import DEFAULT_LINK_PROTOCOL, render_annotation
from marginalia.config import DEFAULT_SECTION_TITLE, ColourMapping

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from marginalia.annotations.codec import AnnotationRecord

logger = logging.getLogger(__name__)

_HEADING_PATTERN = re.compile(r"^#{1,6}(\s|$)")
_LIST_LINE_PATTERN = re.compile(r"^(\s+\S|\s*([-*+]|\d+[.)])\s|\s*>)")


def find_mapping(
    mappings: Sequence[ColourMapping],
    color: str,
    fallback_title: str = DEFAULT_SECTION_TITLE,
) -> ColourMapping:
    """Return the mapping for ``color``, or the fallback section's mapping.

    Matching is exact string equality. When no mapping claims the colour, a
    mapping already titled ``fallback_title`` is reused; otherwise one is
    synthesised with the default template.
    """
    for mapping in mappings:
        if mapping.color == color:
            return mapping
    for mapping in mappings:
        if mapping.section_title == fallback_title:
            return mapping
    return ColourMapping(color=color, section_title=fallback_title)


def format_entry(
    record: AnnotationRecord,
    mapping: ColourMapping,
    companion_path: str | None = None,
    protocol: str = DEFAULT_LINK_PROTOCOL,
) -> str:
    """Rendered text for ``record`` followed by its marker line."""
    rendered = render_annotation(
        mapping.template, record, companion_path, protocol=protocol
    )
    return f"{rendered.rstrip()}\n{serialize_annotation(record)}"


def _is_heading_line(line: str) -> bool:
    return bool(_HEADING_PATTERN.match(line))


def _is_list_line(line: str) -> bool:
    return bool(_LIST_LINE_PATTERN.match(line))


def _find_heading(lines: list[str], title: str) -> int | None:
    title = title.strip()
    for idx, line in enumerate(lines):
        if line.strip() == title:
            return idx
    return None


def _heading_level(line: str) -> int:
    """Number of leading ``#`` on a heading line; 7 for anything else."""
    if not _is_heading_line(line):
        return 7
    return len(line) - len(line.lstrip("#"))


def _heading_owns_marker(lines: list[str], start: int, titles: set[str]) -> bool:
    """Whether a marker follows the heading at ``start`` before its scope ends.

    The scope ends at the next heading of the same or a higher level, or at
    a section heading.
    """
    level = _heading_level(lines[start])
    for line in lines[start + 1 :]:
        if MARKER_PATTERN.search(line):
            return True
        if _is_heading_line(line) and (
            line.strip() in titles or _heading_level(line) <= level
        ):
            return False
    return False


def _ends_section(lines: list[str], idx: int, level: int, titles: set[str]) -> bool:
    """Whether the line at ``idx`` closes a section headed at ``level``.

    Other section headings always do. Deeper headings never do. A heading
    at the same or a higher level does unless an entry template rendered
    it, in which case a marker follows before the heading's scope ends.
    """
    line = lines[idx]
    if not _is_heading_line(line):
        return False
    if line.strip() in titles:
        return True
    if _heading_level(line) > level:
        return False
    return not _heading_owns_marker(lines, idx, titles)


def _section_end(lines: list[str], start: int, titles: set[str]) -> int:
    """Index one past the last line of the section whose heading is at ``start``.

    The section runs through the last marker line before the heading that
    closes it, then through any list-style lines directly after that.
    """
    level = min(_heading_level(lines[start]), 6)
    end = start + 1
    idx = start + 1
    while idx < len(lines) and not _ends_section(lines, idx, level, titles):
        if MARKER_PATTERN.search(lines[idx]):
            end = idx + 1
        idx += 1

    idx = end
    while idx < len(lines) and (not lines[idx].strip() or _is_list_line(lines[idx])):
        if lines[idx].strip():
            end = idx + 1
        idx += 1
    # blank lines trailing the section go with it
    while end < len(lines) and not lines[end].strip():
        end += 1
    return end


def _remove_sections(lines: list[str], titles: Iterable[str]) -> list[str]:
    ordered = list(titles)
    known = {title.strip() for title in ordered}
    for title in ordered:
        while (start := _find_heading(lines, title)) is not None:
            end = _section_end(lines, start, known)
            logger.debug("Removing section %r (lines %d-%d)", title, start + 1, end)
            del lines[start:end]
    return lines


def _unique_records(records: Iterable[AnnotationRecord]) -> list[AnnotationRecord]:
    seen: set[str] = set()
    unique: list[AnnotationRecord] = []
    for record in records:
        if record.id in seen:
            logger.debug("Dropping duplicate annotation %s", record.id)
            continue
        seen.add(record.id)
        unique.append(record)
    return unique


def reorganize(
    content: str,
    mappings: Sequence[ColourMapping],
    records: Iterable[AnnotationRecord],
    *,
    companion_path: str | None = None,
    fallback_title: str = DEFAULT_SECTION_TITLE,
    protocol: str = DEFAULT_LINK_PROTOCOL,
) -> str:
    """Rebuild the colour sections of ``content`` from ``records``.

    Existing sections for every mapping (and the fallback section) are
    removed, stray markers elsewhere in the note are stripped, and one
    section per colour with at least one record is appended in mapping
    order. Records keep their given order within a section and duplicates
    (same id) are written once.

    Args:
        content: Current text of the companion note.
        mappings: Colour mappings; their order is the section order.
        records: Annotations to write, usually ``parse_annotations(content)``.
        companion_path: Path of the note, for ``{{link}}`` placeholders.
        fallback_title: Section for records whose colour has no mapping.
        protocol: URL scheme for ``{{link}}`` placeholders.

    Returns:
        The new note text, with trailing whitespace trimmed.
    """
    titles = [m.section_title for m in mappings]
    if fallback_title not in titles:
        titles.append(fallback_title)

    lines = _remove_sections(content.split("\n"), titles)
    body = strip_markers("\n".join(lines)).rstrip()

    grouped: dict[str, list[tuple[AnnotationRecord, ColourMapping]]] = {
        title: [] for title in titles
    }
    for record in _unique_records(records):
        mapping = find_mapping(mappings, record.color, fallback_title)
        grouped[mapping.section_title].append((record, mapping))

    sections: list[str] = []
    for title, entries in grouped.items():
        if not entries:
            continue
        rendered = "\n\n".join(
            format_entry(record, mapping, companion_path, protocol)
            for record, mapping in entries
        )
        sections.append(f"{title}\n\n{rendered}")

    parts = [body] if body else []
    parts.extend(sections)
    return "\n\n".join(parts).rstrip()


def reorganize_document(
    content: str,
    mappings: Sequence[ColourMapping],
    *,
    companion_path: str | None = None,
    fallback_title: str = DEFAULT_SECTION_TITLE,
    protocol: str = DEFAULT_LINK_PROTOCOL,
) -> str:
    """Rebuild the sections of ``content`` from the annotations it already holds."""
    return reorganize(
        content,
        mappings,
        parse_annotations(content),
        companion_path=companion_path,
        fallback_title=fallback_title,
        protocol=protocol,
    )


def insert_annotation(
    content: str,
    record: AnnotationRecord,
    mapping: ColourMapping,
    *,
    companion_path: str | None = None,
    protocol: str = DEFAULT_LINK_PROTOCOL,
) -> str:
    """Add one annotation entry to its section without touching the rest.

    The entry goes directly below the section heading (newest first) when
    the heading exists; otherwise a new section is appended at the end.
    """
    entry = format_entry(record, mapping, companion_path, protocol)
    lines = content.split("\n")
    heading_idx = _find_heading(lines, mapping.section_title)

    if heading_idx is None:
        base = content.rstrip()
        section = f"{mapping.section_title}\n\n{entry}\n"
        return f"{base}\n\n{section}" if base else section

    head = "\n".join(lines[: heading_idx + 1])
    rest = lines[heading_idx + 1 :]
    while rest and not rest[0].strip():
        rest.pop(0)

    result = f"{head}\n\n{entry}\n"
    if rest:
        result += "\n" + "\n".join(rest)
    return result
