"""Annotation records, their templates, and the note sections that hold them."""

from marginalia.annotations.codec import (
    AnnotationRecord,
    parse_annotations,
    serialize_annotation,
    strip_markers,
)
from marginalia.annotations.sections import (
    find_mapping,
    insert_annotation,
    reorganize,
    reorganize_document,
)
from marginalia.annotations.templates import build_annotation_link, render_annotation
from marginalia.config import ColourMapping

__all__ = [
    "AnnotationRecord",
    "ColourMapping",
    "build_annotation_link",
    "find_mapping",
    "insert_annotation",
    "parse_annotations",
    "render_annotation",
    "reorganize",
    "reorganize_document",
    "serialize_annotation",
    "strip_markers",
]
