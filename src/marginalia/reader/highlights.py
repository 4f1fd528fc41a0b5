"""Keep renderer highlight overlays and the companion note in step.

On open, every annotation stored in the note is drawn over the book. When
the reader selects text, a new annotation is built, drawn, and written into
its colour section of the note.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from marginalia.annotations.codec import AnnotationRecord, parse_annotations
from marginalia.annotations.sections import (
    find_mapping,
    insert_annotation,
    reorganize_document,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from marginalia.config import Settings
    from marginalia.reader.protocols import (
        DocumentStore,
        NotePrompt,
        Notifier,
        Rendition,
    )

logger = logging.getLogger(__name__)

SAVED_MESSAGE = "Highlight saved!"
SAVE_FAILED_MESSAGE = "Failed to save annotation to note"
CREATE_FAILED_MESSAGE = "Failed to create highlight"
REORGANIZED_MESSAGE = "Annotations reorganized"
REORGANIZE_FAILED_MESSAGE = "Failed to reorganize annotations"


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class HighlightSynchronizer:
    """Owns the annotations of one open book.

    The in-memory list is a cache of what the companion note holds and can
    be rebuilt from it at any time with ``load_annotations``.
    """

    def __init__(
        self,
        rendition: Rendition,
        store: DocumentStore,
        companion_path: str,
        settings: Settings,
        *,
        notifier: Notifier | None = None,
        note_prompt: NotePrompt | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._rendition = rendition
        self._store = store
        self._companion_path = companion_path
        self._settings = settings
        self._notifier = notifier
        self._note_prompt = note_prompt
        self._clock = clock
        self._annotations: list[AnnotationRecord] = []
        self._selected_color = settings.highlights.default_color
        self._closed = False

    # --- cache ---------------------------------------------------------------

    @property
    def annotations(self) -> list[AnnotationRecord]:
        return list(self._annotations)

    def set_annotations(self, annotations: list[AnnotationRecord]) -> None:
        self._annotations = list(annotations)

    async def load_annotations(self) -> list[AnnotationRecord]:
        """Re-read the companion note and cache the annotations it holds."""
        try:
            content = await self._store.read_text(self._companion_path)
        except Exception:
            logger.exception("Failed to load annotations from %s", self._companion_path)
            return []
        annotations = parse_annotations(content)
        if not self._closed:
            self._annotations = annotations
        logger.info(
            "Loaded %d annotations from %s", len(annotations), self._companion_path
        )
        return annotations

    # --- colour --------------------------------------------------------------

    @property
    def selected_color(self) -> str:
        return self._selected_color

    @selected_color.setter
    def selected_color(self, color: str) -> None:
        logger.debug("Highlight colour changed to %s", color)
        self._selected_color = color

    # --- overlays ------------------------------------------------------------

    def highlight_style(self, color: str) -> dict[str, str]:
        return {
            "fill": color,
            "fill-opacity": str(self._settings.highlights.fill_opacity),
            "mix-blend-mode": "multiply",
        }

    def add_highlight(self, record: AnnotationRecord) -> None:
        self._rendition.add_highlight(record.cfi, self.highlight_style(record.color))

    def display_existing_highlights(self) -> int:
        """Draw every cached annotation. Returns how many were drawn.

        An annotation whose location no longer resolves (the book changed,
        or the note was hand-edited) is skipped.
        """
        shown = 0
        for record in self._annotations:
            try:
                self.add_highlight(record)
            except Exception:
                logger.debug(
                    "Could not display highlight %s", record.id, exc_info=True
                )
                continue
            shown += 1
        return shown

    # --- new highlights ------------------------------------------------------

    def _new_id(self, timestamp: int) -> str:
        taken = {record.id for record in self._annotations}
        candidate = timestamp
        while str(candidate) in taken:
            candidate += 1
        return str(candidate)

    def _notify(self, message: str) -> None:
        if self._notifier is not None and not self._closed:
            self._notifier.notify(message)

    async def handle_selection(
        self, cfi_range: str, selected_text: str
    ) -> AnnotationRecord | None:
        """Turn a text selection into a saved annotation.

        Returns the new annotation, or None when the selection was empty,
        the reader cancelled the note prompt, or the view closed meanwhile.
        """
        text = (selected_text or "").strip()
        if not text:
            return None

        timestamp = self._clock()
        record = AnnotationRecord(
            id=self._new_id(timestamp),
            cfi=cfi_range,
            text=text,
            color=self._selected_color,
            timestamp=timestamp,
        )

        note: str | None = ""
        if self._note_prompt is not None:
            try:
                note = await self._note_prompt(text)
            except Exception:
                logger.exception("Error handling text selection")
                self._notify(CREATE_FAILED_MESSAGE)
                return None
        if note is None or self._closed:
            logger.debug("Highlight %s discarded", record.id)
            return None
        record = record.with_note(note)

        try:
            self.add_highlight(record)
        except Exception:
            logger.warning("Could not draw highlight %s", record.id, exc_info=True)
        self._annotations.append(record)

        if await self.save_annotation(record):
            self._notify(SAVED_MESSAGE)
        return record

    async def save_annotation(self, record: AnnotationRecord) -> bool:
        """Insert ``record`` into its section of the companion note."""
        highlights = self._settings.highlights
        mapping = find_mapping(
            highlights.color_mappings, record.color, highlights.fallback_section_title
        )
        try:
            new_content = await self._store.process_text(
                self._companion_path,
                lambda content: insert_annotation(
                    content,
                    record,
                    mapping,
                    companion_path=self._companion_path,
                    protocol=self._settings.links.protocol,
                ),
            )
        except Exception:
            logger.exception("Failed to save annotation %s", record.id)
            self._notify(SAVE_FAILED_MESSAGE)
            return False

        logger.info("Saved annotation %s under %s", record.id, mapping.section_title)
        await self._update_annotation_count(len(parse_annotations(new_content)))
        return True

    async def reorganize(self) -> bool:
        """Rebuild every colour section of the companion note."""
        highlights = self._settings.highlights
        try:
            new_content = await self._store.process_text(
                self._companion_path,
                lambda content: reorganize_document(
                    content,
                    highlights.color_mappings,
                    companion_path=self._companion_path,
                    fallback_title=highlights.fallback_section_title,
                    protocol=self._settings.links.protocol,
                ),
            )
            annotations = parse_annotations(new_content)
        except Exception:
            logger.exception("Failed to reorganize %s", self._companion_path)
            self._notify(REORGANIZE_FAILED_MESSAGE)
            return False

        if not self._closed:
            self._annotations = annotations
        await self._update_annotation_count(len(annotations))
        self._notify(REORGANIZED_MESSAGE)
        return True

    async def _update_annotation_count(self, count: int) -> None:
        try:
            await self._store.set_metadata_field(
                self._companion_path,
                self._settings.properties.annotations_property,
                count,
            )
        except Exception:
            logger.exception("Failed to update annotation count")

    def close(self) -> None:
        self._closed = True
