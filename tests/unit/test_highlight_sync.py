"""Unit tests for HighlightSynchronizer."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from marginalia.annotations.codec import (
    AnnotationRecord,
    parse_annotations,
    serialize_annotation,
)
from marginalia.config import Settings
from marginalia.reader.highlights import (
    CREATE_FAILED_MESSAGE,
    REORGANIZED_MESSAGE,
    SAVE_FAILED_MESSAGE,
    SAVED_MESSAGE,
    HighlightSynchronizer,
)

from tests.helpers.fakes import FakeRendition, MemoryStore

NOTE = "Books/Dune.md"
YELLOW = "#ffeb3b"
GREEN = "#4caf50"


def _sync(
    rendition: FakeRendition,
    store: MemoryStore,
    settings: Settings,
    notifier: MagicMock | None = None,
    note_prompt: AsyncMock | None = None,
    *,
    now: int = 1700000000000,
) -> HighlightSynchronizer:
    return HighlightSynchronizer(
        rendition,
        store,
        NOTE,
        settings,
        notifier=notifier,
        note_prompt=note_prompt,
        clock=lambda: now,
    )


def _rec(id: str, color: str = YELLOW) -> AnnotationRecord:
    return AnnotationRecord(
        id=id, cfi=f"cfi-{id}", text=f"text {id}", color=color, timestamp=int(id)
    )


class TestLoadAndDisplay:
    """Annotations are read from the note and drawn over the book."""

    @pytest.mark.asyncio
    async def test_load_caches_note_annotations(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        records = [_rec("1"), _rec("2", GREEN)]
        store.texts[NOTE] = "\n".join(serialize_annotation(r) for r in records)
        sync = _sync(rendition, store, settings)

        loaded = await sync.load_annotations()

        assert loaded == records
        assert sync.annotations == records

    @pytest.mark.asyncio
    async def test_load_missing_note_returns_empty(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        sync = _sync(rendition, store, settings)
        assert await sync.load_annotations() == []
        assert sync.annotations == []

    def test_display_draws_every_record(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        sync = _sync(rendition, store, settings)
        sync.set_annotations([_rec("1"), _rec("2", GREEN)])

        assert sync.display_existing_highlights() == 2
        rendition.add_highlight.assert_any_call(
            "cfi-2",
            {"fill": GREEN, "fill-opacity": "0.3", "mix-blend-mode": "multiply"},
        )

    def test_unresolvable_record_is_skipped(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        rendition.add_highlight.side_effect = [ValueError("bad cfi"), None]
        sync = _sync(rendition, store, settings)
        sync.set_annotations([_rec("1"), _rec("2")])

        assert sync.display_existing_highlights() == 1
        assert rendition.add_highlight.call_count == 2


class TestHandleSelection:
    """A text selection becomes a drawn, saved annotation."""

    @pytest.mark.asyncio
    async def test_selection_saved_under_colour_section(
        self,
        rendition: FakeRendition,
        store: MemoryStore,
        settings: Settings,
        notifier: MagicMock,
    ) -> None:
        store.texts[NOTE] = "# Dune\n"
        prompt = AsyncMock(return_value="fear is the mind-killer")
        sync = _sync(rendition, store, settings, notifier, prompt, now=42)

        record = await sync.handle_selection("epubcfi(/6/4!/4/2,/1:0,/1:5)", " Fear ")

        assert record == AnnotationRecord(
            id="42",
            cfi="epubcfi(/6/4!/4/2,/1:0,/1:5)",
            text="Fear",
            color=YELLOW,
            timestamp=42,
            note="fear is the mind-killer",
        )
        prompt.assert_awaited_once_with("Fear")
        assert store.texts[NOTE] == (
            "# Dune\n\n## Yellow\n\n"
            f"- Fear - fear is the mind-killer\n{serialize_annotation(record)}\n"
        )
        rendition.add_highlight.assert_called_once()
        assert sync.annotations == [record]
        assert store.metadata[NOTE]["epub-annotations"] == 1
        notifier.notify.assert_called_once_with(SAVED_MESSAGE)

    @pytest.mark.asyncio
    async def test_selected_colour_is_used(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        store.texts[NOTE] = ""
        sync = _sync(rendition, store, settings, now=7)
        sync.selected_color = GREEN

        record = await sync.handle_selection("cfi", "Spice")

        assert record is not None
        assert record.color == GREEN
        assert record.note is None
        assert store.texts[NOTE].startswith("## Green\n\n> Spice\n")

    @pytest.mark.asyncio
    async def test_empty_selection_ignored(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        prompt = AsyncMock()
        sync = _sync(rendition, store, settings, note_prompt=prompt)

        assert await sync.handle_selection("cfi", "   ") is None
        prompt.assert_not_awaited()
        assert store.text_writes == []

    @pytest.mark.asyncio
    async def test_cancelled_prompt_discards_highlight(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        store.texts[NOTE] = ""
        prompt = AsyncMock(return_value=None)
        sync = _sync(rendition, store, settings, note_prompt=prompt)

        assert await sync.handle_selection("cfi", "Arrakis") is None
        rendition.add_highlight.assert_not_called()
        assert store.text_writes == []
        assert sync.annotations == []

    @pytest.mark.asyncio
    async def test_prompt_error_notifies_create_failed(
        self,
        rendition: FakeRendition,
        store: MemoryStore,
        settings: Settings,
        notifier: MagicMock,
    ) -> None:
        prompt = AsyncMock(side_effect=RuntimeError("modal crashed"))
        sync = _sync(rendition, store, settings, notifier, prompt)

        assert await sync.handle_selection("cfi", "Arrakis") is None
        notifier.notify.assert_called_once_with(CREATE_FAILED_MESSAGE)

    @pytest.mark.asyncio
    async def test_write_failure_keeps_overlay_and_notifies(
        self,
        rendition: FakeRendition,
        settings: Settings,
        notifier: MagicMock,
    ) -> None:
        store = MemoryStore()  # companion note missing, read_text raises KeyError
        sync = _sync(rendition, store, settings, notifier)

        record = await sync.handle_selection("cfi", "Arrakis")

        assert record is not None
        rendition.add_highlight.assert_called_once()
        assert sync.annotations == [record]
        notifier.notify.assert_called_once_with(SAVE_FAILED_MESSAGE)
        assert store.metadata_writes == []

    @pytest.mark.asyncio
    async def test_same_millisecond_ids_stay_unique(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        store.texts[NOTE] = ""
        sync = _sync(rendition, store, settings, now=100)

        first = await sync.handle_selection("cfi-a", "one")
        second = await sync.handle_selection("cfi-b", "two")

        assert first is not None and second is not None
        assert (first.id, second.id) == ("100", "101")
        assert len(parse_annotations(store.texts[NOTE])) == 2

    @pytest.mark.asyncio
    async def test_closed_during_prompt_discards(
        self, rendition: FakeRendition, store: MemoryStore, settings: Settings
    ) -> None:
        store.texts[NOTE] = ""
        sync = _sync(rendition, store, settings)

        async def prompt(text: str) -> str:
            sync.close()
            return "late"

        sync._note_prompt = prompt

        assert await sync.handle_selection("cfi", "Arrakis") is None
        assert store.text_writes == []


class TestReorganize:
    """Reorganizing rewrites the note and refreshes the cache."""

    @pytest.mark.asyncio
    async def test_reorganize_rewrites_and_recounts(
        self,
        rendition: FakeRendition,
        store: MemoryStore,
        settings: Settings,
        notifier: MagicMock,
    ) -> None:
        green, yellow = _rec("1", GREEN), _rec("2")
        store.texts[NOTE] = (
            f"Intro\n\n- stray {serialize_annotation(green)}\n"
            f"{serialize_annotation(yellow)}\n"
        )
        sync = _sync(rendition, store, settings, notifier)

        assert await sync.reorganize() is True

        content = store.texts[NOTE]
        assert content.index("## Yellow") < content.index("## Green")
        assert parse_annotations(content) == [yellow, green]
        assert sync.annotations == [yellow, green]
        assert store.metadata[NOTE]["epub-annotations"] == 2
        notifier.notify.assert_called_once_with(REORGANIZED_MESSAGE)

    @pytest.mark.asyncio
    async def test_reorganize_missing_note_fails_softly(
        self,
        rendition: FakeRendition,
        store: MemoryStore,
        settings: Settings,
        notifier: MagicMock,
    ) -> None:
        sync = _sync(rendition, store, settings, notifier)
        assert await sync.reorganize() is False
        assert store.text_writes == []
        notifier.notify.assert_called_once()
