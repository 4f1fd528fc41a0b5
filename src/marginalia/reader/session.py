"""One open book: rendition, position tracking, and highlights.

A ReaderSession is the single owner of all per-view state. It wires
renderer events to the PositionTracker and HighlightSynchronizer and tears
everything down on close, including work still in flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Self

from marginalia.config import get_settings
from marginalia.reader.highlights import HighlightSynchronizer
from marginalia.reader.links import DocumentLinkError, resolve_book_link
from marginalia.reader.navigation import PageNavigator
from marginalia.reader.position import PositionTracker

if TYPE_CHECKING:
    from collections.abc import Coroutine
    from types import TracebackType

    from marginalia.config import Settings
    from marginalia.reader.protocols import (
        DocumentStore,
        NotePrompt,
        Notifier,
        Renderer,
        Rendition,
    )

logger = logging.getLogger(__name__)


class ReaderSession:
    """Reader view for the book linked from ``companion_path``.

    Usage::

        async with ReaderSession(store, renderer, "Books/Dune.md") as session:
            ...

    Attributes:
        book_path: Resolved path of the book, once opened.
        error: Message shown instead of the book when opening failed.
        rendition, tracker, highlights, navigator: Set by ``open``.
    """

    def __init__(
        self,
        store: DocumentStore,
        renderer: Renderer,
        companion_path: str,
        *,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        note_prompt: NotePrompt | None = None,
    ) -> None:
        self.store = store
        self.renderer = renderer
        self.companion_path = companion_path
        self.settings = settings or get_settings()
        self.notifier = notifier
        self.note_prompt = note_prompt

        self.book_path: str | None = None
        self.error: str | None = None
        self.rendition: Rendition | None = None
        self.tracker: PositionTracker | None = None
        self.highlights: HighlightSynchronizer | None = None
        self.navigator: PageNavigator | None = None

        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _fail(self, message: str) -> None:
        self.error = message
        logger.error("Cannot open book for %s: %s", self.companion_path, message)
        if self.notifier is not None:
            self.notifier.notify(message)

    async def open(self) -> None:
        """Resolve, render, and restore the book.

        Raises:
            DocumentLinkError: The note links to no readable book. The
                message is also kept in ``error`` and shown to the reader.
        """
        raw_link = None
        try:
            metadata = await self.store.get_metadata(self.companion_path)
            raw_link = metadata.get(self.settings.properties.link_property)
            self.book_path = await resolve_book_link(
                raw_link, self.companion_path, self.store
            )
            data = await self.store.read_binary(self.book_path)
        except DocumentLinkError as exc:
            self._fail(str(exc))
            raise
        except Exception as exc:
            if raw_link is None:
                msg = f"Could not read note {self.companion_path}"
            else:
                msg = f"Could not read book {self.book_path or raw_link}"
            self._fail(msg)
            raise DocumentLinkError(msg) from exc
        if self._closed:
            return

        rendition = self.renderer.render(data)
        self.rendition = rendition
        self.navigator = PageNavigator(rendition, rtl=getattr(rendition, "rtl", False))
        self.tracker = PositionTracker(
            rendition,
            self.store,
            self.companion_path,
            progress_property=self.settings.properties.progress_property,
            notifier=self.notifier,
            settle_seconds=self.settings.position.settle_seconds,
            restore_delay_seconds=self.settings.position.restore_delay_seconds,
        )
        self.highlights = HighlightSynchronizer(
            rendition,
            self.store,
            self.companion_path,
            self.settings,
            notifier=self.notifier,
            note_prompt=self.note_prompt,
        )

        await self.tracker.load_saved_position()
        if self._closed:
            return
        await self.highlights.load_annotations()
        if self._closed:
            return
        shown = self.highlights.display_existing_highlights()
        logger.info("Opened %s with %d highlights", self.book_path, shown)

        rendition.on("relocated", self._on_relocated)
        rendition.on("resized", self._on_resized)
        rendition.on("selected", self._on_selected)

    # --- renderer events -----------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._closed:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_relocated(self, cfi: str) -> None:
        # the guard check cannot wait for a task: a restore may finish first
        if self.tracker is not None and self.tracker.note_relocated(cfi):
            self._spawn(self.tracker.save_position(cfi))

    def _on_resized(self, *_: Any) -> None:
        self.resized()

    def _on_selected(self, cfi_range: str, text: str) -> None:
        if self.highlights is not None:
            self._spawn(self.highlights.handle_selection(cfi_range, text))

    # --- host signals and commands -------------------------------------------

    def resized(self) -> None:
        """The host container changed size."""
        if self.tracker is not None and not self._closed:
            self.tracker.on_resized()

    def became_visible(self) -> None:
        """The view entered the viewport after being hidden."""
        if self.tracker is not None and not self._closed:
            self.tracker.on_became_visible()

    async def handle_key(self, key: str) -> bool:
        if self.navigator is None or self._closed:
            return False
        return await self.navigator.handle_key(key)

    def set_color(self, color: str) -> None:
        """Colour for highlights made from now on."""
        if self.highlights is not None:
            self.highlights.selected_color = color

    async def reorganize(self) -> bool:
        if self.highlights is None or self._closed:
            return False
        return await self.highlights.reorganize()

    async def wait_idle(self) -> None:
        """Wait for event handlers spawned so far to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- teardown ------------------------------------------------------------

    def close(self) -> None:
        """Cancel pending work and release the rendition. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self.tracker is not None:
            self.tracker.close()
        if self.highlights is not None:
            self.highlights.close()
        for task in list(self._tasks):
            task.cancel()
        if self.rendition is not None:
            try:
                self.rendition.destroy()
            except Exception:
                logger.exception("Failed to destroy rendition")
            self.rendition = None

    async def __aenter__(self) -> Self:
        try:
            await self.open()
        except BaseException:
            self.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
