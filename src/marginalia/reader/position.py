"""Reading position tracking for a rendered book.

Renderers silently reset the displayed page whenever they re-paginate:
after a container resize, or when a hidden view becomes visible again. The
tracker remembers the last page the reader actually navigated to, saves it
to the companion note, and snaps back to it after every re-pagination.

Two momentary guards keep the tracker from feeding on itself:

- ``resizing``: a resize was seen and the settle timer is pending. Pages
  reported during the churn are transient and ignored.
- ``restoring``: the tracker itself is navigating back to the saved page.
  Pages reported meanwhile are its own doing and ignored.

Only ``current_cfi`` is persisted; both guards live and die with the view.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Self

if TYPE_CHECKING:
    from types import TracebackType

    from marginalia.reader.protocols import DocumentStore, Notifier, Rendition

logger = logging.getLogger(__name__)

RESTORE_FAILED_MESSAGE = "Could not restore last reading position."


class TrackerState(StrEnum):
    """Observable state of a PositionTracker."""

    IDLE = "idle"
    RESTORING = "restoring"
    RESIZING = "resizing"


class PositionTracker:
    """Reconciles relocate/resize/visibility signals into one saved position.

    Attributes:
        settle_seconds: Quiet period after the last resize before restoring
            (class attr, override in tests).
        restore_delay_seconds: Pause before navigating so the renderer can
            finish redrawing.
        current_cfi: Last position the reader navigated to, or None before
            the first relocation or restore.
    """

    settle_seconds: float = 0.2
    restore_delay_seconds: float = 0.15

    def __init__(
        self,
        rendition: Rendition,
        store: DocumentStore,
        companion_path: str,
        *,
        progress_property: str = "epub-progress",
        notifier: Notifier | None = None,
        settle_seconds: float | None = None,
        restore_delay_seconds: float | None = None,
    ) -> None:
        self._rendition = rendition
        self._store = store
        self._companion_path = companion_path
        self._progress_property = progress_property
        self._notifier = notifier
        if settle_seconds is not None:
            self.settle_seconds = settle_seconds
        if restore_delay_seconds is not None:
            self.restore_delay_seconds = restore_delay_seconds

        self.current_cfi: str | None = None
        self._restoring = False
        self._resizing = False
        self._closed = False
        self._settle_task: asyncio.Task[None] | None = None
        self._restore_task: asyncio.Task[None] | None = None

    # --- state ---------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        if self._resizing:
            return TrackerState.RESIZING
        if self._restoring:
            return TrackerState.RESTORING
        return TrackerState.IDLE

    @property
    def restoring(self) -> bool:
        return self._restoring

    @property
    def resizing(self) -> bool:
        return self._resizing

    @property
    def closed(self) -> bool:
        return self._closed

    # --- initial load --------------------------------------------------------

    async def load_saved_position(self) -> None:
        """Display the saved position, or the book's start page if none.

        A saved position that no longer resolves is reported to the reader
        and the start page is shown instead.
        """
        saved_cfi: str | None = None
        try:
            metadata = await self._store.get_metadata(self._companion_path)
            saved_cfi = metadata.get(self._progress_property) or None
        except Exception:
            logger.exception(
                "Failed to read saved position from %s", self._companion_path
            )
        if self._closed:
            return

        if not saved_cfi:
            await self._display_start()
            return

        logger.debug("Found saved progress %s, displaying", saved_cfi)
        self._restoring = True
        try:
            await self._rendition.display(str(saved_cfi))
        except Exception:
            logger.warning("Failed to display saved CFI %s", saved_cfi, exc_info=True)
            self._restoring = False
            if self._notifier is not None and not self._closed:
                self._notifier.notify(RESTORE_FAILED_MESSAGE)
            await self._display_start()
            return
        self._restoring = False
        if not self._closed:
            self.current_cfi = str(saved_cfi)

    async def _display_start(self) -> None:
        if self._closed:
            return
        try:
            await self._rendition.display()
        except Exception:
            logger.exception("Failed to display start of book")

    # --- events --------------------------------------------------------------

    def note_relocated(self, cfi: str) -> bool:
        """Adopt ``cfi`` as the current position if the reader moved there.

        Must run inside the renderer's event callback: a relocation caused
        by a restore or resize is only recognisable while the guard that
        caused it is still set. Returns True when ``cfi`` should be saved.
        """
        if self._closed:
            return False
        if self._restoring or self._resizing:
            logger.debug("Ignoring relocation to %s while %s", cfi, self.state)
            return False

        logger.debug("Page relocated to %s", cfi)
        self.current_cfi = cfi
        return True

    async def on_relocated(self, cfi: str) -> None:
        """The renderer moved to ``cfi``; remember and save it if it was the reader."""
        if self.note_relocated(cfi):
            await self.save_position(cfi)

    async def save_position(self, cfi: str) -> None:
        """Persist ``cfi`` to the companion note. Failures are logged."""
        if self._closed:
            return
        try:
            await self._store.set_metadata_field(
                self._companion_path, self._progress_property, cfi
            )
        except Exception:
            logger.exception("Failed to save reading progress for %s", cfi)

    def on_resized(self) -> None:
        """The container changed size; restore once resizing has settled."""
        if self._closed or self.current_cfi is None:
            return

        self._resizing = True
        self._cancel_settle()
        self._settle_task = asyncio.create_task(self._settle_then_restore())

    def on_became_visible(self) -> None:
        """The view scrolled back into sight; restore the saved position."""
        if self._closed or self.current_cfi is None or self._restoring:
            return
        logger.debug("View became visible, restoring position")
        self._start_restore()

    # --- restore sequence ----------------------------------------------------

    async def _settle_then_restore(self) -> None:
        await asyncio.sleep(self.settle_seconds)
        # A restore started before the resize landed on the old layout
        pending = self._restore_task
        if pending is not None and not pending.done():
            await asyncio.wait({pending})
        self._settle_task = None
        self._resizing = False
        self._start_restore()

    def _start_restore(self) -> None:
        if self._closed or self.current_cfi is None or self._restoring:
            return
        self._restoring = True
        self._restore_task = asyncio.create_task(self._restore(self.current_cfi))

    async def _restore(self, cfi: str) -> None:
        try:
            await asyncio.sleep(self.restore_delay_seconds)
            if self._closed:
                return
            logger.debug("Restoring position to %s", cfi)
            await self._rendition.display(cfi)
            logger.debug("Position restored")
        except Exception:
            # The reader stays wherever the renderer ended up
            logger.warning("Failed to restore position to %s", cfi, exc_info=True)
        finally:
            self._restoring = False
            self._restore_task = None

    def _cancel_settle(self) -> None:
        task = self._settle_task
        self._settle_task = None
        if task is not None and not task.done():
            task.cancel()

    # --- teardown ------------------------------------------------------------

    def close(self) -> None:
        """Cancel pending timers and navigations. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._cancel_settle()
        task = self._restore_task
        if task is not None and not task.done():
            task.cancel()
        self._resizing = False

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
