"""Protocols for the collaborators a reader session talks to.

The book renderer, the note store, and the UI all live outside marginalia.
Anything that implements these protocols can be plugged in; tests use
mocks, the CLI uses ``marginalia.store.FileSystemStore``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, TypeAlias

if TYPE_CHECKING:
    from collections.abc import Callable

EventCallback: TypeAlias = "Callable[..., Any]"


class Rendition(Protocol):
    """A rendered book the reader pages through."""

    rtl: bool

    async def display(self, cfi: str | None = None) -> None:
        """Show the page containing ``cfi``, or the book's start page.

        Raises whatever the renderer raises when the location cannot be
        resolved.
        """
        ...

    async def next(self) -> None:
        """Turn to the next page."""
        ...

    async def prev(self) -> None:
        """Turn to the previous page."""
        ...

    def on(self, event: str, callback: EventCallback) -> None:
        """Subscribe to a renderer event.

        Events used by marginalia:

        - ``relocated(cfi)``: the displayed page changed.
        - ``resized()``: the renderer re-measured its container.
        - ``selected(cfi_range, text)``: the reader selected text.
        """
        ...

    def add_highlight(self, cfi_range: str, style: dict[str, str]) -> None:
        """Draw a highlight overlay over ``cfi_range``."""
        ...

    def destroy(self) -> None:
        """Release the rendition and everything it holds."""
        ...


class Renderer(Protocol):
    """Factory turning book bytes into a rendition."""

    def render(self, data: bytes) -> Rendition: ...


class DocumentStore(Protocol):
    """Storage for companion notes and the books they link to.

    Paths are store-relative strings. Every method may raise ``OSError``
    (or a store-specific error) on I/O failure.
    """

    async def read_binary(self, path: str) -> bytes: ...

    async def read_text(self, path: str) -> str: ...

    async def write_text(self, path: str, text: str) -> None: ...

    async def process_text(self, path: str, transform: Callable[[str], str]) -> str:
        """Atomically rewrite the note at ``path`` and return the new text.

        No other write to ``path`` may interleave between the read and the
        write.
        """
        ...

    async def get_metadata(self, path: str) -> dict[str, Any]:
        """Key/value metadata attached to the note (its front matter)."""
        ...

    async def set_metadata_field(self, path: str, key: str, value: Any) -> None: ...

    async def resolve_link(self, link: str, context_path: str) -> str | None:
        """Resolve ``link`` as written in ``context_path`` to a concrete path."""
        ...


class Notifier(Protocol):
    """Short, non-blocking messages for the reader."""

    def notify(self, message: str) -> None: ...


class NotePrompt(Protocol):
    """Asks the reader for a note on a new highlight.

    Returns the note ("" for none), or None if the reader cancelled and the
    highlight should be discarded.
    """

    async def __call__(self, selected_text: str) -> str | None: ...
