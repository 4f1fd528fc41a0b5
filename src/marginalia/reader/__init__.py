"""Reader-side state: position tracking, highlights, and the session owning them."""

from marginalia.reader.highlights import HighlightSynchronizer
from marginalia.reader.links import DocumentLinkError, resolve_book_link
from marginalia.reader.navigation import PageNavigator
from marginalia.reader.position import PositionTracker, TrackerState
from marginalia.reader.session import ReaderSession

__all__ = [
    "DocumentLinkError",
    "HighlightSynchronizer",
    "PageNavigator",
    "PositionTracker",
    "ReaderSession",
    "TrackerState",
    "resolve_book_link",
]
