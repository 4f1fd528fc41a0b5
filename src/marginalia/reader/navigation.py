"""Arrow-key page turning, mirrored for right-to-left books."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marginalia.reader.protocols import Rendition

logger = logging.getLogger(__name__)


class PageNavigator:
    """Turns pages on a rendition in reading direction."""

    def __init__(self, rendition: Rendition, *, rtl: bool = False) -> None:
        self._rendition = rendition
        self.rtl = rtl

    async def next_page(self) -> None:
        await self._rendition.next()

    async def prev_page(self) -> None:
        await self._rendition.prev()

    async def handle_key(self, key: str) -> bool:
        """Turn the page for ``key``. Returns True if the key was handled.

        ``ArrowRight`` moves forward in left-to-right books and backward in
        right-to-left ones; ``ArrowLeft`` does the opposite.
        """
        match key:
            case "ArrowLeft":
                forward = self.rtl
            case "ArrowRight":
                forward = not self.rtl
            case _:
                return False

        if forward:
            logger.debug("%s pressed, going to next page", key)
            await self._rendition.next()
        else:
            logger.debug("%s pressed, going to previous page", key)
            await self._rendition.prev()
        return True
