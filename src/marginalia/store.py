"""DocumentStore over a local directory of Markdown notes.

The directory plays the part of a notes vault: paths are POSIX strings
relative to its root, and a note's metadata is its YAML front matter::

    ---
    epub-file: "[[Books/Dune.epub]]"
    epub-progress: epubcfi(/6/14!/4/2/1:0)
    ---
    # Dune
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_FRONT_MATTER_PATTERN = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE
)

BOOK_SUFFIX = ".epub"


class StorePathError(ValueError):
    """A path points outside the store root."""


def split_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Split a note into its front matter mapping and the remaining body.

    Raises:
        yaml.YAMLError: The front matter is not valid YAML.
    """
    match = _FRONT_MATTER_PATTERN.match(text)
    if match is None:
        return {}, text
    data = yaml.safe_load(match.group(1)) or {}
    if not isinstance(data, dict):
        logger.warning("Ignoring front matter that is not a mapping: %r", data)
        data = {}
    return data, text[match.end() :]


def join_front_matter(metadata: dict[str, Any], body: str) -> str:
    if not metadata:
        return body
    dumped = yaml.safe_dump(metadata, sort_keys=False, allow_unicode=True)
    return f"---\n{dumped}---\n{body}"


class FileSystemStore:
    """Notes and books stored as plain files under ``root``.

    Writes to one path are serialised by a per-path lock, so a read-modify-write
    (``process_text``, ``set_metadata_field``) never loses a concurrent one.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        self._locks: dict[Path, asyncio.Lock] = {}

    def _path(self, path: str) -> Path:
        resolved = (self.root / path).resolve()
        if not resolved.is_relative_to(self.root):
            msg = f"{path!r} is outside {self.root}"
            raise StorePathError(msg)
        return resolved

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _lock(self, path: str) -> asyncio.Lock:
        return self._locks.setdefault(self._path(path), asyncio.Lock())

    async def read_binary(self, path: str) -> bytes:
        return await asyncio.to_thread(self._path(path).read_bytes)

    async def read_text(self, path: str) -> str:
        return await asyncio.to_thread(self._path(path).read_text, encoding="utf-8")

    async def write_text(self, path: str, text: str) -> None:
        async with self._lock(path):
            await self._write(path, text)

    async def _write(self, path: str, text: str) -> None:
        target = self._path(path)
        await asyncio.to_thread(target.write_text, text, encoding="utf-8")
        logger.debug("Wrote %d characters to %s", len(text), path)

    async def process_text(self, path: str, transform: Callable[[str], str]) -> str:
        """Replace the text at ``path`` with ``transform(text)`` and return it.

        Nothing is written if ``transform`` raises.
        """
        async with self._lock(path):
            text = transform(await self.read_text(path))
            await self._write(path, text)
        return text

    async def get_metadata(self, path: str) -> dict[str, Any]:
        text = await self.read_text(path)
        try:
            metadata, _ = split_front_matter(text)
        except yaml.YAMLError:
            logger.warning("Unreadable front matter in %s", path, exc_info=True)
            return {}
        return metadata

    async def set_metadata_field(self, path: str, key: str, value: Any) -> None:
        """Set one front matter field, keeping the others and the body.

        Raises:
            yaml.YAMLError: Existing front matter is unreadable; it is left
                untouched rather than overwritten.
        """
        async with self._lock(path):
            text = await self.read_text(path)
            metadata, body = split_front_matter(text)
            metadata[key] = value
            await self._write(path, join_front_matter(metadata, body))

    async def resolve_link(self, link: str, context_path: str) -> str | None:
        return await asyncio.to_thread(self._find, link, context_path)

    def _find(self, link: str, context_path: str) -> str | None:
        """Look for ``link`` next to the note, at the root, then by file name."""
        context_dir = Path(context_path).parent
        names = [link]
        if not Path(link).suffix:
            names.append(f"{link}{BOOK_SUFFIX}")

        for name in names:
            for base in (context_dir, Path()):
                try:
                    candidate = self._path((base / name).as_posix())
                except StorePathError:
                    continue
                if candidate.is_file():
                    return self._relative(candidate)

        for name in names:
            matches = sorted(p for p in self.root.rglob(Path(name).name) if p.is_file())
            if matches:
                return self._relative(matches[0])
        return None
