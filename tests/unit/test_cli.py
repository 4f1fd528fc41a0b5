"""Tests for the marginalia command-line interface."""

from __future__ import annotations

import os
import sys
from io import StringIO
from typing import TYPE_CHECKING

import pytest
from rich.console import Console

from marginalia.annotations.codec import (
    AnnotationRecord,
    parse_annotations,
    serialize_annotation,
)
from marginalia.cli import (
    _build_parser,
    _cmd_annotations,
    _cmd_progress,
    _cmd_reorganize,
    _format_timestamp,
    main,
)
from marginalia.store import FileSystemStore

if TYPE_CHECKING:
    from pathlib import Path

YELLOW = "#ffeb3b"
BLUE = "#2196f3"


def _console() -> tuple[Console, StringIO]:
    buf = StringIO()
    return Console(file=buf, width=200, no_color=True), buf


def _rec(
    id: str, text: str, color: str = YELLOW, note: str | None = None
) -> AnnotationRecord:
    return AnnotationRecord(
        id=id, cfi=f"cfi-{id}", text=text, color=color, timestamp=int(id), note=note
    )


@pytest.fixture
def vault(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for key in list(os.environ):
        if key.startswith("MARGINALIA_"):
            monkeypatch.delenv(key)
    (tmp_path / "Dune.epub").write_bytes(b"PK")
    blue = _rec("1700000000000", "Who controls the spice", BLUE, note="power")
    yellow = _rec("1700000060000", "Fear is the mind-killer")
    (tmp_path / "Dune.md").write_text(
        '---\nepub-file: "[[Dune.epub]]"\nepub-progress: epubcfi(/6/4)\n---\n'
        "# Dune\n\n"
        f"{serialize_annotation(blue)}\n"
        f"{serialize_annotation(yellow)}\n",
        encoding="utf-8",
    )
    (tmp_path / "Empty.md").write_text("# Nothing yet\n", encoding="utf-8")
    return tmp_path


class TestParser:
    """Subcommand parsing."""

    def test_reorganize_dry_run(self) -> None:
        args = _build_parser().parse_args(
            ["--root", "/notes", "reorganize", "Dune.md", "--dry-run"]
        )
        assert args.command == "reorganize"
        assert args.note == "Dune.md"
        assert args.dry_run is True
        assert args.root == "/notes"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args([])


class TestFormatTimestamp:
    def test_milliseconds_to_utc(self) -> None:
        assert _format_timestamp(1700000000000) == "2023-11-14 22:13"

    def test_out_of_range_falls_back_to_number(self) -> None:
        assert _format_timestamp(10**20) == str(10**20)


class TestAnnotationsCommand:
    @pytest.mark.asyncio
    async def test_lists_annotations(self, vault: Path) -> None:
        con, buf = _console()
        await _cmd_annotations(FileSystemStore(vault), "Dune.md", console=con)

        output = buf.getvalue()
        assert "Annotations in Dune.md" in output
        assert "Who controls the spice" in output
        assert "Questions" in output
        assert "power" in output
        assert "Fear is the mind-killer" in output
        assert "Highlights" in output

    @pytest.mark.asyncio
    async def test_empty_note(self, vault: Path) -> None:
        con, buf = _console()
        await _cmd_annotations(FileSystemStore(vault), "Empty.md", console=con)
        assert "No annotations in Empty.md." in buf.getvalue()


class TestReorganizeCommand:
    @pytest.mark.asyncio
    async def test_rewrites_note(self, vault: Path) -> None:
        con, buf = _console()
        store = FileSystemStore(vault)

        await _cmd_reorganize(store, "Dune.md", console=con)

        text = (vault / "Dune.md").read_text(encoding="utf-8")
        assert text.index("## Highlights") < text.index("## Questions")
        assert "- Who controls the spice - power" in text
        assert len(parse_annotations(text)) == 2
        metadata = await store.get_metadata("Dune.md")
        assert metadata["epub-annotations"] == 2
        assert metadata["epub-progress"] == "epubcfi(/6/4)"
        assert "Reorganized 2 annotations in Dune.md" in buf.getvalue()

    @pytest.mark.asyncio
    async def test_second_run_reports_nothing_to_do(self, vault: Path) -> None:
        store = FileSystemStore(vault)
        await _cmd_reorganize(store, "Dune.md", console=_console()[0])

        con, buf = _console()
        await _cmd_reorganize(store, "Dune.md", console=con)

        assert "Dune.md is already organized." in buf.getvalue()

    @pytest.mark.asyncio
    async def test_dry_run_leaves_file_alone(self, vault: Path) -> None:
        before = (vault / "Dune.md").read_text(encoding="utf-8")
        con, buf = _console()

        await _cmd_reorganize(
            FileSystemStore(vault), "Dune.md", dry_run=True, console=con
        )

        assert (vault / "Dune.md").read_text(encoding="utf-8") == before
        assert "## Questions" in buf.getvalue()
        assert "[[Dune.epub]]" in buf.getvalue()


class TestProgressCommand:
    @pytest.mark.asyncio
    async def test_shows_book_and_position(self, vault: Path) -> None:
        con, buf = _console()
        await _cmd_progress(FileSystemStore(vault), "Dune.md", console=con)

        output = buf.getvalue()
        assert "Book: Dune.epub" in output
        assert "Position: epubcfi(/6/4)" in output

    @pytest.mark.asyncio
    async def test_missing_link_exits(self, vault: Path) -> None:
        con, buf = _console()
        with pytest.raises(SystemExit) as exc_info:
            await _cmd_progress(FileSystemStore(vault), "Empty.md", console=con)

        assert exc_info.value.code == 1
        assert "No book link found in Empty.md" in buf.getvalue()


class TestMain:
    def test_missing_note_exits(
        self, vault: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(
            sys, "argv", ["marginalia", "--root", str(vault), "progress", "Gone.md"]
        )
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1

    def test_progress_runs(
        self,
        vault: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setattr(
            sys, "argv", ["marginalia", "--root", str(vault), "progress", "Dune.md"]
        )
        main()
        assert "Dune.epub" in capsys.readouterr().out
