"""Shared pytest fixtures for marginalia tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from marginalia.config import (
    ColourMapping,
    HighlightConfig,
    PositionConfig,
    Settings,
    get_settings,
)
from tests.helpers.fakes import FakeRendition, MemoryStore

YELLOW = "#ffeb3b"
GREEN = "#4caf50"


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def rendition() -> FakeRendition:
    return FakeRendition()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from .env files, with fast position timings."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        highlights=HighlightConfig(
            color_mappings=[
                ColourMapping(color=YELLOW, section_title="## Yellow"),
                ColourMapping(
                    color=GREEN,
                    section_title="## Green",
                    template="> {{text}}\n\n{{note}}",
                ),
            ]
        ),
        position=PositionConfig(settle_seconds=0.05, restore_delay_seconds=0.0),
    )
