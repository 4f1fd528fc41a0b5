"""Centralised configuration using pydantic-settings.

All environment variables are read through the Settings class.
Consumers call ``get_settings()`` to obtain a cached, validated instance.
Tests construct ``Settings(_env_file=None, ...)`` directly for isolation.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# src/marginalia/config.py  ->  parent x3  ->  project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_HIGHLIGHT_COLOR = "#ffeb3b"
DEFAULT_SECTION_TITLE = "## Highlights"


# ---------------------------------------------------------------------------
# Sub-models (one per configuration domain)
# ---------------------------------------------------------------------------
class ColourMapping(BaseModel):
    """Joins a highlight colour to the note section its annotations live in.

    ``section_title`` is matched against whole lines of the note, so it
    carries its own Markdown heading prefix (``## Yellow``).
    """

    color: str
    section_title: str
    template: str | None = None

    @field_validator("section_title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "section_title must not be blank"
            raise ValueError(msg)
        return value


def _default_mappings() -> list[ColourMapping]:
    return [
        ColourMapping(color=DEFAULT_HIGHLIGHT_COLOR, section_title="## Highlights"),
        ColourMapping(color="#4caf50", section_title="## Important"),
        ColourMapping(color="#2196f3", section_title="## Questions"),
        ColourMapping(color="#e91e63", section_title="## Disagree"),
    ]


class PropertiesConfig(BaseModel):
    """Front matter keys read from and written to the companion note."""

    link_property: str = "epub-file"
    progress_property: str = "epub-progress"
    annotations_property: str = "epub-annotations"


class HighlightConfig(BaseModel):
    """Highlight colours, their sections, and overlay appearance."""

    color_mappings: list[ColourMapping] = Field(default_factory=_default_mappings)
    fallback_section_title: str = DEFAULT_SECTION_TITLE
    fill_opacity: float = Field(default=0.3, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _unique_section_titles(self) -> HighlightConfig:
        seen: set[str] = set()
        for mapping in self.color_mappings:
            if mapping.section_title in seen:
                msg = f"duplicate section title: {mapping.section_title!r}"
                raise ValueError(msg)
            seen.add(mapping.section_title)
        return self

    @property
    def default_color(self) -> str:
        """Colour selected for new highlights until the reader picks another."""
        if self.color_mappings:
            return self.color_mappings[0].color
        return DEFAULT_HIGHLIGHT_COLOR


class PositionConfig(BaseModel):
    """Timings for snapping back to the saved position."""

    settle_seconds: float = Field(default=0.2, ge=0.0)
    restore_delay_seconds: float = Field(default=0.15, ge=0.0)


class LinkConfig(BaseModel):
    """Deep links rendered by the ``{{link}}`` template placeholder."""

    protocol: str = "epub-reader"


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------
class Settings(BaseSettings):
    """Settings with automatic .env loading and type validation.

    Environment variables use the ``MARGINALIA_`` prefix and a
    double-underscore delimiter for nesting:
    ``MARGINALIA_PROPERTIES__PROGRESS_PROPERTY``,
    ``MARGINALIA_POSITION__SETTLE_SECONDS``. Lists are given as JSON, e.g.
    ``MARGINALIA_HIGHLIGHTS__COLOR_MAPPINGS='[{"color": "#ff0", ...}]'``.
    """

    model_config = SettingsConfigDict(
        env_file=_PROJECT_ROOT / ".env",
        env_prefix="MARGINALIA_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    properties: PropertiesConfig = PropertiesConfig()
    highlights: HighlightConfig = HighlightConfig()
    position: PositionConfig = PositionConfig()
    links: LinkConfig = LinkConfig()


# ---------------------------------------------------------------------------
# Singleton access
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    settings = Settings()

    env_file = settings.model_config.get("env_file")
    if env_file is not None and Path(str(env_file)).is_file():
        logger.info("Settings loaded .env from: %s", env_file)
    else:
        logger.debug("Settings: no .env file found, using env vars and defaults")

    return settings
