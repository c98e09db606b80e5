"""Sass lines for the social commands.

Two word lists live in the content directory: ``sass.txt`` for everyone and
``sass-nsfw.txt`` for NSFW channels only. They are read once, on first use.
"""

from __future__ import annotations

import logging
import pathlib
import random

logger = logging.getLogger(__name__)

NO_SASS = "There's no available sass. You'll just have to provide your own."


class SassService:
    def __init__(self, content_dir: str | pathlib.Path, rng: random.Random | None = None) -> None:
        self.content_dir = pathlib.Path(content_dir)
        self._rng = rng or random.Random()
        self._sass: list[str] = []
        self._sass_nsfw: list[str] = []
        self._loaded = False

    def _read_lines(self, filename: str) -> list[str]:
        path = self.content_dir / filename
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.warning("sass_file_missing path=%s", path)
            return []
        return [line.strip() for line in text.splitlines() if line.strip()]

    def load(self) -> None:
        self._sass = self._read_lines("sass.txt")
        self._sass_nsfw = self._read_lines("sass-nsfw.txt")
        self._loaded = True
        logger.info("sass_loaded sfw=%d nsfw=%d", len(self._sass), len(self._sass_nsfw))

    def get_sass(self, include_nsfw: bool = False) -> str:
        """Pick a random line. NSFW lines are only eligible when ``include_nsfw``."""
        if not self._loaded:
            self.load()

        available = self._sass + self._sass_nsfw if include_nsfw else self._sass
        if not available:
            return NO_SASS
        return self._rng.choice(available)
