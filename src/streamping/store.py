"""
Livestream store for StreamPing.

This module keeps the last known metadata of every scheduled livestream in
a JSON file, so notifications can be compared against it and re-armed after
a restart.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from streamping.feed import format_rfc3339, parse_rfc3339

logger = logging.getLogger(__name__)


@dataclass
class Livestream:
    """Stored metadata of a scheduled livestream."""

    video_id: str
    url: str
    title: str
    author: str
    date: datetime  # scheduled start
    updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "video_id": self.video_id,
            "url": self.url,
            "title": self.title,
            "author": self.author,
            "date": format_rfc3339(self.date),
            "updated": format_rfc3339(self.updated) if self.updated else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Livestream":
        """Create a Livestream from its stored JSON form.

        Raises:
            ValueError: If the scheduled start is missing or invalid
        """
        date = parse_rfc3339(data.get("date"))
        if date is None:
            raise ValueError(f"Livestream {data.get('url')} has no valid date")
        return cls(
            video_id=data["video_id"],
            url=data["url"],
            title=data.get("title", ""),
            author=data.get("author", ""),
            date=date,
            updated=parse_rfc3339(data.get("updated")),
        )


class LivestreamStore:
    """JSON file backed store of livestreams, keyed by video URL."""

    def __init__(self, store_file: str):
        """Initialize the store and load existing data.

        Args:
            store_file: Path of the JSON file to keep livestreams in
        """
        self.store_file = Path(store_file)
        self._livestreams: dict[str, Livestream] = {}
        self.load()

    def load(self) -> bool:
        """Load livestreams from the store file.

        Returns:
            bool: True if the file was loaded, False otherwise
        """
        if not self.store_file.exists():
            logger.info("Livestream store file does not exist")
            return False

        try:
            with open(self.store_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except Exception:
            logger.exception("Error loading livestream store:")
            return False

        if not isinstance(data, dict) or "livestreams" not in data:
            logger.warning("Invalid livestream store format")
            return False

        livestreams = {}
        for item in data["livestreams"]:
            try:
                livestream = Livestream.from_dict(item)
            except (KeyError, TypeError, ValueError):
                logger.exception(f"Error parsing livestream {item}:")
                continue
            livestreams[livestream.url] = livestream

        self._livestreams = livestreams
        logger.info(f"Loaded {len(self._livestreams)} livestreams from store")
        return True

    def save(self) -> bool:
        """Save livestreams to the store file.

        Returns:
            bool: True if the store was saved successfully, False otherwise
        """
        try:
            if self.store_file.parent != Path("."):
                os.makedirs(self.store_file.parent, exist_ok=True)
            data = {"livestreams": [livestream.to_dict() for livestream in self.all()]}
            with open(self.store_file, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            return True
        except Exception:
            logger.exception("Error saving livestream store:")
            return False

    def get(self, url: str) -> Livestream | None:
        return self._livestreams.get(url)

    def insert(self, livestream: Livestream) -> bool:
        """Insert a new livestream.

        Returns:
            bool: True if inserted, False if a livestream with that URL exists
        """
        if livestream.url in self._livestreams:
            return False
        self._livestreams[livestream.url] = livestream
        logger.info(f"Inserted livestream {livestream.url}")
        return self.save()

    def upsert(self, livestream: Livestream) -> bool:
        """Insert or replace a livestream."""
        self._livestreams[livestream.url] = livestream
        logger.info(f"Upserted livestream {livestream.url}")
        return self.save()

    def remove(self, url: str) -> bool:
        if url not in self._livestreams:
            return False
        del self._livestreams[url]
        return self.save()

    def all(self) -> list[Livestream]:
        """All livestreams, earliest scheduled start first."""
        return sorted(self._livestreams.values(), key=lambda livestream: livestream.date)
