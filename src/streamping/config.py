"""
Feed configuration management for StreamPing.
"""

import json
import logging
import pathlib

logger = logging.getLogger(__name__)

YOUTUBE_FEED_URL = "https://www.youtube.com/xml/feeds/videos.xml?channel_id={}"


class FeedConfig:
    """Manages the list of tracked feeds."""

    def __init__(self, config_file: str):
        """Initialize the configuration manager."""
        self.config_file = config_file
        self.data: dict[str, list] = {}
        self.load()

    def load(self):
        """Load configuration data from file."""
        try:
            if pathlib.Path(self.config_file).exists():
                with open(self.config_file, "r") as f:
                    self.data = json.load(f)
            logger.info(f"Loaded configuration for {len(self.data.get('feeds', []))} feeds")
        except Exception as e:
            logger.error(f"Error loading config: {e}")
            self.data = {}

    def save(self):
        """Save configuration data to file."""
        try:
            with open(self.config_file, "w") as f:
                json.dump(self.data, f, indent=2)
            logger.info("Configuration saved")
        except Exception as e:
            logger.error(f"Error saving config: {e}")

    def get_feeds(self) -> list[dict]:
        """Get all tracked feeds.

        Returns:
            list: Feed entries with ``name``, ``topic_url`` and ``group``
        """
        if "feeds" not in self.data:
            self.data["feeds"] = []
        return self.data["feeds"]

    def get_topic_urls(self) -> list[str]:
        """Get the topic URL of every tracked feed, without duplicates."""
        topic_urls = []
        for feed in self.get_feeds():
            topic_url = feed.get("topic_url")
            if not topic_url:
                logger.warning(f"Feed {feed.get('name', '?')} has no topic_url, skipping")
                continue
            if topic_url not in topic_urls:
                topic_urls.append(topic_url)
        return topic_urls

    def add_feed(self, name: str, topic_url: str, group: str = "") -> bool:
        """Add a feed to track.

        Args:
            name: Display name of the feed (e.g. the channel's talent)
            topic_url: Feed URL to subscribe to
            group: Optional group the feed belongs to

        Returns:
            bool: True if the feed was added, False if it was already configured
        """
        feeds = self.get_feeds()
        if any(feed.get("topic_url") == topic_url for feed in feeds):
            return False

        feeds.append({"name": name, "topic_url": topic_url, "group": group})
        self.save()
        return True

    def add_channel(self, name: str, channel_id: str, group: str = "") -> bool:
        """Add the upload feed of a YouTube channel to track."""
        return self.add_feed(name, YOUTUBE_FEED_URL.format(channel_id), group)

    def remove_feed(self, topic_url: str) -> bool:
        """Stop tracking a feed.

        Args:
            topic_url: Feed URL to remove

        Returns:
            bool: True if the feed was removed, False if it wasn't configured
        """
        feeds = self.get_feeds()
        remaining = [feed for feed in feeds if feed.get("topic_url") != topic_url]
        if len(remaining) == len(feeds):
            return False

        self.data["feeds"] = remaining
        self.save()
        return True
