"""
YouTube Data API integration for StreamPing.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import aiohttp

from streamping.feed import parse_rfc3339

logger = logging.getLogger(__name__)


@dataclass
class VideoMetadata:
    """Authoritative metadata of a video."""

    video_id: str
    title: str
    description: str
    channel_id: str
    channel_title: str
    scheduled_start: datetime | None  # None unless the video is a scheduled livestream

    @classmethod
    def from_api_response(cls, item: dict[str, Any]) -> "VideoMetadata":
        """Create a VideoMetadata from a YouTube API ``videos`` item.

        Args:
            item: One element of the response's ``items`` list

        Returns:
            VideoMetadata object
        """
        snippet = item.get("snippet", {})
        live_details = item.get("liveStreamingDetails", {})
        return cls(
            video_id=item["id"],
            title=snippet.get("title", ""),
            description=snippet.get("description", ""),
            channel_id=snippet.get("channelId", ""),
            channel_title=snippet.get("channelTitle", ""),
            scheduled_start=parse_rfc3339(live_details.get("scheduledStartTime")),
        )


class YouTubeAPI:
    """Client for looking up video metadata with the YouTube Data API."""

    BASE_URL = "https://youtube.googleapis.com/youtube/v3"

    def __init__(self, api_key: str, timeout: float = 10):
        """Initialize the YouTube API client.

        Args:
            api_key: YouTube Data API key
            timeout: Total timeout in seconds for each request
        """
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: aiohttp.ClientSession | None = None

    async def initialize(self):
        """Initialize the API client session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        """Close the API client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def fetch(self, video_id: str) -> VideoMetadata | None:
        """Get the metadata of a video.

        Args:
            video_id: YouTube video ID

        Returns:
            VideoMetadata, or None if the video was not found or the request failed
        """
        await self.initialize()

        if self.session is None:
            logger.error("Session is None in fetch")
            return None

        params = {
            "part": "snippet,liveStreamingDetails",
            "id": video_id,
            "key": self.api_key,
        }

        try:
            async with self.session.get(f"{self.BASE_URL}/videos", params=params) as response:
                if response.status != 200:
                    response_text = await response.text()
                    logger.error(f"Error fetching video {video_id}: {response.status}")
                    logger.error(f"Response text: {response_text[:500]}...")
                    return None
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError):
            logger.exception(f"Exception fetching video {video_id}:")
            return None

        items = data.get("items") or []
        if not items:
            logger.warning(f"No video found for {video_id}")
            return None

        try:
            metadata = VideoMetadata.from_api_response(items[0])
        except KeyError:
            logger.exception(f"Malformed video response for {video_id}:")
            return None

        logger.debug(f"Fetched metadata for {video_id}: {metadata}")
        return metadata
