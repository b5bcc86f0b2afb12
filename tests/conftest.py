"""
Pytest configuration and shared fixtures for StreamPing tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from streamping.registry import SubscriptionRegistry

START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for the scheduler."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def hub_feed_document(hub_url: str | None, title: str = "Test Channel") -> str:
    """A channel feed document as served at a topic URL."""
    hub_link = f'<link rel="hub" href="{hub_url}"/>' if hub_url else ""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns="http://www.w3.org/2005/Atom">
  {hub_link}
  <link rel="self" href="https://www.youtube.com/xml/feeds/videos.xml?channel_id=UC123"/>
  <title>{title}</title>
  <updated>2024-05-01T10:00:00+00:00</updated>
</feed>"""


def push_document(
    video_id: str = "v1",
    updated: str = "2024-05-01T11:59:00.123456789+00:00",
    title: str = "Morning stream",
    author: str = "Test Talent",
) -> str:
    """A content-distribution push as sent by the YouTube hub."""
    return f"""<?xml version='1.0' encoding='UTF-8'?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns="http://www.w3.org/2005/Atom">
  <link rel="hub" href="https://pubsubhubbub.appspot.com"/>
  <link rel="self" href="https://www.youtube.com/xml/feeds/videos.xml?channel_id=UC123"/>
  <title>YouTube video feed</title>
  <updated>{updated}</updated>
  <entry>
    <id>yt:video:{video_id}</id>
    <yt:videoId>{video_id}</yt:videoId>
    <yt:channelId>UC123</yt:channelId>
    <title>{title}</title>
    <link rel="alternate" href="https://www.youtube.com/watch?v={video_id}"/>
    <author>
      <name>{author}</name>
      <uri>https://www.youtube.com/channel/UC123</uri>
    </author>
    <published>2024-05-01T11:00:00+00:00</published>
    <updated>{updated}</updated>
  </entry>
</feed>"""


class StubHub:
    """A WebSub hub and feed publisher served by an aiohttp test server."""

    def __init__(self):
        self.status = 202
        self.requests: list[dict[str, str]] = []
        self.feed_status = 200
        self.advertise_hub = True
        self.server: TestServer | None = None

        self.app = web.Application()
        self.app.router.add_get("/feed", self.handle_feed)
        self.app.router.add_post("/hub", self.handle_hub)

    def url(self, path: str) -> str:
        assert self.server is not None
        return str(self.server.make_url(path))

    async def handle_feed(self, request: web.Request) -> web.Response:
        hub_url = str(request.url.origin().with_path("/hub")) if self.advertise_hub else None
        return web.Response(
            status=self.feed_status,
            text=hub_feed_document(hub_url),
            content_type="application/atom+xml",
        )

    async def handle_hub(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.requests.append(
            {"content_type": request.content_type, **{key: str(value) for key, value in form.items()}}
        )
        return web.Response(status=self.status, text="hub says hi")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return SubscriptionRegistry()


@pytest.fixture
async def stub_hub():
    hub = StubHub()
    hub.server = TestServer(hub.app)
    await hub.server.start_server()
    yield hub
    await hub.server.close()
