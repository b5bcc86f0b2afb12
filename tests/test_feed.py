"""
Tests for the Atom feed codec.
"""

from datetime import datetime, timezone

import pytest

from streamping.errors import FeedParseError
from streamping.feed import build_callback_url, format_rfc3339, parse_feed, parse_rfc3339

from tests.conftest import hub_feed_document, push_document


class TestParseFeed:
    """Test parsing feed documents."""

    def test_parse_push(self):
        """Test parsing a content-distribution push."""
        feed = parse_feed(push_document(video_id="abc123", title="Karaoke", author="Suisei"))

        assert feed.title == "YouTube video feed"
        assert feed.hub_url == "https://pubsubhubbub.appspot.com"
        assert len(feed.entries) == 1

        entry = feed.entries[0]
        assert entry.id == "yt:video:abc123"
        assert entry.video_id == "abc123"
        assert entry.channel_id == "UC123"
        assert entry.title == "Karaoke"
        assert entry.author.name == "Suisei"
        assert entry.author.uri == "https://www.youtube.com/channel/UC123"
        assert entry.link.rel == "alternate"
        assert entry.video_url == "https://www.youtube.com/watch?v=abc123"
        assert entry.published == datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)

    def test_nanosecond_timestamps_are_truncated(self):
        """Test that nanosecond precision timestamps parse to microseconds."""
        feed = parse_feed(push_document(updated="2015-04-01T19:05:24.552394234+00:00"))

        expected = datetime(2015, 4, 1, 19, 5, 24, 552394, tzinfo=timezone.utc)
        assert feed.updated == expected
        assert feed.entries[0].updated == expected

    def test_hub_url_from_channel_feed(self):
        """Test finding the hub link of a channel feed."""
        feed = parse_feed(hub_feed_document("https://hub.example.com/"))

        assert feed.hub_url == "https://hub.example.com/"
        assert feed.entries == []

    def test_no_hub_link(self):
        """Test that a feed without a hub link has no hub URL."""
        feed = parse_feed(hub_feed_document(None))

        assert feed.hub_url is None
        assert [link.rel for link in feed.links] == ["self"]

    def test_document_without_namespaces(self):
        """Test that elements are matched by local name."""
        document = """<feed>
          <link rel="hub" href="https://hub.example.com/"/>
          <entry><videoId>plain</videoId><title>No namespaces</title></entry>
        </feed>"""

        feed = parse_feed(document)

        assert feed.hub_url == "https://hub.example.com/"
        assert feed.entries[0].video_id == "plain"
        assert feed.entries[0].video_url == "https://www.youtube.com/watch?v=plain"
        assert feed.entries[0].author.name == ""

    def test_bytes_document(self):
        """Test parsing a document given as bytes."""
        feed = parse_feed(push_document().encode("utf-8"))

        assert feed.entries[0].video_id == "v1"

    def test_malformed_document(self):
        """Test that malformed XML raises FeedParseError."""
        with pytest.raises(FeedParseError):
            parse_feed("<feed><entry>")

    def test_wrong_root_element(self):
        """Test that a non-feed document raises FeedParseError."""
        with pytest.raises(FeedParseError):
            parse_feed("<rss><channel/></rss>")

    def test_entry_without_video_id(self):
        """Test that an entry without a video ID raises FeedParseError."""
        with pytest.raises(FeedParseError):
            parse_feed("<feed><entry><title>Deleted</title></entry></feed>")


class TestTimestamps:
    """Test RFC 3339 helpers."""

    def test_parse_zulu(self):
        assert parse_rfc3339("2024-05-01T12:00:00Z") == datetime(
            2024, 5, 1, 12, 0, tzinfo=timezone.utc
        )

    def test_parse_offset_is_converted_to_utc(self):
        assert parse_rfc3339("2024-05-01T21:00:00+09:00") == datetime(
            2024, 5, 1, 12, 0, tzinfo=timezone.utc
        )

    def test_parse_short_fractions(self):
        """Test that fractions shorter than microseconds are padded."""
        assert parse_rfc3339("2024-05-01T12:00:00.12345+00:00") == datetime(
            2024, 5, 1, 12, 0, 0, 123450, tzinfo=timezone.utc
        )
        assert parse_rfc3339("2024-05-01T12:00:00.5Z") == datetime(
            2024, 5, 1, 12, 0, 0, 500000, tzinfo=timezone.utc
        )

    def test_parse_invalid_returns_none(self):
        assert parse_rfc3339("next tuesday") is None
        assert parse_rfc3339("") is None
        assert parse_rfc3339(None) is None

    def test_format(self):
        value = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert format_rfc3339(value) == "2024-05-01T12:00:00+00:00"
        assert parse_rfc3339(format_rfc3339(value)) == value


class TestCallbackUrl:
    """Test building callback URLs."""

    def test_join(self):
        assert build_callback_url("https://bot.example.com/yt-pubsub", "abc") == (
            "https://bot.example.com/yt-pubsub/abc"
        )

    def test_trailing_slash(self):
        assert build_callback_url("https://bot.example.com/yt-pubsub/", "abc") == (
            "https://bot.example.com/yt-pubsub/abc"
        )
