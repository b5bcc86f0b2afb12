"""
Atom feed codec for YouTube WebSub documents.

YouTube publishes channel feeds and content-distribution pushes as Atom
documents with a few ``yt:`` extension elements. Elements are matched by
their local name so documents with or without namespaces parse the same way.
"""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone

from streamping.errors import FeedParseError

logger = logging.getLogger(__name__)

# YouTube sends nanosecond precision, datetime wants exactly six digits
_FRACTION = re.compile(r"\.(\d+)")


def _microseconds(match: re.Match) -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


@dataclass
class Link:
    rel: str
    href: str


@dataclass
class Author:
    name: str
    uri: str


@dataclass
class Entry:
    """A single video entry of a feed."""

    id: str
    video_id: str
    channel_id: str
    title: str
    link: Link
    author: Author
    published: datetime | None = None
    updated: datetime | None = None

    @property
    def video_url(self) -> str:
        """Canonical watch URL of the entry."""
        if self.link.href:
            return self.link.href
        return f"https://www.youtube.com/watch?v={self.video_id}"


@dataclass
class Feed:
    """A parsed feed envelope."""

    title: str = ""
    links: list[Link] = field(default_factory=list)
    updated: datetime | None = None
    entries: list[Entry] = field(default_factory=list)

    @property
    def hub_url(self) -> str | None:
        """The href of the first link with relation ``hub``, if any."""
        for link in self.links:
            if link.rel == "hub":
                return link.href
        return None


def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Args:
        value: Timestamp text such as ``2015-03-06T21:40:57+00:00``

    Returns:
        The parsed datetime, or None if the value is empty or invalid
    """
    if not value:
        return None

    text = _FRACTION.sub(_microseconds, value.strip().replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Error parsing time ({value})")
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def build_callback_url(callback_base_url: str, token: str) -> str:
    """Join the public callback base URL and a correlation token."""
    return f"{callback_base_url.rstrip('/')}/{token}"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _text(element: ET.Element, name: str, default: str | None = None) -> str:
    child = _child(element, name)
    if child is None or child.text is None:
        if default is None:
            raise FeedParseError(f"Missing <{name}> in <{_local(element.tag)}>")
        return default
    return child.text.strip()


def _parse_link(element: ET.Element) -> Link:
    return Link(rel=element.get("rel", ""), href=element.get("href", ""))


def _parse_entry(element: ET.Element) -> Entry:
    link_element = _child(element, "link")
    author_element = _child(element, "author")

    link = _parse_link(link_element) if link_element is not None else Link("alternate", "")
    if author_element is not None:
        author = Author(
            name=_text(author_element, "name", ""),
            uri=_text(author_element, "uri", ""),
        )
    else:
        author = Author("", "")

    return Entry(
        id=_text(element, "id", ""),
        video_id=_text(element, "videoId"),
        channel_id=_text(element, "channelId", ""),
        title=_text(element, "title", ""),
        link=link,
        author=author,
        published=parse_rfc3339(_text(element, "published", "")),
        updated=parse_rfc3339(_text(element, "updated", "")),
    )


def parse_feed(document: str | bytes) -> Feed:
    """Parse a feed document.

    Args:
        document: Raw XML of the feed

    Returns:
        The parsed Feed

    Raises:
        FeedParseError: If the document is not well-formed, is not a feed,
            or contains an entry without a video ID
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise FeedParseError(f"Malformed feed document: {e}") from e

    if _local(root.tag) != "feed":
        raise FeedParseError(f"Expected <feed> root element, got <{_local(root.tag)}>")

    return Feed(
        title=_text(root, "title", ""),
        links=[_parse_link(link) for link in _children(root, "link")],
        updated=parse_rfc3339(_text(root, "updated", "")),
        entries=[_parse_entry(entry) for entry in _children(root, "entry")],
    )
