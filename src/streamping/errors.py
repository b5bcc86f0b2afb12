"""
Exception types for StreamPing.
"""


class StreamPingError(Exception):
    """Base class for all StreamPing errors."""


class HubError(StreamPingError):
    """Base class for failures talking to a WebSub hub."""


class DiscoveryError(HubError):
    """The hub for a feed could not be discovered."""

    def __init__(self, topic_url: str, reason: str):
        super().__init__(f"Hub discovery failed for {topic_url}: {reason}")
        self.topic_url = topic_url
        self.reason = reason


class SubscriptionRejected(HubError):
    """The hub did not accept a subscribe or unsubscribe request.

    Args:
        topic_url: The feed the request was for
        mode: ``subscribe`` or ``unsubscribe``
        status: HTTP status returned by the hub, None if the request never completed
        body: Raw response body (or transport error text) for diagnostics
    """

    def __init__(self, topic_url: str, mode: str, status: int | None, body: str):
        super().__init__(f"Hub rejected {mode} for {topic_url}: status={status} body={body[:200]!r}")
        self.topic_url = topic_url
        self.mode = mode
        self.status = status
        self.body = body


class NotSubscribed(HubError):
    """No active subscription exists for the requested topic."""

    def __init__(self, topic_url: str):
        super().__init__(f"Not subscribed to {topic_url}")
        self.topic_url = topic_url


class SchedulerError(StreamPingError):
    """A notification job could not be added to or removed from the scheduler."""


class HandlerInvocationError(StreamPingError):
    """A content delivery handler failed while processing a payload."""

    def __init__(self, token: str, cause: BaseException):
        super().__init__(f"Handler for token {token} failed: {cause!r}")
        self.token = token
        self.cause = cause


class FeedParseError(ValueError):
    """A feed document could not be parsed."""
