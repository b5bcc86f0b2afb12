"""
WebSub (PubSubHubbub) hub client for StreamPing.
"""

import asyncio
import logging

import aiohttp

from streamping.errors import DiscoveryError, FeedParseError, NotSubscribed, SubscriptionRejected
from streamping.feed import build_callback_url, parse_feed
from streamping.registry import DeliveryHandler, Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)


class HubClient:
    """Discovers feed hubs and performs subscribe/unsubscribe handshakes.

    Every method makes exactly one outbound request and never retries;
    retry policy belongs to the caller.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        callback_base_url: str,
        session: aiohttp.ClientSession | None = None,
        lease_seconds: int | None = None,
        timeout: float = 10,
    ):
        """Initialize the hub client.

        Args:
            registry: Registry holding pending and active subscriptions
            callback_base_url: Public URL the callback router is reachable at
            session: Optional aiohttp session to use instead of an owned one
            lease_seconds: Lease to request from the hub, hub default if None
            timeout: Total timeout in seconds for each request
        """
        self.registry = registry
        self.callback_base_url = callback_base_url
        self.lease_seconds = lease_seconds
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session = session
        self._owns_session = session is None

    async def initialize(self):
        """Initialize the HTTP client session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True

    async def close(self):
        """Close the HTTP client session if this client created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    async def discover_hub(self, topic_url: str) -> str:
        """Find the hub advertised by a feed.

        Args:
            topic_url: URL of the feed document

        Returns:
            The href of the feed's ``rel="hub"`` link

        Raises:
            DiscoveryError: If the feed cannot be fetched or parsed, or has no hub link
        """
        await self.initialize()

        if self.session is None:
            logger.error("Session is None in discover_hub")
            raise DiscoveryError(topic_url, "HTTP session is not initialized")

        try:
            async with self.session.get(topic_url) as response:
                if response.status != 200:
                    raise DiscoveryError(topic_url, f"feed returned status {response.status}")
                document = await response.text()
        except aiohttp.ClientError as e:
            raise DiscoveryError(topic_url, f"fetch failed: {e!r}") from e
        except asyncio.TimeoutError as e:
            raise DiscoveryError(topic_url, "fetch timed out") from e

        try:
            feed = parse_feed(document)
        except FeedParseError as e:
            raise DiscoveryError(topic_url, str(e)) from e

        hub_url = feed.hub_url
        if hub_url is None:
            raise DiscoveryError(topic_url, "no hub link found")

        logger.debug(f"Discovered hub {hub_url} for {topic_url}")
        return hub_url

    async def subscribe(
        self, topic_url: str, token: str, callback_base_url: str | None = None
    ) -> Subscription:
        """Ask the hub to deliver a topic to the callback for a token.

        The token must already be registered. Its hub URL is used when known,
        otherwise the hub is discovered first.

        Args:
            topic_url: Feed URL to subscribe to
            token: Correlation token of the pending subscription
            callback_base_url: Overrides the configured callback base URL

        Returns:
            The pending Subscription the hub accepted

        Raises:
            NotSubscribed: If the token is not registered
            SubscriptionRejected: If the hub does not answer 202 Accepted
        """
        subscription = await self.registry.get(token)
        if subscription is None:
            raise NotSubscribed(topic_url)

        if subscription.hub_url is None:
            subscription.hub_url = await self.discover_hub(topic_url)

        callback_url = build_callback_url(callback_base_url or self.callback_base_url, token)
        await self._post_mode(subscription.hub_url, topic_url, callback_url, "subscribe")
        subscription.callback_url = callback_url

        logger.info(f"Subscribed to {topic_url} via {subscription.hub_url} ({callback_url})")
        return subscription

    async def unsubscribe(self, topic_url: str, token: str | None = None) -> Subscription:
        """Cancel a subscription at the hub and remove it from the registry.

        Args:
            topic_url: Feed URL to unsubscribe from
            token: Correlation token to cancel; the newest subscription for the
                topic is used when omitted

        Returns:
            The terminated Subscription

        Raises:
            NotSubscribed: If there is no matching subscription
            SubscriptionRejected: If the hub does not answer 202 Accepted
        """
        if token is None:
            subscription = await self.registry.find_by_topic(topic_url)
        else:
            subscription = await self.registry.get(token)
        if subscription is None or subscription.topic_url != topic_url:
            raise NotSubscribed(topic_url)

        if subscription.hub_url is None:
            subscription.hub_url = await self.discover_hub(topic_url)

        # The hub identifies the subscription by the exact callback it was given
        callback_url = subscription.callback_url or build_callback_url(
            self.callback_base_url, subscription.token
        )
        await self._post_mode(subscription.hub_url, topic_url, callback_url, "unsubscribe")

        await self.registry.remove(subscription.token)
        logger.info(f"Unsubscribed from {topic_url} ({callback_url})")
        return subscription

    async def subscribe_feed(self, topic_url: str, handler: DeliveryHandler) -> Subscription:
        """Discover the hub of a feed, register a pending subscription and subscribe.

        On failure the pending subscription is discarded before the error is raised.

        Args:
            topic_url: Feed URL to subscribe to
            handler: Coroutine function called with the first delivered payload

        Returns:
            The accepted Subscription
        """
        hub_url = await self.discover_hub(topic_url)
        token = await self.registry.allocate_token()
        await self.registry.insert(token, topic_url, handler, hub_url=hub_url)
        try:
            return await self.subscribe(topic_url, token)
        except BaseException:
            await self.registry.remove(token)
            raise

    async def _post_mode(self, hub_url: str, topic_url: str, callback_url: str, mode: str):
        await self.initialize()

        if self.session is None:
            logger.error(f"Session is None in {mode} request")
            raise SubscriptionRejected(topic_url, mode, None, "HTTP session is not initialized")

        form_data = {
            "hub.callback": callback_url,
            "hub.topic": topic_url,
            "hub.mode": mode,
        }
        if mode == "subscribe" and self.lease_seconds is not None:
            form_data["hub.lease_seconds"] = str(self.lease_seconds)

        logger.debug(f"Sending {mode} request to {hub_url}: {form_data}")
        try:
            async with self.session.post(
                hub_url,
                data=form_data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            ) as response:
                body = await response.text()
                if response.status != 202:
                    logger.error(f"Hub answered {mode} for {topic_url} with {response.status}")
                    raise SubscriptionRejected(topic_url, mode, response.status, body)
        except aiohttp.ClientError as e:
            raise SubscriptionRejected(topic_url, mode, None, repr(e)) from e
        except asyncio.TimeoutError as e:
            raise SubscriptionRejected(topic_url, mode, None, "request timed out") from e
