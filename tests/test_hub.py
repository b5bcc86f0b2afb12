"""
Tests for the WebSub hub client.
"""

from unittest.mock import AsyncMock, patch

import pytest

from streamping.errors import DiscoveryError, NotSubscribed, SubscriptionRejected
from streamping.hub import HubClient
from streamping.registry import SubscriptionState

CALLBACK_BASE = "https://bot.example.com/yt-pubsub"


async def noop(payload: str):
    pass


@pytest.fixture
async def hub_client(registry):
    client = HubClient(registry, CALLBACK_BASE)
    yield client
    await client.close()


class TestDiscoverHub:
    """Test hub discovery."""

    @pytest.mark.asyncio
    async def test_discover(self, hub_client, stub_hub):
        hub_url = await hub_client.discover_hub(stub_hub.url("/feed"))

        assert hub_url == stub_hub.url("/hub")

    @pytest.mark.asyncio
    async def test_no_hub_link(self, hub_client, stub_hub):
        stub_hub.advertise_hub = False

        with pytest.raises(DiscoveryError, match="no hub link"):
            await hub_client.discover_hub(stub_hub.url("/feed"))

    @pytest.mark.asyncio
    async def test_feed_error_status(self, hub_client, stub_hub):
        stub_hub.feed_status = 500

        with pytest.raises(DiscoveryError, match="status 500"):
            await hub_client.discover_hub(stub_hub.url("/feed"))

    @pytest.mark.asyncio
    async def test_missing_feed(self, hub_client, stub_hub):
        with pytest.raises(DiscoveryError):
            await hub_client.discover_hub(stub_hub.url("/missing"))

    @pytest.mark.asyncio
    async def test_unreachable_feed(self, hub_client):
        with pytest.raises(DiscoveryError) as exc_info:
            await hub_client.discover_hub("http://127.0.0.1:1/feed")

        assert exc_info.value.topic_url == "http://127.0.0.1:1/feed"


class TestSubscribe:
    """Test subscribe and unsubscribe handshakes."""

    @pytest.mark.asyncio
    async def test_subscribe_feed(self, hub_client, stub_hub, registry):
        """Test a successful subscription sends the expected form."""
        topic = stub_hub.url("/feed")

        subscription = await hub_client.subscribe_feed(topic, noop)

        assert subscription.state is SubscriptionState.PENDING
        assert subscription.hub_url == stub_hub.url("/hub")
        assert await registry.get(subscription.token) is subscription

        assert len(stub_hub.requests) == 1
        request = stub_hub.requests[0]
        assert request["content_type"] == "application/x-www-form-urlencoded"
        assert request["hub.mode"] == "subscribe"
        assert request["hub.topic"] == topic
        assert request["hub.callback"] == f"{CALLBACK_BASE}/{subscription.token}"
        assert "hub.lease_seconds" not in request

    @pytest.mark.asyncio
    async def test_subscribe_requests_lease(self, registry, stub_hub):
        client = HubClient(registry, CALLBACK_BASE, lease_seconds=432000)
        try:
            await client.subscribe_feed(stub_hub.url("/feed"), noop)
        finally:
            await client.close()

        assert stub_hub.requests[0]["hub.lease_seconds"] == "432000"

    @pytest.mark.asyncio
    async def test_subscribe_rejected_discards_row(self, hub_client, stub_hub, registry):
        """Test that a non-202 answer raises and leaves no subscription behind."""
        stub_hub.status = 400

        with pytest.raises(SubscriptionRejected) as exc_info:
            await hub_client.subscribe_feed(stub_hub.url("/feed"), noop)

        assert exc_info.value.status == 400
        assert exc_info.value.mode == "subscribe"
        assert exc_info.value.body == "hub says hi"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_ok_is_not_accepted(self, hub_client, stub_hub, registry):
        """Test that only 202 counts as success."""
        stub_hub.status = 200

        with pytest.raises(SubscriptionRejected):
            await hub_client.subscribe_feed(stub_hub.url("/feed"), noop)

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_discovery_failure_registers_nothing(self, hub_client, stub_hub, registry):
        stub_hub.advertise_hub = False

        with pytest.raises(DiscoveryError):
            await hub_client.subscribe_feed(stub_hub.url("/feed"), noop)

        assert len(registry) == 0
        assert stub_hub.requests == []

    @pytest.mark.asyncio
    async def test_subscribe_uses_stored_hub(self, hub_client, stub_hub, registry):
        """Test that a pending row with a known hub skips discovery."""
        topic = "https://www.youtube.com/xml/feeds/videos.xml?channel_id=UC123"
        await registry.insert("tok", topic, noop, hub_url=stub_hub.url("/hub"))

        await hub_client.subscribe(topic, "tok", callback_base_url="https://other.example.com/cb/")

        assert stub_hub.requests[0]["hub.topic"] == topic
        assert stub_hub.requests[0]["hub.callback"] == "https://other.example.com/cb/tok"

    @pytest.mark.asyncio
    async def test_subscribe_unknown_token(self, hub_client, stub_hub):
        with pytest.raises(NotSubscribed):
            await hub_client.subscribe(stub_hub.url("/feed"), "missing")

    @pytest.mark.asyncio
    async def test_unsubscribe(self, hub_client, stub_hub, registry):
        topic = stub_hub.url("/feed")
        subscription = await hub_client.subscribe_feed(topic, noop)

        removed = await hub_client.unsubscribe(topic)

        assert removed is subscription
        assert removed.state is SubscriptionState.TERMINATED
        assert len(registry) == 0

        request = stub_hub.requests[-1]
        assert request["hub.mode"] == "unsubscribe"
        assert request["hub.topic"] == topic
        assert request["hub.callback"] == f"{CALLBACK_BASE}/{subscription.token}"
        assert "hub.lease_seconds" not in request

    @pytest.mark.asyncio
    async def test_unsubscribe_by_token(self, hub_client, stub_hub, registry):
        topic = stub_hub.url("/feed")
        first = await hub_client.subscribe_feed(topic, noop)
        second = await hub_client.subscribe_feed(topic, noop)

        await hub_client.unsubscribe(topic, first.token)

        assert await registry.get(first.token) is None
        assert await registry.get(second.token) is second

    @pytest.mark.asyncio
    async def test_unsubscribe_not_subscribed(self, hub_client, stub_hub):
        with pytest.raises(NotSubscribed):
            await hub_client.unsubscribe(stub_hub.url("/feed"))

    @pytest.mark.asyncio
    async def test_unsubscribe_token_of_other_topic(self, hub_client, stub_hub, registry):
        await registry.insert("tok", "https://feed/other", noop, hub_url=stub_hub.url("/hub"))

        with pytest.raises(NotSubscribed):
            await hub_client.unsubscribe(stub_hub.url("/feed"), "tok")

    @pytest.mark.asyncio
    async def test_unsubscribe_rejected_keeps_row(self, hub_client, stub_hub, registry):
        topic = stub_hub.url("/feed")
        subscription = await hub_client.subscribe_feed(topic, noop)
        stub_hub.status = 404

        with pytest.raises(SubscriptionRejected) as exc_info:
            await hub_client.unsubscribe(topic)

        assert exc_info.value.mode == "unsubscribe"
        assert await registry.get(subscription.token) is subscription

    @pytest.mark.asyncio
    async def test_unreachable_hub(self, hub_client, registry):
        await registry.insert("tok", "https://feed", noop, hub_url="http://127.0.0.1:1/hub")

        with pytest.raises(SubscriptionRejected) as exc_info:
            await hub_client.subscribe("https://feed", "tok")

        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_unsubscribe_reuses_subscribed_callback(self, hub_client, stub_hub, registry):
        """Test that unsubscribe sends the callback URL the subscription was made with."""
        topic = stub_hub.url("/feed")
        await registry.insert("tok", topic, noop, hub_url=stub_hub.url("/hub"))
        subscription = await hub_client.subscribe(
            topic, "tok", callback_base_url="https://override.example.com/cb"
        )

        await hub_client.unsubscribe(topic, "tok")

        subscribe_request, unsubscribe_request = stub_hub.requests
        assert subscription.callback_url == "https://override.example.com/cb/tok"
        assert subscribe_request["hub.callback"] == "https://override.example.com/cb/tok"
        assert unsubscribe_request["hub.callback"] == subscribe_request["hub.callback"]
        assert unsubscribe_request["hub.mode"] == "unsubscribe"


class TestSessionUnavailable:
    """Test requests when no HTTP session could be created."""

    @pytest.mark.asyncio
    async def test_discover_hub(self, hub_client, stub_hub):
        with patch.object(hub_client, "initialize", AsyncMock()):
            with pytest.raises(DiscoveryError, match="session"):
                await hub_client.discover_hub(stub_hub.url("/feed"))

    @pytest.mark.asyncio
    async def test_subscribe(self, hub_client, stub_hub, registry):
        await registry.insert("tok", "https://feed", noop, hub_url=stub_hub.url("/hub"))

        with patch.object(hub_client, "initialize", AsyncMock()):
            with pytest.raises(SubscriptionRejected) as exc_info:
                await hub_client.subscribe("https://feed", "tok")

        assert exc_info.value.status is None
        assert (await registry.get("tok")).callback_url is None
        assert stub_hub.requests == []
