"""
Subscription registry for WebSub callbacks.

Maps the correlation token embedded in each callback URL to the
subscription it was issued for. A single lock guards the map, so inbound
callbacks and subscribe/unsubscribe calls never observe a half-applied change.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[str], Awaitable[None]]


class SubscriptionState(Enum):
    """Lifecycle states of a subscription."""

    PENDING = auto()
    VERIFIED = auto()
    TERMINATED = auto()


@dataclass
class Subscription:
    """A subscription issued to a hub, keyed by its correlation token."""

    token: str
    topic_url: str
    handler: DeliveryHandler | None
    hub_url: str | None = None
    state: SubscriptionState = SubscriptionState.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    verified_at: datetime | None = None
    lease_seconds: int | None = None
    callback_url: str | None = None  # as sent to the hub on subscribe

    @property
    def lease_expires_at(self) -> datetime | None:
        if self.verified_at is None or self.lease_seconds is None:
            return None
        return self.verified_at + timedelta(seconds=self.lease_seconds)


class SubscriptionRegistry:
    """Concurrency-safe map from correlation token to subscription.

    One instance is created at startup and passed to every component that
    needs it.
    """

    def __init__(self, token_bytes: int = 16):
        """Initialize an empty registry.

        Args:
            token_bytes: Entropy of generated correlation tokens, in bytes
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self.token_bytes = token_bytes

    def __len__(self) -> int:
        return len(self._subscriptions)

    async def allocate_token(self) -> str:
        """Generate a fresh correlation token not present in the registry.

        Tokens are random and URL safe so a third party cannot guess the
        callback URL of a subscription.
        """
        async with self._lock:
            while True:
                token = secrets.token_urlsafe(self.token_bytes)
                if token not in self._subscriptions:
                    return token

    async def insert(
        self,
        token: str,
        topic_url: str,
        handler: DeliveryHandler,
        hub_url: str | None = None,
    ) -> Subscription:
        """Insert a pending subscription.

        Args:
            token: Correlation token from allocate_token
            topic_url: Feed URL being subscribed to
            handler: Single-use coroutine function called with the first delivered payload
            hub_url: Hub discovered for the topic, if already known

        Returns:
            The new pending Subscription

        Raises:
            ValueError: If the token is already registered
        """
        async with self._lock:
            if token in self._subscriptions:
                raise ValueError(f"Token {token} is already registered")
            subscription = Subscription(
                token=token, topic_url=topic_url, handler=handler, hub_url=hub_url
            )
            self._subscriptions[token] = subscription
            logger.debug(f"Registered pending subscription {token} for {topic_url}")
            return subscription

    async def get(self, token: str) -> Subscription | None:
        async with self._lock:
            return self._subscriptions.get(token)

    async def take_handler(self, token: str) -> DeliveryHandler | None:
        """Atomically remove and return the delivery handler for a token.

        A handler is handed out at most once. Later calls for the same token
        return None.
        """
        async with self._lock:
            subscription = self._subscriptions.get(token)
            if subscription is None or subscription.handler is None:
                return None
            handler = subscription.handler
            subscription.handler = None
            return handler

    async def mark_verified(self, token: str, lease_seconds: int | None) -> bool:
        """Record that the hub verified the subscription for a token.

        Only updates an existing row. Returns False for unknown tokens.
        """
        async with self._lock:
            subscription = self._subscriptions.get(token)
            if subscription is None:
                return False
            subscription.state = SubscriptionState.VERIFIED
            subscription.verified_at = datetime.now(timezone.utc)
            subscription.lease_seconds = lease_seconds
            return True

    async def find_by_topic(self, topic_url: str) -> Subscription | None:
        """Find the most recent subscription for a topic.

        Linear scan; the registry only ever holds a handful of feeds.
        """
        async with self._lock:
            matches = [
                subscription
                for subscription in self._subscriptions.values()
                if subscription.topic_url == topic_url
                and subscription.state is not SubscriptionState.TERMINATED
            ]
        if not matches:
            return None
        return max(matches, key=lambda subscription: subscription.created_at)

    async def remove(self, token: str) -> Subscription | None:
        """Remove a subscription and mark it terminated."""
        async with self._lock:
            subscription = self._subscriptions.pop(token, None)
        if subscription is not None:
            subscription.state = SubscriptionState.TERMINATED
            subscription.handler = None
            logger.debug(f"Removed subscription {token} for {subscription.topic_url}")
        return subscription

    async def subscriptions(self) -> list[Subscription]:
        """Snapshot of all registered subscriptions."""
        async with self._lock:
            return list(self._subscriptions.values())

    async def expiring(
        self, within: timedelta, now: datetime | None = None
    ) -> list[Subscription]:
        """Verified subscriptions whose lease ends inside the given window.

        Args:
            within: Size of the window starting at ``now``
            now: Reference time, defaults to the current time

        Returns:
            Subscriptions that need renewal
        """
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            return [
                subscription
                for subscription in self._subscriptions.values()
                if subscription.state is SubscriptionState.VERIFIED
                and subscription.lease_expires_at is not None
                and subscription.lease_expires_at - now <= within
            ]
