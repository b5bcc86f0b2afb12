"""
Livestream notification orchestration for StreamPing.

Ties the WebSub subscriptions, the metadata lookup, the livestream store and
the notification scheduler together: every content push for a tracked feed
is resolved to a scheduled livestream, and "going live" plus reminder
notifications are scheduled for it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import Protocol

from streamping.errors import HubError, NotSubscribed, SchedulerError
from streamping.feed import Entry, parse_feed
from streamping.hub import HubClient
from streamping.registry import DeliveryHandler, Subscription, SubscriptionRegistry
from streamping.scheduler import Action, NotificationScheduler, ScheduledJob
from streamping.store import Livestream, LivestreamStore
from streamping.youtube import VideoMetadata

logger = logging.getLogger(__name__)


class MetadataLookup(Protocol):
    async def fetch(self, video_id: str) -> VideoMetadata | None: ...


class ChatNotifier(Protocol):
    async def send_to_channel(self, channel_name: str, text: str) -> int: ...


class CommandKind(Enum):
    UPCOMING = auto()
    REMINDER = auto()
    LIVE = auto()


@dataclass
class NotificationCommand:
    """A chat notification requested by the orchestrator or a scheduled job."""

    kind: CommandKind
    livestream: Livestream
    lead: timedelta | None = None


@dataclass
class NotificationSettings:
    upcoming_channel: str = "hololive-notifications"
    live_channel: str = "hololive-stream-started"
    reminder_leads: list[timedelta] = field(default_factory=lambda: [timedelta(minutes=15)])
    renewal_interval: float = 300  # seconds between lease checks
    renewal_margin: timedelta = timedelta(hours=1)


def reminder_key(video_id: str, lead: timedelta, index: int = 0) -> str:
    """Scheduler key of a reminder job.

    The first reminder uses ``<video-id>-reminder``; additional lead times
    get their lead in minutes appended.
    """
    if index == 0:
        return f"{video_id}-reminder"
    return f"{video_id}-reminder-{int(lead.total_seconds() // 60)}m"


def format_upcoming_message(livestream: Livestream) -> str:
    timestamp = int(livestream.date.timestamp())
    return (
        f"[{livestream.author}] will livestream on <t:{timestamp}:F> (<t:{timestamp}:R>)"
        f" - [{livestream.url}]"
    )


def format_reminder_message(livestream: Livestream) -> str:
    timestamp = int(livestream.date.timestamp())
    return f"[{livestream.author}] Livestream starting <t:{timestamp}:R>! {livestream.url}"


def format_live_message(livestream: Livestream) -> str:
    return f"[{livestream.author}] Livestream starting! {livestream.url}"


class LivestreamOrchestrator:
    """Turns feed deliveries into scheduled livestream notifications."""

    def __init__(
        self,
        hub: HubClient,
        registry: SubscriptionRegistry,
        scheduler: NotificationScheduler,
        store: LivestreamStore,
        lookup: MetadataLookup,
        notifier: ChatNotifier,
        settings: NotificationSettings | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            hub: Client used to subscribe to feeds
            registry: Registry shared with the hub client and the callback router
            scheduler: Scheduler for go-live and reminder notifications
            store: Store of the last known metadata of each livestream
            lookup: Video metadata lookup
            notifier: Chat notifier messages are posted with
            settings: Channel names, reminder lead times and renewal timing
        """
        self.hub = hub
        self.registry = registry
        self.scheduler = scheduler
        self.store = store
        self.lookup = lookup
        self.notifier = notifier
        self.settings = settings or NotificationSettings()

        self.commands: asyncio.Queue[NotificationCommand] = asyncio.Queue()
        self.topics: set[str] = set()  # topic URLs being followed
        self.running = False

        self._topic_locks: dict[str, asyncio.Lock] = {}
        self._worker_task: asyncio.Task | None = None
        self._renewal_task: asyncio.Task | None = None

    def clock(self) -> datetime:
        return self.scheduler.clock()

    async def start(self, topic_urls: list[str]):
        """Start processing notifications and subscribe to the given feeds.

        Args:
            topic_urls: Feed URLs to follow
        """
        self.running = True

        if not self._worker_task or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._command_worker())

        await self.restore_scheduled()
        await self.subscribe_all(topic_urls)

        if not self._renewal_task or self._renewal_task.done():
            self._renewal_task = asyncio.create_task(self._renewal_loop())

    async def stop(self, unsubscribe: bool = True):
        """Stop the orchestrator.

        Args:
            unsubscribe: Whether to cancel all hub subscriptions
        """
        self.running = False

        for task in (self._renewal_task, self._worker_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if unsubscribe:
            for subscription in await self.registry.subscriptions():
                try:
                    await self.hub.unsubscribe(subscription.topic_url, subscription.token)
                except HubError as e:
                    logger.warning(f"Error unsubscribing from {subscription.topic_url}: {e}")

        self.topics.clear()

    async def subscribe_all(self, topic_urls: list[str]) -> int:
        """Subscribe to every feed, skipping the ones that fail.

        Returns:
            Number of feeds subscribed successfully
        """
        subscribed = 0
        for topic_url in topic_urls:
            if await self.follow(topic_url) is not None:
                subscribed += 1

        logger.info(f"Subscribed to {subscribed}/{len(topic_urls)} feeds")
        return subscribed

    async def follow(self, topic_url: str) -> Subscription | None:
        """Start following a feed.

        Returns:
            The new Subscription, or None if the hub refused it
        """
        self.topics.add(topic_url)
        async with self._topic_lock(topic_url):
            try:
                return await self.hub.subscribe_feed(topic_url, self._make_handler(topic_url))
            except HubError as e:
                logger.error(f"Error subscribing to {topic_url}: {e}")
                return None

    async def unfollow(self, topic_url: str) -> bool:
        """Stop following a feed and cancel its hub subscriptions.

        Returns:
            True if at least one subscription was cancelled
        """
        self.topics.discard(topic_url)
        cancelled = False
        async with self._topic_lock(topic_url):
            while True:
                try:
                    await self.hub.unsubscribe(topic_url)
                except NotSubscribed:
                    break
                except HubError as e:
                    logger.error(f"Error unsubscribing from {topic_url}: {e}")
                    break
                cancelled = True

        if not cancelled:
            logger.warning(f"No subscription to cancel for {topic_url}")
        return cancelled

    async def renew(self, topic_url: str) -> Subscription | None:
        """Replace the subscriptions of a feed with a fresh one.

        Subscribes with a new correlation token first, then cancels every
        older subscription for the topic. Nothing is sent when the current
        subscription still has its handler and a lease that is not expiring.

        Returns:
            The current Subscription, or None if the feed is no longer followed
            or the hub refused it
        """
        async with self._topic_lock(topic_url):
            if not self.running or topic_url not in self.topics:
                return None

            current = await self.registry.find_by_topic(topic_url)
            if current is not None and not await self._needs_renewal(current):
                logger.debug(f"Subscription to {topic_url} is already fresh")
                return current

            try:
                subscription = await self.hub.subscribe_feed(
                    topic_url, self._make_handler(topic_url)
                )
            except HubError as e:
                logger.error(f"Error renewing subscription to {topic_url}: {e}")
                return None

            for old in await self.registry.subscriptions():
                if old.topic_url != topic_url or old.token == subscription.token:
                    continue
                try:
                    await self.hub.unsubscribe(topic_url, old.token)
                except HubError as e:
                    logger.warning(f"Error cancelling old subscription {old.token}: {e}")
                    await self.registry.remove(old.token)

            return subscription

    async def renew_subscriptions(self):
        """Renew feeds whose lease is about to expire or whose handler was used up."""
        for topic_url in sorted(self.topics):
            current = await self.registry.find_by_topic(topic_url)
            if current is None or await self._needs_renewal(current):
                logger.info(f"Renewing subscription to {topic_url}")
                await self.renew(topic_url)

    async def _needs_renewal(self, subscription: Subscription) -> bool:
        if subscription.handler is None:
            return True
        # Leases are tracked in wall clock time
        expiring = await self.registry.expiring(self.settings.renewal_margin)
        return any(other.token == subscription.token for other in expiring)

    def _topic_lock(self, topic_url: str) -> asyncio.Lock:
        return self._topic_locks.setdefault(topic_url, asyncio.Lock())

    def _make_handler(self, topic_url: str) -> DeliveryHandler:
        async def handler(payload: str):
            try:
                await self.handle_delivery(topic_url, payload)
            finally:
                # Handlers are single use, re-arm the feed for the next push
                await self.renew(topic_url)

        return handler

    async def handle_delivery(self, topic_url: str, payload: str) -> list[Livestream]:
        """Process a content push for a feed.

        Args:
            topic_url: Feed the push was delivered for
            payload: Raw Atom document pushed by the hub

        Returns:
            Livestreams that were added or changed

        Raises:
            FeedParseError: If the payload is not a valid feed
        """
        feed = parse_feed(payload)
        if not feed.entries:
            logger.info(f"Delivery for {topic_url} contains no entries")
            return []

        changed = []
        for entry in feed.entries:
            try:
                livestream = await self.process_entry(entry)
            except Exception:
                logger.exception(f"Error processing entry {entry.video_id} of {topic_url}:")
                continue
            if livestream is not None:
                changed.append(livestream)
        return changed

    async def process_entry(self, entry: Entry) -> Livestream | None:
        """Compare an entry against the store and schedule notifications if it changed.

        Args:
            entry: Feed entry to process

        Returns:
            The stored Livestream if it is new or its scheduled start changed
        """
        metadata = await self.lookup.fetch(entry.video_id)
        if metadata is None:
            logger.warning(f"Could not fetch metadata for {entry.video_id}")
            return None

        if metadata.scheduled_start is None:
            logger.info(f"{entry.video_id} is not a scheduled livestream")
            return None

        url = entry.video_url
        if metadata.scheduled_start <= self.clock():
            logger.info(f"Stream already started ({url})")
            return None

        livestream = Livestream(
            video_id=entry.video_id,
            url=url,
            title=metadata.title or entry.title,
            author=metadata.channel_title or entry.author.name,
            date=metadata.scheduled_start,
            updated=entry.updated,
        )

        stored = self.store.get(url)
        if stored is not None and stored.date == livestream.date:
            if stored.title != livestream.title:
                self.store.upsert(livestream)
            logger.info(f"Scheduled start of {url} unchanged")
            return None

        if stored is None:
            self.store.insert(livestream)
        else:
            logger.info(f"Stream {url} moved from {stored.date} to {livestream.date}")
            self.store.upsert(livestream)

        logger.info(f"Stream start datetime for {url}: {livestream.date}")
        await self.commands.put(NotificationCommand(CommandKind.UPCOMING, livestream))

        try:
            await self.setup_notifications(livestream)
        except SchedulerError as e:
            logger.error(f"Error scheduling notifications for {url}: {e}")

        return livestream

    async def setup_notifications(self, livestream: Livestream) -> list[ScheduledJob]:
        """Schedule the go-live notification and its reminders.

        Reminders whose instant already passed are skipped.

        Raises:
            SchedulerError: If the go-live job cannot be scheduled
        """
        jobs = [
            await self.scheduler.schedule(
                livestream.video_id,
                livestream.date,
                self._enqueue_action(NotificationCommand(CommandKind.LIVE, livestream)),
            )
        ]

        for index, lead in enumerate(self.settings.reminder_leads):
            key = reminder_key(livestream.video_id, lead, index)
            when = livestream.date - lead
            if when <= self.clock():
                await self.scheduler.cancel(key)
                logger.info(f"Skipping reminder {key}, {when.isoformat()} already passed")
                continue

            command = NotificationCommand(CommandKind.REMINDER, livestream, lead)
            jobs.append(await self.scheduler.schedule(key, when, self._enqueue_action(command)))

        return jobs

    async def restore_scheduled(self) -> int:
        """Re-arm notifications for stored livestreams that have not started yet.

        Returns:
            Number of livestreams restored
        """
        restored = 0
        now = self.clock()
        for livestream in self.store.all():
            if livestream.date <= now:
                continue
            try:
                await self.setup_notifications(livestream)
            except SchedulerError as e:
                logger.error(f"Error restoring notifications for {livestream.url}: {e}")
                continue
            restored += 1

        logger.info(f"Restored notifications for {restored} livestreams")
        return restored

    def _enqueue_action(self, command: NotificationCommand) -> Action:
        async def action():
            await self.commands.put(command)

        return action

    async def deliver(self, command: NotificationCommand) -> int:
        """Post the chat message for a notification command.

        Returns:
            Number of channels the message was delivered to
        """
        livestream = command.livestream
        if command.kind is CommandKind.UPCOMING:
            channel = self.settings.upcoming_channel
            text = format_upcoming_message(livestream)
        elif command.kind is CommandKind.REMINDER:
            channel = self.settings.upcoming_channel
            text = format_reminder_message(livestream)
        else:
            channel = self.settings.live_channel
            text = format_live_message(livestream)

        return await self.notifier.send_to_channel(channel, text)

    async def _command_worker(self):
        while True:
            command = await self.commands.get()
            try:
                await self.deliver(command)
            except Exception:
                logger.exception(f"Error delivering {command.kind.name} notification:")
            finally:
                self.commands.task_done()

    async def _renewal_loop(self):
        while self.running:
            await asyncio.sleep(self.settings.renewal_interval)
            try:
                await self.renew_subscriptions()
            except Exception:
                logger.exception("Error renewing subscriptions")
