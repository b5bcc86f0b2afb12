"""
StreamPing Discord bot module.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import timedelta

import discord
from aiohttp import web
from dotenv import load_dotenv

from streamping.callbacks import CallbackRouter
from streamping.config import FeedConfig
from streamping.hub import HubClient
from streamping.notifier import DiscordNotifier
from streamping.orchestrator import LivestreamOrchestrator, NotificationSettings
from streamping.registry import SubscriptionRegistry
from streamping.scheduler import NotificationScheduler
from streamping.store import LivestreamStore
from streamping.youtube import YouTubeAPI

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(pathname)s:%(lineno)d - %(levelname)s - %(message)s"


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}. Please ensure it is an integer.")


@dataclass
class DotEnvConfig:
    token: str
    youtube_api_key: str
    callback_url: str
    config_file: str = "feeds.json"
    store_file: str = "livestreams.json"
    host: str = "0.0.0.0"
    port: int = 8080
    callback_path: str = "/yt-pubsub"
    upcoming_channel: str = "hololive-notifications"
    live_channel: str = "hololive-stream-started"
    reminder_minutes: int = 15
    lease_seconds: int = 432000
    log_level: str = "INFO"

    @classmethod
    def load_env(cls) -> DotEnvConfig:
        load_dotenv()
        token = os.getenv("DISCORD_TOKEN")
        if token is None:
            raise RuntimeError("No Discord token found. Please add DISCORD_TOKEN to your .env file")

        youtube_api_key = os.getenv("YOUTUBE_API_KEY")
        if youtube_api_key is None:
            raise RuntimeError(
                "No YouTube API key found. Please add YOUTUBE_API_KEY to your .env file"
            )

        callback_url = os.getenv("PUBSUB_CALLBACK_URL")
        if callback_url is None:
            raise RuntimeError(
                "No callback URL found. Please add PUBSUB_CALLBACK_URL to your .env file"
            )

        return cls(
            token=token,
            youtube_api_key=youtube_api_key,
            callback_url=callback_url,
            config_file=os.getenv("CONFIG_FILE", "feeds.json"),
            store_file=os.getenv("STORE_FILE", "livestreams.json"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int_env("PORT", 8080),
            callback_path=os.getenv("CALLBACK_PATH", "/yt-pubsub"),
            upcoming_channel=os.getenv("UPCOMING_CHANNEL", "hololive-notifications"),
            live_channel=os.getenv("LIVE_CHANNEL", "hololive-stream-started"),
            reminder_minutes=_int_env("REMINDER_MINUTES", 15),
            lease_seconds=_int_env("LEASE_SECONDS", 432000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


class DiscordBot(discord.Client):
    """Discord client that posts livestream notifications received over WebSub."""

    def __init__(self, dotenv: DotEnvConfig):
        self.dotenv = dotenv

        # Only guild and channel information is needed to find channels by name
        intents = discord.Intents.default()
        intents.message_content = False

        super().__init__(intents=intents)
        self.config = FeedConfig(self.dotenv.config_file)
        self.store = LivestreamStore(self.dotenv.store_file)

        self.registry = SubscriptionRegistry()
        self.hub = HubClient(
            self.registry, self.dotenv.callback_url, lease_seconds=self.dotenv.lease_seconds
        )
        self.router = CallbackRouter(self.registry, self.dotenv.callback_path)
        self.scheduler = NotificationScheduler()
        self.youtube = YouTubeAPI(self.dotenv.youtube_api_key)
        self.notifier = DiscordNotifier(self)

        settings = NotificationSettings(
            upcoming_channel=self.dotenv.upcoming_channel,
            live_channel=self.dotenv.live_channel,
            reminder_leads=[timedelta(minutes=self.dotenv.reminder_minutes)],
        )
        self.orchestrator = LivestreamOrchestrator(
            self.hub,
            self.registry,
            self.scheduler,
            self.store,
            self.youtube,
            self.notifier,
            settings,
        )

        self.web_runner: web.AppRunner | None = None
        self.orchestrator_task: asyncio.Task | None = None

    def create_web_app(self) -> web.Application:
        """Create the aiohttp application serving the WebSub callbacks."""
        app = web.Application()
        app.router.add_get("/", self.handle_root)
        self.router.setup(app)
        return app

    async def handle_root(self, request: web.Request) -> web.Response:
        logger.debug(f"Default handler called {request.method} {request.path}")
        return web.Response(status=200)

    async def setup_hook(self):
        """Start the callback server, the scheduler and the feed subscriptions."""
        # The callback server must be reachable before the hubs verify subscriptions
        self.web_runner = web.AppRunner(self.create_web_app())
        await self.web_runner.setup()
        site = web.TCPSite(self.web_runner, self.dotenv.host, self.dotenv.port)
        await site.start()
        logger.info(f"Listening for WebSub callbacks on {self.dotenv.host}:{self.dotenv.port}")

        await self.scheduler.start()
        self.orchestrator_task = asyncio.create_task(self.start_orchestrator())

    async def start_orchestrator(self):
        try:
            await self.orchestrator.start(self.config.get_topic_urls())
        except Exception:
            logger.exception("Error starting livestream orchestrator:")

    async def on_ready(self):
        """Event handler for when the bot is ready."""
        logger.info(f"{self.user} has connected to Discord!")
        logger.info(f"Connected to {len(self.guilds)} guilds")

    async def close(self):
        """Shut down the orchestrator, scheduler and callback server, then Discord."""
        if self.orchestrator_task and not self.orchestrator_task.done():
            self.orchestrator_task.cancel()

        try:
            await self.orchestrator.stop()
        except Exception:
            logger.exception("Error stopping livestream orchestrator:")

        await self.scheduler.stop()
        await self.router.drain()

        if self.web_runner is not None:
            await self.web_runner.cleanup()
            self.web_runner = None

        await self.hub.close()
        await self.youtube.close()
        await super().close()
        logger.info("Bot shutdown complete")


def main():
    """Main entry point for the bot."""

    dotenv = DotEnvConfig.load_env()
    logging.basicConfig(level=dotenv.log_level, format=LOG_FORMAT)

    bot = DiscordBot(dotenv)

    logger.info("Starting bot...")
    try:
        bot.run(dotenv.token, log_handler=None)
    except Exception:
        logger.exception("Error running bot:")
