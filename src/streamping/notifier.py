"""
Discord channel notifier for StreamPing.
"""

import logging

import discord

logger = logging.getLogger(__name__)


class DiscordNotifier:
    """Sends plain text messages to Discord channels by name."""

    def __init__(self, client: discord.Client):
        """Initialize the notifier.

        Args:
            client: Logged in Discord client whose guilds are searched for channels
        """
        self.client = client

    def get_channels(self, channel_name: str) -> list[discord.TextChannel]:
        """Get every text channel with the given name across all guilds."""
        channels = []
        for guild in self.client.guilds:
            channels.extend(
                channel for channel in guild.text_channels if channel.name == channel_name
            )
        return channels

    async def send_to_channel(self, channel_name: str, text: str) -> int:
        """Send a message to every channel with the given name.

        Args:
            channel_name: Name of the channels to post in
            text: Message content

        Returns:
            Number of channels the message was delivered to
        """
        await self.client.wait_until_ready()

        channels = self.get_channels(channel_name)
        if not channels:
            logger.warning(f"No channel named #{channel_name} found in any guild")
            return 0

        sent = 0
        for channel in channels:
            try:
                await channel.send(text)
                sent += 1
            except discord.HTTPException:
                logger.exception(f"Failed to send message to channel {channel.id}:")

        logger.info(f"Sent message to {sent}/{len(channels)} #{channel_name} channels")
        return sent
