"""Chat platform implementations of :class:`access_notify.bot.MessagingBot`."""

from .discord import DiscordBot
from .slack import SlackBot

__all__ = ["DiscordBot", "SlackBot"]
