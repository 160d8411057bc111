"""AuthKeep OAuth providers."""

from authkeep.providers.base import OAuthProvider, ProviderProfile, ProviderRegistry
from authkeep.providers.discord import DiscordProvider
from authkeep.providers.github import GitHubProvider
from authkeep.providers.google import GoogleProvider

__all__ = [
    "OAuthProvider",
    "ProviderProfile",
    "ProviderRegistry",
    "DiscordProvider",
    "GitHubProvider",
    "GoogleProvider",
]
