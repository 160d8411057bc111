"""Discord OAuth 2.0 provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from authkeep.providers.base import OAuthProvider, ProviderProfile

AVATAR_CDN_URL = "https://cdn.discordapp.com/avatars/{user_id}/{avatar}"


@dataclass(frozen=True)
class DiscordProvider(OAuthProvider):
    """Discord OAuth provider. Requires the ``identify`` and ``email`` scopes."""

    @property
    def name(self) -> str:
        return "discord"

    @property
    def token_url(self) -> str:
        return "https://discord.com/api/oauth2/token"

    @property
    def api_base_url(self) -> str:
        return "https://discord.com/api"

    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> dict[str, Any]:
        return await self._get_json(client, "/users/@me", access_token)

    async def resolve_email(
        self, client: httpx.AsyncClient, access_token: str, profile: dict[str, Any],
    ) -> ProviderProfile:
        user_id = str(profile["id"])
        avatar = profile.get("avatar")
        return ProviderProfile(
            provider=self.name,
            provider_user_id=user_id,
            email=profile.get("email"),
            email_verified=bool(profile.get("verified")),
            image=AVATAR_CDN_URL.format(user_id=user_id, avatar=avatar) if avatar else None,
        )
