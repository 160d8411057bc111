"""Google OAuth 2.0 provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from authkeep.providers.base import OAuthProvider, ProviderProfile


@dataclass(frozen=True)
class GoogleProvider(OAuthProvider):
    """Google OAuth provider. Requires the ``openid email profile`` scopes."""

    @property
    def name(self) -> str:
        return "google"

    @property
    def token_url(self) -> str:
        return "https://oauth2.googleapis.com/token"

    @property
    def api_base_url(self) -> str:
        return "https://www.googleapis.com"

    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> dict[str, Any]:
        return await self._get_json(client, "/oauth2/v2/userinfo", access_token)

    async def resolve_email(
        self, client: httpx.AsyncClient, access_token: str, profile: dict[str, Any],
    ) -> ProviderProfile:
        return ProviderProfile(
            provider=self.name,
            provider_user_id=str(profile["id"]),
            email=profile.get("email"),
            email_verified=bool(profile.get("verified_email")),
            image=profile.get("picture"),
        )
