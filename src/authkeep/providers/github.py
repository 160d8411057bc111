"""GitHub OAuth 2.0 provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from authkeep.providers.base import OAuthProvider, ProviderProfile

logger = logging.getLogger("authkeep.providers")


@dataclass(frozen=True)
class GitHubProvider(OAuthProvider):
    """GitHub OAuth provider.

    GitHub omits the email from ``/user`` when it is private; the address
    then comes from ``/user/emails``.
    """

    @property
    def name(self) -> str:
        return "github"

    @property
    def token_url(self) -> str:
        return "https://github.com/login/oauth/access_token"

    @property
    def api_base_url(self) -> str:
        return "https://api.github.com"

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> dict[str, Any]:
        return await self._get_json(client, "/user", access_token)

    async def resolve_email(
        self, client: httpx.AsyncClient, access_token: str, profile: dict[str, Any],
    ) -> ProviderProfile:
        """Public profile email counts as verified.

        Otherwise take the primary entry of ``/user/emails`` with its own
        verified flag, else the first entry. An empty list leaves the email
        unset and unverified.
        """
        email = profile.get("email")
        verified = True

        if not email:
            entries = await self._get_json(client, "/user/emails", access_token)
            if not entries:
                logger.warning("GitHub user %s has no email addresses", profile.get("id"))
                verified = False
            else:
                primary = next((e for e in entries if e.get("primary")), None)
                if primary is not None:
                    email = primary["email"]
                    verified = bool(primary.get("verified"))
                else:
                    email = entries[0]["email"]

        return ProviderProfile(
            provider=self.name,
            provider_user_id=str(profile["id"]),
            email=email,
            email_verified=verified,
            bio=profile.get("bio"),
            image=profile.get("avatar_url"),
        )
