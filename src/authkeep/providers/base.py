"""OAuth provider base class: the capability every provider adapter implements.

A provider knows how to exchange an authorization code, fetch the current
user's profile and resolve a usable email. The reconciliation transaction
only ever sees the normalized ``ProviderProfile``.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any

import httpx

from authkeep.errors import NotFound


@dataclass(frozen=True, slots=True)
class ProviderProfile:
    """Normalized identity returned by any OAuth provider."""

    provider: str
    provider_user_id: str
    email: str | None
    email_verified: bool
    bio: str | None = None
    image: str | None = None


class ProviderResponseError(Exception):
    """The provider answered with a payload we cannot use."""


@dataclass(frozen=True)
class OAuthProvider(abc.ABC):
    """Abstract base for all OAuth providers.

    Subclasses must implement:
        name            : provider identifier (e.g. "github", "discord")
        token_url       : provider's token exchange endpoint
        api_base_url    : root of the provider's REST API
        fetch_profile() : fetch the raw "current user" document
        resolve_email() : turn the raw document into a ProviderProfile
    """

    client_id: str
    client_secret: str
    redirect_uri: str | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @property
    @abc.abstractmethod
    def token_url(self) -> str: ...

    @property
    @abc.abstractmethod
    def api_base_url(self) -> str: ...

    async def exchange_code(
        self, client: httpx.AsyncClient, *, code: str, redirect_uri: str,
    ) -> str:
        """Exchange an authorization code for a provider access token.

        Client credentials are sent both in the form body and as HTTP Basic
        auth, which satisfies providers that expect either.
        """
        response = await client.post(
            self.token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        access_token = response.json().get("access_token")
        if not access_token:
            raise ProviderResponseError(f"{self.name} token response has no access_token")
        return access_token

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def _get_json(self, client: httpx.AsyncClient, path: str, access_token: str) -> Any:
        response = await client.get(f"{self.api_base_url}{path}", headers=self._headers(access_token))
        response.raise_for_status()
        return response.json()

    @abc.abstractmethod
    async def fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> dict[str, Any]:
        """Fetch the provider's raw "current user" document."""
        ...

    @abc.abstractmethod
    async def resolve_email(
        self, client: httpx.AsyncClient, access_token: str, profile: dict[str, Any],
    ) -> ProviderProfile:
        """Normalize the profile, making extra calls if the email is not in it."""
        ...


class ProviderRegistry:
    """Lookup table of configured providers keyed by ``OAuthProvider.name``."""

    def __init__(self, providers: list[OAuthProvider] | None = None) -> None:
        self._providers: dict[str, OAuthProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: OAuthProvider) -> None:
        if provider.name in self._providers:
            raise ValueError(f"Provider '{provider.name}' is already registered")
        self._providers[provider.name] = provider

    def get(self, name: str) -> OAuthProvider:
        """Get a provider by name.

        Raises:
            NotFound: No provider with that name is configured.
        """
        provider = self._providers.get(name)
        if provider is None:
            raise NotFound(f"Unknown provider '{name}'", code="unknown_provider")
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)
