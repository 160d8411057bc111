"""Tests for OAuth federation: providers, identity reconciliation and the assertion grant."""

import uuid

import httpx
import pytest
import pytest_asyncio

from authkeep import AuthKeep, DiscordProvider, GitHubProvider, GoogleProvider
from authkeep.core.oauth import fetch_provider_profile, reconcile_identity
from authkeep.errors import NotFound, UpstreamFailure, ValidationFailed
from authkeep.models.social_login import SocialLogin
from authkeep.providers.base import ProviderProfile, ProviderRegistry
from authkeep.repositories import email as email_repo
from authkeep.repositories import social_login as social_login_repo
from authkeep.repositories import user as user_repo
from authkeep.utils import AVATAR_URL
from authkeep.utils.passwords import PasswordHasher
from conftest import TEST_DATABASE_URL, TEST_SECRET, unique_email, unique_username

pytestmark = pytest.mark.asyncio

REDIRECT_URI = "http://localhost:3000/auth/oauth"


class FakeGitHub:
    """In-memory GitHub API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.user: dict = {"id": 1, "email": None, "bio": None, "avatar_url": None}
        self.emails: list[dict] = []
        self.token_status = 200
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "github.com":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "bad_verification_code"})
            return httpx.Response(200, json={"access_token": "gho_test", "token_type": "bearer"})
        if request.url.path == "/user":
            return httpx.Response(200, json=self.user)
        if request.url.path == "/user/emails":
            return httpx.Response(200, json=self.emails)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def _github_id() -> int:
    return uuid.uuid4().int % 10**12


def _profile(provider_user_id: str, email: str | None, **kwargs) -> ProviderProfile:
    kwargs.setdefault("email_verified", True)
    return ProviderProfile(
        provider="github", provider_user_id=provider_user_id, email=email, **kwargs,
    )


@pytest.fixture
def hasher():
    instance = PasswordHasher(max_workers=2)
    yield instance
    instance.shutdown()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest_asyncio.fixture
async def oauth_auth(redis, mailer, github):
    """AuthKeep instance whose providers talk to in-memory fakes."""
    http_client = github.client()
    instance = AuthKeep(
        TEST_DATABASE_URL,
        secret=TEST_SECRET,
        redis=redis,
        email_sender=mailer,
        http_client=http_client,
        providers=[GitHubProvider(client_id="test-github-id", client_secret="test-github-secret")],
    )
    await instance.migrate()
    yield instance
    await instance.dispose()
    await http_client.aclose()


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class TestProviders:
    async def test_github_public_email_is_verified(self, github):
        github.user = {"id": 7, "email": "Octo@Example.com", "bio": "hi", "avatar_url": "https://a/7"}
        provider = GitHubProvider(client_id="id", client_secret="secret")
        async with github.client() as client:
            profile = await fetch_provider_profile(
                provider, client, code="abc", redirect_uri=REDIRECT_URI,
            )

        assert profile.provider == "github"
        assert profile.provider_user_id == "7"
        assert profile.email == "Octo@Example.com"
        assert profile.email_verified is True
        assert profile.bio == "hi"
        assert profile.image == "https://a/7"
        assert not any(r.url.path == "/user/emails" for r in github.requests)

    async def test_github_private_email_uses_primary_entry(self, github):
        github.emails = [
            {"email": "other@example.com", "primary": False, "verified": True},
            {"email": "main@example.com", "primary": True, "verified": False},
        ]
        provider = GitHubProvider(client_id="id", client_secret="secret")
        async with github.client() as client:
            profile = await fetch_provider_profile(
                provider, client, code="abc", redirect_uri=REDIRECT_URI,
            )

        assert profile.email == "main@example.com"
        assert profile.email_verified is False

    async def test_github_empty_email_list(self, github):
        provider = GitHubProvider(client_id="id", client_secret="secret")
        async with github.client() as client:
            profile = await fetch_provider_profile(
                provider, client, code="abc", redirect_uri=REDIRECT_URI,
            )

        assert profile.email is None
        assert profile.email_verified is False

    async def test_code_exchange_sends_credentials_and_redirect(self, github):
        github.user["email"] = "a@example.com"
        provider = GitHubProvider(client_id="id", client_secret="secret")
        async with github.client() as client:
            await fetch_provider_profile(provider, client, code="abc", redirect_uri=REDIRECT_URI)

        token_request = github.requests[0]
        assert token_request.method == "POST"
        body = token_request.content.decode()
        assert "code=abc" in body
        assert "redirect_uri=http%3A%2F%2Flocalhost%3A3000%2Fauth%2Foauth" in body
        assert token_request.headers["Authorization"].startswith("Basic ")
        assert github.requests[1].headers["Authorization"] == "Bearer gho_test"

    async def test_provider_error_is_upstream_failure(self, github):
        github.token_status = 401
        provider = GitHubProvider(client_id="id", client_secret="secret")
        async with github.client() as client:
            with pytest.raises(UpstreamFailure) as exc:
                await fetch_provider_profile(provider, client, code="abc", redirect_uri=REDIRECT_URI)
        assert "bad_verification_code" not in exc.value.message

    async def test_network_error_is_upstream_failure(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        provider = GitHubProvider(client_id="id", client_secret="secret")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamFailure):
                await fetch_provider_profile(provider, client, code="abc", redirect_uri=REDIRECT_URI)

    async def test_token_response_without_access_token(self):
        def handler(request):
            return httpx.Response(200, json={"error": "nope"})

        provider = GitHubProvider(client_id="id", client_secret="secret")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamFailure):
                await fetch_provider_profile(provider, client, code="abc", redirect_uri=REDIRECT_URI)

    async def test_discord_avatar_url(self):
        def handler(request):
            if request.url.path == "/api/oauth2/token":
                return httpx.Response(200, json={"access_token": "d_test"})
            return httpx.Response(200, json={
                "id": "80351110224678912", "email": "nelly@example.com",
                "verified": True, "avatar": "8342729096ea3675442027381ff50dfe",
            })

        provider = DiscordProvider(client_id="id", client_secret="secret")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            profile = await fetch_provider_profile(provider, client, code="abc", redirect_uri=REDIRECT_URI)

        assert profile.email_verified is True
        assert profile.image == (
            "https://cdn.discordapp.com/avatars/80351110224678912/8342729096ea3675442027381ff50dfe"
        )

    async def test_google_profile(self):
        def handler(request):
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "ya29.test"})
            return httpx.Response(200, json={
                "id": "1234", "email": "g@example.com", "verified_email": False,
                "picture": "https://lh3.example/p.jpg",
            })

        provider = GoogleProvider(client_id="id", client_secret="secret")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            profile = await fetch_provider_profile(provider, client, code="abc", redirect_uri=REDIRECT_URI)

        assert profile.provider == "google"
        assert profile.email_verified is False
        assert profile.image == "https://lh3.example/p.jpg"

    def test_registry_lookup(self):
        registry = ProviderRegistry([GitHubProvider(client_id="id", client_secret="secret")])
        assert registry.names() == ["github"]
        with pytest.raises(NotFound) as exc:
            registry.get("myspace")
        assert exc.value.code == "unknown_provider"

    def test_registry_rejects_duplicates(self):
        registry = ProviderRegistry([GitHubProvider(client_id="id", client_secret="secret")])
        with pytest.raises(ValueError):
            registry.register(GitHubProvider(client_id="other", client_secret="secret"))


# ---------------------------------------------------------------------------
# Identity reconciliation
# ---------------------------------------------------------------------------


class TestReconcileIdentity:
    async def test_new_identity_creates_placeholder_user(self, auth: AuthKeep, hasher):
        email = unique_email()
        async with auth.get_session() as session:
            user_id = await reconcile_identity(
                session, hasher=hasher, profile=_profile(uuid.uuid4().hex, email),
            )

        async with auth.get_session() as session:
            user = await user_repo.get_user_by_id(session, user_id)
            row = await email_repo.get_email(session, email)
            links = await social_login_repo.get_social_logins_by_user(session, user_id)

        assert user.reset_username is True
        assert user.reset_password is True
        assert row.user_id == user_id
        assert row.is_primary is True
        assert row.verified is True
        assert len(links) == 1
        assert links[0].email_id == row.id

    async def test_same_identity_twice_links_same_user(self, auth: AuthKeep, hasher):
        provider_user_id = uuid.uuid4().hex
        first_email, second_email = unique_email(), unique_email()

        async with auth.get_session() as session:
            first = await reconcile_identity(
                session, hasher=hasher, profile=_profile(provider_user_id, first_email, bio="v1"),
            )
        async with auth.get_session() as session:
            second = await reconcile_identity(
                session, hasher=hasher,
                profile=_profile(provider_user_id, second_email, bio="v2", image="https://img/2"),
            )

        assert first == second
        async with auth.get_session() as session:
            links = await social_login_repo.get_social_logins_by_user(session, first)
            emails = await email_repo.get_emails_by_user(session, first)
        assert len(links) == 1
        assert {e.email for e in emails} == {first_email, second_email}
        assert sum(e.is_primary for e in emails) == 1

    async def test_links_to_existing_owner_of_email(self, auth: AuthKeep, hasher):
        email = unique_email()
        result = await auth.register_user(unique_username(), email, "password123")

        async with auth.get_session() as session:
            user_id = await reconcile_identity(
                session, hasher=hasher, profile=_profile(uuid.uuid4().hex, email),
            )

        assert user_id == result.user_id
        async with auth.get_session() as session:
            row = await email_repo.get_email(session, email)
            user = await user_repo.get_user_by_id(session, user_id)
        assert row.verified is True
        assert row.confirmation_sent_at is None
        assert row.is_primary is True
        assert not user.reset_password

    async def test_first_link_wins(self, auth: AuthKeep, hasher):
        provider_user_id = uuid.uuid4().hex
        async with auth.get_session() as session:
            owner = await reconcile_identity(
                session, hasher=hasher, profile=_profile(provider_user_id, unique_email()),
            )
            # A second link attempt for a different user must not move the link.
            other = await user_repo.create_user(
                session, username=unique_username(), password_hash="x",
            )
            other_email = await email_repo.create_email(
                session, user_id=other.id, email=unique_email(), is_primary=True,
            )
            await social_login_repo.upsert_social_login(
                session, email_id=other_email.id, user_id=other.id,
                provider="github", provider_user_id=provider_user_id,
            )

        async with auth.get_session() as session:
            link = await social_login_repo.get_social_login(session, "github", provider_user_id)
        assert link.user_id == owner

    async def test_metadata_only_fills_missing_fields(self, auth: AuthKeep, hasher):
        provider_user_id = uuid.uuid4().hex
        async with auth.get_session() as session:
            user_id = await reconcile_identity(
                session, hasher=hasher,
                profile=_profile(provider_user_id, unique_email(), image="https://img/1"),
            )
        async with auth.get_session() as session:
            await reconcile_identity(
                session, hasher=hasher,
                profile=_profile(provider_user_id, unique_email(), bio="later bio", image="https://img/2"),
            )

        async with auth.get_session() as session:
            user = await user_repo.get_user_by_id(session, user_id)
        assert user.bio == "later bio"
        assert user.image == "https://img/1"

    async def test_missing_image_gets_generated_avatar(self, auth: AuthKeep, hasher):
        async with auth.get_session() as session:
            user_id = await reconcile_identity(
                session, hasher=hasher, profile=_profile(uuid.uuid4().hex, unique_email()),
            )
        async with auth.get_session() as session:
            user = await user_repo.get_user_by_id(session, user_id)
        assert user.image.startswith(AVATAR_URL.split("?")[0])

    async def test_failure_rolls_back_everything(self, auth: AuthKeep, hasher):
        email, provider_user_id = unique_email(), uuid.uuid4().hex

        with pytest.raises(RuntimeError):
            async with auth.get_session() as session:
                await reconcile_identity(
                    session, hasher=hasher, profile=_profile(provider_user_id, email),
                )
                raise RuntimeError("boom")

        async with auth.get_session() as session:
            assert await email_repo.get_email(session, email) is None
            assert await social_login_repo.get_social_login(session, "github", provider_user_id) is None

    async def test_concurrent_sign_up_adopts_the_winner(self, auth: AuthKeep, hasher, monkeypatch):
        email, provider_user_id = unique_email(), uuid.uuid4().hex
        winner = await auth.register_user(unique_username(), email, "password123")

        # The first lookup misses the winner's row, as if it committed just after.
        lookup = user_repo.get_user_by_email
        calls = []

        async def stale_then_fresh(session, address):
            calls.append(address)
            if len(calls) == 1:
                return None
            return await lookup(session, address)

        monkeypatch.setattr(user_repo, "get_user_by_email", stale_then_fresh)

        async with auth.get_session() as session:
            user_id = await reconcile_identity(
                session, hasher=hasher, profile=_profile(provider_user_id, email),
            )

        assert user_id == winner.user_id
        assert len(calls) == 2
        async with auth.get_session() as session:
            link = await social_login_repo.get_social_login(session, "github", provider_user_id)
            row = await email_repo.get_email(session, email)
        assert link.user_id == winner.user_id
        assert link.email_id == row.id
        assert row.user_id == winner.user_id

    async def test_social_login_row_references_email(self, auth: AuthKeep, hasher):
        email = unique_email()
        async with auth.get_session() as session:
            user_id = await reconcile_identity(
                session, hasher=hasher, profile=_profile(uuid.uuid4().hex, email),
            )
            link = (await social_login_repo.get_social_logins_by_user(session, user_id))[0]
        assert isinstance(link, SocialLogin)
        assert link.provider == "github"


# ---------------------------------------------------------------------------
# Assertion grant
# ---------------------------------------------------------------------------


class TestAssertionGrant:
    async def test_assertion_grant_opens_session(self, oauth_auth: AuthKeep, github):
        email = unique_email()
        github.user = {"id": _github_id(), "email": email, "bio": None, "avatar_url": None}

        response = await oauth_auth.issue_tokens_for_assertion_grant("github", "code-1")

        assert response.token_type == "bearer"
        identity = oauth_auth.verify_access_token(response.access_token)
        sessions = await oauth_auth.list_sessions(identity.user_id)
        assert [s.session_id for s in sessions] == [identity.session_id]

    async def test_repeated_assertion_same_user(self, oauth_auth: AuthKeep, github):
        provider_user_id = _github_id()
        github.user = {"id": provider_user_id, "email": unique_email(), "bio": None, "avatar_url": None}
        first = await oauth_auth.issue_tokens_for_assertion_grant("github", "code-1")

        github.user = {"id": provider_user_id, "email": unique_email(), "bio": "new", "avatar_url": None}
        second = await oauth_auth.issue_tokens_for_assertion_grant("github", "code-2")

        first_user = oauth_auth.verify_access_token(first.access_token).user_id
        assert oauth_auth.verify_access_token(second.access_token).user_id == first_user

    async def test_placeholder_user_cannot_use_password_grant(self, oauth_auth: AuthKeep, github):
        email = unique_email()
        github.user = {"id": _github_id(), "email": email, "bio": None, "avatar_url": None}
        await oauth_auth.issue_tokens_for_assertion_grant("github", "code-1")

        from authkeep.errors import Unauthenticated

        with pytest.raises(Unauthenticated):
            await oauth_auth.issue_tokens_for_password_grant(email, "anything-at-all")

    async def test_missing_email_is_validation_error(self, oauth_auth: AuthKeep, github):
        github.user = {"id": _github_id(), "email": None, "bio": None, "avatar_url": None}
        github.emails = []

        with pytest.raises(ValidationFailed) as exc:
            await oauth_auth.issue_tokens_for_assertion_grant("github", "code-1")
        assert exc.value.fields == {"email": ["missing"]}

    async def test_unknown_provider(self, oauth_auth: AuthKeep):
        with pytest.raises(NotFound):
            await oauth_auth.issue_tokens_for_assertion_grant("myspace", "code-1")

    async def test_upstream_failure_creates_nothing(self, oauth_auth: AuthKeep, github):
        github.token_status = 500
        with pytest.raises(UpstreamFailure):
            await oauth_auth.issue_tokens_for_assertion_grant("github", "code-1")

    async def test_events_for_new_and_linked_identity(self, oauth_auth: AuthKeep, github):
        events = []

        @oauth_auth.on("user_created")
        async def on_created(event):
            events.append(("user_created", event.provider))

        @oauth_auth.on("oauth_link")
        async def on_link(event):
            events.append(("oauth_link", event.provider))

        github.user = {"id": _github_id(), "email": unique_email(), "bio": None, "avatar_url": None}
        await oauth_auth.issue_tokens_for_assertion_grant("github", "code-1")
        await oauth_auth.issue_tokens_for_assertion_grant("github", "code-2")

        assert events == [("user_created", "github")]
