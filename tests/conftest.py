"""Test fixtures for AuthKeep integration tests."""

import os
import tempfile
import uuid

import fakeredis
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from redis.asyncio import Redis

from authkeep import AuthKeep, AuthenticatedUser, EmailMessage, Permission

pytestmark = pytest.mark.asyncio

TEST_SECRET = "test-secret-do-not-use-in-production"

# If DATABASE_URL=sqlite (the default), auto-create a temp file for the test session.
# For PostgreSQL, use the URL as-is.
_raw_url = os.environ.get("DATABASE_URL", "sqlite")

_sqlite_tmp = None
if _raw_url.startswith("sqlite"):
    _sqlite_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    _sqlite_tmp.close()
    TEST_DATABASE_URL = f"sqlite+aiosqlite:///{_sqlite_tmp.name}"
else:
    TEST_DATABASE_URL = _raw_url

# Without REDIS_URL every test gets its own in-process fake server.
REDIS_URL = os.environ.get("REDIS_URL")

requires_fake_redis = pytest.mark.skipif(
    REDIS_URL is not None, reason="moves the fake Redis clock",
)


@pytest.fixture(scope="session", autouse=True)
def _cleanup_sqlite():
    """Delete the temp SQLite file after all tests finish."""
    yield
    if _sqlite_tmp is not None and os.path.exists(_sqlite_tmp.name):
        os.remove(_sqlite_tmp.name)


class RecordingEmailSender:
    """Keeps every message so tests can read the codes that were sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, EmailMessage]] = []

    async def send(self, recipient: str, message: EmailMessage) -> None:
        self.sent.append((recipient, message))

    def last(self, recipient: str | None = None) -> EmailMessage:
        for to, message in reversed(self.sent):
            if recipient is None or to == recipient:
                return message
        raise AssertionError(f"No email sent to {recipient}")


@pytest_asyncio.fixture
async def redis():
    """Redis client, fake unless REDIS_URL is set."""
    if REDIS_URL is not None:
        client = Redis.from_url(REDIS_URL, encoding="utf-8", decode_responses=True)
    else:
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def mailer() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest_asyncio.fixture
async def auth(redis, mailer):
    """Create an AuthKeep instance for testing."""
    instance = AuthKeep(
        TEST_DATABASE_URL,
        secret=TEST_SECRET,
        redis=redis,
        email_sender=mailer,
        hasher_workers=2,
    )
    await instance.migrate()
    yield instance
    await instance.dispose()


@pytest_asyncio.fixture
async def client(auth: AuthKeep):
    """Async HTTP client for testing against the FastAPI app."""
    app = FastAPI()
    app.include_router(auth.fastapi_router(), prefix="/auth")

    # Permission-protected test endpoint
    @app.get("/test-users")
    async def test_users(
        user: AuthenticatedUser = Depends(auth.require_permission(Permission.USER_VIEW)),
    ):
        return {"message": "user list access", "scope": user.scope}

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


def unique_email() -> str:
    """Generate a unique email for each test to avoid conflicts."""
    return f"test-{uuid.uuid4().hex[:8]}@example.com"


def unique_username() -> str:
    return f"user_{uuid.uuid4().hex[:10]}"
