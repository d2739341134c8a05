"""Pytest configuration and shared fixtures.

Every test gets its own SQLite database file and a fake Google served through
httpx.MockTransport, so nothing leaves the process.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ntpof_auth.config import Settings
from ntpof_auth.core.rate_limit import limiter
from ntpof_auth.db.session import init_db
from ntpof_auth.main import create_app
from ntpof_auth.services.http_client import close_http_client, create_http_client
from ntpof_auth.services.oauth import ExternalIdentity, GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL
from ntpof_auth.services.users import resolve_user
from ntpof_auth.state import build_services

API_DOMAIN = "http://api.test"
WEBSITE_DOMAIN = "http://app.test"


class FakeGoogle:
    """Token and userinfo endpoints. Tweak the attributes to simulate provider failures."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_body: dict = {"access_token": "provider-access-token", "token_type": "Bearer", "expires_in": 3599}
        self.userinfo_status = 200
        self.userinfo_body: dict = {"sub": "google-sub-1", "email": "ada@example.com", "email_verified": True}
        self.timeout = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("provider timed out", request=request)
        url = str(request.url)
        if url == GOOGLE_TOKEN_URL:
            return httpx.Response(self.token_status, json=self.token_body)
        if url == GOOGLE_USERINFO_URL:
            return httpx.Response(self.userinfo_status, json=self.userinfo_body)
        return httpx.Response(404, json={"error": "not_found"})

    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == GOOGLE_TOKEN_URL]


def make_settings(database_url: str, **overrides) -> Settings:
    values = {
        "database_url": database_url,
        "api_domain": API_DOMAIN,
        "website_domain": WEBSITE_DOMAIN,
        "google_client_id": "test-client-id",
        "google_client_secret": "test-client-secret",
        "session_signing_keys": "k1:test-signing-secret-one",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def state_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}")


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest_asyncio.fixture
async def services(settings, google):
    """Service container without the HTTP layer; tables created, engine disposed afterwards."""
    http_client = create_http_client(timeout=5.0, transport=httpx.MockTransport(google))
    services = build_services(settings, http_client=http_client)
    await init_db(services.engine)
    yield services
    await close_http_client(http_client)
    await services.engine.dispose()


@pytest_asyncio.fixture
async def user_id(services) -> str:
    identity = ExternalIdentity(provider_id="google", subject="fixture-sub", email="fixture@example.com", raw_profile={})
    uid, _ = await resolve_user(services.session_maker, identity)
    return uid


@pytest_asyncio.fixture
async def app(settings, google):
    """Application built by the factory. ASGITransport skips lifespan, so tables are created here."""
    limiter.reset()
    http_client = create_http_client(timeout=5.0, transport=httpx.MockTransport(google))
    app = create_app(settings, http_client=http_client)
    await init_db(app.state.services.engine)
    yield app
    await close_http_client(http_client)
    await app.state.services.engine.dispose()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url=API_DOMAIN) as ac:
        yield ac


@pytest_asyncio.fixture
async def signed_in(client: AsyncClient):
    """Run the browser sign-in flow; the client ends up holding session cookies."""
    resp = await client.get("/auth/signinup/google")
    assert resp.status_code == 307
    state = state_from_url(resp.headers["location"])
    resp = await client.get("/auth/callback/google", params={"code": "auth-code", "state": state})
    assert resp.status_code == 303
    return client
