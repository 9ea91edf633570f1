"""Shared pytest fixtures for the federation broker tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from managed_federation.config import AppConfig, AuditConfig, IdentityConfig, LocalConfig
from managed_federation.errors import IdentityUnavailableError
from managed_federation.tokens import IssuedToken


TENANT_ENDPOINT = "https://login.microsoftonline.com/tenantA/oauth2/v2.0/token"


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeIdentity:
    """In-memory managed identity that records every request.

    Set `gate` to an asyncio.Event to hold requests until it is set, or
    `error` to make requests fail.
    """

    def __init__(self, token: str = "MI-TOKEN", expires_in: float = 3600) -> None:
        self.token = token
        self.expires_in = expires_in
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def request_token(self, audience: str) -> IssuedToken:
        self.calls.append(audience)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return IssuedToken(token=self.token, expires_in=self.expires_in)


class FakeTokenEndpoint:
    """Tenant token endpoint served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.forms: list[dict[str, str]] = []
        self.status_code = 200
        self.body: dict = {"access_token": "APP-TOKEN", "expires_in": 3600, "token_type": "Bearer"}
        self.gate: asyncio.Event | None = None
        self.cancelled = False

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.forms.append(form)

        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise

        return httpx.Response(self.status_code, json=self.body)

    def reject(self, error: str, description: str, status_code: int = 401) -> None:
        self.status_code = status_code
        self.body = {
            "error": error,
            "error_description": description,
            "error_codes": [7000215],
            "correlation_id": "corr-123",
            "trace_id": "trace-456",
        }


class FakeMsalApp:
    """Stands in for msal.ConfidentialClientApplication.

    Calls the client assertion on every acquisition, like MSAL does on a
    cache miss, and returns `result`.
    """

    def __init__(self, client_id: str, authority: str, client_assertion) -> None:
        self.client_id = client_id
        self.authority = authority
        self.client_assertion = client_assertion
        self.assertions: list[str] = []
        self.scopes: list[list[str]] = []
        self.result: dict | None = {
            "access_token": "LIB-TOKEN",
            "expires_in": 3600,
            "token_type": "Bearer",
            "token_source": "identity_provider",
        }

    def acquire_token_for_client(self, scopes: list[str]) -> dict | None:
        self.scopes.append(scopes)
        self.assertions.append(self.client_assertion())
        return self.result


class FakeMsalFactory:
    """Records every application object built."""

    def __init__(self) -> None:
        self.apps: list[FakeMsalApp] = []
        self.result: dict | None = None
        self.error: Exception | None = None

    def __call__(self, client_id: str, authority: str, client_assertion) -> FakeMsalApp:
        if self.error is not None:
            raise self.error
        app = FakeMsalApp(client_id, authority, client_assertion)
        if self.result is not None:
            app.result = self.result
        self.apps.append(app)
        return app


@pytest.fixture
def fixed_datetime() -> datetime:
    """Fixed datetime for consistent testing."""
    return datetime(2025, 12, 14, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(fixed_datetime: datetime) -> FakeClock:
    return FakeClock(fixed_datetime)


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def msal_factory() -> FakeMsalFactory:
    return FakeMsalFactory()


@pytest.fixture
async def http_client(token_endpoint: FakeTokenEndpoint):
    """AsyncClient whose requests are answered by the fake token endpoint."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint.handler))
    yield client
    await client.aclose()


@pytest.fixture
def sample_config(tmp_path) -> AppConfig:
    """Create a sample configuration for testing."""
    return AppConfig(
        identity=IdentityConfig(
            authority_host="https://login.microsoftonline.com",
            assertion_refresh_margin_seconds=300,
            token_refresh_margin_seconds=0,
            max_cached_tokens=16,
            http_timeout_seconds=5,
            request_timeout_seconds=5,
        ),
        audit=AuditConfig(enabled=True, directory=str(tmp_path / "audit"), batch_timeout=0.1),
        local=LocalConfig(host="127.0.0.1", port=8000, function_key="test-function-key"),
    )


@pytest.fixture
def unavailable_identity() -> FakeIdentity:
    """Identity whose endpoint is unreachable."""
    fake = FakeIdentity()
    fake.error = IdentityUnavailableError("Managed identity is not available on this host")
    return fake
