"""Tests for the MSAL-backed exchange client."""

import threading
from datetime import timedelta

import pytest

from managed_federation.auth.assertion import AssertionProvider
from managed_federation.auth.library import MsalExchangeClient
from managed_federation.errors import (
    GrantRejectedError,
    IdentityUnavailableError,
    InvalidInputError,
    RequestCancelledError,
    TransportError,
)


REQUEST = {
    "client_id": "app1",
    "tenant_id": "tenantA",
    "federation_scope": "fed-scope",
    "scope": "api://target/.default",
}

REJECTION = {
    "error": "invalid_client",
    "error_description": "AADSTS700213: No matching federated identity record found.",
    "error_codes": [700213],
    "correlation_id": "corr-123",
}


@pytest.fixture
def assertion_provider(identity, clock) -> AssertionProvider:
    return AssertionProvider(identity, clock=clock)


@pytest.fixture
def client(assertion_provider, msal_factory, clock) -> MsalExchangeClient:
    return MsalExchangeClient(assertion_provider, clock=clock, app_factory=msal_factory)


class TestAcquireToken:

    @pytest.mark.asyncio
    async def test_end_to_end(self, client, identity, msal_factory, clock):
        token = await client.acquire_token(**REQUEST)

        assert token.value == "LIB-TOKEN"
        assert token.scope == "api://target/.default"
        assert token.tenant_id == "tenantA"
        assert token.client_id == "app1"
        assert token.expires_at == clock() + timedelta(seconds=3600)

        app = msal_factory.apps[0]
        assert app.client_id == "app1"
        assert app.authority == "https://login.microsoftonline.com/tenantA"
        assert app.scopes == [["api://target/.default"]]

        # The assertion MSAL presented came from the managed identity
        assert app.assertions == ["MI-TOKEN"]
        assert identity.calls == ["fed-scope"]

    @pytest.mark.asyncio
    async def test_application_reused_per_tenant(self, client, msal_factory):
        await client.acquire_token(**REQUEST)
        await client.acquire_token(**{**REQUEST, "scope": "https://graph.microsoft.com/.default"})
        await client.acquire_token(**{**REQUEST, "tenant_id": "tenantB"})

        assert len(msal_factory.apps) == 2
        assert msal_factory.apps[1].authority == "https://login.microsoftonline.com/tenantB"
        assert len(client) == 2

    @pytest.mark.asyncio
    async def test_assertion_shared_with_assertion_cache(self, client, identity):
        await client.acquire_token(**REQUEST)
        await client.acquire_token(**{**REQUEST, "tenant_id": "tenantB"})

        assert identity.calls == ["fed-scope"]

    @pytest.mark.asyncio
    async def test_application_objects_bounded(self, assertion_provider, msal_factory, clock):
        client = MsalExchangeClient(assertion_provider, max_apps=1, clock=clock, app_factory=msal_factory)

        await client.acquire_token(**REQUEST)
        await client.acquire_token(**{**REQUEST, "tenant_id": "tenantB"})

        assert len(client) == 1


class TestFailures:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["client_id", "tenant_id", "federation_scope", "scope"])
    async def test_missing_parameter(self, client, msal_factory, identity, field):
        with pytest.raises(InvalidInputError):
            await client.acquire_token(**{**REQUEST, field: ""})

        assert msal_factory.apps == []
        assert identity.calls == []

    @pytest.mark.asyncio
    async def test_rejection_retries_both_calls(self, client, msal_factory, identity):
        msal_factory.result = REJECTION

        with pytest.raises(GrantRejectedError) as exc_info:
            await client.acquire_token(**REQUEST)

        error = exc_info.value
        assert error.error_code == "invalid_client"
        assert error.error_description == REJECTION["error_description"]
        assert error.error_codes == [700213]
        assert error.correlation_id == "corr-123"
        assert error.status_code == 400

        with pytest.raises(GrantRejectedError):
            await client.acquire_token(**REQUEST)

        assert len(identity.calls) == 2
        assert len(msal_factory.apps[0].scopes) == 2

    @pytest.mark.asyncio
    async def test_identity_unavailable(self, unavailable_identity, msal_factory, clock):
        provider = AssertionProvider(unavailable_identity, clock=clock)
        client = MsalExchangeClient(provider, clock=clock, app_factory=msal_factory)

        with pytest.raises(IdentityUnavailableError):
            await client.acquire_token(**REQUEST)

    @pytest.mark.asyncio
    async def test_library_exception_is_transport_error(self, client, msal_factory):
        msal_factory.error = ValueError("Unable to get authority configuration")

        with pytest.raises(TransportError, match="authority configuration"):
            await client.acquire_token(**REQUEST)

        assert len(client) == 0

    @pytest.mark.asyncio
    async def test_result_without_token_or_error(self, client, msal_factory):
        msal_factory.result = {"token_type": "Bearer"}

        with pytest.raises(TransportError):
            await client.acquire_token(**REQUEST)

    @pytest.mark.asyncio
    async def test_timeout(self, client, msal_factory):
        release = threading.Event()

        def blocking_factory(client_id, authority, client_assertion):
            release.wait(timeout=5)
            return msal_factory(client_id, authority, client_assertion)

        client._app_factory = blocking_factory
        try:
            with pytest.raises(RequestCancelledError):
                await client.acquire_token(**REQUEST, timeout=0.05)
        finally:
            release.set()
