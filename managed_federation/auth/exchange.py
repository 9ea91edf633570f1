"""OAuth2 client credentials exchange using a federated client assertion.

The application authenticates to the target tenant with a managed identity
token instead of a secret or certificate. The tenant only accepts it if the
application registration has a federated credential trusting that identity.

See https://learn.microsoft.com/en-us/entra/identity-platform/v2-oauth2-client-creds-grant-flow#third-case-access-token-request-with-a-federated-credential
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import httpx

from managed_federation.auth.assertion import validate_audience
from managed_federation.cache import CacheStats, TokenCache
from managed_federation.errors import (
    ExchangeError,
    GrantRejectedError,
    IdentityUnavailableError,
    InvalidInputError,
    RequestCancelledError,
    TransportError,
)
from managed_federation.tokens import ApplicationToken, ClientAssertion, utcnow


logger = logging.getLogger(__name__)

# Public cloud authority host
DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

# Called with the federation scope, only when a grant request is built
AssertionCallback = Callable[[str], Awaitable[ClientAssertion]]

# Called with the federation scope when the tenant rejects the grant
InvalidateCallback = Callable[[str], None]

TokenKey = tuple[str, str, str]


def build_token_endpoint(authority_host: str, tenant_id: str) -> str:
    """Build the v2.0 token endpoint URL for a tenant.

    Args:
        authority_host: Cloud instance base URL (e.g. https://login.microsoftonline.com)
        tenant_id: Tenant ID or verified domain name

    Returns:
        Token endpoint URL
    """
    return f"{authority_host.rstrip('/')}/{tenant_id}/oauth2/v2.0/token"


def validate_exchange_request(
    client_id: str | None,
    tenant_id: str | None,
    federation_scope: str | None,
    scope: str | None,
) -> None:
    """Validate the four required exchange parameters.

    Raises:
        InvalidInputError: If any parameter is missing, empty or malformed
    """
    for name, value in (("clientId", client_id), ("tenantId", tenant_id)):
        if not value or not value.strip():
            raise InvalidInputError(f"'{name}' is required", parameter=name)
        if "/" in value or any(c.isspace() for c in value):
            raise InvalidInputError(f"'{name}' contains invalid characters", parameter=name)

    validate_audience(federation_scope, parameter="fedScope")
    validate_audience(scope, parameter="scope")


def parse_expires_in(value: Any) -> int:
    """Parse the expires_in field, which some endpoints send as a string.

    Raises:
        ValueError: If the value is not a non-negative integer
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid expires_in: {value!r}")
    seconds = int(value)
    if seconds < 0:
        raise ValueError(f"negative expires_in: {seconds}")
    return seconds


class TokenExchangeClient:
    """Acquires application tokens with a lazily generated client assertion.

    Features:
    - Cache keyed by (client_id, tenant_id, scope), checked before anything else
    - The assertion callback only runs on a cache miss
    - At most one in-flight grant request per key
    - Provider errors surfaced verbatim, never retried
    - A rejected grant discards the assertion it was made with
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        assertion: AssertionCallback,
        invalidate_assertion: InvalidateCallback | None = None,
        authority_host: str = DEFAULT_AUTHORITY_HOST,
        refresh_margin_seconds: float = 0,
        max_entries: int = 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the exchange client.

        Args:
            http_client: Shared HTTP client for token endpoint requests
            assertion: Async callable producing a client assertion for an audience
            invalidate_assertion: Drops a cached assertion for an audience (optional)
            authority_host: Cloud instance base URL
            refresh_margin_seconds: Refetch application tokens this long before expiry
            max_entries: Maximum number of cached application tokens
            clock: Source of the current UTC time
        """
        self._http_client = http_client
        self._assertion = assertion
        self._invalidate_assertion = invalidate_assertion
        self._authority_host = authority_host
        self._clock = clock
        self._cache: TokenCache[TokenKey, ApplicationToken] = TokenCache(
            stage="grant",
            refresh_margin_seconds=refresh_margin_seconds,
            max_entries=max_entries,
            clock=clock,
        )

    async def acquire_token(
        self,
        client_id: str,
        tenant_id: str,
        federation_scope: str,
        scope: str,
        timeout: float | None = None,
    ) -> ApplicationToken:
        """Acquire an application token for the target scope.

        Args:
            client_id: Client ID of the application with the federated credential
            tenant_id: Tenant to request the token in
            federation_scope: Audience of the managed identity token used as assertion
            scope: Scope the application token is requested for
            timeout: Give up after this many seconds (optional)

        Returns:
            Live ApplicationToken, from cache when possible

        Raises:
            InvalidInputError: If a parameter is missing or malformed
            IdentityUnavailableError: If the client assertion cannot be obtained
            GrantRejectedError: If the tenant rejects the grant
            TransportError: If the token endpoint cannot be reached
            RequestCancelledError: If the timeout elapses first
        """
        validate_exchange_request(client_id, tenant_id, federation_scope, scope)

        key: TokenKey = (client_id, tenant_id, scope)

        try:
            return await asyncio.wait_for(
                self._cache.get_or_fetch(
                    key,
                    lambda: self._request_token(client_id, tenant_id, federation_scope, scope),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Token request for client {client_id} in tenant {tenant_id} timed out")
            raise RequestCancelledError(f"Token request timed out after {timeout}s") from e

    def get_cached_token(self, client_id: str, tenant_id: str, scope: str) -> ApplicationToken | None:
        """Return a live cached token without any network activity."""
        return self._cache.get((client_id, tenant_id, scope))

    async def _request_token(
        self,
        client_id: str,
        tenant_id: str,
        federation_scope: str,
        scope: str,
    ) -> ApplicationToken:
        """Run the client credentials grant for one key."""
        token_url = build_token_endpoint(self._authority_host, tenant_id)

        try:
            assertion = await self._assertion(federation_scope)
        except ExchangeError:
            raise
        except Exception as e:
            raise IdentityUnavailableError(
                f"Client assertion could not be obtained: {e}", audience=federation_scope
            ) from e

        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "scope": scope,
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": assertion.value,
        }

        logger.info(
            f"Requesting token for client {client_id} in tenant {tenant_id} (scope={scope})"
        )

        try:
            response = await self._http_client.post(
                token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            logger.error(f"Token endpoint {token_url} timed out")
            raise TransportError(f"Timeout requesting token from {token_url}") from e
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint {token_url} unreachable: {e}")
            raise TransportError(f"Network error requesting token from {token_url}: {e}") from e

        received_at = self._clock()

        if response.status_code != 200:
            error = self._grant_error(response, client_id, tenant_id)
            if isinstance(error, GrantRejectedError) and self._invalidate_assertion is not None:
                # A retry after a rejection mints a new assertion
                self._invalidate_assertion(federation_scope)
            raise error

        try:
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = parse_expires_in(payload["expires_in"])
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(f"Malformed token response from {token_url}: {e}") from e

        token = ApplicationToken(
            value=access_token,
            expires_at=received_at + timedelta(seconds=expires_in),
            scope=payload.get("scope") or scope,
            tenant_id=tenant_id,
            client_id=client_id,
            token_type=payload.get("token_type", "Bearer"),
        )

        logger.info(
            f"Acquired token for client {client_id} in tenant {tenant_id}, expires in {expires_in}s"
        )
        return token

    def _grant_error(self, response: httpx.Response, client_id: str, tenant_id: str) -> ExchangeError:
        """Translate a non-200 token endpoint response into an error."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict) or not body.get("error"):
            logger.error(
                f"Token endpoint returned HTTP {response.status_code} without an OAuth error body"
            )
            return TransportError(
                f"Token endpoint returned HTTP {response.status_code} for tenant {tenant_id}"
            )

        error = GrantRejectedError(
            message=f"Token request rejected for client {client_id} in tenant {tenant_id}",
            error_code=body["error"],
            error_description=body.get("error_description"),
            upstream_status=response.status_code,
            error_codes=body.get("error_codes"),
            correlation_id=body.get("correlation_id"),
            trace_id=body.get("trace_id"),
        )
        logger.error(
            f"Token request rejected: {error.error_code} (HTTP {response.status_code}, "
            f"correlation_id={error.correlation_id})"
        )
        return error

    def stats(self) -> CacheStats:
        """Cache statistics."""
        return self._cache.stats()
