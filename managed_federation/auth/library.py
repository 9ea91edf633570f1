"""Federated client credentials exchange through MSAL.

Same flow as TokenExchangeClient, but the grant request, its parsing and the
application token cache belong to msal.ConfidentialClientApplication. The
client assertion is a callable that MSAL invokes only when it needs a new
token, backed by the shared AssertionProvider.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable

import msal

from managed_federation.auth.assertion import AssertionProvider
from managed_federation.auth.exchange import DEFAULT_AUTHORITY_HOST, parse_expires_in, validate_exchange_request
from managed_federation.errors import ExchangeError, GrantRejectedError, RequestCancelledError, TransportError
from managed_federation.tokens import ApplicationToken, utcnow


logger = logging.getLogger(__name__)

# (client_id, authority, client_assertion) -> object with acquire_token_for_client
AppFactory = Callable[[str, str, Callable[[], str]], Any]

AppKey = tuple[str, str, str]


class MsalExchangeClient:
    """Acquires application tokens with msal.ConfidentialClientApplication.

    One application object is kept per (client_id, tenant_id, federation_scope),
    least recently used first out. MSAL is synchronous, so every call into it
    runs in a worker thread.
    """

    def __init__(
        self,
        assertion_provider: AssertionProvider,
        authority_host: str = DEFAULT_AUTHORITY_HOST,
        max_apps: int = 1024,
        http_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        app_factory: AppFactory | None = None,
    ) -> None:
        """Initialize the MSAL exchange client.

        Args:
            assertion_provider: Source of managed identity client assertions
            authority_host: Cloud instance base URL
            max_apps: Maximum number of cached application objects
            http_timeout_seconds: Timeout for MSAL's HTTP requests
            clock: Source of the current UTC time
            app_factory: Builds application objects (default: ConfidentialClientApplication)
        """
        self._assertion_provider = assertion_provider
        self._authority_host = authority_host.rstrip("/")
        self._max_apps = max_apps
        self._http_timeout = http_timeout_seconds
        self._clock = clock
        self._app_factory = app_factory or self._build_app
        self._apps: OrderedDict[AppKey, Any] = OrderedDict()

    def _build_app(self, client_id: str, authority: str, client_assertion: Callable[[], str]) -> Any:
        return msal.ConfidentialClientApplication(
            client_id,
            authority=authority,
            client_credential={"client_assertion": client_assertion},
            timeout=self._http_timeout,
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

        Same arguments, result and errors as TokenExchangeClient.acquire_token.
        MSAL does not report the HTTP status of a rejection, so rejected
        grants carry status 400.
        """
        validate_exchange_request(client_id, tenant_id, federation_scope, scope)

        try:
            return await asyncio.wait_for(
                self._acquire(client_id, tenant_id, federation_scope, scope),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"MSAL token request for client {client_id} in tenant {tenant_id} timed out")
            raise RequestCancelledError(f"Token request timed out after {timeout}s") from e

    async def _acquire(
        self,
        client_id: str,
        tenant_id: str,
        federation_scope: str,
        scope: str,
    ) -> ApplicationToken:
        try:
            app = await self._get_app(client_id, tenant_id, federation_scope)
            result = await asyncio.to_thread(app.acquire_token_for_client, scopes=[scope])
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"MSAL token request for tenant {tenant_id} failed: {e}")
            raise TransportError(f"MSAL token request for tenant {tenant_id} failed: {e}") from e

        received_at = self._clock()

        if not result:
            raise TransportError(f"MSAL returned no result for tenant {tenant_id}")

        if "access_token" not in result:
            raise self._rejection(result, client_id, tenant_id, federation_scope)

        try:
            expires_in = parse_expires_in(result["expires_in"])
        except (KeyError, ValueError, TypeError) as e:
            raise TransportError(f"Malformed MSAL result for tenant {tenant_id}: {e}") from e

        logger.info(
            f"Acquired token for client {client_id} in tenant {tenant_id} via MSAL "
            f"(source={result.get('token_source', 'unknown')}, expires in {expires_in}s)"
        )

        return ApplicationToken(
            value=result["access_token"],
            expires_at=received_at + timedelta(seconds=expires_in),
            scope=scope,
            tenant_id=tenant_id,
            client_id=client_id,
            token_type=result.get("token_type", "Bearer"),
        )

    async def _get_app(self, client_id: str, tenant_id: str, federation_scope: str) -> Any:
        key: AppKey = (client_id, tenant_id, federation_scope)

        app = self._apps.get(key)
        if app is not None:
            self._apps.move_to_end(key)
            return app

        authority = f"{self._authority_host}/{tenant_id}"
        client_assertion = self._client_assertion(asyncio.get_running_loop(), federation_scope)

        # Construction runs authority discovery over the network
        app = await asyncio.to_thread(self._app_factory, client_id, authority, client_assertion)

        self._apps[key] = app
        while len(self._apps) > self._max_apps:
            self._apps.popitem(last=False)
        return app

    def _client_assertion(self, loop: asyncio.AbstractEventLoop, federation_scope: str) -> Callable[[], str]:
        """Build the callable MSAL invokes from its worker thread."""

        def client_assertion() -> str:
            future = asyncio.run_coroutine_threadsafe(
                self._assertion_provider.get_assertion(federation_scope), loop
            )
            return future.result().value

        return client_assertion

    def _rejection(
        self, result: dict, client_id: str, tenant_id: str, federation_scope: str
    ) -> ExchangeError:
        """Translate an MSAL error result."""
        if not result.get("error"):
            return TransportError(f"MSAL result for tenant {tenant_id} has neither token nor error")

        # A retry after a rejection mints a new assertion
        self._assertion_provider.invalidate(federation_scope)

        error = GrantRejectedError(
            message=f"Token request rejected for client {client_id} in tenant {tenant_id}",
            error_code=result["error"],
            error_description=result.get("error_description"),
            error_codes=result.get("error_codes"),
            correlation_id=result.get("correlation_id"),
            trace_id=result.get("trace_id"),
        )
        logger.error(
            f"MSAL token request rejected: {error.error_code} (correlation_id={error.correlation_id})"
        )
        return error

    def __len__(self) -> int:
        return len(self._apps)
