"""Process-wide application state."""

import logging
from datetime import datetime
from typing import Callable

import httpx

from managed_federation.audit.writer import AuditWriter
from managed_federation.auth.assertion import AssertionProvider, IdentityProvider, ManagedIdentitySource
from managed_federation.auth.exchange import TokenExchangeClient
from managed_federation.auth.library import AppFactory, MsalExchangeClient
from managed_federation.config import AppConfig
from managed_federation.tokens import utcnow


logger = logging.getLogger(__name__)


class AppState:
    """Application state container.

    Holds the HTTP client, identity source and token caches shared by all
    requests. Built once per process and closed on shutdown.
    """

    def __init__(
        self,
        config: AppConfig,
        identity: IdentityProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
        msal_app_factory: AppFactory | None = None,
    ) -> None:
        """Initialize shared state.

        Args:
            config: Application configuration
            identity: Managed identity token source (default: ManagedIdentitySource)
            http_client: Client for the token endpoint (default: new AsyncClient)
            clock: Source of the current UTC time
            msal_app_factory: Builds MSAL application objects (default: ConfidentialClientApplication)
        """
        self.config = config
        self.clock = clock

        identity_config = config.identity

        if http_client is None:
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(identity_config.http_timeout_seconds),
            )
        self.http_client = http_client

        if identity is None:
            identity = ManagedIdentitySource(client_id=identity_config.managed_identity_client_id)
        self.identity = identity

        self.assertion_provider = AssertionProvider(
            identity,
            refresh_margin_seconds=identity_config.assertion_refresh_margin_seconds,
            max_entries=identity_config.max_cached_tokens,
            clock=clock,
        )

        # The assertion callback only runs when a grant request is built
        self.exchange_client = TokenExchangeClient(
            http_client,
            self.assertion_provider.get_assertion,
            invalidate_assertion=self.assertion_provider.invalidate,
            authority_host=identity_config.authority_host,
            refresh_margin_seconds=identity_config.token_refresh_margin_seconds,
            max_entries=identity_config.max_cached_tokens,
            clock=clock,
        )

        self.msal_client = MsalExchangeClient(
            self.assertion_provider,
            authority_host=identity_config.authority_host,
            max_apps=identity_config.max_cached_tokens,
            http_timeout_seconds=identity_config.http_timeout_seconds,
            clock=clock,
            app_factory=msal_app_factory,
        )

        self.audit_writer: AuditWriter | None = None
        if config.audit.enabled:
            self.audit_writer = AuditWriter(
                directory=config.audit.directory,
                batch_size=config.audit.batch_size,
                batch_timeout=config.audit.batch_timeout,
            )

    async def start(self) -> None:
        """Start background tasks."""
        if self.audit_writer is not None:
            await self.audit_writer.start()

    async def close(self) -> None:
        """Flush the audit log and release network resources."""
        if self.audit_writer is not None:
            await self.audit_writer.stop()

        await self.http_client.aclose()

        close = getattr(self.identity, "close", None)
        if close is not None:
            await close()

        logger.info("Application state closed")
