"""Managed identity assertion provider."""

import asyncio
import logging
import re
import time
from datetime import datetime, timedelta
from typing import Callable, Protocol

from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import CredentialUnavailableError
from azure.identity.aio import ManagedIdentityCredential

from managed_federation.cache import CacheStats, TokenCache
from managed_federation.errors import (
    ExchangeError,
    IdentityUnavailableError,
    InvalidInputError,
    RequestCancelledError,
)
from managed_federation.tokens import ClientAssertion, IssuedToken, ManagedIdentityToken, utcnow


logger = logging.getLogger(__name__)

# Refresh managed identity tokens 5 minutes before they expire
DEFAULT_REFRESH_MARGIN_SECONDS = 300

_WHITESPACE = re.compile(r"\s")


class IdentityProvider(Protocol):
    """Protocol for sources of managed identity tokens."""

    async def request_token(self, audience: str) -> IssuedToken:
        """Request a token for an audience.

        Args:
            audience: Scope or resource identifier the token is for

        Returns:
            IssuedToken with the raw token and its lifetime in seconds
        """
        ...


class ManagedIdentitySource:
    """Identity provider backed by the platform managed identity.

    Uses the system-assigned identity unless a user-assigned client ID is
    given. The credential is created once and reused for every request.
    """

    def __init__(
        self,
        client_id: str | None = None,
        credential: ManagedIdentityCredential | None = None,
    ) -> None:
        """Initialize the managed identity source.

        Args:
            client_id: Client ID of a user-assigned managed identity (optional)
            credential: Pre-built async credential, mainly for tests (optional)
        """
        if credential is None:
            if client_id:
                logger.info("Using user-assigned managed identity")
                credential = ManagedIdentityCredential(client_id=client_id)
            else:
                logger.info("Using system-assigned managed identity")
                credential = ManagedIdentityCredential()
        self._credential = credential

    async def request_token(self, audience: str) -> IssuedToken:
        """Request a token for the audience from the managed identity endpoint.

        Raises:
            IdentityUnavailableError: If no managed identity is reachable or it errors
        """
        try:
            access_token = await self._credential.get_token(audience)
        except CredentialUnavailableError as e:
            raise IdentityUnavailableError(
                f"Managed identity is not available on this host: {e}", audience=audience
            ) from e
        except ClientAuthenticationError as e:
            raise IdentityUnavailableError(
                f"Managed identity endpoint refused the token request: {e}", audience=audience
            ) from e
        except AzureError as e:
            raise IdentityUnavailableError(
                f"Managed identity endpoint failed: {e}", audience=audience
            ) from e

        return IssuedToken(
            token=access_token.token,
            expires_in=access_token.expires_on - time.time(),
        )

    async def close(self) -> None:
        """Close the underlying credential and its transport."""
        await self._credential.close()


def validate_audience(audience: str | None, parameter: str = "audience") -> str:
    """Check that an audience is a non-empty identifier without whitespace.

    Args:
        audience: Candidate scope or resource identifier
        parameter: Parameter name to report in the error

    Returns:
        The audience unchanged

    Raises:
        InvalidInputError: If the audience is missing or malformed
    """
    if not audience or not audience.strip():
        raise InvalidInputError(f"'{parameter}' is required", parameter=parameter)
    if _WHITESPACE.search(audience):
        raise InvalidInputError(
            f"'{parameter}' must be a single scope without whitespace", parameter=parameter
        )
    return audience


class AssertionProvider:
    """Produces client assertions from managed identity tokens.

    Tokens are cached per audience and refreshed shortly before expiry.
    Concurrent requests for the same audience share a single call to the
    identity provider.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        max_entries: int = 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the assertion provider.

        Args:
            identity: Source of managed identity tokens
            refresh_margin_seconds: Refetch tokens this long before they expire
            max_entries: Maximum number of cached audiences
            clock: Source of the current UTC time
        """
        self._identity = identity
        self._clock = clock
        self._cache: TokenCache[str, ManagedIdentityToken] = TokenCache(
            stage="assertion",
            refresh_margin_seconds=refresh_margin_seconds,
            max_entries=max_entries,
            clock=clock,
        )

    async def get_managed_identity_token(
        self, audience: str, timeout: float | None = None
    ) -> ManagedIdentityToken:
        """Get a managed identity token for the audience.

        Args:
            audience: Scope or resource identifier
            timeout: Give up after this many seconds (optional)

        Returns:
            Live ManagedIdentityToken, from cache when possible

        Raises:
            InvalidInputError: If the audience is missing or malformed
            IdentityUnavailableError: If the identity provider fails
            RequestCancelledError: If the timeout elapses first
        """
        validate_audience(audience)

        try:
            return await asyncio.wait_for(
                self._cache.get_or_fetch(audience, lambda: self._fetch(audience)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Managed identity token request for {audience} timed out")
            raise RequestCancelledError(
                f"Managed identity token request timed out after {timeout}s", stage="assertion"
            ) from e

    async def get_assertion(self, audience: str, timeout: float | None = None) -> ClientAssertion:
        """Get a client assertion for the federation audience.

        Same contract as get_managed_identity_token, typed as an assertion.
        """
        token = await self.get_managed_identity_token(audience, timeout=timeout)
        return ClientAssertion.from_token(token)

    async def _fetch(self, audience: str) -> ManagedIdentityToken:
        logger.info(f"Requesting managed identity token for {audience}")

        try:
            issued = await self._identity.request_token(audience)
        except ExchangeError:
            raise
        except Exception as e:
            raise IdentityUnavailableError(
                f"Managed identity token request failed: {e}", audience=audience
            ) from e

        # Expiry counts from receipt of the token, not from the request
        expires_at = self._clock() + timedelta(seconds=issued.expires_in)
        logger.debug(f"Acquired managed identity token for {audience}, expires at {expires_at.isoformat()}")

        return ManagedIdentityToken(value=issued.token, expires_at=expires_at, audience=audience)

    def invalidate(self, audience: str) -> None:
        """Forget the cached token for an audience."""
        self._cache.invalidate(audience)

    def stats(self) -> CacheStats:
        """Cache statistics."""
        return self._cache.stats()
