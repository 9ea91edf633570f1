"""Authentication package for the federation broker."""

from managed_federation.auth.assertion import AssertionProvider, IdentityProvider, ManagedIdentitySource
from managed_federation.auth.exchange import TokenExchangeClient, build_token_endpoint
from managed_federation.auth.library import MsalExchangeClient
from managed_federation.auth.local import FunctionKeyMiddleware, check_function_key

__all__ = [
    "AssertionProvider",
    "IdentityProvider",
    "ManagedIdentitySource",
    "TokenExchangeClient",
    "MsalExchangeClient",
    "build_token_endpoint",
    "FunctionKeyMiddleware",
    "check_function_key",
]
