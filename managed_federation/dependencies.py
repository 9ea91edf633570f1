"""Dependency injection utilities for FastAPI routes."""

from typing import TYPE_CHECKING

from fastapi import Request

from managed_federation.auth.assertion import AssertionProvider
from managed_federation.auth.exchange import TokenExchangeClient

if TYPE_CHECKING:
    from managed_federation.state import AppState


async def get_app_state(request: Request) -> "AppState":
    """Get the application state container."""
    return request.app.state.app_state


async def get_exchange_client(request: Request) -> TokenExchangeClient:
    """Get the shared token exchange client.

    Args:
        request: FastAPI request object

    Returns:
        TokenExchangeClient instance from app state
    """
    return request.app.state.app_state.exchange_client


async def get_assertion_provider(request: Request) -> AssertionProvider:
    """Get the shared managed identity assertion provider."""
    return request.app.state.app_state.assertion_provider
