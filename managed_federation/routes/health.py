"""Health and metrics endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from managed_federation.auth.assertion import AssertionProvider
from managed_federation.auth.exchange import TokenExchangeClient
from managed_federation.dependencies import get_assertion_provider, get_exchange_client


router = APIRouter(tags=["Health & Metrics"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    timestamp: str


class CacheMetrics(BaseModel):
    """Counters for one token cache."""

    size: int = Field(..., description="Number of cached tokens")
    hits: int
    misses: int
    fetches: int = Field(..., description="Network fetches started")
    evictions: int
    in_flight: int = Field(..., description="Fetches currently outstanding")


class MetricsResponse(BaseModel):
    """Token cache metrics response."""

    assertion_cache: CacheMetrics
    token_cache: CacheMetrics


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns 200 OK if server is running. No authentication required.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint. No authentication required."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    summary="Cache metrics",
    description="Returns managed identity and application token cache counters. No authentication required.",
)
async def get_metrics(
    assertion_provider: AssertionProvider = Depends(get_assertion_provider),
    exchange_client: TokenExchangeClient = Depends(get_exchange_client),
) -> MetricsResponse:
    """Get token cache metrics."""
    return MetricsResponse(
        assertion_cache=CacheMetrics(**assertion_provider.stats().to_dict()),
        token_cache=CacheMetrics(**exchange_client.stats().to_dict()),
    )
