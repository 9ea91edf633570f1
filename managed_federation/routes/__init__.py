"""Routes package for the federation broker."""

from managed_federation.routes.health import router as health_router
from managed_federation.routes.tokens import router as tokens_router

__all__ = ["health_router", "tokens_router"]
