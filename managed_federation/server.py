"""FastAPI application factory and server setup."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.openapi.utils import get_openapi

from managed_federation.auth.local import FunctionKeyMiddleware
from managed_federation.config import AppConfig
from managed_federation.errors import ExchangeError
from managed_federation.routes.health import router as health_router
from managed_federation.routes.tokens import router as tokens_router
from managed_federation.state import AppState


logger = logging.getLogger(__name__)


def create_app(config: AppConfig, state: AppState | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Application configuration
        state: Pre-built state container, mainly for tests (optional)

    Returns:
        Configured FastAPI application
    """
    if state is None:
        state = AppState(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        logger.info("Starting managed identity federation broker...")
        await state.start()
        logger.info(f"Token endpoint authority: {config.identity.authority_host}")

        yield

        logger.info("Shutting down managed identity federation broker...")
        await state.close()

    app = FastAPI(
        title="Managed Identity Federation Broker",
        description="Issues app tokens using a managed identity token as federated client credential.\n\n"
                    "**Authentication**: pass the function key as `?code=` or the `x-functions-key` header.",
        version="0.1.0",
        lifespan=lifespan,
    )

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )

        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "function_key": {
                "type": "apiKey",
                "in": "query",
                "name": "code",
                "description": "Function key (from local.yaml)",
            }
        }

        for path, methods in openapi_schema.get("paths", {}).items():
            if path not in FunctionKeyMiddleware.PUBLIC_ROUTES:
                for method in methods.values():
                    if isinstance(method, dict):
                        method["security"] = [{"function_key": []}]

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi

    app.state.app_state = state

    function_key_middleware = FunctionKeyMiddleware(config.local.function_key)

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        return await function_key_middleware(request, call_next)

    @app.exception_handler(ExchangeError)
    async def exchange_error_handler(request: Request, exc: ExchangeError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(health_router)   # Public, no auth
    app.include_router(tokens_router)   # Requires function key

    @app.api_route(
        "/{path:path}",
        methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"],
        include_in_schema=False,
    )
    async def catch_all(request: Request, path: str):
        """Catch-all handler for unknown endpoints."""
        supported_endpoints = [
            "GET /health - Health check (no auth)",
            "GET /metrics - Token cache metrics (no auth)",
            "GET|POST /api/GetAppTokenUsingManagedIdentity?clientId=&tenantId=&fedScope=&scope=",
            "GET|POST /api/GetAppTokenUsingManagedIdentityWithLib?clientId=&tenantId=&fedScope=&scope=",
            "GET|POST /api/GetManagedIdentityToken?scope=",
        ]

        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Endpoint '/{path}' is not supported by this service.",
                "supported_endpoints": supported_endpoints,
            },
        )

    return app
