"""Function key validation middleware."""

import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import SecretStr


def extract_function_key(request: Request) -> str | None:
    """Extract the function key from a request.

    Supports two formats, matching Azure Functions:
    1. 'code' query parameter
    2. 'x-functions-key' header

    Args:
        request: FastAPI request object

    Returns:
        Function key if found, None otherwise
    """
    key = request.query_params.get("code")
    if key:
        return key

    key = request.headers.get("x-functions-key")
    if key:
        return key

    return None


def check_function_key(request: Request, expected_key: SecretStr) -> JSONResponse | None:
    """Validate the function key of a request.

    Args:
        request: FastAPI request object
        expected_key: Configured function key

    Returns:
        None if valid, otherwise a 401 response to send back
    """
    key = extract_function_key(request)

    if not key:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={
                "error": "missing_function_key",
                "message": "Function key is required. Pass it as '?code=' or the 'x-functions-key' header.",
            },
        )

    if not secrets.compare_digest(key.encode(), expected_key.get_secret_value().encode()):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={
                "error": "invalid_function_key",
                "message": "Invalid function key.",
            },
        )

    return None


class FunctionKeyMiddleware:
    """Middleware for validating the function key on protected routes.

    Usage:
        @app.middleware("http")
        async def function_key_middleware(request: Request, call_next):
            return await FunctionKeyMiddleware(config.local.function_key)(request, call_next)
    """

    # Routes that don't require authentication
    PUBLIC_ROUTES = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, function_key: SecretStr) -> None:
        self._function_key = function_key

    def is_public_route(self, path: str) -> bool:
        """Check if route is public (no auth required)."""
        return path in self.PUBLIC_ROUTES

    async def __call__(self, request: Request, call_next):
        """Process request, validating the function key for protected routes."""
        if self.is_public_route(request.url.path):
            return await call_next(request)

        rejection = check_function_key(request, self._function_key)
        if rejection is not None:
            return rejection

        return await call_next(request)
