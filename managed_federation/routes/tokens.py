"""Token endpoints, compatible with the Azure Functions routes they replace."""

import logging

from fastapi import APIRouter, Depends, Query

from managed_federation.audit.writer import AuditEntry
from managed_federation.auth.exchange import TokenExchangeClient
from managed_federation.auth.library import MsalExchangeClient
from managed_federation.dependencies import get_app_state
from managed_federation.errors import ExchangeError, GrantRejectedError
from managed_federation.routes.models import AppTokenResponse, ErrorResponse, ManagedIdentityTokenResponse
from managed_federation.state import AppState


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Tokens"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing parameter or grant rejected by the tenant"},
    401: {"model": ErrorResponse, "description": "Grant rejected by the tenant"},
    500: {"model": ErrorResponse, "description": "Managed identity or token endpoint unavailable"},
    504: {"model": ErrorResponse, "description": "Token request timed out"},
}


async def record(state: AppState, entry: AuditEntry, error: ExchangeError | None = None) -> None:
    """Complete an audit entry and queue it."""
    now = state.clock()
    entry.duration_ms = int((now - entry.timestamp).total_seconds() * 1000)

    if error is not None:
        entry.status_code = error.status_code
        entry.error = error.error
        entry.stage = error.stage
        if isinstance(error, GrantRejectedError):
            entry.error_code = error.error_code
            entry.correlation_id = error.correlation_id

    if state.audit_writer is not None:
        await state.audit_writer.write(entry)


async def _get_app_token(
    state: AppState,
    client: TokenExchangeClient | MsalExchangeClient,
    endpoint: str,
    client_id: str | None,
    tenant_id: str | None,
    fed_scope: str | None,
    scope: str | None,
) -> AppTokenResponse:
    entry = AuditEntry(
        timestamp=state.clock(),
        endpoint=endpoint,
        client_id=client_id,
        tenant_id=tenant_id,
        federation_scope=fed_scope,
        scope=scope,
    )

    try:
        token = await client.acquire_token(
            client_id=client_id,
            tenant_id=tenant_id,
            federation_scope=fed_scope,
            scope=scope,
            timeout=state.config.identity.request_timeout_seconds,
        )
    except ExchangeError as e:
        logger.warning(f"App token request failed at {e.stage} stage: {e}")
        await record(state, entry, error=e)
        raise

    entry.expires_at = token.expires_at
    await record(state, entry)
    return AppTokenResponse.from_token(token, state.clock())


@router.api_route(
    "/GetAppTokenUsingManagedIdentity",
    methods=["GET", "POST"],
    response_model=AppTokenResponse,
    responses=ERROR_RESPONSES,
    summary="Get app token using managed identity",
    description="Get an app token using a token from the managed identity as client credential.",
)
async def get_app_token_using_managed_identity(
    client_id: str | None = Query(
        None, alias="clientId",
        description="The client ID of the app where the federated credential is configured",
    ),
    tenant_id: str | None = Query(
        None, alias="tenantId",
        description="The tenant where the app is granted access, can differ from the current tenant",
    ),
    fed_scope: str | None = Query(
        None, alias="fedScope",
        description="The scope of the managed identity token used as federated credential",
    ),
    scope: str | None = Query(None, description="The scope to request the app token for"),
    state: AppState = Depends(get_app_state),
) -> AppTokenResponse:
    return await _get_app_token(
        state,
        state.exchange_client,
        "/api/GetAppTokenUsingManagedIdentity",
        client_id,
        tenant_id,
        fed_scope,
        scope,
    )


@router.api_route(
    "/GetAppTokenUsingManagedIdentityWithLib",
    methods=["GET", "POST"],
    response_model=AppTokenResponse,
    responses=ERROR_RESPONSES,
    summary="Get app token using managed identity (MSAL)",
    description="Same flow as /api/GetAppTokenUsingManagedIdentity, with the grant run by MSAL.",
)
async def get_app_token_using_managed_identity_with_lib(
    client_id: str | None = Query(None, alias="clientId"),
    tenant_id: str | None = Query(None, alias="tenantId"),
    fed_scope: str | None = Query(None, alias="fedScope"),
    scope: str | None = Query(None),
    state: AppState = Depends(get_app_state),
) -> AppTokenResponse:
    return await _get_app_token(
        state,
        state.msal_client,
        "/api/GetAppTokenUsingManagedIdentityWithLib",
        client_id,
        tenant_id,
        fed_scope,
        scope,
    )


@router.api_route(
    "/GetManagedIdentityToken",
    methods=["GET", "POST"],
    response_model=ManagedIdentityTokenResponse,
    responses=ERROR_RESPONSES,
    summary="Get managed identity token",
    description="An access token for the managed identity itself, in the local tenant.",
)
async def get_managed_identity_token(
    scope: str | None = Query(None, description="The scope to request a token for"),
    state: AppState = Depends(get_app_state),
) -> ManagedIdentityTokenResponse:
    logger.info(f"Requesting token for {scope} using managed identity")

    entry = AuditEntry(timestamp=state.clock(), endpoint="/api/GetManagedIdentityToken", scope=scope)

    try:
        token = await state.assertion_provider.get_managed_identity_token(
            scope, timeout=state.config.identity.request_timeout_seconds
        )
    except ExchangeError as e:
        logger.error(f"Error getting managed identity token: {e}")
        await record(state, entry, error=e)
        raise

    entry.expires_at = token.expires_at
    await record(state, entry)
    return ManagedIdentityTokenResponse.from_token(token)
