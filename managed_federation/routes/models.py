"""Pydantic models for API documentation and responses."""

from datetime import datetime

from pydantic import BaseModel, Field

from managed_federation.tokens import ApplicationToken, ManagedIdentityToken


class AppTokenResponse(BaseModel):
    """Application token acquired with a federated managed identity assertion."""

    access_token: str = Field(..., description="Access token for the requested scope")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_on: datetime = Field(..., description="Absolute expiry time (UTC)")
    expires_in: int = Field(..., description="Seconds until the token expires")
    scope: str = Field(..., description="Scope the token was granted for")
    tenant_id: str = Field(..., description="Tenant the token was issued in")
    client_id: str = Field(..., description="Client ID of the application")

    @classmethod
    def from_token(cls, token: ApplicationToken, now: datetime) -> "AppTokenResponse":
        return cls(
            access_token=token.value,
            token_type=token.token_type,
            expires_on=token.expires_at,
            expires_in=token.expires_in(now),
            scope=token.scope,
            tenant_id=token.tenant_id,
            client_id=token.client_id,
        )


class ManagedIdentityTokenResponse(BaseModel):
    """Token issued to the managed identity itself."""

    token: str = Field(..., description="Access token for the requested scope")
    expires_on: datetime = Field(..., description="Absolute expiry time (UTC)")
    audience: str = Field(..., description="Scope the token was requested for")

    @classmethod
    def from_token(cls, token: ManagedIdentityToken) -> "ManagedIdentityTokenResponse":
        return cls(token=token.value, expires_on=token.expires_at, audience=token.audience)


class ErrorResponse(BaseModel):
    """Error returned when a token cannot be issued."""

    error: str = Field(..., description="Error kind, e.g. grant_rejected")
    stage: str = Field(..., description="Failed step: input, assertion or grant")
    message: str
    error_code: str | None = Field(None, description="OAuth error code from the token endpoint")
    parameter: str | None = Field(None, description="Offending query parameter, for invalid_input")
    error_description: str | None = Field(None, description="Error description from the token endpoint")
    correlation_id: str | None = None
    error_codes: list[int] | None = Field(None, description="Numeric AADSTS error codes")
    trace_id: str | None = None
