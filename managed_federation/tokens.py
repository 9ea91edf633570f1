"""Token value types shared by the assertion provider and exchange client."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    """Raw token returned by an identity provider."""

    token: str
    expires_in: float


@dataclass(frozen=True)
class ManagedIdentityToken:
    """Bearer token issued to the managed identity for a single audience."""

    value: str
    expires_at: datetime
    audience: str

    def is_expired(self, now: datetime, margin_seconds: float = 0) -> bool:
        """Check if the token is expired, or will be within the margin.

        Args:
            now: Reference time
            margin_seconds: Treat the token as expired this many seconds early

        Returns:
            True if the token must not be served
        """
        return now >= self.expires_at - timedelta(seconds=margin_seconds)


@dataclass(frozen=True)
class ClientAssertion(ManagedIdentityToken):
    """Managed identity token presented as a signed client assertion.

    Its audience is the federation scope, never the target scope.
    """

    @classmethod
    def from_token(cls, token: ManagedIdentityToken) -> "ClientAssertion":
        return cls(value=token.value, expires_at=token.expires_at, audience=token.audience)


@dataclass(frozen=True)
class ApplicationToken:
    """Access token issued to the federated application."""

    value: str
    expires_at: datetime
    scope: str
    tenant_id: str
    client_id: str
    token_type: str = "Bearer"

    def is_expired(self, now: datetime, margin_seconds: float = 0) -> bool:
        return now >= self.expires_at - timedelta(seconds=margin_seconds)

    def expires_in(self, now: datetime) -> int:
        """Seconds of validity left, never negative."""
        return max(0, int((self.expires_at - now).total_seconds()))
