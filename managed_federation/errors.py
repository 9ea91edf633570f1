"""Error types raised by the federated token exchange."""

from typing import Any


class ExchangeError(Exception):
    """Base class for every failure surfaced by the token exchange.

    Attributes:
        error: Stable machine-readable error kind
        stage: Which step failed ("input", "assertion" or "grant")
        status_code: HTTP status used when the error reaches a caller
    """

    error: str = "exchange_error"
    status_code: int = 500

    def __init__(self, message: str, stage: str = "grant") -> None:
        self.message = message
        self.stage = stage
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable error body."""
        return {
            "error": self.error,
            "stage": self.stage,
            "message": self.message,
        }


class InvalidInputError(ExchangeError):
    """A required parameter is missing or malformed."""

    error = "invalid_input"
    status_code = 400

    def __init__(self, message: str, parameter: str | None = None) -> None:
        self.parameter = parameter
        super().__init__(message, stage="input")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.parameter:
            data["parameter"] = self.parameter
        return data


class IdentityUnavailableError(ExchangeError):
    """The managed identity endpoint is unreachable or returned an error."""

    error = "identity_unavailable"
    status_code = 500

    def __init__(self, message: str, audience: str | None = None) -> None:
        self.audience = audience
        super().__init__(message, stage="assertion")


class GrantRejectedError(ExchangeError):
    """The tenant token endpoint rejected the client credentials grant.

    Provider fields are kept verbatim so trust-configuration problems
    (e.g. a missing federated credential) can be diagnosed by the caller.
    """

    error = "grant_rejected"

    def __init__(
        self,
        message: str,
        error_code: str,
        error_description: str | None = None,
        upstream_status: int | None = None,
        error_codes: list[int] | None = None,
        correlation_id: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        self.error_code = error_code
        self.error_description = error_description
        self.upstream_status = upstream_status
        self.error_codes = error_codes or []
        self.correlation_id = correlation_id
        self.trace_id = trace_id
        super().__init__(message, stage="grant")

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.upstream_status and 400 <= self.upstream_status < 500:
            return self.upstream_status
        return 400

    def __str__(self) -> str:
        parts = [self.message, f"[{self.error_code}]"]
        if self.error_description:
            parts.append(f": {self.error_description}")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["error_code"] = self.error_code
        data["error_description"] = self.error_description
        if self.error_codes:
            data["error_codes"] = self.error_codes
        if self.correlation_id:
            data["correlation_id"] = self.correlation_id
        if self.trace_id:
            data["trace_id"] = self.trace_id
        return data


class TransportError(ExchangeError):
    """Network-level failure reaching the tenant token endpoint."""

    error = "transport_error"
    status_code = 500

    def __init__(self, message: str, stage: str = "grant") -> None:
        super().__init__(message, stage=stage)


class RequestCancelledError(ExchangeError):
    """The caller cancelled or timed out while a fetch was outstanding."""

    error = "cancelled"
    status_code = 504

    def __init__(self, message: str = "Token request was cancelled", stage: str = "grant") -> None:
        super().__init__(message, stage=stage)
