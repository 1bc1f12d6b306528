"""Error taxonomy surfaced by the discovery core."""

from __future__ import annotations

from typing import Any


class DiscoveryError(Exception):
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return {"error": payload}


class ValidationError(DiscoveryError):
    """Malformed or out-of-range query parameters. Never retried."""

    code = "VALIDATION_ERROR"


class NotFound(DiscoveryError):
    """An address or point has no resolvable geocode result."""

    code = "NOT_FOUND"


class ProviderUnavailable(DiscoveryError):
    """Every geocode provider failed or timed out."""

    code = "GEOCODING_SERVICE_ERROR"


class StoreError(DiscoveryError):
    """The persisted store query failed."""

    code = "STORE_ERROR"
