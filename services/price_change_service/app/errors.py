"""Error taxonomy for price change lifecycle operations."""

from __future__ import annotations

from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse


class PriceChangeError(Exception):
    """Base error carrying the error kind and HTTP status surfaced to callers."""

    kind = "InternalError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str | None = None

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message or self.kind)

    def to_payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": False, "error": self.kind}
        if self.message:
            body["message"] = self.message
        if self.details is not None:
            body["details"] = self.details
        return body


class ProjectRequired(PriceChangeError):
    kind = "ProjectRequired"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "X-Calibr-Project header is required."


class BadRequest(PriceChangeError):
    kind = "BadRequest"
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(PriceChangeError):
    kind = "Unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(PriceChangeError):
    kind = "Forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Price change does not belong to this project."


class NotFound(PriceChangeError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Price change not found."


class PriceNotFound(NotFound):
    kind = "PriceNotFound"
    default_message = "Price record not found for this SKU and currency."


class InvalidStatus(PriceChangeError):
    kind = "InvalidStatus"
    status_code = status.HTTP_400_BAD_REQUEST


class PolicyViolation(PriceChangeError):
    kind = "PolicyViolation"
    status_code = 422
    default_message = "Policy checks failed for this price change."


class MissingVariant(PriceChangeError):
    kind = "MissingVariant"
    status_code = 422
    default_message = "No platform variant identifier could be resolved for this price change."


class IntegrationMissing(PriceChangeError):
    kind = "IntegrationMissing"
    status_code = status.HTTP_409_CONFLICT
    default_message = "No active platform integration is configured for this project."


class ConnectorUnavailable(PriceChangeError):
    kind = "ConnectorUnavailable"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Platform connector could not be initialized."


class ConnectorError(PriceChangeError):
    kind = "ConnectorError"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Platform connector reported an error."

    @property
    def retryable(self) -> bool:
        return bool((self.details or {}).get("retryable"))


class InternalError(PriceChangeError):
    kind = "InternalError"
    default_message = "Failed to apply price change."


class RollbackFailed(PriceChangeError):
    kind = "RollbackFailed"
    default_message = "Failed to rollback price change."


async def price_change_error_handler(_request: Request, exc: PriceChangeError) -> JSONResponse:
    """Render :class:`PriceChangeError` as ``{ok: false, error, message?, details?}``."""

    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
