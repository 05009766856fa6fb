# errors.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PROVIDER_FAILURE = "PROVIDER_ERROR"
    NOT_FOUND = "NOT_FOUND"


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.QUOTA_EXCEEDED: 503,
    ErrorKind.PROVIDER_FAILURE: 503,
    ErrorKind.NOT_FOUND: 404,
}

INTERNAL_ERROR_CODE = "INTERNAL_SERVER_ERROR"


class GatewayError(Exception):
    """
    Base of every error the gateway raises on purpose.

    Subclasses fix the kind; the kind fixes the HTTP status and the stable code.
    Instances are never mutated after construction and never re-wrapped by
    callers higher up (the first classification is the one the client sees).
    """

    kind: ErrorKind = ErrorKind.PROVIDER_FAILURE

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def provider(self) -> Optional[str]:
        return self.details.get("provider")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "statusCode": self.status_code,
            "details": dict(self.details),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, details={self.details!r})"


class ValidationFailed(GatewayError):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, fields: List[str] | None = None):
        super().__init__(message, {"fields": list(fields or [])})

    @property
    def fields(self) -> List[str]:
        return list(self.details["fields"])


class Unauthorized(GatewayError):
    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class InsufficientCredits(GatewayError):
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, required: int = 1, available: int | None = None):
        details: Dict[str, Any] = {"required": required}
        if available is not None:
            details["available"] = available
        super().__init__("You don't have enough credits", details)


class ProviderError(GatewayError):
    """
    Failure reported by (or while talking to) an upstream provider.

    ``upstream_status`` and ``upstream_code`` are kept for diagnostics only.
    """

    kind = ErrorKind.PROVIDER_FAILURE

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        upstream_status: int | None = None,
        upstream_code: str | None = None,
        auth_problem: bool = False,
    ):
        details: Dict[str, Any] = {"provider": provider}
        if upstream_status is not None:
            details["upstreamStatus"] = upstream_status
        if upstream_code:
            details["upstreamCode"] = upstream_code
        if auth_problem:
            details["reason"] = "provider_authentication"
        super().__init__(message, details)


class RateLimited(ProviderError):
    kind = ErrorKind.RATE_LIMITED


class QuotaExceeded(ProviderError):
    kind = ErrorKind.QUOTA_EXCEEDED


class ResourceNotFound(ProviderError):
    kind = ErrorKind.NOT_FOUND


def classify_upstream_error(
    provider: str,
    *,
    status: int | None,
    message: str,
    code: str | None = None,
    quota_signal: bool = False,
    not_found_applies: bool = False,
    label: str | None = None,
) -> ProviderError:
    """
    Map an upstream failure onto the taxonomy.

    Order: quota signal, 429, 401, 404 (image/voice adapters only), anything else.
    Quota wins over 429 because some providers send both at once.
    """
    name = label or provider
    extra = {"upstream_status": status, "upstream_code": code}
    if quota_signal:
        return QuotaExceeded(provider, f"{name} quota exceeded", **extra)
    if status == 429:
        return RateLimited(provider, f"{name} rate limit exceeded", **extra)
    if status == 401:
        return ProviderError(provider, f"Invalid {name} API key", auth_problem=True, **extra)
    if status == 404 and not_found_applies:
        return ResourceNotFound(provider, message or f"{name} resource not found", **extra)
    return ProviderError(provider, message or f"{name} request failed", **extra)
