from __future__ import annotations

from enum import Enum
from typing import ClassVar, TypedDict


class GatewayErrorKind(str, Enum):
    NO_ACCOUNTS_CONFIGURED = "no_accounts_configured"
    QUOTA_EXHAUSTED = "quota_exhausted"
    QUOTA_ROTATION_EXHAUSTED = "quota_rotation_exhausted"
    UPSTREAM_ERROR = "upstream_error"
    PERMISSION_DENIED = "permission_denied"
    REFRESH_ERROR = "refresh_error"
    LOOKUP_ERROR = "lookup_error"


class GatewayErrorDetail(TypedDict, total=False):
    message: str
    type: str
    code: str
    status: int


class GatewayErrorEnvelope(TypedDict):
    error: GatewayErrorDetail


class GatewayError(Exception):
    kind: ClassVar[GatewayErrorKind]
    # HTTP status the gateway answers with when this error ends a request.
    http_status: ClassVar[int] = 500

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class NoAccountsConfigured(GatewayError):
    kind = GatewayErrorKind.NO_ACCOUNTS_CONFIGURED
    http_status = 503


class QuotaExhausted(GatewayError):
    kind = GatewayErrorKind.QUOTA_EXHAUSTED
    http_status = 503


class QuotaRotationExhausted(GatewayError):
    kind = GatewayErrorKind.QUOTA_ROTATION_EXHAUSTED
    http_status = 503

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Tried {attempts} accounts, all of them report exhausted quota")
        self.attempts = attempts


class UpstreamError(GatewayError):
    kind = GatewayErrorKind.UPSTREAM_ERROR
    http_status = 502

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(body or f"Upstream error: HTTP {status_code}", status_code=status_code, body=body)


class PermissionDenied(UpstreamError):
    kind = GatewayErrorKind.PERMISSION_DENIED
    http_status = 403

    def __init__(self, body: str, *, cookie_id: str | None = None) -> None:
        super().__init__(403, body)
        self.cookie_id = cookie_id


class RefreshError(GatewayError):
    kind = GatewayErrorKind.REFRESH_ERROR
    http_status = 502


class QuotaLookupError(GatewayError):
    kind = GatewayErrorKind.LOOKUP_ERROR
    http_status = 502


TRANSIENT_ERRORS: tuple[type[GatewayError], ...] = (RefreshError, QuotaLookupError)


def gateway_error(code: str, message: str, error_type: str = "server_error") -> GatewayErrorEnvelope:
    return {"error": {"message": message, "type": error_type, "code": code}}


def error_envelope(exc: GatewayError) -> GatewayErrorEnvelope:
    envelope = gateway_error(exc.kind.value, exc.message, error_type=_error_type(exc.kind))
    if exc.status_code is not None:
        envelope["error"]["status"] = exc.status_code
    return envelope


def http_status_for(exc: GatewayError) -> int:
    if isinstance(exc, UpstreamError) and not isinstance(exc, PermissionDenied):
        status = exc.status_code or 0
        if 400 <= status < 600:
            return status
    return exc.http_status


def _error_type(kind: GatewayErrorKind) -> str:
    match kind:
        case (
            GatewayErrorKind.NO_ACCOUNTS_CONFIGURED
            | GatewayErrorKind.QUOTA_EXHAUSTED
            | GatewayErrorKind.QUOTA_ROTATION_EXHAUSTED
        ):
            return "insufficient_quota"
        case GatewayErrorKind.PERMISSION_DENIED:
            return "permission_error"
        case _:
            return "server_error"
