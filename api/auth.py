import hmac
import logging
import math
from datetime import datetime

from fastapi import Depends, Header, HTTPException, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from api.ratelimit import rate_limiter
from config.settings import settings
from gate.keygate import KeyGate, utcnow
from gate.keys import hash_api_key
from gate.results import Allowed, Rejected, RejectionReason
from storage.models import USAGE_SOURCES

logger = logging.getLogger(__name__)

BEARER = HTTPBearer(auto_error=False)
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

REJECTION_STATUS = {
    RejectionReason.INVALID_KEY: 401,
    RejectionReason.KEY_DISABLED: 401,
    RejectionReason.KEY_EXPIRED: 401,
    RejectionReason.ORGANIZATION_PAUSED: 403,
    RejectionReason.ORGANIZATION_SUSPENDED: 403,
    RejectionReason.ORGANIZATION_REVOKED: 403,
    RejectionReason.SUBSCRIPTION_INACTIVE: 403,
    RejectionReason.QUOTA_EXCEEDED: 429,
}

REJECTION_MESSAGES = {
    RejectionReason.INVALID_KEY: "Invalid API key",
    RejectionReason.KEY_DISABLED: "API key has been revoked",
    RejectionReason.KEY_EXPIRED: "API key has expired",
    RejectionReason.ORGANIZATION_PAUSED: "Organization is paused",
    RejectionReason.ORGANIZATION_SUSPENDED: "Organization is suspended",
    RejectionReason.ORGANIZATION_REVOKED: "Organization access has been revoked",
    RejectionReason.SUBSCRIPTION_INACTIVE: "Subscription is not active",
    RejectionReason.QUOTA_EXCEEDED: "Monthly usage quota exceeded",
}


def get_key_gate(request: Request) -> KeyGate:
    """The process-wide gate created at startup."""
    return request.app.state.key_gate


def rejection_to_http(result: Rejected, now: datetime | None = None) -> HTTPException:
    """Map a gate rejection to the HTTP error returned to the client."""
    status_code = REJECTION_STATUS[result.reason]
    detail = {
        "error": result.reason.value,
        "message": REJECTION_MESSAGES[result.reason],
    }
    headers = {}
    if status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if result.reason is RejectionReason.QUOTA_EXCEEDED and result.resets_at:
        now = now or utcnow()
        retry_after = max(0, math.ceil((result.resets_at - now).total_seconds()))
        detail["resets_at"] = result.resets_at.isoformat()
        headers["Retry-After"] = str(retry_after)
        headers["X-Quota-Reset"] = result.resets_at.isoformat()
    return HTTPException(status_code=status_code, detail=detail, headers=headers or None)


async def require_api_key(
    request: Request,
    bearer: HTTPAuthorizationCredentials | None = Security(BEARER),
    api_key: str | None = Security(API_KEY_HEADER),
) -> Allowed:
    """Dependency that runs the presented key through the gate and rate limiter.

    Accepts ``Authorization: Bearer <key>`` or, failing that, ``X-API-Key``.
    The raw key is hashed immediately and never logged.
    """
    raw_key = bearer.credentials if bearer else api_key
    if not raw_key:
        raise HTTPException(
            status_code=401,
            detail={"error": "missing_key", "message": "API key required"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    gate = get_key_gate(request)
    result = await gate.validate(hash_api_key(raw_key))
    if isinstance(result, Rejected):
        raise rejection_to_http(result)

    remaining = rate_limiter.check(
        f"key:{result.api_key_id}", result.effective_rate_limit_per_minute
    )
    request.state.organization_id = result.organization_id
    request.state.rate_limit_remaining = remaining
    return result


def require_scope(scope: str):
    """Dependency factory: the validated key must carry *scope* (or admin)."""

    async def dep(key: Allowed = Depends(require_api_key)) -> Allowed:
        if scope in key.scopes or "admin" in key.scopes:
            return key
        logger.warning(f"Key {key.api_key_id} missing scope '{scope}' (has {list(key.scopes)})")
        raise HTTPException(
            status_code=403,
            detail={"error": "insufficient_scope", "message": f"Scope '{scope}' required"},
        )

    return dep


async def get_request_source(request: Request) -> str:
    """The client surface (api/mcp/cli/sdk) the request came through."""
    source = (request.headers.get(settings.usage_source_header) or "api").strip().lower()
    if source not in USAGE_SOURCES:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_source",
                "message": f"{settings.usage_source_header} must be one of: {', '.join(USAGE_SOURCES)}",
            },
        )
    return source


async def require_admin(
    x_admin_token: str | None = Header(None),
    x_admin_actor: str | None = Header(None),
) -> str:
    """Dependency guarding admin routes. Returns the acting admin's name."""
    if not settings.admin_token:
        raise HTTPException(
            status_code=403,
            detail={"error": "admin_disabled", "message": "Admin API is not configured"},
        )
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode(), settings.admin_token.encode()
    ):
        logger.warning("Rejected admin request with invalid token")
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_admin_token", "message": "Invalid admin token"},
        )
    return x_admin_actor or "admin"
