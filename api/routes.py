import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select, text

from api.auth import get_key_gate, get_request_source, require_admin, require_api_key, require_scope
from gate.errors import InvalidTransitionError, NotFoundError
from gate.keygate import KeyGate, month_start, utcnow
from gate.lifecycle import (
    OrganizationAction,
    issue_api_key,
    revoke_api_key,
    transition_organization,
)
from gate.results import Allowed
from storage.database import get_session
from storage.models import KEY_ENVIRONMENTS, Organization, SubscriptionTier

logger = logging.getLogger(__name__)

router = APIRouter()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


async def _usage_summary(gate: KeyGate, organization_id: str, monthly_token_limit: int | None) -> dict:
    try:
        usage = await gate.get_monthly_usage(organization_id)
    except Exception as e:
        logger.error(f"Monthly usage lookup failed for {organization_id}: {e}")
        raise HTTPException(status_code=503, detail="Usage data unavailable")

    remaining = None
    if monthly_token_limit is not None:
        remaining = max(0, monthly_token_limit - usage.total_tokens)
    return {
        "organization_id": organization_id,
        "period_start": month_start(utcnow().date()).isoformat(),
        "total_requests": usage.total_requests,
        "total_tokens": usage.total_tokens,
        "monthly_token_limit": monthly_token_limit,
        "remaining_tokens": remaining,
    }


@router.get("/health")
async def health_check():
    """System health check."""
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


# ---------------------------------------------------------------------------
# Metered endpoints (API key required)
# ---------------------------------------------------------------------------


@router.get("/usage")
async def get_usage(
    request: Request,
    source: str = Depends(get_request_source),
    key: Allowed = Depends(require_api_key),
):
    """Month-to-date usage and limits for the caller's organization."""
    gate = get_key_gate(request)
    summary = await _usage_summary(gate, key.organization_id, key.monthly_token_limit)
    summary.update({
        "tier_id": key.tier_id,
        "rate_limit_per_minute": key.effective_rate_limit_per_minute,
        "environment": key.environment,
    })

    await gate.record_usage(key.organization_id, None, source, "/usage")
    return summary


@router.post("/usage/report", status_code=202)
async def report_usage(
    payload: dict,
    request: Request,
    source: str = Depends(get_request_source),
    key: Allowed = Depends(require_scope("write")),
):
    """Record usage for work a client performed (e.g. an MCP tool call).

    Only work that actually happened should be reported, once.
    """
    endpoint = payload.get("endpoint")
    if not endpoint or not isinstance(endpoint, str):
        raise HTTPException(status_code=422, detail="'endpoint' is required")
    if len(endpoint) > 100:
        raise HTTPException(status_code=422, detail="'endpoint' must be at most 100 characters")

    requests = payload.get("requests", 1)
    tokens = payload.get("tokens", 1)
    for name, value in (("requests", requests), ("tokens", tokens)):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise HTTPException(
                status_code=422, detail=f"'{name}' must be a non-negative integer"
            )

    gate = get_key_gate(request)
    await gate.record_usage(key.organization_id, None, source, endpoint, requests, tokens)
    return {"status": "accepted", "requests": requests, "tokens": tokens}


# ---------------------------------------------------------------------------
# Key & organization lifecycle (Admin)
# ---------------------------------------------------------------------------


@router.post("/admin/organizations/{org_id}/api-keys", status_code=201)
async def create_api_key(
    org_id: str,
    payload: dict,
    actor: str = Depends(require_admin),
):
    """Issue a new API key. Returns the key only once."""
    name = payload.get("name")
    if not name:
        raise HTTPException(status_code=422, detail="'name' is required")
    environment = payload.get("environment", "live")
    if environment not in KEY_ENVIRONMENTS:
        raise HTTPException(
            status_code=422,
            detail=f"'environment' must be one of: {', '.join(KEY_ENVIRONMENTS)}",
        )
    scopes = payload.get("scopes") or ["read"]
    if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
        raise HTTPException(status_code=422, detail="'scopes' must be a list of strings")

    expires_at = payload.get("expires_at")
    if expires_at:
        try:
            expires_at = datetime.fromisoformat(expires_at)
        except (TypeError, ValueError):
            raise HTTPException(status_code=422, detail="'expires_at' must be an ISO-8601 timestamp")

    try:
        async with get_session() as session:
            issued = await issue_api_key(
                session,
                org_id,
                name,
                environment=environment,
                scopes=scopes,
                rate_limit_override=payload.get("rate_limit_override"),
                expires_at=expires_at or None,
                actor=actor,
            )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Organization not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    key = issued.api_key
    return {
        "id": key.id,
        "organization_id": key.organization_id,
        "name": key.name,
        "key_prefix": key.key_prefix,
        "environment": key.environment,
        "scopes": key.scopes,
        "rate_limit_override": key.rate_limit_override,
        "expires_at": _iso(key.expires_at),
        "api_key": issued.raw_key,  # Only shown once!
        "message": "Save this key - it cannot be retrieved again",
    }


@router.post("/admin/api-keys/{key_id}/revoke")
async def revoke_key(
    key_id: str,
    request: Request,
    actor: str = Depends(require_admin),
):
    """Permanently disable an API key."""
    gate = get_key_gate(request)
    try:
        async with get_session() as session:
            key = await revoke_api_key(session, key_id, actor=actor, gate=gate)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="API key not found")

    # Again after commit: a validation that ran meanwhile may have cached the old row.
    gate.invalidate_key(key.id)
    return {"id": key.id, "is_active": key.is_active}


@router.post("/admin/organizations/{org_id}/{action}")
async def change_organization_status(
    org_id: str,
    action: OrganizationAction,
    request: Request,
    payload: dict | None = None,
    actor: str = Depends(require_admin),
):
    """Pause, resume, suspend, reinstate or revoke an organization."""
    reason = (payload or {}).get("reason")
    gate = get_key_gate(request)
    try:
        async with get_session() as session:
            org = await transition_organization(
                session, org_id, action,
                actor=actor, reason=reason, gate=gate,
            )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Organization not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    gate.invalidate_organization(org.id)
    return {"id": org.id, "status": org.status}


@router.get("/admin/organizations/{org_id}/usage")
async def organization_usage(
    org_id: str,
    request: Request,
    actor: str = Depends(require_admin),
):
    """Month-to-date usage for any organization."""
    async with get_session() as session:
        result = await session.execute(select(Organization).where(Organization.id == org_id))
        org = result.scalar_one_or_none()
        if not org:
            raise HTTPException(status_code=404, detail="Organization not found")

        result = await session.execute(
            select(SubscriptionTier).where(SubscriptionTier.id == org.subscription_tier_id)
        )
        tier = result.scalar_one_or_none()

    limit = tier.monthly_token_limit if tier else None
    summary = await _usage_summary(get_key_gate(request), org.id, limit)
    summary.update({
        "tier_id": org.subscription_tier_id,
        "status": org.status,
        "subscription_status": org.subscription_status,
    })
    return summary
