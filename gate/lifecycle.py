"""Administrative lifecycle actions for keys and organizations.

Every action writes an ``AdminAuditLog`` row in the caller's session, so the
state change and its audit record commit together. When a gate is passed,
its lookup cache is invalidated for the affected keys; callers invalidate
again once the session has committed, since a concurrent validation can
still read and cache the old row until then.

Organization state machine::

    active --pause--> paused --resume--> active
    active|paused --suspend--> suspended --reinstate--> active
    active|paused|suspended --revoke--> revoked   (terminal)

Keys only move from active to disabled (revoke); expiry is computed at
validation time and never stored.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import select

from gate.errors import InvalidTransitionError, NotFoundError
from gate.keygate import KeyGate, as_utc, utcnow
from gate.keys import display_prefix, generate_api_key, hash_api_key
from storage.models import KEY_ENVIRONMENTS, AdminAuditLog, APIKey, Organization

logger = logging.getLogger(__name__)


class OrganizationAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    SUSPEND = "suspend"
    REINSTATE = "reinstate"
    REVOKE = "revoke"


# action -> (states it may start from, resulting state)
ORGANIZATION_TRANSITIONS = {
    OrganizationAction.PAUSE: ({"active"}, "paused"),
    OrganizationAction.RESUME: ({"paused"}, "active"),
    OrganizationAction.SUSPEND: ({"active", "paused"}, "suspended"),
    OrganizationAction.REINSTATE: ({"suspended"}, "active"),
    OrganizationAction.REVOKE: ({"active", "paused", "suspended"}, "revoked"),
}


@dataclass
class IssuedKey:
    raw_key: str  # shown to the owner once, never stored
    api_key: APIKey


def _audit(session, actor: str, action: str, target_type: str, target_id: str,
           details: dict | None = None) -> None:
    session.add(
        AdminAuditLog(
            actor=actor,
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=details or {},
        )
    )


async def _get_organization(session, organization_id: str) -> Organization:
    result = await session.execute(
        select(Organization).where(Organization.id == organization_id)
    )
    org = result.scalar_one_or_none()
    if org is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    return org


async def issue_api_key(
    session,
    organization_id: str,
    name: str,
    *,
    environment: str = "live",
    scopes: list[str] | None = None,
    rate_limit_override: int | None = None,
    expires_at: datetime | None = None,
    actor: str = "system",
    now: datetime | None = None,
) -> IssuedKey:
    """Create a new active key for an organization."""
    now = now or utcnow()
    if not name:
        raise ValueError("name is required")
    if environment not in KEY_ENVIRONMENTS:
        raise ValueError(f"environment must be one of: {', '.join(KEY_ENVIRONMENTS)}")
    if rate_limit_override is not None and rate_limit_override <= 0:
        raise ValueError("rate_limit_override must be positive")
    if expires_at is not None and as_utc(expires_at) <= now:
        raise ValueError("expires_at must be in the future")

    org = await _get_organization(session, organization_id)
    if (org.status or "active") == "revoked":
        raise InvalidTransitionError("issue a key", "revoked")

    raw_key = generate_api_key(environment)
    api_key = APIKey(
        id=str(uuid.uuid4()),
        organization_id=org.id,
        name=name,
        key_hash=hash_api_key(raw_key),
        key_prefix=display_prefix(raw_key),
        environment=environment,
        scopes=list(scopes) if scopes else ["read"],
        rate_limit_override=rate_limit_override,
        is_active=True,
        expires_at=expires_at,
        created_by=actor,
    )
    session.add(api_key)

    _audit(session, actor, "create_api_key", "api_key", api_key.id, {
        "organization_id": org.id,
        "environment": environment,
        "key_prefix": api_key.key_prefix,
    })
    logger.info(f"Issued API key {api_key.id} ({api_key.key_prefix}) for organization {org.id}",
                extra={"organization_id": org.id, "api_key_id": api_key.id})
    return IssuedKey(raw_key=raw_key, api_key=api_key)


async def revoke_api_key(
    session,
    api_key_id: str,
    *,
    actor: str = "system",
    gate: KeyGate | None = None,
) -> APIKey:
    """Disable a key permanently. Revoking an already disabled key is a no-op."""
    result = await session.execute(select(APIKey).where(APIKey.id == api_key_id))
    key = result.scalar_one_or_none()
    if key is None:
        raise NotFoundError(f"API key {api_key_id} not found")

    if key.is_active:
        key.is_active = False
        _audit(session, actor, "revoke_api_key", "api_key", key.id,
               {"organization_id": key.organization_id})
        logger.info(f"Revoked API key {key.id}",
                    extra={"organization_id": key.organization_id, "api_key_id": key.id})

    if gate is not None:
        gate.invalidate_key(key.id)
    return key


async def transition_organization(
    session,
    organization_id: str,
    action: OrganizationAction,
    *,
    actor: str = "system",
    reason: str | None = None,
    gate: KeyGate | None = None,
    now: datetime | None = None,
) -> Organization:
    """Apply one lifecycle action to an organization."""
    action = OrganizationAction(action)
    if action is OrganizationAction.REVOKE and not (reason and reason.strip()):
        raise ValueError("A reason is required to revoke an organization")

    org = await _get_organization(session, organization_id)
    previous = org.status or "active"
    allowed_from, target = ORGANIZATION_TRANSITIONS[action]
    if previous not in allowed_from:
        raise InvalidTransitionError(action.value, previous)

    now = now or utcnow()
    org.status = target
    if action is OrganizationAction.PAUSE:
        org.paused_at = now
        org.pause_reason = reason
    elif action in (OrganizationAction.RESUME, OrganizationAction.REINSTATE):
        org.paused_at = None
        org.pause_reason = None
    elif action is OrganizationAction.REVOKE:
        org.revoked_at = now
        org.revoke_reason = reason

    _audit(session, actor, f"{action.value}_organization", "organization", org.id, {
        "previous_status": previous,
        "new_status": target,
        "reason": reason,
    })
    logger.info(f"Organization {org.id}: {previous} -> {target} ({action.value} by {actor})",
                extra={"organization_id": org.id})

    if gate is not None:
        gate.invalidate_organization(org.id)
    return org


async def pause_organization(session, organization_id: str, **kwargs) -> Organization:
    return await transition_organization(session, organization_id, OrganizationAction.PAUSE, **kwargs)


async def resume_organization(session, organization_id: str, **kwargs) -> Organization:
    return await transition_organization(session, organization_id, OrganizationAction.RESUME, **kwargs)


async def suspend_organization(session, organization_id: str, **kwargs) -> Organization:
    return await transition_organization(session, organization_id, OrganizationAction.SUSPEND, **kwargs)


async def reinstate_organization(session, organization_id: str, **kwargs) -> Organization:
    return await transition_organization(session, organization_id, OrganizationAction.REINSTATE, **kwargs)


async def revoke_organization(session, organization_id: str, **kwargs) -> Organization:
    return await transition_organization(session, organization_id, OrganizationAction.REVOKE, **kwargs)
