"""Values returned by :class:`gate.keygate.KeyGate`.

A validation either produces :class:`Allowed`, carrying the limits the caller
must enforce, or :class:`Rejected` with exactly one :class:`RejectionReason`.
Rejections are ordinary return values; they are never raised.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RejectionReason(str, Enum):
    INVALID_KEY = "invalid_key"
    KEY_DISABLED = "key_disabled"
    KEY_EXPIRED = "key_expired"
    ORGANIZATION_PAUSED = "organization_paused"
    ORGANIZATION_SUSPENDED = "organization_suspended"
    ORGANIZATION_REVOKED = "organization_revoked"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class Allowed:
    organization_id: str
    tier_id: str
    effective_rate_limit_per_minute: int
    monthly_token_limit: int | None
    api_key_id: str
    scopes: tuple[str, ...] = ("read",)
    environment: str = "live"

    allowed = True


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    # Only set for quota_exceeded: when the monthly counter starts over.
    resets_at: datetime | None = field(default=None)

    allowed = False


ValidationResult = Allowed | Rejected


@dataclass(frozen=True)
class MonthlyUsage:
    total_requests: int = 0
    total_tokens: int = 0
