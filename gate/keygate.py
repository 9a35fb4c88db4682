"""The authorization gate every metered request passes through.

``validate`` evaluates an ordered list of guards against the stored key,
organization and tier, first match wins:

1. unknown key hash                          -> invalid_key
2. key revoked                               -> key_disabled
3. key past its expiry                       -> key_expired
4. organization not active                   -> organization_{status}
5. subscription not active/trialing          -> subscription_inactive
6. month-to-date tokens at or over tier cap  -> quota_exceeded

Anything unexpected while evaluating (store unreachable, dangling foreign
key, unknown status value) fails closed as invalid_key and is logged at
ERROR so it can be told apart from a genuinely unknown key.
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from gate.errors import CorruptRecordError
from gate.results import Allowed, MonthlyUsage, Rejected, RejectionReason, ValidationResult
from storage.models import (
    ORGANIZATION_STATUSES,
    SUBSCRIPTION_STATUSES,
    USAGE_SOURCES,
    APIKey,
    Organization,
    SubscriptionTier,
    UsageDaily,
)

logger = logging.getLogger(__name__)

SERVING_SUBSCRIPTION_STATUSES = ("active", "trialing")

ORGANIZATION_REJECTIONS = {
    "paused": RejectionReason.ORGANIZATION_PAUSED,
    "suspended": RejectionReason.ORGANIZATION_SUSPENDED,
    "revoked": RejectionReason.ORGANIZATION_REVOKED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def month_start(day: date) -> date:
    """First day of the calendar month containing *day*."""
    return day.replace(day=1)


def next_month_start(moment: datetime) -> datetime:
    """Midnight UTC on the first day of the month after *moment*."""
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _short(secret_hash: str) -> str:
    return (secret_hash or "")[:8]


def key_rejection(
    is_active: bool, expires_at: datetime | None, now: datetime
) -> RejectionReason | None:
    """Guards 2 and 3: the key's own state."""
    if not is_active:
        return RejectionReason.KEY_DISABLED
    if expires_at is not None and as_utc(expires_at) < now:
        return RejectionReason.KEY_EXPIRED
    return None


def organization_rejection(
    status: str | None, subscription_status: str | None
) -> RejectionReason | None:
    """Guards 4 and 5: the owning organization's state.

    A missing status is read as "active", matching rows created before the
    status columns existed.
    """
    status = status or "active"
    subscription_status = subscription_status or "active"

    if status not in ORGANIZATION_STATUSES:
        raise CorruptRecordError(f"Unknown organization status '{status}'")
    if subscription_status not in SUBSCRIPTION_STATUSES:
        raise CorruptRecordError(
            f"Unknown subscription status '{subscription_status}'"
        )

    if status != "active":
        return ORGANIZATION_REJECTIONS[status]
    if subscription_status not in SERVING_SUBSCRIPTION_STATUSES:
        return RejectionReason.SUBSCRIPTION_INACTIVE
    return None


@dataclass(frozen=True)
class GateRecord:
    """Everything validate needs about one key, flattened for caching."""

    api_key_id: str
    organization_id: str
    is_active: bool
    expires_at: datetime | None
    rate_limit_override: int | None
    scopes: tuple[str, ...]
    environment: str
    organization_status: str | None
    subscription_status: str | None
    tier_id: str
    rate_limit_per_minute: int
    monthly_token_limit: int | None

    @property
    def effective_rate_limit(self) -> int:
        if self.rate_limit_override is not None:
            return self.rate_limit_override
        return self.rate_limit_per_minute


def build_usage_upsert(
    organization_id: str,
    usage_date: date,
    source: str,
    endpoint: str,
    request_delta: int = 1,
    token_delta: int = 1,
):
    """INSERT ... ON CONFLICT DO UPDATE that adds to the daily counters.

    The increment happens inside the database, so concurrent callers for the
    same (organization, date, source, endpoint) never lose updates.
    """
    stmt = pg_insert(UsageDaily).values(
        id=str(uuid.uuid4()),
        organization_id=organization_id,
        date=usage_date,
        source=source,
        endpoint=endpoint,
        request_count=request_delta,
        tokens_used=token_delta,
    )
    return stmt.on_conflict_do_update(
        index_elements=["organization_id", "date", "source", "endpoint"],
        set_={
            "request_count": UsageDaily.request_count + stmt.excluded.request_count,
            "tokens_used": UsageDaily.tokens_used + stmt.excluded.tokens_used,
        },
    )


class KeyGate:
    """Resolves a key digest to an authorization decision.

    One instance per process, sharing the process-wide session factory.

    Args:
        session_factory: Zero-argument callable returning an async context
            manager that yields a session and commits on exit
            (``storage.database.get_session``).
        clock: Returns the current aware datetime. Month boundaries and
            expiry are computed from it.
        cache_ttl_seconds: Lifetime of cached key/organization/tier lookups.
            0 disables the cache. Usage totals are never cached.
        timer: Monotonic seconds used to age cache entries.
    """

    def __init__(
        self,
        session_factory: Callable,
        clock: Callable[[], datetime] = utcnow,
        cache_ttl_seconds: float = 0.0,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._cache_ttl = cache_ttl_seconds
        self._timer = timer
        self._cache: dict[str, tuple[float, GateRecord]] = {}
        # Bumped by every invalidation; a lookup that started under an older
        # generation may have read pre-commit rows and is not cached.
        self._generation = 0

    # ------------------------------------------------------------------
    # validate
    # ------------------------------------------------------------------

    async def validate(self, secret_hash: str) -> ValidationResult:
        """Decide whether a request presenting this key digest may proceed."""
        now = self._clock()
        try:
            result, record = await self._evaluate(secret_hash, now)
        except CorruptRecordError as e:
            logger.error(
                f"Key validation failed closed (corrupt record) for hash {_short(secret_hash)}: {e}",
                extra={"reason": RejectionReason.INVALID_KEY.value},
            )
            return Rejected(RejectionReason.INVALID_KEY)
        except Exception:
            logger.exception(
                f"Key validation failed closed (store error) for hash {_short(secret_hash)}",
                extra={"reason": RejectionReason.INVALID_KEY.value},
            )
            return Rejected(RejectionReason.INVALID_KEY)

        if isinstance(result, Allowed):
            await self._touch_last_used(record.api_key_id, now)
        return result

    async def _evaluate(
        self, secret_hash: str, now: datetime
    ) -> tuple[ValidationResult, GateRecord | None]:
        async with self._session_factory() as session:
            record = self._cache_get(secret_hash)
            if record is None:
                generation = self._generation
                outcome = await self._load(session, secret_hash, now)
                if isinstance(outcome, Rejected):
                    return outcome, None
                record = outcome
                if generation == self._generation:
                    self._cache_put(secret_hash, record)
            else:
                reason = key_rejection(record.is_active, record.expires_at, now)
                if reason is None:
                    reason = organization_rejection(
                        record.organization_status, record.subscription_status
                    )
                if reason is not None:
                    return self._reject(reason, record.api_key_id, record.organization_id), record

            if record.monthly_token_limit is not None:
                usage = await self._monthly_usage(session, record.organization_id, now.date())
                if usage.total_tokens >= record.monthly_token_limit:
                    logger.info(
                        f"Quota exceeded for organization {record.organization_id}: "
                        f"{usage.total_tokens}/{record.monthly_token_limit}",
                        extra={
                            "organization_id": record.organization_id,
                            "api_key_id": record.api_key_id,
                            "reason": RejectionReason.QUOTA_EXCEEDED.value,
                        },
                    )
                    return (
                        Rejected(RejectionReason.QUOTA_EXCEEDED, resets_at=next_month_start(now)),
                        record,
                    )

        return (
            Allowed(
                organization_id=record.organization_id,
                tier_id=record.tier_id,
                effective_rate_limit_per_minute=record.effective_rate_limit,
                monthly_token_limit=record.monthly_token_limit,
                api_key_id=record.api_key_id,
                scopes=record.scopes,
                environment=record.environment,
            ),
            record,
        )

    async def _load(self, session, secret_hash: str, now: datetime) -> GateRecord | Rejected:
        """Fetch key, organization and tier, stopping at the first rejection."""
        result = await session.execute(
            select(APIKey).where(APIKey.key_hash == secret_hash)
        )
        key = result.scalar_one_or_none()
        if key is None:
            logger.info(f"Unknown API key hash {_short(secret_hash)}",
                        extra={"reason": RejectionReason.INVALID_KEY.value})
            return Rejected(RejectionReason.INVALID_KEY)

        reason = key_rejection(key.is_active, key.expires_at, now)
        if reason is not None:
            return self._reject(reason, key.id, key.organization_id)

        result = await session.execute(
            select(Organization).where(Organization.id == key.organization_id)
        )
        org = result.scalar_one_or_none()
        if org is None:
            raise CorruptRecordError(
                f"API key {key.id} references missing organization {key.organization_id}"
            )

        reason = organization_rejection(org.status, org.subscription_status)
        if reason is not None:
            return self._reject(reason, key.id, org.id)

        result = await session.execute(
            select(SubscriptionTier).where(SubscriptionTier.id == org.subscription_tier_id)
        )
        tier = result.scalar_one_or_none()
        if tier is None:
            raise CorruptRecordError(
                f"Organization {org.id} references missing tier {org.subscription_tier_id}"
            )

        return GateRecord(
            api_key_id=key.id,
            organization_id=org.id,
            is_active=key.is_active,
            expires_at=key.expires_at,
            rate_limit_override=key.rate_limit_override,
            scopes=tuple(key.scopes or ("read",)),
            environment=key.environment or "live",
            organization_status=org.status,
            subscription_status=org.subscription_status,
            tier_id=tier.id,
            rate_limit_per_minute=tier.rate_limit_per_minute,
            monthly_token_limit=tier.monthly_token_limit,
        )

    @staticmethod
    def _reject(reason: RejectionReason, api_key_id: str, organization_id: str) -> Rejected:
        logger.info(
            f"API key {api_key_id} rejected: {reason.value}",
            extra={
                "organization_id": organization_id,
                "api_key_id": api_key_id,
                "reason": reason.value,
            },
        )
        return Rejected(reason)

    async def _touch_last_used(self, api_key_id: str, now: datetime) -> None:
        """Advance last_used_at; telemetry only, so failures are logged and dropped."""
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(APIKey)
                    .where(
                        APIKey.id == api_key_id,
                        or_(APIKey.last_used_at.is_(None), APIKey.last_used_at < now),
                    )
                    .values(last_used_at=now)
                )
        except Exception as e:
            logger.warning(f"Failed to update last_used_at for key {api_key_id}: {e}")

    # ------------------------------------------------------------------
    # usage
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        organization_id: str,
        usage_date: date | None = None,
        source: str = "api",
        endpoint: str = "",
        request_delta: int = 1,
        token_delta: int = 1,
    ) -> None:
        """Add to the daily usage counters. Best-effort: never raises."""
        if source not in USAGE_SOURCES:
            logger.warning(f"Dropping usage with unknown source '{source}'",
                           extra={"organization_id": organization_id})
            return
        try:
            request_delta, token_delta = int(request_delta), int(token_delta)
        except (TypeError, ValueError):
            logger.warning(
                f"Dropping non-integer usage delta ({request_delta!r}, {token_delta!r})",
                extra={"organization_id": organization_id},
            )
            return
        if request_delta < 0 or token_delta < 0:
            logger.warning(
                f"Dropping negative usage delta ({request_delta}, {token_delta})",
                extra={"organization_id": organization_id},
            )
            return

        try:
            usage_date = usage_date or self._clock().date()
            async with self._session_factory() as session:
                await session.execute(
                    build_usage_upsert(
                        organization_id, usage_date, source, endpoint,
                        request_delta, token_delta,
                    )
                )
        except Exception:
            logger.exception(
                f"Failed to record usage for organization {organization_id} "
                f"({source} {endpoint})",
                extra={"organization_id": organization_id},
            )

    async def get_monthly_usage(self, organization_id: str) -> MonthlyUsage:
        """Totals since the first day of the current server month."""
        async with self._session_factory() as session:
            return await self._monthly_usage(session, organization_id, self._clock().date())

    @staticmethod
    async def _monthly_usage(session, organization_id: str, today: date) -> MonthlyUsage:
        result = await session.execute(
            select(
                func.coalesce(func.sum(UsageDaily.request_count), 0),
                func.coalesce(func.sum(UsageDaily.tokens_used), 0),
            ).where(
                UsageDaily.organization_id == organization_id,
                UsageDaily.date >= month_start(today),
            )
        )
        total_requests, total_tokens = result.one()
        return MonthlyUsage(total_requests=int(total_requests), total_tokens=int(total_tokens))

    # ------------------------------------------------------------------
    # cache
    # ------------------------------------------------------------------

    def _cache_get(self, secret_hash: str) -> GateRecord | None:
        if self._cache_ttl <= 0:
            return None
        entry = self._cache.get(secret_hash)
        if entry is None:
            return None
        stored_at, record = entry
        if self._timer() - stored_at > self._cache_ttl:
            self._cache.pop(secret_hash, None)
            return None
        return record

    def _cache_put(self, secret_hash: str, record: GateRecord) -> None:
        if self._cache_ttl > 0:
            self._cache[secret_hash] = (self._timer(), record)

    def invalidate_key(self, api_key_id: str) -> None:
        """Drop cached lookups for one key."""
        self._drop(lambda record: record.api_key_id == api_key_id)

    def invalidate_organization(self, organization_id: str) -> None:
        """Drop cached lookups for every key of an organization."""
        self._drop(lambda record: record.organization_id == organization_id)

    def clear_cache(self) -> None:
        self._generation += 1
        self._cache.clear()

    def _drop(self, predicate: Callable[[GateRecord], bool]) -> None:
        self._generation += 1
        for secret_hash, (_, record) in list(self._cache.items()):
            if predicate(record):
                self._cache.pop(secret_hash, None)
