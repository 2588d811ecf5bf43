"""Rolling-window request quotas per identity."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict

from . import config, storage
from .errors import QuotaExceededError, StorageError
from .identity import AnonymousIdentity, Identity, RegisteredIdentity, hash_client_address

logger = logging.getLogger(__name__)

TIER_ANONYMOUS = "anonymous"
TIER_REGISTERED = "registered"
TIER_SUBSCRIBED = "subscribed"

MAX_COUNTER_ATTEMPTS = 10


def resolve_tier(identity: Identity, plan: str | None = None) -> str:
    if isinstance(identity, AnonymousIdentity):
        return TIER_ANONYMOUS
    if isinstance(plan, str) and plan.strip().lower() == "pro":
        return TIER_SUBSCRIBED
    return TIER_REGISTERED


def tier_ceiling(tier: str) -> int | None:
    """Request ceiling for a tier; None means unbounded."""
    if tier == TIER_ANONYMOUS:
        return config.RATE_LIMIT_ANONYMOUS
    if tier == TIER_SUBSCRIBED:
        return config.RATE_LIMIT_SUBSCRIBED
    return config.RATE_LIMIT_REGISTERED


def anonymous_counter_key(client_ip: str | None) -> str:
    return f"ip_{hash_client_address(client_ip)}"


def counter_key(identity: Identity, client_ip: str | None) -> str:
    if isinstance(identity, RegisteredIdentity):
        return identity.user_id
    return anonymous_counter_key(client_ip)


def _window() -> timedelta:
    return timedelta(seconds=config.RATE_LIMIT_WINDOW_SECONDS)


async def enforce_rate_limit(
    identity: Identity,
    client_ip: str | None,
    tier: str | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """
    Count one request against identity's rolling window.

    Every write is conditional on the row read just before it; a lost race
    re-reads the counter and tries again.

    Returns the counter state after this request.

    Raises:
        QuotaExceededError: the tier ceiling was already reached in this window.
        StorageError: the counter kept changing underneath every attempt.
    """
    resolved_tier = tier or resolve_tier(identity)
    ceiling = tier_ceiling(resolved_tier)
    if ceiling is None:
        return {"tier": resolved_tier, "limit": None, "count": None}

    now = now or storage._now_utc()
    key = counter_key(identity, client_ip)

    for _ in range(MAX_COUNTER_ATTEMPTS):
        row = await storage.get_usage_counter(key)

        if row is None:
            created = await storage.create_usage_counter(
                key, isinstance(identity, RegisteredIdentity), 1, now
            )
            if created:
                return {"tier": resolved_tier, "limit": ceiling, "count": 1}
            continue

        raw_started = row.get("last_request_at")
        window_started = storage._parse_iso_datetime(raw_started)
        count = max(0, int(row.get("request_count") or 0))

        if window_started is None or now - window_started >= _window():
            reset = await storage.update_usage_counter(
                key,
                1,
                now,
                expected_count=count,
                expected_last_request_at=raw_started,
            )
            if reset:
                return {"tier": resolved_tier, "limit": ceiling, "count": 1}
            continue

        if count >= ceiling:
            reset_at = window_started + _window()
            retry_after = max(1, int((reset_at - now).total_seconds()))
            logger.info("Rate limit reached for %s tier (%s/%s)", resolved_tier, count, ceiling)
            raise QuotaExceededError(
                "Request limit reached. Try again later.",
                limit=ceiling,
                current_count=count,
                reset_at=reset_at,
                retry_after_seconds=retry_after,
            )

        if await storage.update_usage_counter(key, count + 1, expected_count=count):
            return {"tier": resolved_tier, "limit": ceiling, "count": count + 1}

    logger.warning("Request counter %s stayed contended after %s attempts", key, MAX_COUNTER_ATTEMPTS)
    raise StorageError("Request counter is busy. Try again.")


async def migrate_anonymous_counter(
    client_ip: str | None,
    user_id: str,
    now: datetime | None = None,
) -> bool:
    """
    Consume the anonymous counter of client_ip when a caller signs in.

    The registered counter restarts at zero; it never inherits the
    anonymous count. Returns True when an anonymous counter existed.
    """
    anonymous_key = anonymous_counter_key(client_ip)
    anonymous_row = await storage.get_usage_counter(anonymous_key)
    if anonymous_row is None:
        return False

    now = now or storage._now_utc()
    registered_row = await storage.get_usage_counter(user_id)
    if registered_row is None:
        created = await storage.create_usage_counter(user_id, True, 0, now)
        if not created:
            await storage.update_usage_counter(user_id, 0, now)
    else:
        await storage.update_usage_counter(user_id, 0, now)

    await storage.delete_usage_counter(anonymous_key)
    logger.info("Migrated anonymous request counter to registered account")
    return True
