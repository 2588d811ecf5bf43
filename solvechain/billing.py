"""Token usage ledger and credit balance checks."""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict

from . import config, storage
from .identity import AnonymousIdentity, Identity, RegisteredIdentity

logger = logging.getLogger(__name__)


def model_price(model_name: str) -> tuple[float, float]:
    """Return per-token (input, output) price for a model name."""
    return config.MODEL_PRICING.get(model_name, config.DEFAULT_MODEL_PRICE)


def compute_cost(model_name: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = model_price(model_name)
    return round(
        max(0, int(input_tokens)) * input_price + max(0, int(output_tokens)) * output_price,
        10,
    )


async def record_usage(
    identity: Identity,
    model_name: str,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """
    Record one model call on the ledger and return its cost.

    Registered callers are also debited; anonymous usage is recorded only.
    """
    cost = compute_cost(model_name, input_tokens, output_tokens)
    await storage.insert_token_usage(identity, model_name, input_tokens, output_tokens, cost)
    if isinstance(identity, RegisteredIdentity) and cost > 0:
        remaining = await storage.debit_credit_balance(identity.user_id, cost)
        logger.debug("Debited %.8f for %s, remaining %.8f", cost, model_name, remaining)
    return cost


async def check_balance(identity: Identity) -> bool:
    """Return True when identity may invoke another model."""
    if isinstance(identity, AnonymousIdentity):
        return True
    if not config.ENFORCE_CREDIT_BALANCE:
        return True
    balance = await storage.get_credit_balance(identity.user_id)
    return balance > 0


def _empty_model_totals() -> Dict[str, Any]:
    return {"input_tokens": 0, "output_tokens": 0, "cost": 0.0}


async def usage_report(user_id: str, days: int | None = None) -> Dict[str, Any]:
    """Aggregate a registered user's token usage per model and per day."""
    window_days = max(1, int(days or config.USAGE_REPORT_DEFAULT_DAYS))
    since = storage._now_utc() - timedelta(days=window_days)
    rows = await storage.list_token_usage(user_id, since)

    totals: Dict[str, Dict[str, Any]] = defaultdict(_empty_model_totals)
    daily: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(
        lambda: defaultdict(_empty_model_totals)
    )
    total_cost = 0.0

    for row in rows:
        model_name = row.get("model_name") or "unknown"
        created_at = storage._parse_iso_datetime(row.get("created_at"))
        if created_at is None:
            logger.warning("Skipping usage row without a valid timestamp")
            continue
        day = created_at.date().isoformat()
        input_tokens = max(0, int(row.get("input_tokens") or 0))
        output_tokens = max(0, int(row.get("output_tokens") or 0))
        cost = storage._to_float(row.get("cost"))

        for bucket in (totals[model_name], daily[day][model_name]):
            bucket["input_tokens"] += input_tokens
            bucket["output_tokens"] += output_tokens
            bucket["cost"] += cost
        total_cost += cost

    return {
        "since": since.isoformat(),
        "totals": {model: dict(values) for model, values in totals.items()},
        "daily": {
            day: {model: dict(values) for model, values in models.items()}
            for day, models in sorted(daily.items())
        },
        "total_cost": round(total_cost, 8),
        "balance": await storage.get_credit_balance(user_id),
    }
