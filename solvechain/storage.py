"""Supabase Postgres storage for problems, chats, responses, counters and usage."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

from . import config
from .errors import StorageError
from .identity import Identity, author_fields, author_filter

logger = logging.getLogger(__name__)

CHAT_COLUMNS = (
    "id,problem_statement_id,breakdown_id,anonymous,registered_author,"
    "anonymous_author,response_ids,orchestration_finished,failed_assignments,"
    "created_at,updated_at"
)
RESPONSE_COLUMNS = "id,model_name,role,response,completed,created_at"


def _to_float(value: Any) -> float:
    """Best-effort float conversion."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_iso_datetime(value: Any) -> datetime | None:
    """Best-effort parse for ISO datetime values."""
    if not isinstance(value, str) or not value.strip():
        return None
    raw_value = value.strip()
    if raw_value.endswith("Z"):
        raw_value = f"{raw_value[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(raw_value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _now_utc() -> datetime:
    """Return current UTC time (wrapper to simplify deterministic tests)."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _ensure_supabase_db_config() -> tuple[str, str]:
    """Return validated Supabase REST config values."""
    if not config.SUPABASE_URL:
        raise StorageError(
            "Supabase DB is not configured. Missing SUPABASE_URL (or SUPABASE_PROJECT_URL)."
        )
    if not config.SUPABASE_SECRET_KEY:
        raise StorageError(
            "Supabase DB is not configured. Missing SUPABASE_API_KEY_SECRET "
            "(or SUPABASE_SERVICE_ROLE_KEY)."
        )
    return config.SUPABASE_URL.rstrip("/"), config.SUPABASE_SECRET_KEY


def _extract_error_message(payload: Any, fallback: str) -> str:
    """Extract readable error messages from PostgREST payloads."""
    if isinstance(payload, dict):
        return (
            payload.get("message")
            or payload.get("hint")
            or payload.get("details")
            or fallback
        )
    return fallback


async def _rest_request(
    method: str,
    resource: str,
    *,
    params: Optional[Dict[str, str]] = None,
    json_body: Any = None,
    prefer: Optional[str] = None,
):
    """Make an authenticated request to Supabase PostgREST."""
    supabase_url, api_key = _ensure_supabase_db_config()
    url = f"{supabase_url}/rest/v1/{resource}"

    headers: Dict[str, str] = {
        "apikey": api_key,
        "Authorization": f"Bearer {api_key}",
    }
    if json_body is not None:
        headers["Content-Type"] = "application/json"
    if prefer:
        headers["Prefer"] = prefer

    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json_body,
                headers=headers,
            )
    except httpx.HTTPError as error:
        logger.error("Database request %s %s failed: %s", method, resource, error)
        raise StorageError("Database is unreachable.") from error

    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        message = _extract_error_message(
            payload, f"Database request failed ({response.status_code})."
        )
        logger.error("Database request %s %s failed: %s", method, resource, message)
        raise StorageError(message)

    if not response.content:
        return None

    try:
        return response.json()
    except ValueError:
        return None


def _first(rows: Any) -> Optional[Dict[str, Any]]:
    if isinstance(rows, list) and rows and isinstance(rows[0], dict):
        return rows[0]
    return None


def _in_filter(values: Iterable[str]) -> str:
    return f"in.({','.join(values)})"


# Problem statements and breakdowns


async def find_or_create_problem_statement(
    identity: Identity,
    description: str,
    attached_file: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Reuse the author's statement with identical text, else create one."""
    rows = await _rest_request(
        "GET",
        "problem_statements",
        params={
            "select": "*",
            "description": f"eq.{description}",
            **author_filter(identity),
            "order": "created_at.asc",
            "limit": "1",
        },
    )
    existing = _first(rows)
    if existing is not None:
        return existing

    rows = await _rest_request(
        "POST",
        "problem_statements",
        json_body={
            "id": _new_id(),
            "description": description,
            "attached_file": attached_file,
            **author_fields(identity),
        },
        prefer="return=representation",
    )
    created = _first(rows)
    if created is None:
        raise StorageError("Problem statement was not created.")
    return created


async def get_problem_statement(problem_statement_id: str) -> Optional[Dict[str, Any]]:
    rows = await _rest_request(
        "GET",
        "problem_statements",
        params={"select": "*", "id": f"eq.{problem_statement_id}", "limit": "1"},
    )
    return _first(rows)


async def create_problem_breakdown(
    identity: Identity,
    problem_statement_id: str,
    model_roles: List[Dict[str, str]],
) -> Dict[str, Any]:
    rows = await _rest_request(
        "POST",
        "problem_breakdowns",
        json_body={
            "id": _new_id(),
            "problem_statement_id": problem_statement_id,
            "model_roles": model_roles,
            **author_fields(identity),
        },
        prefer="return=representation",
    )
    created = _first(rows)
    if created is None:
        raise StorageError("Problem breakdown was not created.")
    return created


async def get_problem_breakdown(breakdown_id: str) -> Optional[Dict[str, Any]]:
    rows = await _rest_request(
        "GET",
        "problem_breakdowns",
        params={"select": "*", "id": f"eq.{breakdown_id}", "limit": "1"},
    )
    return _first(rows)


# Chats


async def create_chat(
    identity: Identity,
    problem_statement_id: str,
    breakdown_id: str,
) -> Dict[str, Any]:
    now = _now_utc().isoformat()
    rows = await _rest_request(
        "POST",
        "chats",
        json_body={
            "id": _new_id(),
            "problem_statement_id": problem_statement_id,
            "breakdown_id": breakdown_id,
            "response_ids": [],
            "orchestration_finished": False,
            "failed_assignments": [],
            "created_at": now,
            "updated_at": now,
            **author_fields(identity),
        },
        prefer="return=representation",
    )
    created = _first(rows)
    if created is None:
        raise StorageError("Chat was not created.")
    return created


async def get_chat(chat_id: str) -> Optional[Dict[str, Any]]:
    rows = await _rest_request(
        "GET",
        "chats",
        params={"select": CHAT_COLUMNS, "id": f"eq.{chat_id}", "limit": "1"},
    )
    chat = _first(rows)
    if chat is not None:
        chat["response_ids"] = list(chat.get("response_ids") or [])
        chat["failed_assignments"] = list(chat.get("failed_assignments") or [])
    return chat


async def update_chat(chat_id: str, fields: Dict[str, Any]):
    """Patch a chat row and bump its updated_at."""
    await _rest_request(
        "PATCH",
        "chats",
        params={"id": f"eq.{chat_id}"},
        json_body={**fields, "updated_at": _now_utc().isoformat()},
        prefer="return=minimal",
    )


async def set_chat_response_ids(chat_id: str, response_ids: List[str]):
    await update_chat(chat_id, {"response_ids": list(response_ids)})


async def append_chat_response(chat_id: str, response_id: str) -> List[str]:
    """Append a response reference to the chat's ordered sequence."""
    chat = await get_chat(chat_id)
    if chat is None:
        raise StorageError(f"Chat {chat_id} disappeared while appending a response.")
    response_ids = chat["response_ids"] + [response_id]
    await set_chat_response_ids(chat_id, response_ids)
    return response_ids


async def mark_chat_finished(chat_id: str, failed_assignments: List[int]):
    await update_chat(
        chat_id,
        {
            "orchestration_finished": True,
            "failed_assignments": list(failed_assignments),
        },
    )


async def delete_chat(chat_id: str):
    await _rest_request(
        "DELETE",
        "chats",
        params={"id": f"eq.{chat_id}"},
        prefer="return=minimal",
    )


async def list_chats_for_author(identity: Identity) -> List[Dict[str, Any]]:
    """List chat rows for an author, most recently updated first."""
    chat_rows = await _rest_request(
        "GET",
        "chats",
        params={
            "select": CHAT_COLUMNS,
            **author_filter(identity),
            "order": "updated_at.desc",
        },
    )
    chat_rows = [row for row in chat_rows or [] if isinstance(row, dict)]
    if not chat_rows:
        return []

    statement_ids = sorted({row["problem_statement_id"] for row in chat_rows})
    statement_rows = await _rest_request(
        "GET",
        "problem_statements",
        params={"select": "id,description", "id": _in_filter(statement_ids)},
    )
    descriptions = {
        row["id"]: row.get("description") or ""
        for row in statement_rows or []
        if isinstance(row, dict)
    }

    return [
        {
            "id": row["id"],
            "problem_statement": descriptions.get(row["problem_statement_id"], ""),
            "response_count": len(row.get("response_ids") or []),
            "orchestration_finished": bool(row.get("orchestration_finished")),
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
        }
        for row in chat_rows
    ]


# Model responses


async def create_model_response(
    model_name: str,
    role: str,
    response_text: str,
    completed: bool = True,
) -> Dict[str, Any]:
    rows = await _rest_request(
        "POST",
        "model_responses",
        json_body={
            "id": _new_id(),
            "model_name": model_name,
            "role": role,
            "response": response_text,
            "completed": completed,
            "created_at": _now_utc().isoformat(),
        },
        prefer="return=representation",
    )
    created = _first(rows)
    if created is None:
        raise StorageError("Model response was not created.")
    return created


async def get_model_response(response_id: str) -> Optional[Dict[str, Any]]:
    rows = await _rest_request(
        "GET",
        "model_responses",
        params={"select": RESPONSE_COLUMNS, "id": f"eq.{response_id}", "limit": "1"},
    )
    return _first(rows)


async def get_model_responses(response_ids: List[str]) -> List[Dict[str, Any]]:
    """Load responses and return them in the given order, skipping missing rows."""
    if not response_ids:
        return []
    rows = await _rest_request(
        "GET",
        "model_responses",
        params={"select": RESPONSE_COLUMNS, "id": _in_filter(response_ids)},
    )
    by_id = {row["id"]: row for row in rows or [] if isinstance(row, dict)}
    return [by_id[response_id] for response_id in response_ids if response_id in by_id]


async def update_model_response(response_id: str, role: str, response_text: str):
    await _rest_request(
        "PATCH",
        "model_responses",
        params={"id": f"eq.{response_id}"},
        json_body={"role": role, "response": response_text, "completed": True},
        prefer="return=minimal",
    )


async def delete_model_responses(response_ids: List[str]):
    if not response_ids:
        return
    await _rest_request(
        "DELETE",
        "model_responses",
        params={"id": _in_filter(response_ids)},
        prefer="return=minimal",
    )


async def get_chat_detail(chat_id: str) -> Optional[Dict[str, Any]]:
    """Load a chat with its problem, breakdown and ordered response bodies."""
    chat = await get_chat(chat_id)
    if chat is None:
        return None

    statement = await get_problem_statement(chat["problem_statement_id"]) or {}
    breakdown = await get_problem_breakdown(chat["breakdown_id"]) or {}
    responses = await get_model_responses(chat["response_ids"])

    return {
        **chat,
        "problem_statement": statement.get("description") or "",
        "attached_file": statement.get("attached_file"),
        "model_roles": list(breakdown.get("model_roles") or []),
        "responses": responses,
    }


# Rate-limit counters


async def get_usage_counter(counter_key: str) -> Optional[Dict[str, Any]]:
    rows = await _rest_request(
        "GET",
        "usage_counters",
        params={
            "select": "counter_key,authenticated,request_count,last_request_at",
            "counter_key": f"eq.{counter_key}",
            "limit": "1",
        },
    )
    return _first(rows)


async def create_usage_counter(
    counter_key: str,
    authenticated: bool,
    request_count: int,
    last_request_at: datetime,
) -> bool:
    """Insert a counter row; returns False when one already existed for the key."""
    rows = await _rest_request(
        "POST",
        "usage_counters",
        params={"on_conflict": "counter_key"},
        json_body={
            "counter_key": counter_key,
            "authenticated": authenticated,
            "request_count": max(0, int(request_count)),
            "last_request_at": last_request_at.astimezone(timezone.utc).isoformat(),
        },
        prefer="resolution=ignore-duplicates,return=representation",
    )
    return bool(rows)


async def update_usage_counter(
    counter_key: str,
    request_count: int,
    last_request_at: datetime | None = None,
    expected_count: int | None = None,
    expected_last_request_at: str | None = None,
) -> bool:
    """
    Overwrite a counter row.

    With expected_count (and optionally expected_last_request_at) the write
    only applies while the stored row still holds those values
    (compare-and-set). Returns False when no row was changed.
    """
    fields: Dict[str, Any] = {"request_count": max(0, int(request_count))}
    if last_request_at is not None:
        fields["last_request_at"] = last_request_at.astimezone(timezone.utc).isoformat()
    params = {"counter_key": f"eq.{counter_key}"}
    if expected_count is not None:
        params["request_count"] = f"eq.{int(expected_count)}"
    if expected_last_request_at is not None:
        params["last_request_at"] = f"eq.{expected_last_request_at}"
    rows = await _rest_request(
        "PATCH",
        "usage_counters",
        params=params,
        json_body=fields,
        prefer="return=representation",
    )
    return bool(rows)


async def delete_usage_counter(counter_key: str):
    await _rest_request(
        "DELETE",
        "usage_counters",
        params={"counter_key": f"eq.{counter_key}"},
        prefer="return=minimal",
    )


# Token usage ledger and credit balance


async def insert_token_usage(
    identity: Identity,
    model_name: str,
    input_tokens: int,
    output_tokens: int,
    cost: float,
):
    fields = author_fields(identity)
    await _rest_request(
        "POST",
        "token_usage",
        json_body={
            "id": _new_id(),
            "registered_user": fields["registered_author"],
            "anonymous_user": fields["anonymous_author"],
            "model_name": model_name,
            "input_tokens": max(0, int(input_tokens)),
            "output_tokens": max(0, int(output_tokens)),
            "cost": cost,
            "created_at": _now_utc().isoformat(),
        },
        prefer="return=minimal",
    )


async def list_token_usage(user_id: str, since: datetime) -> List[Dict[str, Any]]:
    rows = await _rest_request(
        "GET",
        "token_usage",
        params={
            "select": "model_name,input_tokens,output_tokens,cost,created_at",
            "registered_user": f"eq.{user_id}",
            "created_at": f"gte.{since.astimezone(timezone.utc).isoformat()}",
            "order": "created_at.asc",
        },
    )
    return [row for row in rows or [] if isinstance(row, dict)]


async def _ensure_credit_account(user_id: str, initial_balance: float = 0.0):
    """Ensure a credit row exists for the user without overwriting current balance."""
    await _rest_request(
        "POST",
        "account_credits",
        params={"on_conflict": "user_id"},
        json_body={
            "user_id": user_id,
            "balance": max(0.0, float(initial_balance)),
            "updated_at": _now_utc().isoformat(),
        },
        prefer="resolution=ignore-duplicates,return=minimal",
    )


async def _get_credit_row(user_id: str) -> Dict[str, Any] | None:
    """Load account credits row for a user."""
    rows = await _rest_request(
        "GET",
        "account_credits",
        params={
            "select": "user_id,balance,updated_at",
            "user_id": f"eq.{user_id}",
            "limit": "1",
        },
    )
    return _first(rows)


def _parse_balance_result(result: Any) -> float:
    """Normalize RPC balance result payloads into a float."""
    if isinstance(result, bool):
        raise StorageError("Unexpected balance response from database.")
    if isinstance(result, (int, float)):
        return float(result)
    if isinstance(result, str):
        try:
            return float(result)
        except ValueError:
            pass

    if isinstance(result, dict):
        for key in ("balance", "debit_account_balance"):
            value = result.get(key)
            if value is not None and not isinstance(value, bool):
                return _parse_balance_result(value)

    if isinstance(result, list) and result:
        return _parse_balance_result(result[0])

    raise StorageError("Unexpected balance response from database.")


async def get_credit_balance(user_id: str) -> float:
    """Return the current credit balance, opening the account when absent."""
    await _ensure_credit_account(user_id, config.STARTING_CREDIT_BALANCE)
    row = await _get_credit_row(user_id)
    if row is None:
        return 0.0
    return _to_float(row.get("balance"))


async def debit_credit_balance(user_id: str, amount: float) -> float:
    """
    Subtract amount from the balance (floored at zero) and return the remainder.

    The read and the write happen in one statement inside the
    `debit_account_balance` database function.
    """
    await _ensure_credit_account(user_id, config.STARTING_CREDIT_BALANCE)
    result = await _rest_request(
        "POST",
        "rpc/debit_account_balance",
        json_body={
            "p_user_id": user_id,
            "p_amount": round(max(0.0, float(amount)), 8),
        },
    )
    return _parse_balance_result(result)
