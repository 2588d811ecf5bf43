"""Supabase account directory: sign-up, sign-in and plan lookup."""

import logging
from typing import Any, Dict

import httpx

from . import config
from .errors import AuthenticationError, StorageError, ValidationError

logger = logging.getLogger(__name__)

PLAN_FREE = "free"
PLAN_PRO = "pro"


def _ensure_supabase_config() -> tuple[str, str]:
    """Return validated Supabase config values."""
    if not config.SUPABASE_URL:
        raise StorageError(
            "Supabase is not configured. Missing SUPABASE_URL (or SUPABASE_PROJECT_URL) "
            "in environment."
        )
    if not config.SUPABASE_SECRET_KEY:
        raise StorageError(
            "Supabase is not configured. Missing SUPABASE_API_KEY_SECRET "
            "(or SUPABASE_SERVICE_ROLE_KEY) in environment."
        )
    return config.SUPABASE_URL.rstrip("/"), config.SUPABASE_SECRET_KEY


def _extract_error_message(payload: Any, fallback: str) -> str:
    """Extract a readable error from Supabase's error shape."""
    if not isinstance(payload, dict):
        return fallback
    return (
        payload.get("msg")
        or payload.get("error_description")
        or payload.get("error")
        or fallback
    )


def _headers(api_key: str) -> Dict[str, str]:
    return {
        "apikey": api_key,
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


async def _auth_request(method: str, path: str, json_body: Dict[str, Any] | None = None):
    supabase_url, api_key = _ensure_supabase_config()
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.request(
                method,
                f"{supabase_url}/auth/v1/{path}",
                headers=_headers(api_key),
                json=json_body,
            )
    except httpx.HTTPError as error:
        raise StorageError("Account service is unreachable.") from error

    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return response.status_code, data


def normalize_plan(value: Any) -> str:
    """Normalize plan text into accepted values."""
    if not isinstance(value, str):
        return PLAN_FREE
    normalized = value.strip().lower()
    if normalized == PLAN_PRO:
        return PLAN_PRO
    return PLAN_FREE


def get_user_plan(user: Dict[str, Any]) -> str:
    """Resolve current account plan from auth metadata."""
    user_metadata = user.get("user_metadata") or {}
    app_metadata = user.get("app_metadata") or {}
    billing_metadata = app_metadata.get("billing") if isinstance(app_metadata, dict) else {}
    if not isinstance(billing_metadata, dict):
        billing_metadata = {}
    return normalize_plan(
        billing_metadata.get("plan")
        or app_metadata.get("plan")
        or user_metadata.get("plan")
        or PLAN_FREE
    )


def public_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user.get("id"),
        "email": user.get("email"),
        "plan": get_user_plan(user),
    }


async def register_user(email: str, password: str) -> tuple[Dict[str, Any], bool]:
    """
    Register a Supabase user with email/password.

    Returns the user and whether the account still needs email confirmation
    (Supabase returns no session in that case).
    """
    status_code, data = await _auth_request(
        "POST", "signup", {"email": email, "password": password}
    )
    if status_code >= 400:
        raise ValidationError(_extract_error_message(data, "Failed to register user."))

    user = data.get("user") if isinstance(data.get("user"), dict) else data
    if not user.get("id"):
        raise StorageError("Invalid user payload from Supabase.")
    has_session = bool(data.get("session") or data.get("access_token"))
    logger.info("Registered account %s", user["id"])
    return user, not has_session


async def login_user(email: str, password: str) -> Dict[str, Any]:
    """Verify email/password with Supabase and return the user."""
    status_code, data = await _auth_request(
        "POST",
        "token?grant_type=password",
        {"email": email, "password": password},
    )
    if status_code >= 400:
        raise AuthenticationError(
            _extract_error_message(data, "Invalid email or password."),
            code="INVALID_CREDENTIALS",
        )

    user = data.get("user")
    if not isinstance(user, dict) or not user.get("id"):
        raise StorageError("Invalid user payload from Supabase.")
    return user


async def get_user(user_id: str) -> Dict[str, Any]:
    """Fetch a user by id through the Supabase admin API."""
    status_code, data = await _auth_request("GET", f"admin/users/{user_id}")
    if status_code == 404:
        raise AuthenticationError("Account no longer exists.", code="INVALID_TOKEN")
    if status_code >= 400:
        raise StorageError(_extract_error_message(data, "Failed to fetch user."))

    if isinstance(data.get("user"), dict):
        return data["user"]
    return data


async def get_plan_for_user(user_id: str) -> str:
    user = await get_user(user_id)
    return get_user_plan(user)
