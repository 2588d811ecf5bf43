"""Configuration for the SolveChain backend."""

import os
from dotenv import load_dotenv

load_dotenv()

# Runtime environment (development | production)
DEVELOPMENT_ENV_NAMES = {"development", "dev", "local"}
TRUTHY_VALUES = {"1", "true", "yes", "on"}
FALSY_VALUES = {"0", "false", "no", "off"}


def _strip_wrapping_quotes(raw_value: str) -> str:
    """Trim whitespace and optional matching single/double quotes."""
    normalized_value = raw_value.strip()
    while (
        len(normalized_value) >= 2
        and normalized_value[0] == normalized_value[-1]
        and normalized_value[0] in {"'", '"'}
    ):
        normalized_value = normalized_value[1:-1].strip()
    return normalized_value


def resolve_app_env(
    raw_solvechain_env: str | None,
    raw_app_env: str | None,
    raw_environment: str | None,
) -> str:
    """Resolve runtime environment from supported env var fallbacks."""
    raw_value = raw_solvechain_env or raw_app_env or raw_environment or "production"
    return _strip_wrapping_quotes(raw_value).lower()


def _parse_bool(raw_value: str | None, default: bool) -> bool:
    """Parse a boolean flag, falling back to default on unknown text."""
    if raw_value is None:
        return default
    normalized = _strip_wrapping_quotes(raw_value).lower()
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _parse_int(raw_value: str | None, default: int) -> int:
    """Parse an integer setting, falling back to default when blank or invalid."""
    if raw_value is None:
        return default
    normalized = _strip_wrapping_quotes(raw_value)
    if not normalized:
        return default
    try:
        return int(normalized)
    except ValueError:
        return default


def _parse_optional_limit(raw_value: str | None, default: int | None) -> int | None:
    """
    Parse a request ceiling.

    Blank, "none", "unlimited" or a negative number mean no ceiling.
    """
    if raw_value is None:
        return default
    normalized = _strip_wrapping_quotes(raw_value).lower()
    if not normalized:
        return default
    if normalized in {"none", "unlimited", "inf"}:
        return None
    try:
        parsed = int(normalized)
    except ValueError:
        return default
    if parsed < 0:
        return None
    return parsed


def _parse_float(raw_value: str | None, default: float) -> float:
    if raw_value is None:
        return default
    try:
        return float(_strip_wrapping_quotes(raw_value))
    except ValueError:
        return default


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    """Parse a comma-separated list of CORS origins."""
    if not raw_origins:
        return []

    normalized_origins_value = _strip_wrapping_quotes(raw_origins)
    if not normalized_origins_value:
        return []

    parsed_origins: list[str] = []
    seen_origins: set[str] = set()
    for origin in normalized_origins_value.split(","):
        normalized_origin = _strip_wrapping_quotes(origin).rstrip("/")
        if not normalized_origin:
            continue
        if normalized_origin == "*":
            raise ValueError(
                "CORS_ALLOW_ORIGINS does not support '*' when credentials are enabled."
            )
        if normalized_origin not in seen_origins:
            parsed_origins.append(normalized_origin)
            seen_origins.add(normalized_origin)
    return parsed_origins


def resolve_cors_allow_origins(
    raw_origins: str | None,
    environment: str,
) -> list[str]:
    """
    Resolve CORS origins using env overrides and environment-aware defaults.

    Development defaults to localhost origins for convenience.
    Production defaults to no cross-origin access unless explicitly configured.
    """
    parsed_origins = _parse_cors_origins(raw_origins)
    if parsed_origins:
        return parsed_origins
    if environment in DEVELOPMENT_ENV_NAMES:
        return ["http://localhost:5173", "http://localhost:3000"]
    return []


def _parse_model_price(
    raw_value: str | None,
    fallback: tuple[float, float],
) -> tuple[float, float]:
    """Parse "input_cost,output_cost" per-token pricing."""
    if not raw_value:
        return fallback
    parts = [part.strip() for part in _strip_wrapping_quotes(raw_value).split(",")]
    if len(parts) != 2:
        return fallback
    try:
        return float(parts[0]), float(parts[1])
    except ValueError:
        return fallback


APP_ENV = resolve_app_env(
    os.getenv("SOLVECHAIN_ENV"),
    os.getenv("APP_ENV"),
    os.getenv("ENVIRONMENT"),
)
IS_DEVELOPMENT = APP_ENV in DEVELOPMENT_ENV_NAMES

LOG_LEVEL = (os.getenv("LOG_LEVEL") or ("DEBUG" if IS_DEVELOPMENT else "INFO")).upper()

CORS_ALLOW_ORIGINS = resolve_cors_allow_origins(
    os.getenv("CORS_ALLOW_ORIGINS"),
    APP_ENV,
)

# Supabase configuration
SUPABASE_URL = os.getenv("SUPABASE_URL") or os.getenv("SUPABASE_PROJECT_URL")
SUPABASE_SECRET_KEY = os.getenv("SUPABASE_API_KEY_SECRET") or os.getenv(
    "SUPABASE_SERVICE_ROLE_KEY"
)
SUPABASE_STORAGE_BUCKET = os.getenv("SUPABASE_STORAGE_BUCKET") or "problem-files"
SIGNED_URL_TTL_SECONDS = _parse_int(os.getenv("SIGNED_URL_TTL_SECONDS"), 3600)

# Identity tokens
JWT_SECRET = os.getenv("JWT_SECRET") or ("dev-insecure-secret" if IS_DEVELOPMENT else "")
JWT_ALGORITHM = "HS256"
AUTH_TOKEN_TTL_SECONDS = _parse_int(os.getenv("AUTH_TOKEN_TTL_SECONDS"), 24 * 60 * 60)
ANONYMOUS_TOKEN_TTL_SECONDS = _parse_int(
    os.getenv("ANONYMOUS_TOKEN_TTL_SECONDS"), 30 * 24 * 60 * 60
)
AUTH_TOKEN_REFRESH_THRESHOLD_SECONDS = _parse_int(
    os.getenv("AUTH_TOKEN_REFRESH_THRESHOLD_SECONDS"), 2 * 60 * 60
)
ALLOW_ANONYMOUS = _parse_bool(os.getenv("ALLOW_ANONYMOUS"), True)
ANONYMOUS_ID_SALT = os.getenv("ANONYMOUS_ID_SALT") or ""

AUTH_COOKIE_NAME = "authToken"
ANONYMOUS_TOKEN_COOKIE_NAME = "anonToken"
ANONYMOUS_ID_COOKIE_NAME = "anonymousId"
COOKIE_SECURE = _parse_bool(os.getenv("COOKIE_SECURE"), not IS_DEVELOPMENT)
COOKIE_SAMESITE = "none" if COOKIE_SECURE else "lax"

# "METHOD template" routes that tolerate an anonymous identity.
PUBLIC_ROUTES = frozenset(
    {
        "POST /api/solve",
        "POST /api/chat/feedback",
        "PUT /api/chat/edit",
        "GET /api/chat/{chat_id}",
        "GET /api/chat/{chat_id}/stream",
        "GET /api/chat/{chat_id}/responses/{model_name}",
    }
)
TRUST_FORWARDED_FOR = _parse_bool(os.getenv("TRUST_FORWARDED_FOR"), False)

# Rolling request quota per identity. None means no ceiling.
RATE_LIMIT_ANONYMOUS = _parse_optional_limit(os.getenv("RATE_LIMIT_ANONYMOUS"), 10)
RATE_LIMIT_REGISTERED = _parse_optional_limit(os.getenv("RATE_LIMIT_REGISTERED"), 20)
RATE_LIMIT_SUBSCRIBED = _parse_optional_limit(os.getenv("RATE_LIMIT_SUBSCRIBED"), None)
RATE_LIMIT_WINDOW_SECONDS = _parse_int(
    os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 24 * 60 * 60
)

# Chat completion waiting
CHAT_WAIT_TIMEOUT_SECONDS = _parse_float(os.getenv("CHAT_WAIT_TIMEOUT_SECONDS"), 10.0)
CHAT_STALL_TIMEOUT_SECONDS = _parse_int(os.getenv("CHAT_STALL_TIMEOUT_SECONDS"), 300)
SSE_MAX_DURATION_SECONDS = _parse_int(os.getenv("SSE_MAX_DURATION_SECONDS"), 600)

# Provider credentials and endpoints
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_MODEL = os.getenv("OPENAI_MODEL") or "gpt-4o-mini"

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL") or "claude-3-haiku-20240307"
ANTHROPIC_MAX_TOKENS = _parse_int(os.getenv("ANTHROPIC_MAX_TOKENS"), 2048)

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
GEMINI_MODEL = os.getenv("GEMINI_MODEL") or "gemini-1.5-flash"

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"

MODEL_REQUEST_TIMEOUT_SECONDS = _parse_float(
    os.getenv("MODEL_REQUEST_TIMEOUT_SECONDS"), 120.0
)

# Per-token pricing (USD) as (input, output).
MODEL_PRICING = {
    "Gemini": _parse_model_price(os.getenv("PRICE_GEMINI"), (0.000000075, 0.0000003)),
    "ChatGpt": _parse_model_price(os.getenv("PRICE_CHATGPT"), (0.0000025, 0.00001)),
    "Claude": _parse_model_price(os.getenv("PRICE_CLAUDE"), (0.000003, 0.000015)),
}
DEFAULT_MODEL_PRICE = _parse_model_price(
    os.getenv("PRICE_DEFAULT"), (0.000003, 0.000015)
)

# Credit ledger
ENFORCE_CREDIT_BALANCE = _parse_bool(os.getenv("ENFORCE_CREDIT_BALANCE"), True)
STARTING_CREDIT_BALANCE = _parse_float(os.getenv("STARTING_CREDIT_BALANCE"), 1.0)
USAGE_REPORT_DEFAULT_DAYS = _parse_int(os.getenv("USAGE_REPORT_DEFAULT_DAYS"), 30)

# Attachments. Every allowed type is stored and linked; only text/plain and
# text/csv are read into the first prompt (see files.TEXT_MIME_TYPES).
ALLOWED_UPLOAD_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "text/plain",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/csv",
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
    }
)
MAX_UPLOAD_FILE_SIZE_BYTES = _parse_int(
    os.getenv("MAX_UPLOAD_FILE_SIZE_BYTES"), 5 * 1024 * 1024
)
MAX_EXTRACTED_TEXT_CHARS = _parse_int(os.getenv("MAX_EXTRACTED_TEXT_CHARS"), 60000)
