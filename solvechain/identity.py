"""Caller identity: signed cookie tokens for registered and anonymous principals."""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

import jwt

from . import config
from .errors import AuthenticationError

logger = logging.getLogger(__name__)

INVALID_TOKEN = "INVALID_TOKEN"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
NO_AUTH = "NO_AUTH"


@dataclass(frozen=True)
class RegisteredIdentity:
    user_id: str

    @property
    def anonymous(self) -> bool:
        return False


@dataclass(frozen=True)
class AnonymousIdentity:
    anonymous_id: str

    @property
    def anonymous(self) -> bool:
        return True


Identity = Union[RegisteredIdentity, AnonymousIdentity]


def identity_key(identity: Identity) -> str:
    """Stable string key for an identity (user id or anonymous id)."""
    if isinstance(identity, RegisteredIdentity):
        return identity.user_id
    if isinstance(identity, AnonymousIdentity):
        return identity.anonymous_id
    raise TypeError(f"Unsupported identity: {identity!r}")


def author_fields(identity: Identity) -> Dict[str, Any]:
    """Author columns for a row; exactly one author field is populated."""
    if isinstance(identity, RegisteredIdentity):
        return {
            "anonymous": False,
            "registered_author": identity.user_id,
            "anonymous_author": None,
        }
    if isinstance(identity, AnonymousIdentity):
        return {
            "anonymous": True,
            "registered_author": None,
            "anonymous_author": identity.anonymous_id,
        }
    raise TypeError(f"Unsupported identity: {identity!r}")


def author_filter(identity: Identity) -> Dict[str, str]:
    """PostgREST filter params matching rows authored by identity."""
    fields = author_fields(identity)
    if fields["anonymous"]:
        return {"anonymous": "eq.true", "anonymous_author": f"eq.{fields['anonymous_author']}"}
    return {"anonymous": "eq.false", "registered_author": f"eq.{fields['registered_author']}"}


def is_author(row: Mapping[str, Any], identity: Identity) -> bool:
    """Return True when a stored row belongs to identity."""
    fields = author_fields(identity)
    if bool(row.get("anonymous")) != fields["anonymous"]:
        return False
    if fields["anonymous"]:
        return row.get("anonymous_author") == fields["anonymous_author"]
    return row.get("registered_author") == fields["registered_author"]


def hash_client_address(client_ip: str | None) -> str:
    """Salted SHA-256 of the caller's network address."""
    raw = f"{config.ANONYMOUS_ID_SALT}{client_ip or 'unknown'}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_anonymous_id(client_ip: str | None) -> str:
    return f"{uuid.uuid4()}-{hash_client_address(client_ip)[:8]}"


def _now_utc() -> datetime:
    """Return current UTC time (wrapper to simplify deterministic tests)."""
    return datetime.now(timezone.utc)


def _signing_secret() -> str:
    if not config.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not configured.")
    return config.JWT_SECRET


def _encode(claims: Dict[str, Any], ttl_seconds: int, now: datetime) -> str:
    payload = {
        **claims,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, _signing_secret(), algorithm=config.JWT_ALGORITHM)


def issue_auth_token(user_id: str, now: datetime | None = None) -> str:
    return _encode(
        {"userId": user_id, "anonymous": False},
        config.AUTH_TOKEN_TTL_SECONDS,
        now or _now_utc(),
    )


def issue_anonymous_token(anonymous_id: str, now: datetime | None = None) -> str:
    return _encode(
        {"anonymousId": anonymous_id, "anonymous": True},
        config.ANONYMOUS_TOKEN_TTL_SECONDS,
        now or _now_utc(),
    )


def verify_token(token: str, *, anonymous: bool) -> Dict[str, Any]:
    """
    Verify a signed identity token and return its claims.

    Raises:
        AuthenticationError: code TOKEN_EXPIRED for an expired token,
            INVALID_TOKEN for a bad signature, malformed payload, or a
            token of the other kind.
    """
    try:
        claims = jwt.decode(
            token,
            _signing_secret(),
            algorithms=[config.JWT_ALGORITHM],
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError as error:
        raise AuthenticationError("Session token has expired.", code=TOKEN_EXPIRED) from error
    except jwt.InvalidTokenError as error:
        raise AuthenticationError("Session token is invalid.", code=INVALID_TOKEN) from error

    id_claim = "anonymousId" if anonymous else "userId"
    subject = claims.get(id_claim)
    if claims.get("anonymous") is not anonymous or not isinstance(subject, str) or not subject:
        raise AuthenticationError("Session token is invalid.", code=INVALID_TOKEN)
    return claims


@dataclass(frozen=True)
class CookieInstruction:
    """A cookie to set (value given) or clear (value None) on the response."""

    name: str
    value: Optional[str] = None
    max_age: Optional[int] = None


@dataclass
class IdentityResolution:
    identity: Identity
    cookies: List[CookieInstruction] = field(default_factory=list)
    # A registered request still carrying anonymous cookies.
    migrated_from_anonymous: bool = False


def _auth_cookie(token: str) -> CookieInstruction:
    return CookieInstruction(config.AUTH_COOKIE_NAME, token, config.AUTH_TOKEN_TTL_SECONDS)


def anonymous_cookies(anonymous_id: str, token: str) -> List[CookieInstruction]:
    return [
        CookieInstruction(
            config.ANONYMOUS_TOKEN_COOKIE_NAME, token, config.ANONYMOUS_TOKEN_TTL_SECONDS
        ),
        CookieInstruction(
            config.ANONYMOUS_ID_COOKIE_NAME, anonymous_id, config.ANONYMOUS_TOKEN_TTL_SECONDS
        ),
    ]


def clear_anonymous_cookies() -> List[CookieInstruction]:
    return [
        CookieInstruction(config.ANONYMOUS_TOKEN_COOKIE_NAME),
        CookieInstruction(config.ANONYMOUS_ID_COOKIE_NAME),
    ]


def login_cookies(user_id: str) -> List[CookieInstruction]:
    """Cookies for a fresh login."""
    return [_auth_cookie(issue_auth_token(user_id))]


def is_public_route(route: str | None) -> bool:
    """route is "METHOD /path/{template}"."""
    return bool(route) and route in config.PUBLIC_ROUTES


def _resolve_registered(
    token: str, now: datetime
) -> tuple[Optional[RegisteredIdentity], Optional[str], List[CookieInstruction]]:
    try:
        claims = verify_token(token, anonymous=False)
    except AuthenticationError as error:
        logger.info("Rejected auth token (%s)", error.code)
        return None, error.code, []

    identity = RegisteredIdentity(claims["userId"])
    cookies: List[CookieInstruction] = []
    remaining = int(claims["exp"]) - int(now.timestamp())
    if remaining < config.AUTH_TOKEN_REFRESH_THRESHOLD_SECONDS:
        cookies.append(_auth_cookie(issue_auth_token(identity.user_id, now)))
    return identity, None, cookies


def _resolve_anonymous(
    token: str | None, companion_id: str | None
) -> tuple[Optional[AnonymousIdentity], Optional[str]]:
    if not token:
        return None, None
    try:
        claims = verify_token(token, anonymous=True)
    except AuthenticationError as error:
        logger.info("Rejected anonymous token (%s)", error.code)
        return None, error.code
    if claims["anonymousId"] != companion_id:
        logger.info("Anonymous token does not match companion id cookie")
        return None, INVALID_TOKEN
    return AnonymousIdentity(claims["anonymousId"]), None


def resolve_identity(
    cookies: Mapping[str, str],
    client_ip: str | None,
    route: str | None,
    now: datetime | None = None,
) -> IdentityResolution:
    """
    Resolve exactly one identity for a request.

    Order: valid auth token, then a valid anonymous token whose id matches
    the companion cookie, then a freshly minted anonymous identity when
    anonymous access is allowed. Routes outside PUBLIC_ROUTES require a
    registered identity.

    Raises:
        AuthenticationError: no acceptable identity could be produced.
    """
    now = now or _now_utc()
    failure_code: Optional[str] = None

    auth_token = cookies.get(config.AUTH_COOKIE_NAME)
    if auth_token:
        registered, failure_code, refreshed = _resolve_registered(auth_token, now)
        if registered is not None:
            resolution = IdentityResolution(registered, cookies=refreshed)
            if cookies.get(config.ANONYMOUS_ID_COOKIE_NAME):
                resolution.migrated_from_anonymous = True
                resolution.cookies.extend(clear_anonymous_cookies())
            return resolution

    if not is_public_route(route):
        raise AuthenticationError(
            "Authentication required.", code=failure_code or NO_AUTH
        )

    anonymous, anonymous_failure = _resolve_anonymous(
        cookies.get(config.ANONYMOUS_TOKEN_COOKIE_NAME),
        cookies.get(config.ANONYMOUS_ID_COOKIE_NAME),
    )
    if anonymous is not None:
        return IdentityResolution(anonymous)
    failure_code = failure_code or anonymous_failure

    if not config.ALLOW_ANONYMOUS:
        raise AuthenticationError(
            "Authentication required.", code=failure_code or NO_AUTH
        )

    anonymous_id = generate_anonymous_id(client_ip)
    token = issue_anonymous_token(anonymous_id, now)
    logger.debug("Issued new anonymous identity")
    return IdentityResolution(
        AnonymousIdentity(anonymous_id),
        cookies=anonymous_cookies(anonymous_id, token),
    )
