"""FastAPI backend for SolveChain."""

import json
import logging
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from . import accounts, billing, config, files, orchestrator, rate_limit, storage
from .errors import (
    AuthenticationError,
    InsufficientBalanceError,
    NotFoundError,
    QuotaExceededError,
    ServiceError,
    ValidationError,
)
from .identity import (
    CookieInstruction,
    Identity,
    IdentityResolution,
    RegisteredIdentity,
    clear_anonymous_cookies,
    login_cookies,
    resolve_identity,
)
from .notifier import (
    TERMINAL_STATUSES,
    CompletionNotifier,
    chat_status,
    wait_for_chat,
    watch_chat,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="SolveChain API")
app.state.notifier = CompletionNotifier()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class AuthRequest(BaseModel):
    """Email/password auth request payload."""
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=6, max_length=256)


class AuthResponse(BaseModel):
    """Auth response for login/register."""
    user: Dict[str, Any]
    requires_email_confirmation: bool = False


class FeedbackRequest(BaseModel):
    """Ask one model of a chat for a new answer."""
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId", min_length=1)
    model_name: str = Field(alias="modelName", min_length=1)
    feedback: str = Field(min_length=1, max_length=10000)


class EditRequest(BaseModel):
    """Rewrite one response in place, discarding the responses after it."""
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId", min_length=1)
    model_name: str | None = Field(default=None, alias="modelName")
    old_response_id: str = Field(alias="oldResponseId", min_length=1)
    new_text: str = Field(alias="newText", min_length=1, max_length=10000)


class ModelResponsePayload(BaseModel):
    id: str
    model_name: str
    role: str
    response: str
    completed: bool = True
    created_at: str | None = None


class ChatMetadata(BaseModel):
    """Chat metadata for the history view."""
    id: str
    problem_statement: str
    response_count: int
    orchestration_finished: bool = False
    created_at: str | None = None
    updated_at: str | None = None


@app.exception_handler(ServiceError)
async def handle_service_error(request: Request, error: ServiceError):
    headers: Dict[str, str] = {}
    if isinstance(error, QuotaExceededError):
        headers["Retry-After"] = str(error.retry_after_seconds)
    if error.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, error.message)
    response = JSONResponse(
        status_code=error.status_code,
        content={"detail": error.to_detail()},
        headers=headers,
    )
    # Identity cookies minted for this request still have to reach the client.
    resolution = getattr(request.state, "identity_resolution", None)
    if resolution is not None:
        _apply_cookies(response, resolution.cookies)
    return response


def _client_ip(request: Request) -> str | None:
    if config.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _route_key(request: Request) -> str | None:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if not path:
        return None
    return f"{request.method} {path}"


def _apply_cookies(response: Response, cookies: List[CookieInstruction]):
    for cookie in cookies:
        if cookie.value is None:
            response.delete_cookie(
                cookie.name,
                path="/",
                secure=config.COOKIE_SECURE,
                httponly=True,
                samesite=config.COOKIE_SAMESITE,
            )
            continue
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            path="/",
            secure=config.COOKIE_SECURE,
            httponly=True,
            samesite=config.COOKIE_SAMESITE,
        )


async def get_identity_resolution(request: Request, response: Response) -> IdentityResolution:
    """Resolve caller identity from cookies and queue any cookie changes."""
    client_ip = _client_ip(request)
    resolution = resolve_identity(request.cookies, client_ip, _route_key(request))
    request.state.identity_resolution = resolution
    if resolution.migrated_from_anonymous and isinstance(
        resolution.identity, RegisteredIdentity
    ):
        await rate_limit.migrate_anonymous_counter(client_ip, resolution.identity.user_id)
    _apply_cookies(response, resolution.cookies)
    return resolution


async def get_identity(
    resolution: IdentityResolution = Depends(get_identity_resolution),
) -> Identity:
    return resolution.identity


async def get_registered_identity(
    identity: Identity = Depends(get_identity),
) -> RegisteredIdentity:
    if not isinstance(identity, RegisteredIdentity):
        raise AuthenticationError("Authentication required.")
    return identity


def get_notifier(request: Request) -> CompletionNotifier:
    return request.app.state.notifier


async def _enforce_quota(request: Request, identity: Identity):
    """Count this request against the caller's tier; call only after validation."""
    plan = None
    if isinstance(identity, RegisteredIdentity):
        plan = await accounts.get_plan_for_user(identity.user_id)
    tier = rate_limit.resolve_tier(identity, plan)
    await rate_limit.enforce_rate_limit(identity, _client_ip(request), tier)


async def _serialize_chat(chat: Dict[str, Any], include_file_url: bool = True) -> Dict[str, Any]:
    attached_file = chat.get("attached_file")
    file_url = None
    if include_file_url and isinstance(attached_file, dict) and attached_file.get("key"):
        file_url = await files.create_signed_url(attached_file["key"])

    return {
        "id": chat["id"],
        "problem_statement": chat.get("problem_statement") or "",
        "model_roles": chat.get("model_roles") or [],
        "status": chat_status(chat),
        "orchestration_finished": bool(chat.get("orchestration_finished")),
        "failed_assignments": chat.get("failed_assignments") or [],
        "responses": [
            ModelResponsePayload(**response).model_dump()
            for response in chat.get("responses") or []
        ],
        "attached_file": attached_file,
        "file_url": file_url,
        "anonymous": bool(chat.get("anonymous")),
        "created_at": chat.get("created_at"),
        "updated_at": chat.get("updated_at"),
    }


async def _sign_in(request: Request, response: Response, user_id: str):
    """Issue the auth cookie and fold any anonymous session into the account."""
    _apply_cookies(response, login_cookies(user_id))
    if request.cookies.get(config.ANONYMOUS_ID_COOKIE_NAME):
        await rate_limit.migrate_anonymous_counter(_client_ip(request), user_id)
        _apply_cookies(response, clear_anonymous_cookies())


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "SolveChain API"}


@app.post("/api/auth/register", response_model=AuthResponse)
async def register(request: AuthRequest, http_request: Request, response: Response):
    """Register a new account and sign it in when no confirmation is pending."""
    user, requires_confirmation = await accounts.register_user(request.email, request.password)
    if not requires_confirmation:
        await _sign_in(http_request, response, user["id"])
    return {
        "user": accounts.public_profile(user),
        "requires_email_confirmation": requires_confirmation,
    }


@app.post("/api/auth/login", response_model=AuthResponse)
async def login(request: AuthRequest, http_request: Request, response: Response):
    """Sign in an existing account."""
    user = await accounts.login_user(request.email, request.password)
    await _sign_in(http_request, response, user["id"])
    return {"user": accounts.public_profile(user), "requires_email_confirmation": False}


@app.post("/api/auth/logout")
async def logout(response: Response):
    _apply_cookies(
        response,
        [CookieInstruction(config.AUTH_COOKIE_NAME), *clear_anonymous_cookies()],
    )
    return {"status": "ok"}


@app.get("/api/auth/me")
async def me(identity: RegisteredIdentity = Depends(get_registered_identity)):
    """Return the signed-in account profile."""
    user = await accounts.get_user(identity.user_id)
    return {"user": accounts.public_profile(user)}


@app.post("/api/solve")
async def solve(
    http_request: Request,
    identity: Identity = Depends(get_identity),
    notifier: CompletionNotifier = Depends(get_notifier),
):
    """
    Accept a problem and start its solve chain.

    Returns the chat id immediately; the chain runs in the background.
    """
    solve_input = await files.parse_solve_request(http_request)
    problem = solve_input.problem_statement.strip()
    if not problem:
        raise ValidationError("problemStatement is required.")
    assignments = orchestrator.normalize_assignments(solve_input.model_assignments)
    uploaded = await files.read_upload(solve_input.upload) if solve_input.upload else None

    await _enforce_quota(http_request, identity)
    if not await billing.check_balance(identity):
        raise InsufficientBalanceError("Credit balance is exhausted.")

    file_ref = None
    try:
        if uploaded is not None:
            file_ref = await files.store_upload(uploaded)
        statement = await storage.find_or_create_problem_statement(identity, problem, file_ref)
        breakdown = await storage.create_problem_breakdown(
            identity,
            statement["id"],
            [assignment.to_dict() for assignment in assignments],
        )
        chat = await storage.create_chat(identity, statement["id"], breakdown["id"])
    except ServiceError:
        await files.discard_upload(file_ref)
        raise

    attached_file = statement.get("attached_file")
    if file_ref is not None and attached_file != file_ref:
        # An identical statement already existed and keeps its own attachment.
        await files.discard_upload(file_ref)

    file_text = await files.extract_text(
        attached_file,
        uploaded.content if uploaded is not None and attached_file == file_ref else None,
    )
    orchestrator.start_solve_chain(
        chat["id"], problem, assignments, identity, notifier, file_text=file_text
    )

    file_url = None
    if isinstance(attached_file, dict) and attached_file.get("key"):
        file_url = await files.create_signed_url(attached_file["key"])
    # Only text/plain and text/csv attachments are decoded into the first step.
    return {"chatId": chat["id"], "fileUrl": file_url, "fileInPrompt": bool(file_text)}


@app.get("/api/chat/history", response_model=List[ChatMetadata])
async def chat_history(identity: RegisteredIdentity = Depends(get_registered_identity)):
    """List the caller's chats, most recently updated first."""
    return await storage.list_chats_for_author(identity)


@app.get("/api/chat/{chat_id}")
async def get_chat(
    chat_id: str,
    http_request: Request,
    identity: Identity = Depends(get_identity),
    notifier: CompletionNotifier = Depends(get_notifier),
):
    """Return chat state, holding the request briefly while answers are still arriving."""
    chat = await orchestrator.load_owned_chat(chat_id, identity)
    if chat_status(chat) not in TERMINAL_STATUSES:
        chat = await wait_for_chat(
            chat_id,
            notifier,
            is_disconnected=http_request.is_disconnected,
        )
        if chat is None:
            raise NotFoundError("Chat not found.")
    return await _serialize_chat(chat)


@app.get("/api/chat/{chat_id}/stream")
async def stream_chat(
    chat_id: str,
    http_request: Request,
    resolution: IdentityResolution = Depends(get_identity_resolution),
    notifier: CompletionNotifier = Depends(get_notifier),
):
    """Stream chat snapshots as Server-Sent Events until the chat settles."""
    await orchestrator.load_owned_chat(chat_id, resolution.identity)

    async def event_generator():
        try:
            async for chat in watch_chat(
                chat_id,
                notifier,
                is_disconnected=http_request.is_disconnected,
            ):
                payload = await _serialize_chat(chat, include_file_url=False)
                yield f"data: {json.dumps({'type': 'chat_update', 'data': payload})}\n\n"
            yield f"data: {json.dumps({'type': 'end'})}\n\n"
        except ServiceError as error:
            yield f"data: {json.dumps({'type': 'error', 'detail': error.to_detail()})}\n\n"

    streaming_response = StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    _apply_cookies(streaming_response, resolution.cookies)
    return streaming_response


@app.get(
    "/api/chat/{chat_id}/responses/{model_name}",
    response_model=List[ModelResponsePayload],
)
async def get_model_responses(
    chat_id: str,
    model_name: str,
    http_request: Request,
    identity: Identity = Depends(get_identity),
):
    """Return every answer one model gave in a chat, in chat order."""
    await _enforce_quota(http_request, identity)
    return await orchestrator.list_model_responses(chat_id, model_name, identity)


@app.put("/api/chat/edit", response_model=ModelResponsePayload)
async def edit_chat_response(
    request: EditRequest,
    http_request: Request,
    identity: Identity = Depends(get_identity),
    notifier: CompletionNotifier = Depends(get_notifier),
):
    """Rewrite one response from new instructions and drop everything after it."""
    await _enforce_quota(http_request, identity)
    return await orchestrator.edit_response(
        request.chat_id,
        request.old_response_id,
        request.new_text,
        identity,
        notifier,
        model_name=request.model_name,
    )


@app.post("/api/chat/feedback", response_model=ModelResponsePayload)
async def chat_feedback(
    request: FeedbackRequest,
    http_request: Request,
    identity: Identity = Depends(get_identity),
    notifier: CompletionNotifier = Depends(get_notifier),
):
    """Append a regenerated answer from one model."""
    await _enforce_quota(http_request, identity)
    return await orchestrator.regenerate_response(
        request.chat_id,
        request.model_name,
        request.feedback,
        identity,
        notifier,
    )


@app.delete("/api/chat/{chat_id}")
async def delete_chat(
    chat_id: str,
    identity: RegisteredIdentity = Depends(get_registered_identity),
):
    await orchestrator.delete_chat(chat_id, identity)
    return {"status": "deleted", "chatId": chat_id}


@app.get("/api/usage")
async def usage(
    days: int = Query(default=config.USAGE_REPORT_DEFAULT_DAYS, ge=1, le=366),
    identity: RegisteredIdentity = Depends(get_registered_identity),
):
    """Token usage and cost per model and per day."""
    return await billing.usage_report(identity.user_id, days)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
