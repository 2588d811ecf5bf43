"""In-process completion notifications and chat status derivation."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from . import config, storage

logger = logging.getLogger(__name__)

PENDING = "pending"
PARTIAL = "partial"
COMPLETE = "complete"
INCOMPLETE = "incomplete"
STALLED = "stalled"
TERMINAL_STATUSES = {COMPLETE, INCOMPLETE, STALLED}

# Upper bound between disconnect checks while a reader waits.
DISCONNECT_POLL_SECONDS = 1.0

Callback = Callable[[str], None]
DisconnectCheck = Callable[[], Awaitable[bool]]


class CompletionNotifier:
    """
    Publish/subscribe registry keyed by chat id.

    Scoped to one process. A deployment with several instances needs a
    shared channel implementing the same two methods.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[Callback]] = defaultdict(set)

    def publish(self, chat_id: str):
        for callback in list(self._subscribers.get(chat_id, ())):
            try:
                callback(chat_id)
            except Exception:
                logger.exception("Completion subscriber for chat %s failed", chat_id)

    def subscribe(self, chat_id: str, callback: Callback) -> Callable[[], None]:
        self._subscribers[chat_id].add(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(chat_id)
            if callbacks is None:
                return
            callbacks.discard(callback)
            if not callbacks:
                self._subscribers.pop(chat_id, None)

        return unsubscribe

    def subscriber_count(self, chat_id: str) -> int:
        return len(self._subscribers.get(chat_id, ()))


def chat_status(chat: Dict[str, Any], now: datetime | None = None) -> str:
    """Derive the client-facing completion status of a chat detail."""
    responses = chat.get("responses") or []
    expected = len(chat.get("model_roles") or [])
    all_completed = all(bool(item.get("completed")) for item in responses)

    if chat.get("orchestration_finished"):
        if chat.get("failed_assignments"):
            return INCOMPLETE
        return COMPLETE if all_completed else INCOMPLETE

    if expected and len(responses) >= expected and all_completed:
        return COMPLETE

    updated_at = storage._parse_iso_datetime(chat.get("updated_at"))
    current = now or storage._now_utc()
    if updated_at is not None and current - updated_at > timedelta(
        seconds=config.CHAT_STALL_TIMEOUT_SECONDS
    ):
        return STALLED

    return PENDING if not responses else PARTIAL


def _is_settled(chat: Optional[Dict[str, Any]]) -> bool:
    return chat is None or chat_status(chat) in TERMINAL_STATUSES


async def _wait_for_signal(
    changed: asyncio.Event,
    deadline: float,
    is_disconnected: Optional[DisconnectCheck],
) -> str:
    """Wait for a publish; returns "changed", "timeout" or "disconnected"."""
    loop = asyncio.get_running_loop()
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return "timeout"
        try:
            await asyncio.wait_for(
                changed.wait(), timeout=min(remaining, DISCONNECT_POLL_SECONDS)
            )
        except asyncio.TimeoutError:
            if is_disconnected is not None and await is_disconnected():
                return "disconnected"
            continue
        changed.clear()
        return "changed"


async def wait_for_chat(
    chat_id: str,
    notifier: CompletionNotifier,
    *,
    timeout: float | None = None,
    is_disconnected: Optional[DisconnectCheck] = None,
) -> Optional[Dict[str, Any]]:
    """
    Return the chat detail once settled, or its current state after timeout.

    The subscription is always released, including on cancellation or
    client disconnect.
    """
    chat = await storage.get_chat_detail(chat_id)
    if _is_settled(chat):
        return chat

    changed = asyncio.Event()
    unsubscribe = notifier.subscribe(chat_id, lambda _chat_id: changed.set())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + (
        config.CHAT_WAIT_TIMEOUT_SECONDS if timeout is None else timeout
    )
    try:
        # A publish may have landed between the first read and subscribing.
        chat = await storage.get_chat_detail(chat_id)
        while not _is_settled(chat):
            outcome = await _wait_for_signal(changed, deadline, is_disconnected)
            if outcome == "disconnected":
                return chat
            chat = await storage.get_chat_detail(chat_id)
            if outcome == "timeout":
                break
        return chat
    finally:
        unsubscribe()


async def watch_chat(
    chat_id: str,
    notifier: CompletionNotifier,
    *,
    is_disconnected: Optional[DisconnectCheck] = None,
    max_duration: float | None = None,
) -> AsyncIterator[Dict[str, Any]]:
    """Yield chat snapshots on every change until settled, disconnected, or expired."""
    changed = asyncio.Event()
    unsubscribe = notifier.subscribe(chat_id, lambda _chat_id: changed.set())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + (
        config.SSE_MAX_DURATION_SECONDS if max_duration is None else max_duration
    )
    try:
        chat = await storage.get_chat_detail(chat_id)
        if chat is None:
            return
        yield chat
        while not _is_settled(chat):
            outcome = await _wait_for_signal(changed, deadline, is_disconnected)
            if outcome != "changed":
                return
            chat = await storage.get_chat_detail(chat_id)
            if chat is None:
                return
            yield chat
    finally:
        unsubscribe()
