"""Chained multi-model solving: each model sees every earlier model's answer."""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from . import billing, files, providers, storage
from .errors import (
    InsufficientBalanceError,
    ModelInvocationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .identity import Identity, is_author
from .notifier import CompletionNotifier

logger = logging.getLogger(__name__)

MAX_ASSIGNMENTS = 10
MAX_ROLE_CHARS = 2000

# Strong references so scheduled chains are not garbage collected mid-run.
_background_tasks: Set[asyncio.Task] = set()
_chat_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


@dataclass(frozen=True)
class Assignment:
    """One (model, role) step of a solve chain."""

    model: str
    role: str

    def to_dict(self) -> Dict[str, str]:
        return {"model": self.model, "role": self.role}


def normalize_assignments(raw_assignments: Any) -> List[Assignment]:
    """
    Validate caller-declared assignments, preserving their order.

    Raises:
        ValidationError: missing, empty, malformed, or unsupported entries.
    """
    if not isinstance(raw_assignments, list) or not raw_assignments:
        raise ValidationError("modelAssignments must be a non-empty list.")
    if len(raw_assignments) > MAX_ASSIGNMENTS:
        raise ValidationError(f"At most {MAX_ASSIGNMENTS} model assignments are allowed.")

    assignments: List[Assignment] = []
    for index, entry in enumerate(raw_assignments):
        if not isinstance(entry, dict):
            raise ValidationError(f"Assignment {index} must be an object.")
        model = entry.get("model")
        role = entry.get("role")
        if not isinstance(model, str) or not model.strip():
            raise ValidationError(f"Assignment {index} is missing a model.")
        if not isinstance(role, str) or not role.strip():
            raise ValidationError(f"Assignment {index} is missing a role.")
        if not providers.is_supported_model(model):
            raise ValidationError(f"Model '{model.strip()}' is not supported.")
        assignments.append(Assignment(model.strip(), role.strip()[:MAX_ROLE_CHARS]))
    return assignments


def build_chain_prompt(
    problem: str,
    assignment: Assignment,
    previous: List[Tuple[str, str]],
) -> str:
    """Prompt for one chain step; previous holds (model, response) in chain order."""
    lines = [
        f"Problem: {problem}",
        f"Your role in solving this: {assignment.role}",
    ]
    if previous:
        lines.append("")
        lines.append("Previous model responses:")
        for model_name, response_text in previous:
            lines.append(f"The previous model ({model_name}) gave the response: {response_text}")
    return "\n".join(lines)


def build_regeneration_prompt(problem: str, previous_response: str, feedback: str) -> str:
    return (
        f"I have this problem: {problem}\n"
        f"\nYour previous response: {previous_response}\n"
        f"Feedback: {feedback}, write how you'll fix it, then give me a new solution."
    )


def build_edit_prompt(previous_response: str, feedback: str) -> str:
    return f"Your previous response: {previous_response}\nFeedback: {feedback}"


def _chat_lock(chat_id: str) -> asyncio.Lock:
    """Per-chat lock serializing mutations of the response sequence."""
    lock = _chat_locks.get(chat_id)
    if lock is None:
        lock = asyncio.Lock()
        _chat_locks[chat_id] = lock
    return lock


async def _ensure_balance(identity: Identity):
    if not await billing.check_balance(identity):
        raise InsufficientBalanceError("Credit balance is exhausted.")


async def _record_usage(identity: Identity, model_name: str, usage: Dict[str, int]):
    try:
        await billing.record_usage(
            identity,
            model_name,
            usage.get("input_tokens", 0),
            usage.get("output_tokens", 0),
        )
    except StorageError as error:
        logger.error("Failed to record usage for %s: %s", model_name, error)


async def _append_response(
    chat_id: str, model_name: str, role: str, text: str
) -> Dict[str, Any]:
    async with _chat_lock(chat_id):
        response = await storage.create_model_response(model_name, role, text, completed=True)
        await storage.append_chat_response(chat_id, response["id"])
    return response


async def run_solve_chain(
    chat_id: str,
    problem: str,
    assignments: List[Assignment],
    identity: Identity,
    notifier: CompletionNotifier,
    file_text: str = "",
) -> List[int]:
    """
    Invoke every assignment in order, persisting each answer as it lands.

    A failing step is logged and skipped; the chain continues. Returns the
    indexes of skipped assignments.
    """
    previous: List[Tuple[str, str]] = []
    failed: List[int] = []

    def skip(index: int, assignment: Assignment, error: Exception):
        logger.warning(
            "Skipping assignment %s (%s) in chat %s: %s",
            index,
            assignment.model,
            chat_id,
            error,
        )
        failed.append(index)

    for index, assignment in enumerate(assignments):
        prompt = build_chain_prompt(problem, assignment, previous)
        try:
            await _ensure_balance(identity)
            result = await providers.invoke_model(
                assignment.model,
                prompt,
                identity,
                file_text=file_text if index == 0 and file_text else None,
            )
        except (ModelInvocationError, InsufficientBalanceError, StorageError) as error:
            skip(index, assignment, error)
            continue

        await _record_usage(identity, assignment.model, result.usage)
        try:
            await _append_response(chat_id, assignment.model, assignment.role, result.text)
        except StorageError as error:
            skip(index, assignment, error)
            continue

        previous.append((assignment.model, result.text))
        notifier.publish(chat_id)

    try:
        await storage.mark_chat_finished(chat_id, failed)
    except StorageError as error:
        logger.error("Could not mark chat %s finished: %s", chat_id, error)
    notifier.publish(chat_id)
    logger.info(
        "Solve chain for chat %s finished: %s/%s steps succeeded",
        chat_id,
        len(assignments) - len(failed),
        len(assignments),
    )
    return failed


def _on_chain_done(task: asyncio.Task):
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Solve chain task %s crashed", task.get_name(), exc_info=error)


def start_solve_chain(
    chat_id: str,
    problem: str,
    assignments: List[Assignment],
    identity: Identity,
    notifier: CompletionNotifier,
    file_text: str = "",
) -> asyncio.Task:
    """Schedule the chain independently of the triggering request."""
    task = asyncio.create_task(
        run_solve_chain(chat_id, problem, assignments, identity, notifier, file_text),
        name=f"solve-chain-{chat_id}",
    )
    _background_tasks.add(task)
    task.add_done_callback(_on_chain_done)
    return task


async def load_owned_chat(chat_id: str, identity: Identity) -> Dict[str, Any]:
    """Return chat detail only when it belongs to identity."""
    chat = await storage.get_chat_detail(chat_id)
    if chat is None or not is_author(chat, identity):
        raise NotFoundError("Chat not found.")
    return chat


def _latest_response_for_model(
    chat: Dict[str, Any], model_name: str
) -> Optional[Dict[str, Any]]:
    for response in reversed(chat.get("responses") or []):
        if response.get("model_name") == model_name:
            return response
    return None


async def regenerate_response(
    chat_id: str,
    model_name: str,
    feedback: str,
    identity: Identity,
    notifier: CompletionNotifier,
) -> Dict[str, Any]:
    """Append a new answer from model_name that addresses feedback."""
    if not isinstance(feedback, str) or not feedback.strip():
        raise ValidationError("feedback is required.")

    chat = await load_owned_chat(chat_id, identity)
    target = _latest_response_for_model(chat, model_name)
    if target is None:
        raise NotFoundError(f"No response from {model_name} in this chat.")

    await _ensure_balance(identity)
    file_text = await files.extract_text(chat.get("attached_file"))
    prompt = build_regeneration_prompt(
        chat.get("problem_statement") or "", target.get("response") or "", feedback.strip()
    )
    result = await providers.invoke_model(
        model_name, prompt, identity, file_text=file_text or None
    )
    await _record_usage(identity, model_name, result.usage)

    response = await _append_response(chat_id, model_name, feedback.strip(), result.text)
    notifier.publish(chat_id)
    return response


async def edit_response(
    chat_id: str,
    response_id: str,
    new_text: str,
    identity: Identity,
    notifier: CompletionNotifier,
    model_name: str | None = None,
) -> Dict[str, Any]:
    """
    Replace one response in place and drop everything after it.

    The model is invoked before anything is deleted, so a failed call
    leaves the chat unchanged.
    """
    if not isinstance(new_text, str) or not new_text.strip():
        raise ValidationError("newText is required.")

    chat = await load_owned_chat(chat_id, identity)
    target = next(
        (item for item in chat.get("responses") or [] if item.get("id") == response_id),
        None,
    )
    if target is None or response_id not in chat["response_ids"]:
        raise NotFoundError("Response not found in this chat.")
    if model_name and model_name != target.get("model_name"):
        raise ValidationError("modelName does not match the edited response.")

    await _ensure_balance(identity)
    feedback = new_text.strip()
    result = await providers.invoke_model(
        target["model_name"],
        build_edit_prompt(target.get("response") or "", feedback),
        identity,
    )
    await _record_usage(identity, target["model_name"], result.usage)

    async with _chat_lock(chat_id):
        current = await storage.get_chat(chat_id)
        if current is None or response_id not in current["response_ids"]:
            raise NotFoundError("Response not found in this chat.")
        response_ids = current["response_ids"]
        position = response_ids.index(response_id)
        await storage.delete_model_responses(response_ids[position + 1:])
        await storage.set_chat_response_ids(chat_id, response_ids[: position + 1])
        await storage.update_model_response(response_id, feedback, result.text)

    notifier.publish(chat_id)
    return {**target, "role": feedback, "response": result.text, "completed": True}


async def list_model_responses(
    chat_id: str, model_name: str, identity: Identity
) -> List[Dict[str, Any]]:
    chat = await load_owned_chat(chat_id, identity)
    return [
        response
        for response in chat.get("responses") or []
        if response.get("model_name") == model_name
    ]


async def delete_chat(chat_id: str, identity: Identity):
    """Delete a chat together with its response rows."""
    chat = await storage.get_chat(chat_id)
    if chat is None or not is_author(chat, identity):
        raise NotFoundError("Chat not found.")
    async with _chat_lock(chat_id):
        await storage.delete_model_responses(chat["response_ids"])
        await storage.delete_chat(chat_id)
