"""Solve request parsing and attachment storage in Supabase Storage."""

from __future__ import annotations

import json
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
from urllib.parse import quote

import httpx
from fastapi import Request, UploadFile
from starlette.datastructures import UploadFile as StarletteUploadFile

from . import config
from .errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

TEXT_MIME_TYPES = {"text/plain", "text/csv"}


@dataclass
class SolveRequestInput:
    problem_statement: str
    model_assignments: Any
    upload: UploadFile | None = None


@dataclass
class UploadedFile:
    """A validated upload held in memory until stored."""

    filename: str
    mime_type: str
    content: bytes

    @property
    def size_bytes(self) -> int:
        return len(self.content)


def sanitize_filename(filename: str | None, fallback: str) -> str:
    """Return a safe base filename."""
    raw_name = filename or fallback
    base_name = Path(raw_name).name.strip() or fallback
    sanitized = "".join(
        character if character.isalnum() or character in {"-", "_", "."} else "_"
        for character in base_name
    ).strip()
    return (sanitized or fallback)[:255]


def normalize_upload_mime(upload_file: UploadFile, filename: str) -> str:
    """Best-effort MIME type normalization for uploaded files."""
    content_type = (upload_file.content_type or "").split(";")[0].strip().lower()
    if content_type:
        return content_type

    guessed, _ = mimetypes.guess_type(filename)
    if isinstance(guessed, str) and guessed:
        return guessed.lower()
    return "application/octet-stream"


def _parse_assignments_field(raw_value: Any) -> Any:
    """Multipart forms carry assignments as a JSON string."""
    if not isinstance(raw_value, str):
        return raw_value
    try:
        return json.loads(raw_value)
    except ValueError as error:
        raise ValidationError("modelAssignments must be a JSON list.") from error


async def parse_solve_request(http_request: Request) -> SolveRequestInput:
    """Parse problem text, assignments and an optional file from JSON or multipart."""
    content_type = (http_request.headers.get("content-type") or "").lower()

    if "multipart/form-data" in content_type:
        form = await http_request.form()
        raw_statement = form.get("problemStatement")
        statement = raw_statement if isinstance(raw_statement, str) else ""
        raw_file = form.get("file")
        upload = raw_file if isinstance(raw_file, (UploadFile, StarletteUploadFile)) else None
        if raw_file is not None and not isinstance(raw_file, str) and upload is None:
            raise ValidationError("Uploaded file could not be parsed. Please try again.")
        return SolveRequestInput(
            problem_statement=statement,
            model_assignments=_parse_assignments_field(form.get("modelAssignments")),
            upload=upload,
        )

    try:
        payload = await http_request.json()
    except ValueError:
        payload = {}

    if not isinstance(payload, dict):
        payload = {}

    statement = payload.get("problemStatement")
    return SolveRequestInput(
        problem_statement=statement if isinstance(statement, str) else "",
        model_assignments=payload.get("modelAssignments"),
    )


async def read_upload(upload_file: UploadFile) -> UploadedFile:
    """
    Read and validate an upload against the allowed types and size limit.

    Raises:
        ValidationError: the file is empty, too large, or of an unsupported type.
    """
    safe_name = sanitize_filename(upload_file.filename, "attachment")
    mime_type = normalize_upload_mime(upload_file, safe_name)

    raw_bytes = await upload_file.read()
    await upload_file.close()

    if not raw_bytes:
        raise ValidationError(f"File '{safe_name}' is empty.")

    if len(raw_bytes) > config.MAX_UPLOAD_FILE_SIZE_BYTES:
        max_mb = config.MAX_UPLOAD_FILE_SIZE_BYTES // (1024 * 1024)
        raise ValidationError(f"File '{safe_name}' exceeds the {max_mb} MB limit.")

    if mime_type not in config.ALLOWED_UPLOAD_MIME_TYPES:
        raise ValidationError(f"File type '{mime_type}' is not supported.")

    return UploadedFile(filename=safe_name, mime_type=mime_type, content=raw_bytes)


def _ensure_supabase_storage_config() -> tuple[str, str, str]:
    if not config.SUPABASE_URL or not config.SUPABASE_SECRET_KEY:
        raise StorageError("Supabase Storage is not configured.")
    return (
        config.SUPABASE_URL.rstrip("/"),
        config.SUPABASE_SECRET_KEY,
        config.SUPABASE_STORAGE_BUCKET,
    )


def _object_url(base_url: str, bucket: str, key: str, *, action: str = "object") -> str:
    return f"{base_url}/storage/v1/{action}/{bucket}/{quote(key)}"


def _storage_headers(api_key: str, content_type: str | None = None) -> Dict[str, str]:
    headers = {
        "apikey": api_key,
        "Authorization": f"Bearer {api_key}",
    }
    if content_type:
        headers["Content-Type"] = content_type
    return headers


async def store_upload(uploaded: UploadedFile) -> Dict[str, Any]:
    """Upload file bytes and return the attachment reference persisted with a problem."""
    base_url, api_key, bucket = _ensure_supabase_storage_config()
    key = f"uploads/{uuid.uuid4()}-{uploaded.filename}"

    try:
        async with httpx.AsyncClient(timeout=60) as client:
            response = await client.post(
                _object_url(base_url, bucket, key),
                headers=_storage_headers(api_key, uploaded.mime_type),
                content=uploaded.content,
            )
    except httpx.HTTPError as error:
        raise StorageError("File storage is unreachable.") from error

    if response.status_code >= 400:
        logger.error("File upload failed with status %s", response.status_code)
        raise StorageError("Failed to store uploaded file.")

    return {
        "key": key,
        "mime_type": uploaded.mime_type,
        "original_name": uploaded.filename,
        "size_bytes": uploaded.size_bytes,
    }


async def delete_file(key: str):
    base_url, api_key, bucket = _ensure_supabase_storage_config()
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.delete(
                _object_url(base_url, bucket, key),
                headers=_storage_headers(api_key),
            )
    except httpx.HTTPError as error:
        raise StorageError("File storage is unreachable.") from error
    if response.status_code >= 400 and response.status_code != 404:
        raise StorageError(f"Failed to delete stored file ({response.status_code}).")


async def discard_upload(file_ref: Dict[str, Any] | None):
    """Best-effort removal of an orphaned upload; failures are logged only."""
    if not file_ref or not file_ref.get("key"):
        return
    try:
        await delete_file(file_ref["key"])
    except StorageError as error:
        logger.warning("Could not delete orphaned upload %s: %s", file_ref["key"], error)


async def create_signed_url(key: str) -> str | None:
    """Return a time-limited download URL, or None when signing fails."""
    base_url, api_key, bucket = _ensure_supabase_storage_config()
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.post(
                _object_url(base_url, bucket, key, action="object/sign"),
                headers=_storage_headers(api_key, "application/json"),
                json={"expiresIn": config.SIGNED_URL_TTL_SECONDS},
            )
        data = response.json()
    except (httpx.HTTPError, ValueError) as error:
        logger.warning("Could not sign file URL: %s", error)
        return None

    signed_path = data.get("signedURL") if isinstance(data, dict) else None
    if response.status_code >= 400 or not isinstance(signed_path, str):
        logger.warning("Could not sign file URL (status %s)", response.status_code)
        return None
    return f"{base_url}/storage/v1{signed_path}"


async def _download_file(key: str) -> bytes:
    base_url, api_key, bucket = _ensure_supabase_storage_config()
    try:
        async with httpx.AsyncClient(timeout=60) as client:
            response = await client.get(
                _object_url(base_url, bucket, key, action="object/authenticated"),
                headers=_storage_headers(api_key),
            )
    except httpx.HTTPError as error:
        raise StorageError("File storage is unreachable.") from error
    if response.status_code >= 400:
        raise StorageError(f"Failed to download stored file ({response.status_code}).")
    return response.content


async def extract_text(file_ref: Dict[str, Any] | None, content: bytes | None = None) -> str:
    """
    Return prompt-ready text for an attachment.

    Only plain-text formats are decoded; other formats and any failure
    yield an empty string so the chain can proceed without file context.
    """
    if not file_ref:
        return ""
    mime_type = file_ref.get("mime_type")
    if mime_type not in TEXT_MIME_TYPES:
        logger.info("No text extraction for attachment type %s", mime_type)
        return ""

    try:
        raw_bytes = content if content is not None else await _download_file(file_ref["key"])
    except (StorageError, KeyError) as error:
        logger.warning("Could not read attachment for prompt context: %s", error)
        return ""

    text = raw_bytes.decode("utf-8", errors="replace").strip()
    return text[: config.MAX_EXTRACTED_TEXT_CHARS]

