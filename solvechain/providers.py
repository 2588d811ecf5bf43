"""LLM provider adapters with one normalized call contract."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from . import config
from .errors import ModelInvocationError
from .identity import identity_key

logger = logging.getLogger(__name__)

FILE_CONTEXT_HEADER = "Related file content provided by the user:"


def _to_int(value: Any) -> int:
    """Convert a value to int, returning 0 when conversion is not possible."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _normalize_usage(input_tokens: Any, output_tokens: Any, total_tokens: Any = None) -> Dict[str, int]:
    """Build the normalized usage shape from provider-specific counters."""
    normalized_input = max(0, _to_int(input_tokens))
    normalized_output = max(0, _to_int(output_tokens))
    normalized_total = _to_int(total_tokens)
    if normalized_total <= 0:
        normalized_total = normalized_input + normalized_output
    return {
        "input_tokens": normalized_input,
        "output_tokens": normalized_output,
        "total_tokens": normalized_total,
    }


@dataclass(frozen=True)
class ModelResult:
    """Normalized output of one provider call."""

    text: str
    usage: Dict[str, int] = field(default_factory=lambda: _normalize_usage(0, 0))


class ProviderAdapter:
    """
    Base adapter for one provider variant.

    Subclasses own request shaping and response/usage extraction; `invoke`
    owns transport and error normalization.
    """

    name = "provider"

    def __init__(self, model: str):
        self.model = model

    def api_key(self) -> str | None:
        raise NotImplementedError

    def build_request(
        self, prompt: str, file_text: str | None, user_tag: str | None
    ) -> tuple[str, Dict[str, str], Dict[str, Any]]:
        raise NotImplementedError

    def extract_text(self, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    def extract_usage(self, data: Dict[str, Any]) -> Dict[str, int]:
        raise NotImplementedError

    async def invoke(
        self,
        prompt: str,
        file_text: str | None = None,
        user_tag: str | None = None,
        timeout: float | None = None,
    ) -> ModelResult:
        if not self.api_key():
            raise ModelInvocationError(self.name, "API key is not configured")

        url, headers, payload = self.build_request(prompt, file_text, user_tag)
        try:
            async with httpx.AsyncClient(
                timeout=timeout or config.MODEL_REQUEST_TIMEOUT_SECONDS
            ) as client:
                response = await client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as error:
            raise ModelInvocationError(
                self.name, f"HTTP {error.response.status_code}"
            ) from error
        except httpx.HTTPError as error:
            raise ModelInvocationError(self.name, error) from error
        except ValueError as error:
            raise ModelInvocationError(self.name, "invalid JSON payload") from error

        try:
            text = self.extract_text(data)
        except (KeyError, IndexError, TypeError) as error:
            raise ModelInvocationError(self.name, "unexpected response shape") from error
        if not isinstance(text, str) or not text.strip():
            raise ModelInvocationError(self.name, "empty response")

        usage = self.extract_usage(data if isinstance(data, dict) else {})
        return ModelResult(text=text, usage=usage)


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat-completions style providers (OpenAI, OpenRouter)."""

    url = config.OPENAI_API_URL

    def build_messages(self, prompt: str, file_text: str | None) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if file_text:
            messages.append(
                {"role": "system", "content": f"{FILE_CONTEXT_HEADER}\n{file_text}"}
            )
        messages.append({"role": "user", "content": prompt})
        return messages

    def build_request(self, prompt, file_text, user_tag):
        headers = {
            "Authorization": f"Bearer {self.api_key()}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": self.build_messages(prompt, file_text),
        }
        if user_tag:
            payload["user"] = user_tag
        return self.url, headers, payload

    def extract_text(self, data):
        return data["choices"][0]["message"]["content"]

    def extract_usage(self, data):
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return _normalize_usage(
            usage.get("input_tokens", usage.get("prompt_tokens")),
            usage.get("output_tokens", usage.get("completion_tokens")),
            usage.get("total_tokens"),
        )


class OpenAIAdapter(OpenAICompatibleAdapter):
    name = "ChatGpt"

    def api_key(self):
        return config.OPENAI_API_KEY


class OpenRouterAdapter(OpenAICompatibleAdapter):
    url = config.OPENROUTER_API_URL

    def __init__(self, model: str):
        super().__init__(model)
        self.name = model

    def api_key(self):
        return config.OPENROUTER_API_KEY


class AnthropicAdapter(ProviderAdapter):
    name = "Claude"

    def api_key(self):
        return config.ANTHROPIC_API_KEY

    def build_request(self, prompt, file_text, user_tag):
        headers = {
            "x-api-key": self.api_key(),
            "anthropic-version": config.ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": config.ANTHROPIC_MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if file_text:
            payload["system"] = f"{FILE_CONTEXT_HEADER}\n{file_text}"
        if user_tag:
            payload["metadata"] = {"user_id": user_tag}
        return config.ANTHROPIC_API_URL, headers, payload

    def extract_text(self, data):
        # Content is a list of typed blocks; only text blocks carry the answer.
        blocks = data["content"]
        texts = [
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "".join(texts)

    def extract_usage(self, data):
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return _normalize_usage(usage.get("input_tokens"), usage.get("output_tokens"))


class GeminiAdapter(ProviderAdapter):
    name = "Gemini"

    def api_key(self):
        return config.GEMINI_API_KEY

    def build_request(self, prompt, file_text, user_tag):
        url = f"{config.GEMINI_API_BASE_URL}/{self.model}:generateContent"
        headers = {
            "x-goog-api-key": self.api_key(),
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if file_text:
            payload["systemInstruction"] = {
                "parts": [{"text": f"{FILE_CONTEXT_HEADER}\n{file_text}"}]
            }
        return url, headers, payload

    def extract_text(self, data):
        parts = data["candidates"][0]["content"]["parts"]
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    def extract_usage(self, data):
        usage = data.get("usageMetadata")
        if not isinstance(usage, dict):
            usage = {}
        return _normalize_usage(
            usage.get("promptTokenCount"),
            usage.get("candidatesTokenCount"),
            usage.get("totalTokenCount"),
        )


MODEL_REGISTRY = {
    "chatgpt": lambda: OpenAIAdapter(config.OPENAI_MODEL),
    "claude": lambda: AnthropicAdapter(config.ANTHROPIC_MODEL),
    "gemini": lambda: GeminiAdapter(config.GEMINI_MODEL),
}


def resolve_adapter(model_id: str) -> Optional[ProviderAdapter]:
    """Return the adapter for a model id, or None when unsupported."""
    if not isinstance(model_id, str) or not model_id.strip():
        return None
    normalized = model_id.strip()
    factory = MODEL_REGISTRY.get(normalized.lower())
    if factory is not None:
        return factory()
    if "/" in normalized:
        return OpenRouterAdapter(normalized)
    return None


def is_supported_model(model_id: str) -> bool:
    return resolve_adapter(model_id) is not None


async def invoke_model(
    model_id: str,
    prompt: str,
    identity: Any = None,
    file_text: str | None = None,
) -> ModelResult:
    """
    Invoke one model and return normalized text plus usage.

    Raises:
        ModelInvocationError: the provider call failed or the model is unknown.
    """
    adapter = resolve_adapter(model_id)
    if adapter is None:
        raise ModelInvocationError(str(model_id), "unsupported model")

    logger.debug("Invoking model %s (%s)", adapter.name, adapter.model)
    user_tag = identity_key(identity) if identity is not None else None
    return await adapter.invoke(prompt, file_text=file_text, user_tag=user_tag)
