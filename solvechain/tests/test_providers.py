"""Tests for provider adapters and the normalized invocation contract."""

import unittest
from unittest.mock import patch

import httpx

from solvechain import providers
from solvechain.errors import ModelInvocationError
from solvechain.identity import AnonymousIdentity, RegisteredIdentity


class _FakeResponse:
    def __init__(self, payload, status_code=200, url="https://provider.test"):
        self._payload = payload
        self.status_code = status_code
        self._url = url

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("POST", self._url)
            raise httpx.HTTPStatusError(
                "provider error",
                request=request,
                response=httpx.Response(self.status_code, request=request),
            )

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _fake_client(captured, response=None, error=None):
    class FakeAsyncClient:
        def __init__(self, timeout):
            captured["timeout"] = timeout

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, headers=None, json=None):
            captured["url"] = url
            captured["headers"] = headers
            captured["json"] = json
            if error is not None:
                raise error
            return response

    return FakeAsyncClient


OPENAI_PAYLOAD = {
    "choices": [{"message": {"content": "openai answer"}}],
    "usage": {"prompt_tokens": 12, "completion_tokens": 7, "total_tokens": 19},
}


class AdapterResolutionTests(unittest.TestCase):
    def test_registry_lookup_is_case_insensitive(self):
        self.assertIsInstance(providers.resolve_adapter("chatgpt"), providers.OpenAIAdapter)
        self.assertIsInstance(providers.resolve_adapter("Claude"), providers.AnthropicAdapter)
        self.assertIsInstance(providers.resolve_adapter(" GEMINI "), providers.GeminiAdapter)

    def test_slash_model_ids_route_to_openrouter(self):
        adapter = providers.resolve_adapter("meta-llama/llama-3-70b")
        self.assertIsInstance(adapter, providers.OpenRouterAdapter)
        self.assertEqual(adapter.name, "meta-llama/llama-3-70b")

    def test_unknown_model_is_unsupported(self):
        self.assertIsNone(providers.resolve_adapter("Mistral"))
        self.assertFalse(providers.is_supported_model(""))


class OpenAIAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_invoke_normalizes_text_and_usage(self):
        captured: dict = {}
        fake_client = _fake_client(captured, _FakeResponse(OPENAI_PAYLOAD))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", "sk-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            result = await providers.invoke_model(
                "ChatGpt", "Solve it", RegisteredIdentity("user-7")
            )

        self.assertEqual(result.text, "openai answer")
        self.assertEqual(
            result.usage,
            {"input_tokens": 12, "output_tokens": 7, "total_tokens": 19},
        )
        self.assertEqual(captured["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(captured["json"]["user"], "user-7")
        self.assertEqual(
            captured["json"]["messages"], [{"role": "user", "content": "Solve it"}]
        )

    async def test_file_text_is_sent_as_system_context(self):
        captured: dict = {}
        fake_client = _fake_client(captured, _FakeResponse(OPENAI_PAYLOAD))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", "sk-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            await providers.invoke_model("ChatGpt", "Solve it", file_text="col\n1")

        messages = captured["json"]["messages"]
        self.assertEqual(messages[0]["role"], "system")
        self.assertIn("col\n1", messages[0]["content"])
        self.assertEqual(messages[-1], {"role": "user", "content": "Solve it"})
        self.assertNotIn("user", captured["json"])

    async def test_missing_api_key_fails_without_network(self):
        captured: dict = {}
        fake_client = _fake_client(captured, _FakeResponse(OPENAI_PAYLOAD))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", None),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            with self.assertRaises(ModelInvocationError):
                await providers.invoke_model("ChatGpt", "Solve it")

        self.assertNotIn("url", captured)

    async def test_http_error_status_becomes_invocation_error(self):
        fake_client = _fake_client({}, _FakeResponse({}, status_code=503))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", "sk-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            with self.assertRaises(ModelInvocationError) as raised:
                await providers.invoke_model("ChatGpt", "Solve it")

        self.assertIn("HTTP 503", raised.exception.message)
        self.assertEqual(raised.exception.status_code, 502)

    async def test_transport_error_becomes_invocation_error(self):
        fake_client = _fake_client({}, error=httpx.ConnectError("refused"))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", "sk-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            with self.assertRaises(ModelInvocationError):
                await providers.invoke_model("ChatGpt", "Solve it")

    async def test_malformed_payload_becomes_invocation_error(self):
        fake_client = _fake_client({}, _FakeResponse({"choices": []}))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", "sk-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            with self.assertRaises(ModelInvocationError):
                await providers.invoke_model("ChatGpt", "Solve it")

    async def test_invalid_json_becomes_invocation_error(self):
        fake_client = _fake_client({}, _FakeResponse(ValueError("not json")))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", "sk-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            with self.assertRaises(ModelInvocationError):
                await providers.invoke_model("ChatGpt", "Solve it")

    async def test_blank_text_becomes_invocation_error(self):
        payload = {"choices": [{"message": {"content": "   "}}]}
        fake_client = _fake_client({}, _FakeResponse(payload))

        with (
            patch("solvechain.providers.config.OPENAI_API_KEY", "sk-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            with self.assertRaises(ModelInvocationError):
                await providers.invoke_model("ChatGpt", "Solve it")

    async def test_unsupported_model_raises(self):
        with self.assertRaises(ModelInvocationError):
            await providers.invoke_model("Unknown", "Solve it")


class AnthropicAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_invoke_joins_text_blocks_and_reads_usage(self):
        captured: dict = {}
        payload = {
            "content": [
                {"type": "text", "text": "part one "},
                {"type": "tool_use", "id": "t1"},
                {"type": "text", "text": "part two"},
            ],
            "usage": {"input_tokens": 30, "output_tokens": 9},
        }
        fake_client = _fake_client(captured, _FakeResponse(payload))

        with (
            patch("solvechain.providers.config.ANTHROPIC_API_KEY", "ak-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            result = await providers.invoke_model(
                "Claude",
                "Review it",
                AnonymousIdentity("anon-1"),
                file_text="notes",
            )

        self.assertEqual(result.text, "part one part two")
        self.assertEqual(
            result.usage, {"input_tokens": 30, "output_tokens": 9, "total_tokens": 39}
        )
        self.assertEqual(captured["headers"]["x-api-key"], "ak-test")
        self.assertIn("anthropic-version", captured["headers"])
        self.assertIn("notes", captured["json"]["system"])
        self.assertEqual(captured["json"]["metadata"], {"user_id": "anon-1"})


class GeminiAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_invoke_reads_candidate_parts_and_usage_metadata(self):
        captured: dict = {}
        payload = {
            "candidates": [{"content": {"parts": [{"text": "gem"}, {"text": "ini"}]}}],
            "usageMetadata": {
                "promptTokenCount": 4,
                "candidatesTokenCount": 6,
                "totalTokenCount": 10,
            },
        }
        fake_client = _fake_client(captured, _FakeResponse(payload))

        with (
            patch("solvechain.providers.config.GEMINI_API_KEY", "g-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            result = await providers.invoke_model("Gemini", "Draft it")

        self.assertEqual(result.text, "gemini")
        self.assertEqual(
            result.usage, {"input_tokens": 4, "output_tokens": 6, "total_tokens": 10}
        )
        self.assertTrue(captured["url"].endswith(":generateContent"))
        self.assertEqual(captured["headers"]["x-goog-api-key"], "g-test")
        self.assertNotIn("systemInstruction", captured["json"])

    async def test_missing_usage_metadata_defaults_to_zero(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "ok"}]}}]}
        fake_client = _fake_client({}, _FakeResponse(payload))

        with (
            patch("solvechain.providers.config.GEMINI_API_KEY", "g-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            result = await providers.invoke_model("Gemini", "Draft it")

        self.assertEqual(
            result.usage, {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}
        )


class OpenRouterAdapterTests(unittest.IsolatedAsyncioTestCase):
    async def test_invoke_posts_to_openrouter_with_model_id(self):
        captured: dict = {}
        fake_client = _fake_client(captured, _FakeResponse(OPENAI_PAYLOAD))

        with (
            patch("solvechain.providers.config.OPENROUTER_API_KEY", "or-test"),
            patch("solvechain.providers.httpx.AsyncClient", new=fake_client),
        ):
            result = await providers.invoke_model("mistralai/mistral-large", "Solve it")

        self.assertEqual(result.text, "openai answer")
        self.assertEqual(captured["url"], providers.config.OPENROUTER_API_URL)
        self.assertEqual(captured["json"]["model"], "mistralai/mistral-large")
        self.assertEqual(captured["headers"]["Authorization"], "Bearer or-test")


if __name__ == "__main__":
    unittest.main()
