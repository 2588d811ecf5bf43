"""Tests for HTTP route handlers and request-level wiring."""

import json
from types import SimpleNamespace
import unittest
from unittest.mock import AsyncMock, Mock, patch

from fastapi import Response
from starlette.requests import Request

from solvechain import config, main
from solvechain.errors import (
    AuthenticationError,
    InsufficientBalanceError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    ValidationError,
)
from solvechain.files import SolveRequestInput, UploadedFile
from solvechain.identity import AnonymousIdentity, RegisteredIdentity
from solvechain.notifier import CompletionNotifier

TEST_SECRET = "test-secret-with-enough-length-for-hs256"
ANON = AnonymousIdentity("anon-1")
USER = RegisteredIdentity("user-1")


class _RequestStub:
    def __init__(self, cookies=None, headers=None):
        self.cookies = cookies or {}
        self.headers = headers or {}
        self.client = SimpleNamespace(host="10.0.0.1")
        self.method = "GET"
        self.url = SimpleNamespace(path="/")
        self.state = SimpleNamespace()

    async def is_disconnected(self):
        return False


def _scope_request(method, route_path, cookie_header=""):
    headers = [(b"cookie", cookie_header.encode())] if cookie_header else []
    return Request(
        {
            "type": "http",
            "method": method,
            "path": route_path,
            "headers": headers,
            "client": ("10.0.0.1", 5000),
            "route": SimpleNamespace(path=route_path),
        }
    )


def _settled_chat(**overrides):
    chat = {
        "id": "chat-1",
        "problem_statement": "Sum 2+2",
        "model_roles": [{"model": "Gemini", "role": "solve"}],
        "responses": [
            {
                "id": "resp-1",
                "model_name": "Gemini",
                "role": "solve",
                "response": "4",
                "completed": True,
            }
        ],
        "orchestration_finished": True,
        "failed_assignments": [],
        "attached_file": None,
        "anonymous": True,
        "updated_at": "2026-03-01T12:00:00+00:00",
    }
    chat.update(overrides)
    return chat


class IdentityDependencyTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        secret_patcher = patch("solvechain.config.JWT_SECRET", TEST_SECRET)
        secret_patcher.start()
        self.addCleanup(secret_patcher.stop)

    async def test_public_route_mints_anonymous_cookies(self):
        response = Response()
        resolution = await main.get_identity_resolution(
            _scope_request("POST", "/api/solve"), response
        )

        self.assertIsInstance(resolution.identity, AnonymousIdentity)
        set_cookies = " ".join(response.headers.getlist("set-cookie"))
        self.assertIn(config.ANONYMOUS_TOKEN_COOKIE_NAME, set_cookies)
        self.assertIn(config.ANONYMOUS_ID_COOKIE_NAME, set_cookies)
        self.assertIn("httponly", set_cookies.lower())

    async def test_private_route_without_cookies_is_rejected(self):
        with self.assertRaises(AuthenticationError):
            await main.get_identity_resolution(
                _scope_request("GET", "/api/chat/history"), Response()
            )

    async def test_delete_route_is_not_public_even_though_get_is(self):
        with self.assertRaises(AuthenticationError):
            await main.get_identity_resolution(
                _scope_request("DELETE", "/api/chat/{chat_id}"), Response()
            )

    async def test_registered_request_with_anonymous_cookie_migrates_counter(self):
        from solvechain import identity

        cookie_header = (
            f"{config.AUTH_COOKIE_NAME}={identity.issue_auth_token('user-1')}; "
            f"{config.ANONYMOUS_ID_COOKIE_NAME}=anon-1"
        )
        with patch(
            "solvechain.main.rate_limit.migrate_anonymous_counter", new=AsyncMock()
        ) as migrate_mock:
            resolution = await main.get_identity_resolution(
                _scope_request("GET", "/api/chat/history", cookie_header), Response()
            )

        self.assertEqual(resolution.identity, USER)
        migrate_mock.assert_awaited_once_with("10.0.0.1", "user-1")


class ErrorHandlerTests(unittest.IsolatedAsyncioTestCase):
    async def test_quota_error_renders_429_with_retry_after(self):
        from datetime import datetime, timezone

        error = QuotaExceededError(
            "Request limit reached.",
            limit=10,
            current_count=10,
            reset_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
            retry_after_seconds=3600,
        )
        response = await main.handle_service_error(_RequestStub(), error)

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers["retry-after"], "3600")
        body = json.loads(response.body)
        self.assertEqual(body["detail"]["code"], "QUOTA_EXCEEDED")
        self.assertEqual(body["detail"]["limit"], 10)
        self.assertEqual(body["detail"]["reset_at"], "2026-03-02T00:00:00+00:00")

    async def test_authentication_error_renders_code(self):
        response = await main.handle_service_error(
            _RequestStub(), AuthenticationError("expired", code="TOKEN_EXPIRED")
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(json.loads(response.body)["detail"]["code"], "TOKEN_EXPIRED")

    async def test_error_response_keeps_freshly_minted_identity_cookies(self):
        from datetime import datetime, timezone

        request = _scope_request("POST", "/api/solve")
        with patch("solvechain.config.JWT_SECRET", TEST_SECRET):
            await main.get_identity_resolution(request, Response())
        error = QuotaExceededError(
            "Request limit reached.",
            limit=10,
            current_count=10,
            reset_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
            retry_after_seconds=60,
        )

        response = await main.handle_service_error(request, error)

        self.assertEqual(response.status_code, 429)
        set_cookies = " ".join(response.headers.getlist("set-cookie"))
        self.assertIn(config.ANONYMOUS_TOKEN_COOKIE_NAME, set_cookies)
        self.assertIn(config.ANONYMOUS_ID_COOKIE_NAME, set_cookies)

    async def test_error_without_resolved_identity_sets_no_cookies(self):
        response = await main.handle_service_error(
            _RequestStub(), ValidationError("problemStatement is required.")
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.headers.getlist("set-cookie"), [])


class SolveEndpointTests(unittest.IsolatedAsyncioTestCase):
    def _input(self, statement="Sum 2+2", assignments=None, upload=None):
        return SolveRequestInput(
            problem_statement=statement,
            model_assignments=assignments
            if assignments is not None
            else [{"model": "Gemini", "role": "solve"}, {"model": "Claude", "role": "check"}],
            upload=upload,
        )

    async def test_solve_creates_chat_and_starts_chain(self):
        notifier = CompletionNotifier()
        start_mock = Mock()

        with (
            patch(
                "solvechain.main.files.parse_solve_request",
                new=AsyncMock(return_value=self._input()),
            ),
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()) as quota_mock,
            patch("solvechain.main.billing.check_balance", new=AsyncMock(return_value=True)),
            patch(
                "solvechain.main.storage.find_or_create_problem_statement",
                new=AsyncMock(return_value={"id": "ps-1", "attached_file": None}),
            ),
            patch(
                "solvechain.main.storage.create_problem_breakdown",
                new=AsyncMock(return_value={"id": "bd-1"}),
            ) as breakdown_mock,
            patch(
                "solvechain.main.storage.create_chat",
                new=AsyncMock(return_value={"id": "chat-1"}),
            ),
            patch("solvechain.main.files.extract_text", new=AsyncMock(return_value="")),
            patch("solvechain.main.orchestrator.start_solve_chain", new=start_mock),
        ):
            result = await main.solve(_RequestStub(), ANON, notifier)

        self.assertEqual(result, {"chatId": "chat-1", "fileUrl": None, "fileInPrompt": False})
        quota_mock.assert_awaited_once_with(ANON, "10.0.0.1", "anonymous")
        breakdown_mock.assert_awaited_once_with(
            ANON,
            "ps-1",
            [{"model": "Gemini", "role": "solve"}, {"model": "Claude", "role": "check"}],
        )
        args, kwargs = start_mock.call_args
        self.assertEqual(args[0], "chat-1")
        self.assertEqual([item.model for item in args[2]], ["Gemini", "Claude"])
        self.assertIs(args[4], notifier)

    async def test_invalid_request_does_not_consume_quota(self):
        with (
            patch(
                "solvechain.main.files.parse_solve_request",
                new=AsyncMock(return_value=self._input(assignments=[])),
            ),
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()) as quota_mock,
        ):
            with self.assertRaises(ValidationError):
                await main.solve(_RequestStub(), ANON, CompletionNotifier())

        quota_mock.assert_not_awaited()

    async def test_blank_problem_is_rejected(self):
        with patch(
            "solvechain.main.files.parse_solve_request",
            new=AsyncMock(return_value=self._input(statement="   ")),
        ):
            with self.assertRaises(ValidationError):
                await main.solve(_RequestStub(), ANON, CompletionNotifier())

    async def test_exhausted_balance_is_rejected_before_any_write(self):
        with (
            patch(
                "solvechain.main.files.parse_solve_request",
                new=AsyncMock(return_value=self._input()),
            ),
            patch("solvechain.main.accounts.get_plan_for_user", new=AsyncMock(return_value="free")),
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()),
            patch("solvechain.main.billing.check_balance", new=AsyncMock(return_value=False)),
            patch(
                "solvechain.main.storage.find_or_create_problem_statement", new=AsyncMock()
            ) as statement_mock,
        ):
            with self.assertRaises(InsufficientBalanceError):
                await main.solve(_RequestStub(), USER, CompletionNotifier())

        statement_mock.assert_not_awaited()

    async def test_solve_reports_when_attachment_text_reaches_the_prompt(self):
        uploaded = UploadedFile("notes.txt", "text/plain", b"hello")
        file_ref = {"key": "uploads/x-notes.txt", "mime_type": "text/plain"}

        with (
            patch(
                "solvechain.main.files.parse_solve_request",
                new=AsyncMock(return_value=self._input(upload=object())),
            ),
            patch("solvechain.main.files.read_upload", new=AsyncMock(return_value=uploaded)),
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()),
            patch("solvechain.main.billing.check_balance", new=AsyncMock(return_value=True)),
            patch("solvechain.main.files.store_upload", new=AsyncMock(return_value=file_ref)),
            patch(
                "solvechain.main.storage.find_or_create_problem_statement",
                new=AsyncMock(return_value={"id": "ps-1", "attached_file": file_ref}),
            ),
            patch(
                "solvechain.main.storage.create_problem_breakdown",
                new=AsyncMock(return_value={"id": "bd-1"}),
            ),
            patch(
                "solvechain.main.storage.create_chat",
                new=AsyncMock(return_value={"id": "chat-1"}),
            ),
            patch(
                "solvechain.main.files.create_signed_url",
                new=AsyncMock(return_value="https://files.example/notes.txt"),
            ),
            patch("solvechain.main.orchestrator.start_solve_chain", new=Mock()) as start_mock,
        ):
            result = await main.solve(_RequestStub(), ANON, CompletionNotifier())

        self.assertTrue(result["fileInPrompt"])
        self.assertEqual(result["fileUrl"], "https://files.example/notes.txt")
        self.assertEqual(start_mock.call_args.kwargs["file_text"], "hello")

    async def test_storage_failure_discards_stored_upload(self):
        uploaded = UploadedFile("notes.txt", "text/plain", b"hello")
        file_ref = {"key": "uploads/x-notes.txt", "mime_type": "text/plain"}

        with (
            patch(
                "solvechain.main.files.parse_solve_request",
                new=AsyncMock(return_value=self._input(upload=object())),
            ),
            patch("solvechain.main.files.read_upload", new=AsyncMock(return_value=uploaded)),
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()),
            patch("solvechain.main.billing.check_balance", new=AsyncMock(return_value=True)),
            patch("solvechain.main.files.store_upload", new=AsyncMock(return_value=file_ref)),
            patch(
                "solvechain.main.storage.find_or_create_problem_statement",
                new=AsyncMock(side_effect=StorageError("down")),
            ),
            patch("solvechain.main.files.discard_upload", new=AsyncMock()) as discard_mock,
        ):
            with self.assertRaises(StorageError):
                await main.solve(_RequestStub(), ANON, CompletionNotifier())

        discard_mock.assert_awaited_once_with(file_ref)


class ChatEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def test_get_chat_returns_settled_chat_without_waiting(self):
        with (
            patch(
                "solvechain.main.orchestrator.load_owned_chat",
                new=AsyncMock(return_value=_settled_chat()),
            ),
            patch("solvechain.main.wait_for_chat", new=AsyncMock()) as wait_mock,
        ):
            payload = await main.get_chat("chat-1", _RequestStub(), ANON, CompletionNotifier())

        self.assertEqual(payload["status"], "complete")
        self.assertEqual(payload["responses"][0]["response"], "4")
        self.assertIsNone(payload["file_url"])
        wait_mock.assert_not_awaited()

    async def test_get_chat_waits_for_pending_chat(self):
        pending = _settled_chat(
            orchestration_finished=False,
            responses=[],
            updated_at="2099-01-01T00:00:00+00:00",
        )
        with (
            patch(
                "solvechain.main.orchestrator.load_owned_chat",
                new=AsyncMock(return_value=pending),
            ),
            patch(
                "solvechain.main.wait_for_chat",
                new=AsyncMock(return_value=_settled_chat()),
            ) as wait_mock,
        ):
            payload = await main.get_chat("chat-1", _RequestStub(), ANON, CompletionNotifier())

        self.assertEqual(payload["status"], "complete")
        wait_mock.assert_awaited_once()

    async def test_get_chat_of_other_identity_is_not_found(self):
        with patch(
            "solvechain.main.orchestrator.load_owned_chat",
            new=AsyncMock(side_effect=NotFoundError("Chat not found.")),
        ):
            with self.assertRaises(NotFoundError):
                await main.get_chat("chat-1", _RequestStub(), ANON, CompletionNotifier())

    async def test_edit_counts_against_quota_and_delegates(self):
        request = main.EditRequest(chatId="chat-1", oldResponseId="resp-1", newText="shorter")
        notifier = CompletionNotifier()
        updated = {"id": "resp-1", "model_name": "Gemini", "role": "shorter", "response": "2+2=4"}

        with (
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()) as quota_mock,
            patch(
                "solvechain.main.orchestrator.edit_response",
                new=AsyncMock(return_value=updated),
            ) as edit_mock,
        ):
            result = await main.edit_chat_response(request, _RequestStub(), ANON, notifier)

        self.assertEqual(result, updated)
        quota_mock.assert_awaited_once()
        edit_mock.assert_awaited_once_with(
            "chat-1", "resp-1", "shorter", ANON, notifier, model_name=None
        )

    async def test_feedback_delegates_to_regeneration(self):
        request = main.FeedbackRequest(chatId="chat-1", modelName="Claude", feedback="again")
        notifier = CompletionNotifier()

        with (
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()),
            patch(
                "solvechain.main.orchestrator.regenerate_response",
                new=AsyncMock(return_value={"id": "resp-9"}),
            ) as regenerate_mock,
        ):
            result = await main.chat_feedback(request, _RequestStub(), ANON, notifier)

        self.assertEqual(result, {"id": "resp-9"})
        regenerate_mock.assert_awaited_once_with("chat-1", "Claude", "again", ANON, notifier)

    async def test_responses_by_model_count_against_quota(self):
        rows = [{"id": "resp-1", "model_name": "Gemini", "role": "solve", "response": "4"}]
        with (
            patch("solvechain.main.rate_limit.enforce_rate_limit", new=AsyncMock()) as quota_mock,
            patch(
                "solvechain.main.orchestrator.list_model_responses",
                new=AsyncMock(return_value=rows),
            ) as list_mock,
        ):
            result = await main.get_model_responses("chat-1", "Gemini", _RequestStub(), ANON)

        self.assertEqual(result, rows)
        quota_mock.assert_awaited_once_with(ANON, "10.0.0.1", "anonymous")
        list_mock.assert_awaited_once_with("chat-1", "Gemini", ANON)

    async def test_responses_by_model_over_quota_is_rejected(self):
        from datetime import datetime, timezone

        error = QuotaExceededError(
            "Request limit reached.",
            limit=10,
            current_count=10,
            reset_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
            retry_after_seconds=60,
        )
        with (
            patch(
                "solvechain.main.rate_limit.enforce_rate_limit",
                new=AsyncMock(side_effect=error),
            ),
            patch(
                "solvechain.main.orchestrator.list_model_responses", new=AsyncMock()
            ) as list_mock,
        ):
            with self.assertRaises(QuotaExceededError):
                await main.get_model_responses("chat-1", "Gemini", _RequestStub(), ANON)

        list_mock.assert_not_awaited()

    async def test_delete_chat(self):
        with patch(
            "solvechain.main.orchestrator.delete_chat", new=AsyncMock()
        ) as delete_mock:
            result = await main.delete_chat("chat-1", USER)

        self.assertEqual(result, {"status": "deleted", "chatId": "chat-1"})
        delete_mock.assert_awaited_once_with("chat-1", USER)

    async def test_history_requires_registered_identity(self):
        with self.assertRaises(AuthenticationError):
            await main.get_registered_identity(ANON)


class AuthEndpointTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        secret_patcher = patch("solvechain.config.JWT_SECRET", TEST_SECRET)
        secret_patcher.start()
        self.addCleanup(secret_patcher.stop)

    async def test_login_sets_auth_cookie_and_clears_anonymous_session(self):
        response = Response()
        user = {"id": "user-1", "email": "a@example.com", "user_metadata": {}, "app_metadata": {}}

        with (
            patch("solvechain.main.accounts.login_user", new=AsyncMock(return_value=user)),
            patch(
                "solvechain.main.rate_limit.migrate_anonymous_counter", new=AsyncMock()
            ) as migrate_mock,
        ):
            result = await main.login(
                main.AuthRequest(email="a@example.com", password="secret-pass"),
                _RequestStub(cookies={config.ANONYMOUS_ID_COOKIE_NAME: "anon-1"}),
                response,
            )

        self.assertEqual(result["user"]["plan"], "free")
        set_cookies = response.headers.getlist("set-cookie")
        self.assertTrue(any(item.startswith(f"{config.AUTH_COOKIE_NAME}=") for item in set_cookies))
        self.assertTrue(
            any(
                item.startswith(f"{config.ANONYMOUS_ID_COOKIE_NAME}=") and "Max-Age=0" in item
                for item in set_cookies
            )
        )
        migrate_mock.assert_awaited_once_with("10.0.0.1", "user-1")

    async def test_register_pending_confirmation_does_not_sign_in(self):
        response = Response()
        user = {"id": "user-2", "email": "b@example.com"}

        with patch(
            "solvechain.main.accounts.register_user",
            new=AsyncMock(return_value=(user, True)),
        ):
            result = await main.register(
                main.AuthRequest(email="b@example.com", password="secret-pass"),
                _RequestStub(),
                response,
            )

        self.assertTrue(result["requires_email_confirmation"])
        self.assertEqual(response.headers.getlist("set-cookie"), [])


if __name__ == "__main__":
    unittest.main()
