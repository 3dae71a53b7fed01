"""Tests for the conversation session manager state machine and persistence flow."""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
import tempfile
import unittest

import httpx

from ollama_session.client import OllamaClient
from ollama_session.events import SESSION_CHANGED, Event
from ollama_session.exceptions import (
    OllamaModelNotFoundError,
    OllamaTransportError,
    PersistenceError,
)
from ollama_session.models import AppTheme, Conversation, Message
from ollama_session.persistence import InMemoryConversationStore
from ollama_session.reporting import AppError, ErrorKind
from ollama_session.session import ALREADY_NEWEST_NOTICE, SessionManager
from ollama_session.state import ConnectionStatus


class FakeServerClient:
    """Deterministic stand-in for OllamaClient."""

    def __init__(
        self,
        healthy: bool = True,
        models: set[str] | None = None,
        replies: list[str] | None = None,
    ) -> None:
        self.host = "http://127.0.0.1:11434"
        self.healthy = healthy
        self.models = models if models is not None else {"llama2", "llava"}
        self.replies = replies or ["Hello from the model"]
        self.health_error: Exception | None = None
        self.list_error: Exception | None = None
        self.generate_error: Exception | None = None
        self.health_gate: asyncio.Event | None = None
        self.generate_gate: asyncio.Event | None = None
        self.health_calls = 0
        self.prompts: list[tuple[str, str]] = []
        self.closed = False

    def set_base_url(self, url: str) -> None:
        self.host = url

    async def check_health(self) -> bool:
        self.health_calls += 1
        if self.health_gate is not None:
            await self.health_gate.wait()
        if self.health_error is not None:
            raise self.health_error
        return self.healthy

    async def list_models(self) -> set[str]:
        if self.list_error is not None:
            raise self.list_error
        return set(self.models)

    async def generate(self, prompt: str, model: str) -> str:
        self.prompts.append((prompt, model))
        if self.generate_gate is not None:
            await self.generate_gate.wait()
        if self.generate_error is not None:
            raise self.generate_error
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    async def aclose(self) -> None:
        self.closed = True


class FailingStore(InMemoryConversationStore):
    def save_conversations(self, conversations: list[Conversation]) -> None:
        raise PersistenceError("disk full")


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    """Shared fixtures: fake client, in-memory store, captured reports."""

    async def asyncSetUp(self) -> None:
        self.client = FakeServerClient()
        self.store = InMemoryConversationStore()
        self.session = SessionManager(self.client, self.store)
        self.errors: list[AppError] = []
        self.session.reporter.subscribe(
            lambda error: self.errors.append(error) if error is not None else None
        )
        self.events: list[Event] = []
        self.session.events.subscribe(SESSION_CHANGED, self.events.append)

    async def asyncTearDown(self) -> None:
        await self.session.aclose()

    async def _connect(self, model: str | None = "llama2") -> None:
        await self.session.check_connection()
        if model is not None:
            await self.session.update_model(model)
        self.errors.clear()

    async def _wait_for_generate(self) -> None:
        while not self.client.prompts:
            await asyncio.sleep(0)


class CheckConnectionTests(SessionTestCase):
    async def test_healthy_server_connects_and_discovers_models(self) -> None:
        status = await self.session.check_connection()
        self.assertEqual(status, ConnectionStatus.CONNECTED)
        self.assertEqual(self.session.available_models, {"llama2", "llava"})
        self.assertFalse(self.session.is_checking_connection)
        self.assertEqual(self.errors, [])

    async def test_unhealthy_server_disconnects_and_reports_network_error(self) -> None:
        self.client.healthy = False
        status = await self.session.check_connection()
        self.assertEqual(status, ConnectionStatus.DISCONNECTED)
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.NETWORK])
        self.assertEqual(self.session.available_models, set())

    async def test_transport_failure_clears_guard(self) -> None:
        self.client.health_error = OllamaTransportError("boom")
        self.assertEqual(
            await self.session.check_connection(), ConnectionStatus.DISCONNECTED
        )
        self.assertFalse(self.session.is_checking_connection)

        self.client.health_error = None
        self.assertEqual(
            await self.session.check_connection(), ConnectionStatus.CONNECTED
        )
        self.assertEqual(self.client.health_calls, 2)

    async def test_concurrent_check_is_a_noop(self) -> None:
        self.client.health_gate = asyncio.Event()
        first = asyncio.create_task(self.session.check_connection())
        while self.client.health_calls == 0:
            await asyncio.sleep(0)

        self.assertEqual(self.session.connection_status, ConnectionStatus.CONNECTING)
        second = await self.session.check_connection()
        self.assertEqual(second, ConnectionStatus.CONNECTING)

        self.client.health_gate.set()
        self.assertEqual(await first, ConnectionStatus.CONNECTED)
        self.assertEqual(self.client.health_calls, 1)

    async def test_connecting_state_is_published(self) -> None:
        await self.session.check_connection()
        statuses = [event.data["state"].connection_status for event in self.events]
        self.assertEqual(statuses[0], ConnectionStatus.CONNECTING)
        self.assertEqual(statuses[-1], ConnectionStatus.CONNECTED)

    async def test_app_resume_schedules_background_check(self) -> None:
        task = self.session.on_app_resume()
        self.assertEqual(await task, ConnectionStatus.CONNECTED)
        await self.session.tasks.wait_idle()
        self.assertEqual(self.session.tasks.pending, 0)


class FetchModelsTests(SessionTestCase):
    async def test_noop_unless_connected(self) -> None:
        await self.session.fetch_available_models()
        self.assertEqual(self.session.available_models, set())
        self.assertEqual(self.errors, [])

    async def test_missing_selection_is_cleared_and_reported_once(self) -> None:
        await self._connect(model="llava")
        self.assertTrue(self.session.current_model_supports_vision)

        self.client.models = {"llama2"}
        await self.session.fetch_available_models()

        self.assertIsNone(self.session.selected_model)
        self.assertIsNone(self.store.get_selected_model())
        self.assertFalse(self.session.current_model_supports_vision)
        self.assertFalse(self.session.current_model_supports_files)
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.MODEL])
        self.assertEqual(self.session.available_models, {"llama2"})

    async def test_present_selection_is_kept(self) -> None:
        await self._connect(model="llama2")
        await self.session.fetch_available_models()
        self.assertEqual(self.session.selected_model, "llama2")
        self.assertEqual(self.errors, [])

    async def test_listing_failure_reports_network_error(self) -> None:
        await self._connect()
        self.client.list_error = OllamaTransportError("bad body")
        await self.session.fetch_available_models()
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.NETWORK])
        self.assertEqual(self.session.selected_model, "llama2")


class SendMessageTests(SessionTestCase):
    async def test_disconnected_send_reports_once_without_mutation(self) -> None:
        await self.session.update_model("llama2")
        self.session.messages.append(Message.user("earlier"))
        before = list(self.session.messages)

        result = await self.session.send_message("hello")

        self.assertIsNone(result)
        self.assertEqual(self.session.messages, before)
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.NETWORK])
        self.assertEqual(self.client.prompts, [])

    async def test_empty_input_is_noop(self) -> None:
        await self._connect()
        self.assertIsNone(await self.session.send_message("   "))
        self.assertEqual(self.session.messages, [])
        self.assertEqual(self.errors, [])

    async def test_no_model_reports_model_error(self) -> None:
        await self._connect(model=None)
        await self.session.send_message("hello")
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.MODEL])
        self.assertEqual(self.session.messages, [])

    async def test_success_replaces_placeholder_and_persists(self) -> None:
        await self._connect()
        self.session.input_text = "What is Python?"

        reply = await self.session.send_message()

        assert reply is not None
        self.assertEqual(reply.content, "Hello from the model")
        self.assertEqual(self.client.prompts, [("What is Python?", "llama2")])
        self.assertEqual(
            [(m.content, m.is_user) for m in self.session.messages],
            [("What is Python?", True), ("Hello from the model", False)],
        )
        self.assertFalse(any(m.is_thinking for m in self.session.messages))
        self.assertFalse(any(m.is_from_history for m in self.session.messages))
        self.assertFalse(self.session.is_thinking)

        saved = self.store.get_conversations()
        self.assertEqual(len(saved), 1)
        self.assertEqual(saved[0].id, self.session.current_conversation_id)
        self.assertEqual(len(saved[0].messages), 2)

    async def test_placeholder_visible_while_waiting_and_input_cleared(self) -> None:
        await self._connect()
        self.client.generate_gate = asyncio.Event()
        task = asyncio.create_task(self.session.send_message("hi"))
        await self._wait_for_generate()

        self.assertEqual(self.session.input_text, "")
        self.assertTrue(self.session.is_thinking)
        self.assertTrue(self.session.messages[-1].is_thinking)
        self.assertEqual(self.session.snapshot().thinking_placeholders, 1)

        self.client.generate_gate.set()
        await task
        self.assertEqual(self.session.snapshot().thinking_placeholders, 0)

    async def test_failure_removes_placeholder_reports_and_skips_persist(self) -> None:
        await self._connect()
        self.client.generate_error = OllamaTransportError("timeout")

        result = await self.session.send_message("hello")

        self.assertIsNone(result)
        self.assertEqual(len(self.session.messages), 1)
        self.assertTrue(self.session.messages[0].is_user)
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.NETWORK])
        self.assertEqual(self.session.input_text, "")
        self.assertEqual(self.store.get_conversations(), [])
        self.assertFalse(self.session.is_thinking)

    async def test_model_not_found_is_reported_as_network_error(self) -> None:
        await self._connect()
        self.client.generate_error = OllamaModelNotFoundError("gone")
        await self.session.send_message("hello")
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.NETWORK])
        self.assertEqual(self.session.snapshot().thinking_placeholders, 0)

    async def test_second_send_updates_same_conversation(self) -> None:
        await self._connect()
        self.client.replies = ["one", "two"]
        await self.session.send_message("first")
        await self.session.send_message("second")
        saved = self.store.get_conversations()
        self.assertEqual(len(saved), 1)
        self.assertEqual([m.content for m in saved[0].messages][-1], "two")
        self.assertEqual(len(saved[0].messages), 4)

    async def test_late_reply_after_switch_lands_in_current_list(self) -> None:
        await self._connect()
        await self.session.send_message("first")
        self.client.generate_gate = asyncio.Event()
        self.client.prompts.clear()
        task = asyncio.create_task(self.session.send_message("slow"))
        await self._wait_for_generate()

        await self.session.clear_chat()
        new_id = self.session.current_conversation_id

        with self.assertLogs("ollama_session.session", level="WARNING") as logs:
            self.client.generate_gate.set()
            await task

        self.assertTrue(
            any("session.response.conversation_switched" in line for line in logs.output)
        )
        self.assertEqual(self.session.current_conversation_id, new_id)
        self.assertEqual([m.is_user for m in self.session.messages], [False])

    async def test_persist_failure_is_logged_not_raised(self) -> None:
        session = SessionManager(self.client, FailingStore())
        await session.check_connection()
        await session.update_model("llama2")
        with self.assertLogs("ollama_session.session", level="ERROR") as logs:
            reply = await session.send_message("hello")
        self.assertIsNotNone(reply)
        self.assertTrue(any("session.persist.failed" in line for line in logs.output))


class UploadTests(SessionTestCase):
    async def test_file_upload_rejected_without_capability(self) -> None:
        await self._connect(model="llama2")
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "notes.txt"
            path.write_text("data", encoding="utf-8")
            result = await self.session.handle_file_upload(path)

        self.assertIsNone(result)
        self.assertEqual(self.client.prompts, [])
        self.assertEqual(self.errors, [])
        self.assertIsNotNone(self.session.notice)
        self.assertEqual(self.session.messages, [])

    async def test_file_upload_rejected_without_model(self) -> None:
        await self._connect(model=None)
        result = await self.session.handle_file_upload("/does/not/matter.txt")
        self.assertIsNone(result)
        self.assertEqual(self.client.prompts, [])

    async def test_file_upload_embeds_text_and_persists(self) -> None:
        await self._connect(model="claude-3")
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "notes.txt"
            path.write_text("line one\nline two", encoding="utf-8")
            reply = await self.session.handle_file_upload(path)

        self.assertIsNotNone(reply)
        prompt, model = self.client.prompts[0]
        self.assertEqual(model, "claude-3")
        self.assertTrue(prompt.endswith("line one\nline two"))
        self.assertEqual(self.session.messages[0].content, prompt)
        self.assertEqual(len(self.store.get_conversations()[0].messages), 2)

    async def test_missing_file_sets_notice(self) -> None:
        await self._connect(model="llava")
        result = await self.session.handle_file_upload("/no/such/file.txt")
        self.assertIsNone(result)
        assert self.session.notice is not None
        self.assertIn("File read failed", self.session.notice)
        self.assertEqual(self.client.prompts, [])

    async def test_image_upload_rejected_for_file_only_model(self) -> None:
        await self._connect(model="claude-3")
        result = await self.session.handle_image_upload(b"\x89PNG")
        self.assertIsNone(result)
        self.assertEqual(self.client.prompts, [])
        self.assertEqual(self.errors, [])

    async def test_image_bytes_are_base64_encoded_inline(self) -> None:
        await self._connect(model="llava")
        data = b"\xff\xd8\xff\xe0fake-jpeg"
        reply = await self.session.handle_image_upload(data)

        self.assertIsNotNone(reply)
        prompt, _ = self.client.prompts[0]
        self.assertIn(base64.b64encode(data).decode("ascii"), prompt)

    async def test_image_path_is_read_and_encoded(self) -> None:
        await self._connect(model="bakllava")
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "photo.png"
            path.write_bytes(b"png-bytes")
            await self.session.handle_image_upload(path)
        prompt, _ = self.client.prompts[0]
        self.assertIn(base64.b64encode(b"png-bytes").decode("ascii"), prompt)

    async def test_image_failure_does_not_persist(self) -> None:
        await self._connect(model="llava")
        self.client.generate_error = OllamaTransportError("down")
        await self.session.handle_image_upload(b"img")
        self.assertEqual(self.store.get_conversations(), [])
        self.assertEqual([e.kind for e in self.errors], [ErrorKind.NETWORK])
        self.assertEqual(self.session.snapshot().thinking_placeholders, 0)


class ConversationTests(SessionTestCase):
    async def test_clear_save_clear_scenario(self) -> None:
        created = await self.session.clear_chat()
        self.assertIsNotNone(created)
        self.assertEqual(len(self.session.conversations), 1)
        self.assertEqual(self.session.messages, [])
        self.assertIsNone(self.session.notice)

        self.session.messages.append(Message.user("hi"))
        self.session.messages.append(Message.assistant("hello"))
        self.session.save_current_conversation()
        self.assertEqual(len(self.session.conversations), 1)
        self.assertEqual(len(self.session.conversations[0].messages), 2)

        await self.session.clear_chat()
        self.assertEqual(len(self.session.conversations), 2)
        self.assertEqual(self.session.messages, [])
        self.assertEqual(
            self.session.current_conversation_id, self.session.conversations[-1].id
        )
        self.assertEqual(len(self.store.get_conversations()), 2)

    async def test_clear_twice_reports_already_newest(self) -> None:
        await self.session.clear_chat()
        second = await self.session.clear_chat()
        self.assertIsNone(second)
        self.assertEqual(self.session.notice, ALREADY_NEWEST_NOTICE)
        self.assertEqual(len(self.session.conversations), 1)
        self.assertEqual(self.errors, [])

    async def test_clear_saves_working_messages_first(self) -> None:
        self.session.messages.append(Message.user("unsaved"))
        await self.session.clear_chat()
        saved = self.store.get_conversations()
        self.assertEqual(len(saved), 2)
        self.assertEqual([m.content for m in saved[0].messages], ["unsaved"])
        self.assertEqual(saved[1].messages, [])

    async def test_save_updates_existing_conversation(self) -> None:
        conversation = await self.session.clear_chat()
        assert conversation is not None
        self.session.messages.append(Message.user("a"))
        saved = self.session.save_current_conversation()
        self.assertEqual(saved.id, conversation.id)
        self.assertEqual(saved.created_at, conversation.created_at)
        self.assertEqual(len(self.session.conversations), 1)

    async def test_earlier_snapshot_is_unaffected_by_later_save(self) -> None:
        await self.session.clear_chat()
        before = self.session.snapshot()

        self.session.messages.append(Message.user("later"))
        self.session.save_current_conversation()

        self.assertEqual(before.messages, ())
        self.assertEqual(before.conversations[0].messages, [])
        self.assertEqual(len(self.session.snapshot().conversations[0].messages), 1)
        self.assertEqual(len(self.store.get_conversations()[0].messages), 1)

    async def test_save_skips_thinking_placeholders(self) -> None:
        self.session.messages.append(Message.user("q"))
        self.session.messages.append(Message.thinking_placeholder())
        self.session.save_current_conversation()
        persisted = self.store.get_conversations()[0].messages
        self.assertEqual(len(persisted), 1)
        self.assertFalse(any(m.is_thinking for m in persisted))

    async def test_start_restores_newest_conversation_as_history(self) -> None:
        older = Conversation(messages=[Message.user("old")])
        newer = Conversation(
            messages=[Message.user("new"), Message.assistant("reply")]
        )
        self.store.save_conversations([older, newer])
        self.store.save_selected_model("llava")
        self.store.save_ollama_url("http://localhost:11434")
        self.store.save_theme(AppTheme.DARK)

        await self.session.start()
        await self.session.tasks.wait_idle()

        self.assertEqual(self.session.current_conversation_id, newer.id)
        self.assertEqual([m.content for m in self.session.messages], ["new", "reply"])
        self.assertTrue(all(m.is_from_history for m in self.session.messages))
        self.assertEqual([m.id for m in self.session.messages], [m.id for m in newer.messages])
        self.assertEqual(self.session.selected_model, "llava")
        self.assertTrue(self.session.current_model_supports_vision)
        self.assertEqual(self.session.theme, AppTheme.DARK)
        self.assertEqual(self.client.host, "http://localhost:11434")
        self.assertEqual(self.session.connection_status, ConnectionStatus.CONNECTED)

    async def test_start_with_empty_store(self) -> None:
        await self.session.start()
        await self.session.tasks.wait_idle()
        self.assertIsNone(self.session.current_conversation_id)
        self.assertEqual(self.session.messages, [])
        self.assertEqual(self.session.conversations, [])


class SettingsTests(SessionTestCase):
    async def test_update_model_recomputes_capabilities(self) -> None:
        await self.session.update_model("llava")
        self.assertTrue(self.session.current_model_supports_vision)
        self.assertTrue(self.session.current_model_supports_files)
        self.assertEqual(self.store.get_selected_model(), "llava")

        await self.session.update_model("llama2")
        self.assertFalse(self.session.current_model_supports_vision)
        self.assertFalse(self.session.current_model_supports_files)
        self.assertEqual(self.store.get_selected_model(), "llama2")

    async def test_custom_capability_lists(self) -> None:
        session = SessionManager(
            self.client,
            self.store,
            vision_models=["Moondream"],
            file_models=["moondream", "mistral"],
        )
        await session.update_model("moondream")
        self.assertTrue(session.current_model_supports_vision)
        await session.update_model("mistral")
        self.assertFalse(session.current_model_supports_vision)
        self.assertTrue(session.current_model_supports_files)

    async def test_update_url_persists_and_rechecks(self) -> None:
        task = await self.session.update_ollama_url("http://192.168.1.5:11434")
        self.assertEqual(self.client.host, "http://192.168.1.5:11434")
        self.assertEqual(self.store.get_ollama_url(), "http://192.168.1.5:11434")
        self.assertEqual(await task, ConnectionStatus.CONNECTED)

    async def test_unparseable_url_is_saved_and_fails_connection_check(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        session = SessionManager(OllamaClient(http_client=http_client), self.store)
        errors: list[AppError] = []
        session.reporter.subscribe(
            lambda error: errors.append(error) if error is not None else None
        )

        with self.assertLogs("ollama_session.client", level="WARNING"):
            task = await session.update_ollama_url("http://127.0.0.1:abc")
            status = await task

        self.assertEqual(status, ConnectionStatus.DISCONNECTED)
        self.assertEqual(self.store.get_ollama_url(), "http://127.0.0.1:abc")
        self.assertEqual([e.kind for e in errors], [ErrorKind.NETWORK])
        self.assertEqual(requests, [])
        await session.aclose()
        await http_client.aclose()

    async def test_start_with_stored_out_of_range_port(self) -> None:
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200))
        )
        session = SessionManager(OllamaClient(http_client=http_client), self.store)
        errors: list[AppError] = []
        session.reporter.subscribe(
            lambda error: errors.append(error) if error is not None else None
        )
        self.store.save_ollama_url("http://localhost:99999")

        with self.assertLogs("ollama_session.client", level="WARNING"):
            await session.start()
            await session.tasks.wait_idle()

        self.assertEqual(session.connection_status, ConnectionStatus.DISCONNECTED)
        self.assertEqual([e.kind for e in errors], [ErrorKind.NETWORK])
        await session.aclose()
        await http_client.aclose()

    async def test_update_theme_persists(self) -> None:
        await self.session.update_theme("dark")
        self.assertEqual(self.session.theme, AppTheme.DARK)
        self.assertEqual(self.store.get_theme(), AppTheme.DARK)

    async def test_dismiss_notice(self) -> None:
        await self.session.clear_chat()
        await self.session.clear_chat()
        self.assertIsNotNone(self.session.notice)
        await self.session.dismiss_notice()
        self.assertIsNone(self.session.notice)
        self.assertIsNone(self.events[-1].data["state"].notice)

    async def test_aclose_closes_client(self) -> None:
        await self.session.aclose()
        self.assertTrue(self.client.closed)


if __name__ == "__main__":
    unittest.main()
