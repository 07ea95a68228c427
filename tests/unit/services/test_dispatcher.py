"""
Unit tests for the command dispatcher
"""
import asyncio

import pytest

from conftest import RecordingConnection, wait_until
from polymux.errors import ResumeError, TransportError
from polymux.models.events import TERMINAL_EVENT_TYPES


def start_turn(provider: str = "fake", prompt: str = "hi", **options):
    return {"type": "start-turn", "provider": provider, "prompt": prompt, "options": options}


def terminal_count(connection: RecordingConnection) -> int:
    return sum(1 for t in connection.types() if t in TERMINAL_EVENT_TYPES)


@pytest.fixture
def alice(connections):
    connection = RecordingConnection()
    connections.register("alice", connection)
    return connection


@pytest.fixture
def fake(factory):
    return factory.get_provider("fake")


class TestStartTurn:
    """start-turn runs to exactly one terminal event"""

    @pytest.mark.asyncio
    async def test_successful_turn(self, dispatcher, alice, fake):
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        assert await task == "success"

        assert alice.types() == [
            "session-created",
            "content-delta",
            "content-delta",
            "content-stop",
            "turn-complete",
        ]
        complete = alice.of_type("turn-complete")[0]
        assert complete["result"]["content"] == "Hello world"
        assert complete["result"]["model"] == "fake-1"
        session_ids = {m["sessionId"] for m in alice.messages}
        assert len(session_ids) == 1
        assert fake.list_active_sessions() == []

    @pytest.mark.asyncio
    async def test_options_carry_user_identity(self, dispatcher, alice, fake):
        task = await dispatcher.handle_message(start_turn(model="fake-2"), "alice", alice)
        await task

        options = fake.calls[0]["options"]
        assert options.user_id == "alice"
        assert options.model == "fake-2"
        assert alice.of_type("session-created")[0]["model"] == "fake-2"

    @pytest.mark.asyncio
    async def test_resume_keeps_session_id(self, dispatcher, alice):
        task = await dispatcher.handle_message(start_turn(resumeSessionId="r-1"), "alice", alice)
        await task

        assert {m["sessionId"] for m in alice.messages} == {"r-1"}

    @pytest.mark.asyncio
    async def test_resume_of_live_session_rejected(self, dispatcher, alice, fake):
        fake.gate = asyncio.Event()
        first = await dispatcher.handle_message(start_turn(resumeSessionId="r-1"), "alice", alice)
        await wait_until(lambda: fake.is_active("r-1"))

        second = await dispatcher.handle_message(start_turn(resumeSessionId="r-1"), "alice", alice)
        assert await second == "error"

        error = alice.of_type("turn-error")[0]
        assert error["category"] == "invalid_request"
        assert error["sessionId"] != "r-1"
        assert fake.is_active("r-1")

        fake.gate.set()
        assert await first == "success"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, dispatcher, alice):
        assert await dispatcher.handle_message(start_turn(provider="nope"), "alice", alice) is None

        assert alice.types() == ["turn-error", "turn-complete"]
        assert alice.messages[0]["category"] == "configuration"
        assert "nope" in alice.messages[0]["error"]

    @pytest.mark.asyncio
    async def test_missing_credential(self, dispatcher, alice, factory):
        assert await dispatcher.handle_message(start_turn(provider="keyed"), "alice", alice) is None

        assert alice.types() == ["turn-error", "turn-complete"]
        assert alice.messages[0]["category"] == "configuration"
        assert alice.messages[0]["error"].startswith("No API key configured for Keyed")
        assert factory.get_provider("keyed").calls == []
        assert dispatcher.turns_for_user("alice") == 0

    @pytest.mark.asyncio
    async def test_credential_handed_to_adapter(self, dispatcher, alice, store, factory):
        store.set_credential("alice", "keyed_api_key", "sk-alice")
        task = await dispatcher.handle_message(start_turn(provider="keyed"), "alice", alice)
        await task

        assert factory.get_provider("keyed").calls[0]["credential"].api_key == "sk-alice"

    @pytest.mark.asyncio
    async def test_concurrent_turns_on_different_providers(self, dispatcher, alice, store, fake, factory):
        store.set_credential("alice", "keyed_api_key", "sk-alice")
        keyed = factory.get_provider("keyed")
        fake.gate = asyncio.Event()
        fake.chunks = ["from fake"]
        keyed.chunks = ["from keyed"]

        slow = await dispatcher.handle_message(start_turn(), "alice", alice)
        quick = await dispatcher.handle_message(start_turn(provider="keyed"), "alice", alice)
        assert await quick == "success"
        fake.gate.set()
        assert await slow == "success"

        by_session = {}
        for message in alice.messages:
            by_session.setdefault(message["sessionId"], []).append(message)
        assert len(by_session) == 2
        for messages in by_session.values():
            created = messages[0]
            texts = {m["text"] for m in messages if m["type"] == "content-delta"}
            assert created["type"] == "session-created"
            assert texts == {f"from {created['provider']}"}
            assert messages[-1]["type"] == "turn-complete"

    @pytest.mark.asyncio
    async def test_capacity_limit(self, dispatcher, alice, fake):
        fake.gate = asyncio.Event()
        first = await dispatcher.handle_message(start_turn(), "alice", alice)
        second = await dispatcher.handle_message(start_turn(), "alice", alice)
        third = await dispatcher.handle_message(start_turn(), "alice", alice)

        assert third is None
        error = alice.of_type("turn-error")[0]
        assert error["category"] == "capacity"

        fake.gate.set()
        assert await first == "success"
        assert await second == "success"
        assert dispatcher.turns_for_user("alice") == 0

    @pytest.mark.asyncio
    async def test_adapter_failure(self, dispatcher, alice, fake):
        fake.error = TransportError("backend down", provider="fake")
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        assert await task == "error"

        assert alice.types()[-2:] == ["turn-error", "turn-complete"]
        assert alice.messages[-2]["category"] == "transport"
        assert alice.messages[-1]["error"] == "backend down"
        assert terminal_count(alice) == 1
        assert fake.list_active_sessions() == []

    @pytest.mark.asyncio
    async def test_resume_failure_category(self, dispatcher, alice, fake):
        fake.chunks = []
        fake.error = ResumeError("session not found", provider="fake")
        task = await dispatcher.handle_message(start_turn(resumeSessionId="gone"), "alice", alice)
        await task

        assert alice.of_type("turn-error")[0]["category"] == "resume"

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_internal_error(self, dispatcher, alice, fake):
        fake.error = RuntimeError("kaboom")
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        assert await task == "error"

        error = alice.of_type("turn-error")[0]
        assert error["category"] == "internal"
        assert "kaboom" in error["error"]
        assert terminal_count(alice) == 1
        assert fake.list_active_sessions() == []


class TestAbort:
    """abort-session cancels exactly once"""

    @pytest.mark.asyncio
    async def test_abort_running_turn(self, dispatcher, alice, fake):
        fake.gate = asyncio.Event()
        fake.session_id = "s-abort"
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await wait_until(lambda: fake.is_active("s-abort"))

        aborted = await dispatcher.handle_message(
            {"type": "abort-session", "provider": "fake", "sessionId": "s-abort"}, "alice", alice
        )
        assert aborted is True
        assert await task == "aborted"

        assert "turn-complete" not in alice.types()
        assert "turn-error" not in alice.types()
        assert alice.of_type("session-aborted") == [
            {"type": "session-aborted", "sessionId": "s-abort", "provider": "fake", "success": True}
        ]
        assert not fake.is_active("s-abort")

    @pytest.mark.asyncio
    async def test_second_abort_is_a_no_op(self, dispatcher, alice, fake):
        fake.gate = asyncio.Event()
        fake.session_id = "s-twice"
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await wait_until(lambda: fake.is_active("s-twice"))

        message = {"type": "abort-session", "provider": "fake", "sessionId": "s-twice"}
        assert await dispatcher.handle_message(message, "alice", alice) is True
        assert await dispatcher.handle_message(message, "alice", alice) is False
        await task

        results = [m["success"] for m in alice.of_type("session-aborted")]
        assert results == [True, False]

    @pytest.mark.asyncio
    async def test_abort_after_completion(self, dispatcher, alice, fake):
        fake.session_id = "s-done"
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await task

        aborted = await dispatcher.handle_message(
            {"type": "abort-session", "provider": "fake", "sessionId": "s-done"}, "alice", alice
        )
        assert aborted is False
        assert terminal_count(alice) == 2
        assert alice.of_type("session-aborted")[0]["success"] is False

    @pytest.mark.asyncio
    async def test_other_users_session_is_untouched(self, dispatcher, connections, alice, fake):
        bob = RecordingConnection()
        connections.register("bob", bob)
        fake.gate = asyncio.Event()
        fake.session_id = "s-alice"
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await wait_until(lambda: fake.is_active("s-alice"))

        aborted = await dispatcher.handle_message(
            {"type": "abort-session", "provider": "fake", "sessionId": "s-alice"}, "bob", bob
        )
        assert aborted is False
        assert fake.is_active("s-alice")
        assert bob.of_type("session-aborted")[0]["success"] is False

        fake.gate.set()
        assert await task == "success"

    @pytest.mark.asyncio
    async def test_legacy_cursor_abort_uses_cursor_provider(self, dispatcher, alice):
        aborted = await dispatcher.handle_message({"type": "cursor-abort", "sessionId": "x"}, "alice", alice)
        assert aborted is False
        assert alice.of_type("session-aborted")[0]["provider"] == "cursor"


class TestQueries:
    """Status and active-session snapshots answer the asking connection"""

    @pytest.mark.asyncio
    async def test_check_session_status(self, dispatcher, connections, alice, fake):
        other_tab = RecordingConnection()
        connections.register("alice", other_tab)
        fake.gate = asyncio.Event()
        fake.session_id = "s-status"
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await wait_until(lambda: fake.is_active("s-status"))
        before = len(other_tab.messages)

        status = await dispatcher.handle_message(
            {"type": "check-session-status", "provider": "fake", "sessionId": "s-status"}, "alice", alice
        )
        assert status is True
        assert alice.of_type("session-status")[0]["isProcessing"] is True
        assert len(other_tab.messages) == before

        fake.gate.set()
        await task
        status = await dispatcher.handle_message(
            {"type": "check-session-status", "provider": "fake", "sessionId": "s-status"}, "alice", alice
        )
        assert status is False

    @pytest.mark.asyncio
    async def test_get_active_sessions(self, dispatcher, alice, fake):
        fake.gate = asyncio.Event()
        fake.session_id = "s-live"
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await wait_until(lambda: fake.is_active("s-live"))

        await dispatcher.handle_message({"type": "get-active-sessions"}, "alice", alice)
        snapshot = alice.of_type("active-sessions")[0]
        assert snapshot["sessions"] == {"fake": ["s-live"], "keyed": []}

        fake.gate.set()
        await task


class TestMessageHandling:
    """Malformed input and routing"""

    @pytest.mark.asyncio
    async def test_non_object_message(self, dispatcher, alice):
        await dispatcher.handle_message(["not", "a", "dict"], "alice", alice)
        assert alice.types() == ["turn-error"]
        assert alice.messages[0]["category"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_unknown_command(self, dispatcher, alice):
        await dispatcher.handle_message({"type": "bogus"}, "alice", alice)
        assert alice.messages[0]["category"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_legacy_ai_command(self, dispatcher, alice, fake):
        task = await dispatcher.handle_message(
            {"type": "ai-command", "provider": "fake", "command": "legacy"}, "alice", alice
        )
        await task
        assert fake.calls[0]["prompt"] == "legacy"

    @pytest.mark.asyncio
    async def test_events_fan_out_to_every_socket_of_the_user(self, dispatcher, connections, alice):
        second_tab = RecordingConnection()
        bob = RecordingConnection()
        connections.register("alice", second_tab)
        connections.register("bob", bob)

        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await task

        assert alice.messages == second_tab.messages
        assert bob.messages == []

    @pytest.mark.asyncio
    async def test_broken_socket_is_dropped(self, dispatcher, connections, alice):
        broken = RecordingConnection(fail=True)
        connections.register("alice", broken)

        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await task

        assert connections.connections_for("alice") == [alice]
        assert "turn-complete" in alice.types()

    @pytest.mark.asyncio
    async def test_tool_approval_response(self, dispatcher, approvals, alice):
        request_id = approvals.create("Bash", {"command": "ls"})
        waiter = asyncio.create_task(approvals.wait(request_id))
        await asyncio.sleep(0)

        resolved = await dispatcher.handle_message(
            {"type": "tool-approval-response", "requestId": request_id, "allow": True}, "alice", alice
        )
        assert resolved is True
        assert (await waiter).allow is True

        again = await dispatcher.handle_message(
            {"type": "tool-approval-response", "requestId": request_id, "allow": False}, "alice", alice
        )
        assert again is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_turns(self, dispatcher, alice, fake):
        fake.gate = asyncio.Event()
        fake.session_id = "s-shutdown"
        task = await dispatcher.handle_message(start_turn(), "alice", alice)
        await wait_until(lambda: fake.is_active("s-shutdown"))

        await dispatcher.shutdown()

        assert task.done()
        assert dispatcher.running_turns == 0
        assert not fake.is_active("s-shutdown")
