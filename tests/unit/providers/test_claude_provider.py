"""
Unit tests for the Claude native SDK provider
"""
import asyncio
from unittest.mock import patch

import pytest
from claude_agent_sdk import (
    AssistantMessage,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)
from claude_agent_sdk.types import StreamEvent

from conftest import wait_until
from polymux.models.commands import TurnOptions
from polymux.models.session import CancellationToken
from polymux.providers.catalog import load_catalog
from polymux.providers.claude import ClaudeProvider
from polymux.services.approvals import ApprovalDecision


class FakeSDKClient:
    """Replays ``script``; callables in it run against the client instead of yielding"""

    script = []
    instances = []
    connect_error = None

    def __init__(self, options=None):
        self.options = options
        self.prompt = None
        self.disconnected = False
        self.decision = None
        type(self).instances.append(self)

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error

    async def query(self, prompt):
        self.prompt = prompt

    async def receive_response(self):
        for item in self.script:
            if callable(item):
                await item(self)
                continue
            yield item

    async def disconnect(self):
        self.disconnected = True


@pytest.fixture
def sdk():
    class Client(FakeSDKClient):
        script = []
        instances = []

    with patch("polymux.providers.claude.ClaudeSDKClient", Client):
        yield Client


@pytest.fixture
def provider(settings, approvals):
    return ClaudeProvider(load_catalog().get_descriptor("claude"), settings, approvals)


def init(session_id="cl-1"):
    return SystemMessage(subtype="init", data={"session_id": session_id, "model": "sonnet"})


def text_delta(text, session_id="cl-1"):
    return StreamEvent(
        uuid="ev-1",
        session_id=session_id,
        event={"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
    )


def result(text="Hello world", is_error=False, subtype="success", session_id="cl-1"):
    return ResultMessage(
        subtype=subtype,
        duration_ms=10,
        duration_api_ms=8,
        is_error=is_error,
        num_turns=1,
        session_id=session_id,
        usage={"input_tokens": 4, "output_tokens": 6},
        result=text,
    )


async def ask_bash(client):
    client.decision = await client.options.can_use_tool("Bash", {"command": "ls"}, None)


async def collect(provider, prompt="hi", on_approval=None, **options):
    events = []
    async for event in provider.start_or_resume_turn(prompt, TurnOptions(**options), CancellationToken()):
        events.append(event)
        if event.type == "tool-approval-request" and on_approval is not None:
            on_approval(event)
    return events


def types(events):
    return [e.type for e in events]


class TestTranslation:
    """SDK messages become canonical events"""

    @pytest.mark.asyncio
    async def test_partial_stream(self, provider, sdk):
        sdk.script = [
            init(),
            text_delta("Hello"),
            text_delta(" world"),
            AssistantMessage(
                content=[
                    TextBlock(text="Hello world"),
                    ToolUseBlock(id="tu-1", name="Read", input={"file_path": "a.py"}),
                ],
                model="claude-sonnet",
            ),
            result(),
        ]
        events = await collect(provider, permission_mode="bypassPermissions")

        assert types(events) == [
            "session-created", "content-delta", "content-delta", "tool-use", "usage",
            "content-stop", "turn-complete",
        ]
        assert {e.session_id for e in events} == {"cl-1"}
        assert events[3].tool_name == "Read"
        assert events[3].tool_input == {"file_path": "a.py"}
        assert events[4].total_units == 10
        assert events[-1].result.content == "Hello world"
        assert sdk.instances[0].prompt == "hi"
        assert sdk.instances[0].disconnected
        assert provider.list_active_sessions() == []

    @pytest.mark.asyncio
    async def test_whole_messages_without_partials(self, provider, sdk):
        sdk.script = [
            init(),
            AssistantMessage(content=[TextBlock(text="Hi")], model="claude-sonnet"),
            result("Hi"),
        ]
        events = await collect(provider, permission_mode="bypassPermissions")

        assert [e.text for e in events if e.type == "content-delta"] == ["Hi"]
        assert events[-1].result.content == "Hi"

    @pytest.mark.asyncio
    async def test_result_text_when_nothing_streamed(self, provider, sdk):
        sdk.script = [init(), result("Only result")]
        events = await collect(provider, permission_mode="bypassPermissions")
        assert events[-1].result.content == "Only result"

    @pytest.mark.asyncio
    async def test_error_result(self, provider, sdk):
        sdk.script = [init(), result(None, is_error=True, subtype="error_max_turns")]
        events = await collect(provider, permission_mode="bypassPermissions")

        assert types(events) == ["session-created", "turn-error", "turn-complete"]
        assert events[1].category == "upstream"
        assert events[1].error == "Claude turn failed (error_max_turns)"

    @pytest.mark.asyncio
    async def test_sdk_options(self, provider, sdk):
        sdk.script = [result()]
        await collect(
            provider,
            model="opus",
            cwd="/work",
            system_prompt="be terse",
            permission_mode="acceptEdits",
            resume_session_id="cl-9",
        )

        options = sdk.instances[0].options
        assert options.model == "opus"
        assert options.cwd == "/work"
        assert options.resume == "cl-9"
        assert options.system_prompt == "be terse"
        assert options.permission_mode == "acceptEdits"
        assert options.include_partial_messages is True
        assert options.can_use_tool is not None

    @pytest.mark.asyncio
    async def test_bypass_skips_approval_callback(self, provider, sdk):
        sdk.script = [result()]
        await collect(provider, permission_mode="bypassPermissions")

        options = sdk.instances[0].options
        assert options.can_use_tool is None
        assert options.model == "sonnet"


class TestFailures:
    """SDK failures end the turn exactly once"""

    @pytest.mark.asyncio
    async def test_connect_failure(self, provider, sdk):
        sdk.connect_error = RuntimeError("Claude Code not found")
        events = await collect(provider)

        assert types(events) == ["session-created", "turn-error", "turn-complete"]
        assert events[1].category == "transport"
        assert events[1].error == "Claude SDK error: Claude Code not found"
        assert events[1].session_id == events[0].session_id
        assert provider.list_active_sessions() == []
        assert sdk.instances[0].disconnected

    @pytest.mark.asyncio
    async def test_resume_failure(self, provider, sdk):
        sdk.connect_error = RuntimeError("No conversation found")
        events = await collect(provider, resume_session_id="cl-old")

        assert types(events) == ["session-created", "turn-error", "turn-complete"]
        assert events[1].session_id == "cl-old"
        assert events[1].category == "resume"
        assert not provider.is_active("cl-old")


class TestToolApproval:
    """Permission prompts round-trip through the approval table"""

    @pytest.mark.asyncio
    async def test_allow(self, provider, sdk, approvals):
        sdk.script = [init(), ask_bash, result("done")]

        def allow(event):
            approvals.resolve(event.request_id, ApprovalDecision(allow=True))

        events = await collect(provider, on_approval=allow)

        request = next(e for e in events if e.type == "tool-approval-request")
        assert request.session_id == "cl-1"
        assert request.tool_name == "Bash"
        assert request.tool_input == {"command": "ls"}

        decision = sdk.instances[0].decision
        assert isinstance(decision, PermissionResultAllow)
        assert decision.updated_input == {"command": "ls"}
        assert events[-1].type == "turn-complete"
        assert len(approvals) == 0

    @pytest.mark.asyncio
    async def test_deny_with_message(self, provider, sdk, approvals):
        sdk.script = [init(), ask_bash, result("ok")]

        def deny(event):
            approvals.resolve(event.request_id, ApprovalDecision(allow=False, message="not here"))

        await collect(provider, on_approval=deny)

        decision = sdk.instances[0].decision
        assert isinstance(decision, PermissionResultDeny)
        assert decision.message == "not here"

    @pytest.mark.asyncio
    async def test_unanswered_request_times_out(self, settings, sdk, approvals):
        approvals.timeout_seconds = 0.05
        provider = ClaudeProvider(load_catalog().get_descriptor("claude"), settings, approvals)
        sdk.script = [init(), ask_bash, result("ok")]

        await collect(provider)

        decision = sdk.instances[0].decision
        assert isinstance(decision, PermissionResultDeny)
        assert decision.message == "Tool approval timed out"

    @pytest.mark.asyncio
    async def test_abort_while_waiting_cancels_request(self, provider, sdk, approvals):
        sdk.script = [init(), ask_bash, result("never")]
        token = CancellationToken()
        events = []

        async def consume():
            async for event in provider.start_or_resume_turn("hi", TurnOptions(), token):
                events.append(event)

        task = asyncio.create_task(consume())
        token.bind(task)
        await wait_until(lambda: any(e.type == "tool-approval-request" for e in events))
        assert len(approvals) == 1

        assert provider.abort("cl-1") is True
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(approvals) == 0
        assert sdk.instances[0].disconnected
        assert "turn-complete" not in types(events)

    @pytest.mark.asyncio
    async def test_health_reports_pending_approvals(self, provider):
        health = await provider.health_check()
        assert health["pending_approvals"] == 0
        assert health["transport"] == "native-sdk"
