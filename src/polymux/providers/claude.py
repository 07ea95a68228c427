"""
Claude Provider Implementation

Drives Claude through the native ``claude_agent_sdk`` client. A pump task owns
the SDK client and feeds every message into an output queue; the turn
generator translates queued messages into canonical events. Tool permission
prompts travel through the same queue so they stay ordered after the
session announcement.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import structlog
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolPermissionContext,
    ToolUseBlock,
)
from claude_agent_sdk.types import StreamEvent

from polymux.config import Settings
from polymux.models.commands import TurnOptions
from polymux.models.events import CanonicalEvent, ToolApprovalRequest, ToolUse, Usage
from polymux.models.session import CancellationToken
from polymux.services.approvals import ApprovalTable

from .base import (
    BaseProvider,
    ProviderError,
    ResolvedCredential,
    ResumeError,
    TransportError,
    Turn,
    UpstreamError,
)
from .catalog import ProviderDescriptor, TransportType


logger = structlog.get_logger(__name__)

PERMISSION_MODES = frozenset({"default", "acceptEdits", "plan", "bypassPermissions"})


@dataclass(frozen=True)
class _ApprovalPending:
    request_id: str
    tool_name: str
    tool_input: Dict[str, Any]


@dataclass(frozen=True)
class _PumpFailed:
    error: BaseException


_END = object()


class ClaudeProvider(BaseProvider):
    """Adapter for the native SDK transport"""

    transport = TransportType.NATIVE_SDK

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        settings: Optional[Settings] = None,
        approvals: Optional[ApprovalTable] = None,
    ):
        super().__init__(descriptor, settings)
        self.approvals = approvals or ApprovalTable(self.settings.tool_approval_timeout_seconds)

    @property
    def output_limit(self) -> int:
        return self.settings.sdk_output_limit

    def build_options(self, options: TurnOptions, model: str, can_use_tool=None) -> ClaudeAgentOptions:
        kwargs: Dict[str, Any] = {
            "model": model,
            "include_partial_messages": True,
        }
        if options.cwd:
            kwargs["cwd"] = options.cwd
        if options.resume_session_id:
            kwargs["resume"] = options.resume_session_id
        if options.system_prompt:
            kwargs["system_prompt"] = options.system_prompt
        if options.permission_mode in PERMISSION_MODES:
            kwargs["permission_mode"] = options.permission_mode
        if can_use_tool is not None:
            kwargs["can_use_tool"] = can_use_tool
        return ClaudeAgentOptions(**kwargs)

    def _approval_callback(self, queue: asyncio.Queue, request_ids: Set[str]):
        approvals = self.approvals

        async def can_use_tool(tool_name: str, tool_input: Dict[str, Any], context: ToolPermissionContext):
            request_id = approvals.create(tool_name, tool_input)
            request_ids.add(request_id)
            await queue.put(_ApprovalPending(request_id, tool_name, dict(tool_input or {})))

            decision = await approvals.wait(request_id)
            request_ids.discard(request_id)
            if decision.allow:
                return PermissionResultAllow(updated_input=decision.updated_input or tool_input)
            return PermissionResultDeny(message=decision.message or "Denied by user", interrupt=False)

        return can_use_tool

    async def _pump(self, sdk_options: ClaudeAgentOptions, prompt: str, queue: asyncio.Queue) -> None:
        """Own the SDK client for one turn and forward its messages"""
        client = ClaudeSDKClient(options=sdk_options)
        try:
            await client.connect()
            await client.query(prompt)
            async for message in client.receive_response():
                await queue.put(message)
            await queue.put(_END)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(_PumpFailed(e))
        finally:
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("SDK client disconnect failed", provider=self.provider_id, error=str(e))

    def translate(self, turn: Turn, message: Any, state: Dict[str, bool]) -> List[CanonicalEvent]:
        """Canonical events for one SDK message"""
        if isinstance(message, SystemMessage):
            if message.subtype == "init":
                return self._announce(turn, (message.data or {}).get("session_id"))
            return []

        if isinstance(message, StreamEvent):
            events = self._announce(turn, message.session_id)
            event = message.event or {}
            if event.get("type") == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta":
                    state["partial"] = True
                    events.extend(turn.delta(text=delta.get("text", "")))
                elif delta.get("type") == "thinking_delta":
                    state["partial"] = True
                    events.extend(turn.delta(thinking=delta.get("thinking", "")))
            return events

        if isinstance(message, AssistantMessage):
            events: List[CanonicalEvent] = []
            for block in message.content:
                if isinstance(block, TextBlock) and not state["partial"]:
                    events.extend(turn.delta(text=block.text))
                elif isinstance(block, ThinkingBlock) and not state["partial"]:
                    events.extend(turn.delta(thinking=block.thinking))
                elif isinstance(block, ToolUseBlock):
                    events.extend(turn.ensure_open())
                    events.append(ToolUse(
                        session_id=turn.session_id,
                        tool_use_id=block.id,
                        tool_name=block.name,
                        tool_input=dict(block.input or {}),
                    ))
            return events

        if isinstance(message, ResultMessage):
            events = self._announce(turn, message.session_id)
            if message.is_error:
                raise UpstreamError(
                    message.result or f"Claude turn failed ({message.subtype})",
                    provider=self.provider_id,
                    session_id=turn.session_id,
                )
            if not turn.produced_output and message.result:
                events.extend(turn.delta(text=message.result))
            events.extend(turn.ensure_open())
            usage = message.usage or {}
            input_units = usage.get("input_tokens") or 0
            output_units = usage.get("output_tokens") or 0
            events.append(Usage(
                session_id=turn.session_id,
                input_units=input_units,
                output_units=output_units,
                total_units=input_units + output_units,
            ))
            return events

        return []

    @staticmethod
    def _announce(turn: Turn, session_id: Optional[str]) -> List[CanonicalEvent]:
        if turn.opened or not session_id:
            return []
        return [turn.open(session_id)]

    async def start_or_resume_turn(
        self,
        prompt: str,
        options: TurnOptions,
        token: CancellationToken,
        credential: Optional[ResolvedCredential] = None,
    ) -> AsyncIterator[CanonicalEvent]:
        turn = self.new_turn(options, token)
        queue: asyncio.Queue = asyncio.Queue()
        request_ids: Set[str] = set()
        pump_task: Optional[asyncio.Task] = None
        state = {"partial": False}

        try:
            if options.is_resume:
                yield turn.open(options.resume_session_id)

            can_use_tool = None
            if options.permission_mode != "bypassPermissions":
                can_use_tool = self._approval_callback(queue, request_ids)
            sdk_options = self.build_options(options, turn.model, can_use_tool)

            logger.info("Starting SDK turn",
                        provider=self.provider_id,
                        resume=options.resume_session_id,
                        model=turn.model,
                        cwd=options.cwd)

            # from here on a failure is reported under an announced session
            pump_task = asyncio.create_task(self._pump(sdk_options, prompt, queue))

            while True:
                item = await queue.get()
                if item is _END:
                    break

                if isinstance(item, _PumpFailed):
                    error_cls = ResumeError if options.is_resume and not turn.produced_output else TransportError
                    raise error_cls(
                        f"Claude SDK error: {item.error}",
                        provider=self.provider_id,
                        session_id=turn.session_id,
                    )

                if isinstance(item, _ApprovalPending):
                    events: List[CanonicalEvent] = turn.ensure_open()
                    events.append(ToolApprovalRequest(
                        session_id=turn.session_id,
                        request_id=item.request_id,
                        tool_name=item.tool_name,
                        tool_input=item.tool_input,
                    ))
                else:
                    events = self.translate(turn, item, state)

                for event in events:
                    yield event

            for event in turn.complete():
                yield event

        except ProviderError as e:
            if pump_task is not None:
                for event in turn.ensure_open():
                    yield event
            for event in turn.fail(e):
                yield event
        finally:
            for request_id in list(request_ids):
                self.approvals.cancel(request_id)
            if pump_task is not None and not pump_task.done():
                pump_task.cancel()
                try:
                    await pump_task
                except asyncio.CancelledError:
                    pass
            turn.close()

    async def health_check(self) -> Dict[str, Any]:
        health = await super().health_check()
        health["pending_approvals"] = len(self.approvals)
        return health
