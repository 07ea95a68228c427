"""
Subprocess CLI Provider

Runs agent CLIs (cursor-agent, codex) as one child process per turn and turns
their line-delimited JSON output into canonical events. The CLIs differ only
in argv and output vocabulary; each has a profile describing both.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from polymux.config import Settings
from polymux.models.commands import TurnOptions
from polymux.models.events import CanonicalEvent, ToolUse, Usage
from polymux.models.session import CancellationToken

from .base import (
    BaseProvider,
    ProviderError,
    ResolvedCredential,
    ResumeError,
    TransportError,
    Turn,
    UpstreamError,
)
from .catalog import CliFlavor, ProviderDescriptor, TransportType


logger = structlog.get_logger(__name__)

STDERR_TAIL_BYTES = 4096
BYPASS_PERMISSIONS = "bypassPermissions"


class CliProfile:
    """Argv and output vocabulary of one CLI"""

    flavor: CliFlavor

    def build_argv(self, binary: str, prompt: str, options: TurnOptions) -> List[str]:
        raise NotImplementedError

    def interpret(self, turn: Turn, data: Dict[str, Any]) -> List[CanonicalEvent]:
        raise NotImplementedError

    @staticmethod
    def announce(turn: Turn, session_id: Optional[str]) -> List[CanonicalEvent]:
        """Open the turn under the id the CLI reported, once"""
        if turn.opened or not session_id:
            return []
        return [turn.open(str(session_id))]


class CursorProfile(CliProfile):
    """cursor-agent ``--print --output-format stream-json``"""

    flavor = CliFlavor.CURSOR

    def build_argv(self, binary: str, prompt: str, options: TurnOptions) -> List[str]:
        argv = [binary, "--print", "--output-format", "stream-json"]
        if options.resume_session_id:
            argv.extend(["--resume", options.resume_session_id])
        if options.model:
            argv.extend(["--model", options.model])
        if options.permission_mode == BYPASS_PERMISSIONS:
            argv.append("--force")
        if prompt:
            argv.append(prompt)
        return argv

    def interpret(self, turn: Turn, data: Dict[str, Any]) -> List[CanonicalEvent]:
        events = self.announce(turn, data.get("session_id"))
        message_type = data.get("type")

        if message_type == "assistant":
            content = (data.get("message") or {}).get("content") or []
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                    events.extend(turn.delta(text=block["text"]))

        elif message_type == "thinking" and data.get("text"):
            events.extend(turn.delta(thinking=data["text"]))

        elif message_type == "tool_call" and data.get("subtype") == "started":
            events.extend(turn.ensure_open())
            tool_call = data.get("tool_call") or {}
            name = next(iter(tool_call), "tool")
            events.append(ToolUse(
                session_id=turn.session_id,
                tool_use_id=str(data.get("call_id", "")),
                tool_name=name,
                tool_input=(tool_call.get(name) or {}).get("args") or {},
            ))

        elif message_type == "result":
            if data.get("is_error"):
                raise UpstreamError(
                    str(data.get("result") or "cursor-agent reported an error"),
                    provider=turn.provider_id,
                    session_id=turn.session_id,
                )
            if not turn.produced_output and data.get("result"):
                events.extend(turn.delta(text=str(data["result"])))

        return events


class CodexProfile(CliProfile):
    """``codex exec --json`` event stream"""

    flavor = CliFlavor.CODEX

    def build_argv(self, binary: str, prompt: str, options: TurnOptions) -> List[str]:
        argv = [binary, "exec", "--json", "--skip-git-repo-check"]
        if options.model:
            argv.extend(["--model", options.model])
        if options.permission_mode == BYPASS_PERMISSIONS:
            argv.append("--dangerously-bypass-approvals-and-sandbox")
        if options.resume_session_id:
            argv.extend(["resume", options.resume_session_id])
        argv.append(prompt)
        return argv

    def interpret(self, turn: Turn, data: Dict[str, Any]) -> List[CanonicalEvent]:
        message_type = data.get("type")

        if message_type == "thread.started":
            return self.announce(turn, data.get("thread_id"))

        if message_type in ("item.started", "item.completed"):
            item = data.get("item") or {}
            item_type = item.get("type")
            if message_type == "item.completed" and item_type == "agent_message":
                return turn.delta(text=item.get("text") or "")
            if message_type == "item.completed" and item_type == "reasoning":
                return turn.delta(thinking=item.get("text") or "")
            if message_type == "item.started" and item_type == "command_execution":
                events = turn.ensure_open()
                events.append(ToolUse(
                    session_id=turn.session_id,
                    tool_use_id=str(item.get("id", "")),
                    tool_name="command_execution",
                    tool_input={"command": item.get("command", "")},
                ))
                return events
            return []

        if message_type == "turn.completed":
            usage = data.get("usage") or {}
            events = turn.ensure_open()
            input_units = usage.get("input_tokens") or 0
            output_units = usage.get("output_tokens") or 0
            events.append(Usage(
                session_id=turn.session_id,
                input_units=input_units,
                output_units=output_units,
                total_units=input_units + output_units,
            ))
            return events

        if message_type == "turn.failed":
            error = data.get("error") or {}
            raise UpstreamError(
                str(error.get("message") or "codex turn failed"),
                provider=turn.provider_id,
                session_id=turn.session_id,
            )

        if message_type == "error":
            raise UpstreamError(
                str(data.get("message") or "codex reported an error"),
                provider=turn.provider_id,
                session_id=turn.session_id,
            )

        return []


PROFILES: Dict[CliFlavor, CliProfile] = {
    CliFlavor.CURSOR: CursorProfile(),
    CliFlavor.CODEX: CodexProfile(),
}


async def _read_tail(stream: Optional[asyncio.StreamReader]) -> str:
    """Drain a stream to EOF keeping only its last few kilobytes"""
    if stream is None:
        return ""
    tail = b""
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        tail = (tail + chunk)[-STDERR_TAIL_BYTES:]
    return tail.decode("utf-8", errors="replace").strip()


class SubprocessProvider(BaseProvider):
    """Adapter for CLI backends driven through a child process"""

    transport = TransportType.SUBPROCESS_CLI

    def __init__(self, descriptor: ProviderDescriptor, settings: Optional[Settings] = None):
        super().__init__(descriptor, settings)
        flavor = descriptor.cli_flavor or CliFlavor(descriptor.id)
        self.profile = PROFILES[flavor]

    @property
    def binary(self) -> str:
        if self.descriptor.cli_binary:
            return self.descriptor.cli_binary
        if self.profile.flavor == CliFlavor.CODEX:
            return self.settings.codex_bin
        return self.settings.cursor_bin

    @property
    def output_limit(self) -> int:
        return self.settings.cli_output_limit

    async def _spawn(self, argv: List[str], cwd: Optional[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            limit=self.settings.cli_stream_limit,
        )

    async def _reap(self, process: asyncio.subprocess.Process, session_id: Optional[str]) -> None:
        """Terminate, wait out the grace period, kill, and always wait"""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.cli_terminate_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("CLI process did not terminate gracefully, killing",
                           provider=self.provider_id,
                           session_id=session_id)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        logger.info("CLI process reaped", provider=self.provider_id, session_id=session_id)

    async def start_or_resume_turn(
        self,
        prompt: str,
        options: TurnOptions,
        token: CancellationToken,
        credential: Optional[ResolvedCredential] = None,
    ) -> AsyncIterator[CanonicalEvent]:
        turn = self.new_turn(options, token)
        process: Optional[asyncio.subprocess.Process] = None
        stderr_task: Optional[asyncio.Task] = None
        spawned = False
        try:
            if options.is_resume:
                yield turn.open(options.resume_session_id)

            argv = self.profile.build_argv(self.binary, prompt, options)
            logger.info("Starting CLI turn",
                        provider=self.provider_id,
                        binary=argv[0],
                        resume=options.resume_session_id,
                        cwd=options.cwd)
            spawned = True
            try:
                process = await self._spawn(argv, options.cwd or None)
            except OSError as e:
                raise TransportError(
                    f"Failed to start {argv[0]}: {e}",
                    provider=self.provider_id,
                    session_id=turn.session_id,
                ) from e

            stderr_task = asyncio.create_task(_read_tail(process.stderr))
            raw_lines = 0

            while True:
                try:
                    line = await process.stdout.readline()
                except ValueError as e:
                    raise TransportError(
                        f"{argv[0]} emitted a line over {self.settings.cli_stream_limit} bytes",
                        provider=self.provider_id,
                        session_id=turn.session_id,
                    ) from e
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip("\r\n")
                if not text.strip():
                    continue

                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    data = None

                if isinstance(data, dict):
                    events = self.profile.interpret(turn, data)
                else:
                    events = turn.delta(text=text if raw_lines == 0 else "\n" + text)
                    raw_lines += 1

                for event in events:
                    yield event

            returncode = await process.wait()
            stderr_tail = await stderr_task

            if returncode != 0:
                message = f"{argv[0]} exited with code {returncode}"
                if stderr_tail:
                    message = f"{message}: {stderr_tail}"
                error_cls = ResumeError if options.is_resume and not turn.produced_output else TransportError
                raise error_cls(message, provider=self.provider_id, session_id=turn.session_id)

            for event in turn.complete():
                yield event

        except ProviderError as e:
            if spawned:
                for event in turn.ensure_open():
                    yield event
            for event in turn.fail(e):
                yield event
        finally:
            if process is not None:
                await self._reap(process, turn.session_id)
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
            turn.close()

    async def health_check(self) -> Dict[str, Any]:
        """Probe the CLI with ``--version``"""
        health = await super().health_check()
        health["binary"] = self.binary
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            health.update(status="unhealthy", error=str(e))
            return health

        if process.returncode == 0:
            health["version"] = stdout.decode().strip()
        else:
            health.update(status="unhealthy", error=stderr.decode().strip())
        return health
