"""
Unit tests for inbound command parsing
"""
import pytest
from pydantic import ValidationError

from polymux.models.commands import (
    AbortSessionCommand,
    CheckSessionStatusCommand,
    GetActiveSessionsCommand,
    StartTurnCommand,
    ToolApprovalResponseCommand,
    TurnOptions,
    normalize_command,
    parse_command,
)


class TestParseCommand:
    """Canonical command vocabulary"""

    def test_start_turn(self):
        command = parse_command({
            "type": "start-turn",
            "provider": "deepseek",
            "prompt": "hi",
            "options": {"resumeSessionId": "s-1", "projectPath": "/repo", "maxTokens": 100},
        })
        assert isinstance(command, StartTurnCommand)
        assert command.provider == "deepseek"
        assert command.prompt == "hi"
        assert command.options.resume_session_id == "s-1"
        assert command.options.cwd == "/repo"
        assert command.options.max_tokens == 100
        assert command.options.is_resume

    def test_start_turn_requires_provider(self):
        with pytest.raises(ValidationError):
            parse_command({"type": "start-turn", "prompt": "hi"})

    def test_abort_defaults_to_claude(self):
        command = parse_command({"type": "abort-session", "sessionId": "s-1"})
        assert isinstance(command, AbortSessionCommand)
        assert command.provider == "claude"
        assert command.session_id == "s-1"

    def test_status_and_active_sessions(self):
        status = parse_command({"type": "check-session-status", "provider": "cursor", "sessionId": "c-1"})
        assert isinstance(status, CheckSessionStatusCommand)
        assert isinstance(parse_command({"type": "get-active-sessions"}), GetActiveSessionsCommand)

    def test_tool_approval_response(self):
        command = parse_command({
            "type": "tool-approval-response",
            "requestId": "r-1",
            "allow": True,
            "updatedInput": {"path": "a.txt"},
        })
        assert isinstance(command, ToolApprovalResponseCommand)
        assert command.allow is True
        assert command.updated_input == {"path": "a.txt"}

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_command({"type": "shell-command"})

    def test_user_id_is_not_serialized(self):
        options = TurnOptions(user_id="alice", model="sonnet")
        assert "user_id" not in options.model_dump()

    def test_unknown_option_keys_are_kept(self):
        options = TurnOptions.model_validate({"toolsSettings": {"allowedTools": []}})
        assert options.model_extra == {"toolsSettings": {"allowedTools": []}}


class TestLegacyCommands:
    """Older provider-specific message types"""

    def test_claude_command(self):
        command = parse_command({"type": "claude-command", "command": "fix it", "options": {}})
        assert isinstance(command, StartTurnCommand)
        assert command.provider == "claude"
        assert command.prompt == "fix it"

    def test_ai_command_keeps_explicit_provider(self):
        command = parse_command({"type": "ai-command", "provider": "kimi", "command": "hi"})
        assert command.provider == "kimi"

    def test_cursor_resume_moves_session_into_options(self):
        command = parse_command({"type": "cursor-resume", "sessionId": "c-9"})
        assert isinstance(command, StartTurnCommand)
        assert command.provider == "cursor"
        assert command.options.resume_session_id == "c-9"
        assert command.prompt == ""

    def test_cursor_abort(self):
        command = parse_command({"type": "cursor-abort", "sessionId": "c-9"})
        assert isinstance(command, AbortSessionCommand)
        assert command.provider == "cursor"

    def test_permission_response(self):
        command = parse_command({"type": "claude-permission-response", "requestId": "r", "allow": False})
        assert isinstance(command, ToolApprovalResponseCommand)

    def test_normalize_leaves_canonical_messages_alone(self):
        raw = {"type": "get-active-sessions"}
        assert normalize_command(raw) is raw
