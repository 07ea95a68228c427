"""Wire and session models for Polymux"""

from .events import (
    ActiveSessions,
    CanonicalEvent,
    ContentDelta,
    ContentStop,
    ErrorCategory,
    SessionAborted,
    SessionCreated,
    SessionStatus,
    ToolApprovalRequest,
    ToolUse,
    TurnComplete,
    TurnError,
    TurnResult,
    Usage,
    TERMINAL_EVENT_TYPES,
    is_terminal,
    parse_event,
)
from .commands import (
    AbortSessionCommand,
    CheckSessionStatusCommand,
    GetActiveSessionsCommand,
    StartTurnCommand,
    ToolApprovalResponseCommand,
    TurnOptions,
    parse_command,
)
from .session import CancellationToken, SessionHandle

__all__ = [
    "ActiveSessions", "CanonicalEvent", "ContentDelta", "ContentStop", "ErrorCategory",
    "SessionAborted", "SessionCreated", "SessionStatus", "ToolApprovalRequest", "ToolUse",
    "TurnComplete", "TurnError", "TurnResult", "Usage", "TERMINAL_EVENT_TYPES",
    "is_terminal", "parse_event",
    "AbortSessionCommand", "CheckSessionStatusCommand", "GetActiveSessionsCommand",
    "StartTurnCommand", "ToolApprovalResponseCommand", "TurnOptions", "parse_command",
    "CancellationToken", "SessionHandle",
]
