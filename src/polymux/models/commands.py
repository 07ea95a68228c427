"""Inbound client commands

Messages arrive as ``{type, ...fields}``. Older clients used provider-specific
type names; ``normalize_command`` folds those into the canonical vocabulary
before validation.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class TurnOptions(BaseModel):
    """Options for one turn; unknown keys are kept as provider extras"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    resume_session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("resumeSessionId", "sessionId", "resume_session_id"),
    )
    cwd: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("cwd", "projectPath")
    )
    model: Optional[str] = None
    user_id: Optional[str] = Field(default=None, exclude=True)
    system_prompt: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("systemPrompt", "system_prompt")
    )
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("maxTokens", "max_tokens")
    )
    top_p: Optional[float] = Field(default=None, validation_alias=AliasChoices("topP", "top_p"))
    history: Optional[List[Dict[str, Any]]] = None
    permission_mode: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("permissionMode", "permission_mode")
    )

    @property
    def is_resume(self) -> bool:
        return bool(self.resume_session_id)


class _Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartTurnCommand(_Command):
    type: Literal["start-turn"] = "start-turn"
    provider: str
    prompt: str = Field(default="", validation_alias=AliasChoices("prompt", "command"))
    options: TurnOptions = Field(default_factory=TurnOptions)


class AbortSessionCommand(_Command):
    type: Literal["abort-session"] = "abort-session"
    provider: str = "claude"
    session_id: str = Field(validation_alias=AliasChoices("sessionId", "session_id"))


class CheckSessionStatusCommand(_Command):
    type: Literal["check-session-status"] = "check-session-status"
    provider: str = "claude"
    session_id: str = Field(validation_alias=AliasChoices("sessionId", "session_id"))


class GetActiveSessionsCommand(_Command):
    type: Literal["get-active-sessions"] = "get-active-sessions"


class ToolApprovalResponseCommand(_Command):
    type: Literal["tool-approval-response"] = "tool-approval-response"
    request_id: str = Field(validation_alias=AliasChoices("requestId", "request_id"))
    allow: bool = False
    updated_input: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("updatedInput", "updated_input")
    )
    message: Optional[str] = None


Command = Annotated[
    Union[
        StartTurnCommand,
        AbortSessionCommand,
        CheckSessionStatusCommand,
        GetActiveSessionsCommand,
        ToolApprovalResponseCommand,
    ],
    Field(discriminator="type"),
]

_command_adapter: TypeAdapter = TypeAdapter(Command)

# legacy type -> (canonical type, implied provider)
LEGACY_COMMAND_TYPES: Dict[str, tuple] = {
    "claude-command": ("start-turn", "claude"),
    "cursor-command": ("start-turn", "cursor"),
    "codex-command": ("start-turn", "codex"),
    "ai-command": ("start-turn", None),
    "cursor-resume": ("start-turn", "cursor"),
    "cursor-abort": ("abort-session", "cursor"),
    "claude-permission-response": ("tool-approval-response", None),
}


def normalize_command(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite a legacy command dict into the canonical vocabulary"""
    message_type = raw.get("type")
    if message_type not in LEGACY_COMMAND_TYPES:
        return raw

    canonical_type, implied_provider = LEGACY_COMMAND_TYPES[message_type]
    data = dict(raw)
    data["type"] = canonical_type
    if implied_provider and not data.get("provider"):
        data["provider"] = implied_provider

    if message_type == "cursor-resume":
        options = dict(data.get("options") or {})
        options.setdefault("sessionId", data.get("sessionId"))
        data["options"] = options
        data.setdefault("command", "")

    return data


def parse_command(raw: Dict[str, Any]):
    """Validate a raw client message into a command model"""
    return _command_adapter.validate_python(normalize_command(raw))
