"""Canonical Streaming Events

The only vocabulary adapters emit and the only shapes ever written back to a
client connection. Each variant is its own model keyed by ``type`` so a
half-built event fails validation where it is constructed.
"""

import enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


class ErrorCategory(str, enum.Enum):
    """Category carried by ``turn-error`` events"""
    CONFIGURATION = "configuration"
    INVALID_REQUEST = "invalid_request"
    CAPACITY = "capacity"
    AUTHENTICATION = "authentication"
    RESUME = "resume"
    TRANSPORT = "transport"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


class CanonicalEvent(BaseModel):
    """Base class for every outbound event"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the camelCase dict sent over the wire"""
        return self.model_dump(by_alias=True, exclude_none=True)


class SessionCreated(CanonicalEvent):
    type: Literal["session-created"] = "session-created"
    session_id: str = Field(min_length=1)
    provider: str
    model: Optional[str] = None
    cwd: str = ""


class ContentDelta(CanonicalEvent):
    """One text or thinking fragment, never both"""
    type: Literal["content-delta"] = "content-delta"
    session_id: str = Field(min_length=1)
    text: Optional[str] = None
    thinking: Optional[str] = None

    @model_validator(mode="after")
    def _one_fragment(self):
        if (self.text is None) == (self.thinking is None):
            raise ValueError("content-delta carries exactly one of text or thinking")
        return self


class ToolUse(CanonicalEvent):
    type: Literal["tool-use"] = "tool-use"
    session_id: str = Field(min_length=1)
    tool_use_id: str
    tool_name: str
    tool_input: Dict[str, Any] = Field(default_factory=dict)


class ToolApprovalRequest(CanonicalEvent):
    """The backend is suspended until the client answers ``request_id``"""
    type: Literal["tool-approval-request"] = "tool-approval-request"
    session_id: str = Field(min_length=1)
    request_id: str
    tool_name: str
    tool_input: Dict[str, Any] = Field(default_factory=dict)


class ContentStop(CanonicalEvent):
    type: Literal["content-stop"] = "content-stop"
    session_id: str = Field(min_length=1)


class Usage(CanonicalEvent):
    type: Literal["usage"] = "usage"
    session_id: str = Field(min_length=1)
    input_units: int = 0
    output_units: int = 0
    total_units: int = 0


class TurnResult(BaseModel):
    """Payload of a successful ``turn-complete``"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    content: str
    model: Optional[str] = None
    provider: str
    truncated: bool = False


class TurnComplete(CanonicalEvent):
    """Terminal event of a turn: carries a result or an error, never both"""
    type: Literal["turn-complete"] = "turn-complete"
    session_id: str = Field(min_length=1)
    provider: str
    result: Optional[TurnResult] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _result_or_error(self):
        if (self.result is None) == (self.error is None):
            raise ValueError("turn-complete carries exactly one of result or error")
        return self


class TurnError(CanonicalEvent):
    type: Literal["turn-error"] = "turn-error"
    session_id: str = Field(min_length=1)
    error: str
    category: ErrorCategory = ErrorCategory.INTERNAL


class SessionAborted(CanonicalEvent):
    type: Literal["session-aborted"] = "session-aborted"
    session_id: str
    provider: str
    success: bool


class SessionStatus(CanonicalEvent):
    type: Literal["session-status"] = "session-status"
    session_id: str
    provider: str
    is_processing: bool


class ActiveSessions(CanonicalEvent):
    type: Literal["active-sessions"] = "active-sessions"
    sessions: Dict[str, List[str]] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        # provider ids are data, not field names
        return {"type": self.type, "sessions": {k: list(v) for k, v in self.sessions.items()}}


Event = Annotated[
    Union[
        SessionCreated,
        ContentDelta,
        ToolUse,
        ToolApprovalRequest,
        ContentStop,
        Usage,
        TurnComplete,
        TurnError,
        SessionAborted,
        SessionStatus,
        ActiveSessions,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(Event)

TERMINAL_EVENT_TYPES = frozenset({"turn-complete", "session-aborted"})


def parse_event(data: Dict[str, Any]) -> CanonicalEvent:
    """Validate a wire dict back into its event variant"""
    return _event_adapter.validate_python(data)


def is_terminal(event: CanonicalEvent) -> bool:
    """True for the events that end a turn"""
    return event.type in TERMINAL_EVENT_TYPES
