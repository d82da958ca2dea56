"""Transcript and sub-agent data model.

Messages and content parts are plain mutable dataclasses. The Message
Assembler and the Subagent Registry own them while they are being built;
everything else should treat them as read-only.

Wire payloads use camelCase keys (``toolCallId``, ``stopReason``); the
``from_wire``/``to_dict`` helpers translate between the two shapes.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# =============================================================================
# Errors
# =============================================================================

class ClawChatError(Exception):
    """Base class for client errors."""
    pass


class DeviceIdentityError(ClawChatError):
    """Device key store unavailable, corrupt, or signing failed."""
    pass


class MalformedEventError(ClawChatError):
    """Inbound frame has an unexpected shape or unknown discriminator."""
    pass


class RunInProgressError(ClawChatError):
    """A new run was requested while another is still active."""

    def __init__(self, message: str = "A run is already in progress"):
        super().__init__(message)


class RequestRejectedError(ClawChatError):
    """Describes a request the gateway answered with ``ok: false``.

    Delivered to observers as a value; never raised across the event loop.
    """

    def __init__(self, method: str, message: str, code: Optional[str] = None):
        super().__init__(f"{method} rejected: {message}")
        self.method = method
        self.code = code
        self.message = message


# =============================================================================
# Enums
# =============================================================================

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_RESULT = "toolResult"


# Wire spellings of the tool-result role.
_TOOL_RESULT_ROLES = {"toolResult", "tool_result", "tool"}


class ContentPartType(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    IMAGE = "image"


_PART_TYPE_ALIASES = {
    "text": ContentPartType.TEXT,
    "thinking": ContentPartType.THINKING,
    "reasoning": ContentPartType.THINKING,
    "tool_call": ContentPartType.TOOL_CALL,
    "toolCall": ContentPartType.TOOL_CALL,
    "image": ContentPartType.IMAGE,
    "image_url": ContentPartType.IMAGE,
    # Tool result payloads inside toolResult messages carry plain text.
    "tool_result": ContentPartType.TEXT,
}


class ToolStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SubagentStatus(str, Enum):
    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"


class SubagentEntryType(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL = "tool"


# =============================================================================
# Transcript
# =============================================================================

@dataclass
class ContentPart:
    """One segment of a message's content.

    Attributes:
        type: Segment kind.
        text: Text for ``text`` and ``thinking`` parts.
        name: Tool name for ``tool_call`` parts.
        tool_call_id: Provider id of the tool call, when known.
        arguments: Opaque argument string (provider-defined shape).
        status: Tool call status; moves running -> success|error once.
        result: Tool result text once resolved.
        source: Raw image payload for ``image`` parts.
    """
    type: ContentPartType
    text: Optional[str] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    arguments: Optional[str] = None
    status: Optional[ToolStatus] = None
    result: Optional[str] = None
    source: Optional[Dict[str, Any]] = None

    @property
    def is_tool_call(self) -> bool:
        return self.type == ContentPartType.TOOL_CALL

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> Optional["ContentPart"]:
        """Build a part from a wire dict, or None for unsupported types."""
        part_type = _PART_TYPE_ALIASES.get(data.get("type", ""))
        if part_type is None:
            return None

        if part_type == ContentPartType.TOOL_CALL:
            status = data.get("status")
            return cls(
                type=part_type,
                name=data.get("name"),
                tool_call_id=data.get("toolCallId") or data.get("id"),
                arguments=opaque_string(data.get("arguments", data.get("input"))),
                status=_tool_status(status),
                result=opaque_string(data.get("result")),
            )
        if part_type == ContentPartType.THINKING:
            return cls(type=part_type, text=data.get("thinking") or data.get("text") or "")
        if part_type == ContentPartType.IMAGE:
            source = data.get("source") or data.get("image_url")
            return cls(type=part_type, source=dict(source) if isinstance(source, dict) else None)
        return cls(type=part_type, text=data.get("text") or "")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.type.value}
        if self.text is not None:
            d["text"] = self.text
        if self.name is not None:
            d["name"] = self.name
        if self.tool_call_id is not None:
            d["toolCallId"] = self.tool_call_id
        if self.arguments is not None:
            d["arguments"] = self.arguments
        if self.status is not None:
            d["status"] = self.status.value
        if self.result is not None:
            d["result"] = self.result
        if self.source is not None:
            d["source"] = self.source
        return d


@dataclass
class Message:
    """One transcript entry.

    ``content`` is normally a list of ContentPart; canonical history may
    deliver a plain string. ``reasoning`` is the legacy single-blob form of
    thinking text. Durations are in seconds.
    """
    role: str
    content: Union[List[ContentPart], str]
    id: str
    timestamp: Optional[int] = None
    reasoning: Optional[str] = None
    stop_reason: Optional[str] = None
    is_error: bool = False
    run_duration: Optional[float] = None
    thinking_duration: Optional[float] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None

    @property
    def parts(self) -> List[ContentPart]:
        """Content as a list of parts (a plain string becomes one text part)."""
        if isinstance(self.content, str):
            return [ContentPart(type=ContentPartType.TEXT, text=self.content)] if self.content else []
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if p.type == ContentPartType.TEXT and p.text)

    @property
    def tool_calls(self) -> List[ContentPart]:
        return [p for p in self.parts if p.is_tool_call]

    @property
    def is_tool_result(self) -> bool:
        return self.role in _TOOL_RESULT_ROLES

    @classmethod
    def from_wire(cls, data: Dict[str, Any], fallback_id: str) -> "Message":
        raw_content = data.get("content")
        if isinstance(raw_content, list):
            content: Union[List[ContentPart], str] = [
                part for part in (
                    ContentPart.from_wire(item) for item in raw_content if isinstance(item, dict)
                ) if part is not None
            ]
        elif isinstance(raw_content, str):
            content = raw_content
        else:
            content = []

        role = data.get("role") or "system"
        if role in _TOOL_RESULT_ROLES:
            role = Role.TOOL_RESULT.value

        timestamp = data.get("timestamp")
        return cls(
            role=role,
            content=content,
            id=str(data.get("id") or fallback_id),
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else None,
            reasoning=data.get("reasoning") or None,
            stop_reason=data.get("stopReason") or None,
            is_error=bool(data.get("isError", False)),
            tool_call_id=data.get("toolCallId") or None,
            tool_name=data.get("toolName") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "role": self.role,
            "id": self.id,
            "content": self.content if isinstance(self.content, str) else [p.to_dict() for p in self.content],
        }
        optional = {
            "timestamp": self.timestamp,
            "reasoning": self.reasoning,
            "stopReason": self.stop_reason,
            "runDuration": self.run_duration,
            "thinkingDuration": self.thinking_duration,
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        if self.is_error:
            d["isError"] = True
        return d


# =============================================================================
# Sub-agents
# =============================================================================

@dataclass
class SubagentEntry:
    """One line of a sub-agent's activity log.

    For ``tool`` entries ``text`` holds the tool name. ``ts`` is the time
    (milliseconds) of the entry's last update, used for coalescing.
    """
    type: SubagentEntryType
    text: str
    ts: float
    tool_status: Optional[ToolStatus] = None
    tool_call_id: Optional[str] = None


@dataclass
class SubagentSession:
    entries: List[SubagentEntry] = field(default_factory=list)
    status: SubagentStatus = SubagentStatus.ACTIVE


@dataclass
class ModelChoice:
    """A selectable model advertised by the gateway."""
    id: str
    name: str
    provider: str
    context_window: Optional[int] = None
    reasoning: Optional[bool] = None


def opaque_string(value: Any) -> Optional[str]:
    """Tool arguments and results are opaque strings; serialise structured ones."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _tool_status(value: Any) -> Optional[ToolStatus]:
    try:
        return ToolStatus(value)
    except ValueError:
        return None
