"""Gateway frame protocol.

Inbound frames are JSON objects discriminated by ``type``:

    hello   server-assigned session id, sent once per socket
    res     response to a client request, correlated by ``id``
    event   server push; ``event`` names the kind

``chat`` and ``agent`` events carry the conversation key (``sessionKey``)
used by the Event Router. ``agent`` events are further discriminated by
``stream`` and parsed into one dataclass per stream so that handlers match
on type instead of comparing strings.

Client requests are ``{"type": "req", "id", "method", "params"}``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from clawchat.models import MalformedEventError, opaque_string


# =============================================================================
# Discriminators
# =============================================================================

class ChatState(str, Enum):
    DELTA = "delta"
    FINAL = "final"
    ABORTED = "aborted"
    ERROR = "error"


class LifecyclePhase(str, Enum):
    START = "start"
    END = "end"
    ERROR = "error"


class ToolPhase(str, Enum):
    START = "start"
    RESULT = "result"
    # Progress updates carry no state change for the transcript.
    UPDATE = "update"


class AgentStream(str, Enum):
    LIFECYCLE = "lifecycle"
    CONTENT = "content"
    REASONING = "reasoning"
    TOOL = "tool"
    ASSISTANT = "assistant"
    ERROR = "error"


# =============================================================================
# Frames
# =============================================================================

@dataclass
class HelloFrame:
    session_id: Optional[str] = None


@dataclass
class ResponseFrame:
    id: str
    ok: bool
    payload: Any = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class ChallengeEvent:
    nonce: str
    ts: Optional[int] = None


@dataclass
class ChatEvent:
    run_id: str
    session_key: str
    state: ChatState
    message: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


@dataclass
class AgentEvent:
    """Fields common to every ``agent`` stream."""
    run_id: str
    session_key: str
    seq: Optional[int] = None
    ts: Optional[float] = None


@dataclass
class LifecycleEvent(AgentEvent):
    phase: LifecyclePhase = LifecyclePhase.START
    error: Optional[str] = None


@dataclass
class ContentEvent(AgentEvent):
    delta: str = ""


@dataclass
class ReasoningEvent(AgentEvent):
    delta: str = ""


@dataclass
class ToolEvent(AgentEvent):
    phase: ToolPhase = ToolPhase.START
    name: str = ""
    tool_call_id: Optional[str] = None
    arguments: Optional[str] = None
    result: Optional[str] = None
    is_error: bool = False


@dataclass
class AssistantEvent(AgentEvent):
    """Assistant text stream.

    ``text`` is the cumulative reply so far when the gateway sends it;
    ``delta`` is the newest fragment.
    """
    delta: str = ""
    text: Optional[str] = None


@dataclass
class ErrorStreamEvent(AgentEvent):
    message: str = ""


@dataclass
class OtherEvent:
    """Events this client does not act on (presence, health, ...)."""
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


Frame = Union[HelloFrame, ResponseFrame, ChallengeEvent, ChatEvent, AgentEvent, OtherEvent]


# =============================================================================
# Parsing
# =============================================================================

def _require_dict(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedEventError(f"{what} is not an object")
    return value


def _require_str(data: Dict[str, Any], key: str, what: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedEventError(f"{what} missing '{key}'")
    return value


def _fragment(data: Dict[str, Any]) -> str:
    value = data.get("delta") or data.get("text") or data.get("content") or ""
    return value if isinstance(value, str) else ""


def _error_text(error: Any) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or "Unknown error"
    return str(error)


def parse_response(data: Dict[str, Any]) -> ResponseFrame:
    request_id = _require_str(data, "id", "response")
    error = data.get("error")
    return ResponseFrame(
        id=request_id,
        ok=bool(data.get("ok")),
        payload=data.get("payload"),
        error_message=_error_text(error),
        error_code=error.get("code") if isinstance(error, dict) else None,
    )


def parse_chat_event(payload: Dict[str, Any]) -> ChatEvent:
    try:
        state = ChatState(payload.get("state"))
    except ValueError:
        raise MalformedEventError(f"Unknown chat state: {payload.get('state')!r}")
    message = payload.get("message")
    return ChatEvent(
        run_id=_require_str(payload, "runId", "chat event"),
        session_key=_require_str(payload, "sessionKey", "chat event"),
        state=state,
        message=message if isinstance(message, dict) else None,
        error_message=payload.get("errorMessage"),
    )


def parse_agent_event(payload: Dict[str, Any]) -> AgentEvent:
    """Parse an ``agent`` event payload into its stream-specific dataclass.

    Raises:
        MalformedEventError: Missing keys, unknown stream or unknown phase.
    """
    try:
        stream = AgentStream(payload.get("stream"))
    except ValueError:
        raise MalformedEventError(f"Unknown agent stream: {payload.get('stream')!r}")

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise MalformedEventError("agent event 'data' is not an object")

    ts = payload.get("ts")
    common = dict(
        run_id=_require_str(payload, "runId", "agent event"),
        session_key=_require_str(payload, "sessionKey", "agent event"),
        seq=payload.get("seq"),
        ts=float(ts) if isinstance(ts, (int, float)) else None,
    )

    if stream == AgentStream.LIFECYCLE:
        try:
            phase = LifecyclePhase(data.get("phase"))
        except ValueError:
            raise MalformedEventError(f"Unknown lifecycle phase: {data.get('phase')!r}")
        return LifecycleEvent(phase=phase, error=_error_text(data.get("error")), **common)

    if stream == AgentStream.CONTENT:
        return ContentEvent(delta=_fragment(data), **common)

    if stream == AgentStream.REASONING:
        return ReasoningEvent(delta=_fragment(data), **common)

    if stream == AgentStream.TOOL:
        try:
            phase = ToolPhase(data.get("phase"))
        except ValueError:
            raise MalformedEventError(f"Unknown tool phase: {data.get('phase')!r}")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise MalformedEventError("tool event missing 'name'")
        return ToolEvent(
            phase=phase,
            name=name,
            tool_call_id=data.get("toolCallId") or None,
            arguments=opaque_string(data.get("args", data.get("arguments"))),
            result=opaque_string(data.get("result")),
            is_error=bool(data.get("isError", False)),
            **common,
        )

    if stream == AgentStream.ASSISTANT:
        text = data.get("text")
        delta = data.get("delta")
        return AssistantEvent(
            delta=delta if isinstance(delta, str) else "",
            text=text if isinstance(text, str) else None,
            **common,
        )

    # AgentStream.ERROR
    return ErrorStreamEvent(
        message=_error_text(data.get("error")) or data.get("message") or "Unknown error",
        **common,
    )


def parse_frame(data: Any) -> Frame:
    """Parse one decoded inbound frame.

    Args:
        data: JSON-decoded frame.

    Returns:
        The typed frame.

    Raises:
        MalformedEventError: If the frame does not match the protocol.
    """
    data = _require_dict(data, "frame")
    frame_type = data.get("type")

    if frame_type == "hello":
        return HelloFrame(session_id=data.get("sessionId"))

    if frame_type == "res":
        return parse_response(data)

    if frame_type == "event":
        name = data.get("event")
        payload = _require_dict(data.get("payload") or {}, "event payload")
        if name == "connect.challenge":
            return ChallengeEvent(nonce=_require_str(payload, "nonce", "challenge"), ts=payload.get("ts"))
        if name == "chat":
            return parse_chat_event(payload)
        if name == "agent":
            return parse_agent_event(payload)
        if isinstance(name, str) and name:
            return OtherEvent(name=name, payload=payload)
        raise MalformedEventError("event frame missing 'event'")

    raise MalformedEventError(f"Unknown frame type: {frame_type!r}")


def build_request(request_id: str, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build an outbound request frame."""
    frame: Dict[str, Any] = {"type": "req", "id": request_id, "method": method}
    if params is not None:
        frame["params"] = params
    return frame
