"""One-line summaries of inbound chat and agent events.

Lines go to the trace channel (``CLAWCHAT_TRACE_LOG``), never to the
logging tree. Each line keeps only the fields that vary between deltas.
"""

import json
from typing import Any, Dict, List, Optional, Union

from clawchat.events import (
    AgentEvent,
    AssistantEvent,
    ChatEvent,
    ContentEvent,
    ErrorStreamEvent,
    LifecycleEvent,
    ReasoningEvent,
    ToolEvent,
)
from clawchat.trace import trace

_COMPONENT = "delta"


def content_summary(content: Union[List[Any], str, None]) -> str:
    """Summarise wire content as ``t:<len>``, ``tc:<name>:<status>``, ``th:<len>``."""
    if not content:
        return ""
    if isinstance(content, str):
        return f"t:{len(content)}"
    parts = []
    for part in content:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "text":
            parts.append(f"t:{len(part.get('text') or '')}")
        elif part_type in ("tool_call", "toolCall"):
            parts.append(f"tc:{part.get('name')}:{part.get('status') or '?'}")
        elif part_type == "thinking":
            parts.append(f"th:{len(part.get('text') or part.get('thinking') or '')}")
        else:
            parts.append(str(part_type))
    return ",".join(parts)


def _preview(value: Optional[str], limit: int = 60) -> Optional[str]:
    if not value:
        return None
    return value if len(value) <= limit else value[:limit] + "..."


def chat_entry(event: ChatEvent) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"e": "chat", "s": event.state.value, "rid": event.run_id}
    if event.message:
        entry["role"] = event.message.get("role")
        entry["c"] = content_summary(event.message.get("content"))
        reasoning = event.message.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            entry["r"] = len(reasoning)
    if event.error_message:
        entry["err"] = event.error_message
    return entry


def agent_entry(event: AgentEvent) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"e": "agent", "rid": event.run_id, "seq": event.seq}
    if isinstance(event, ToolEvent):
        entry.update(s="tool", phase=event.phase.value, name=event.name)
        if event.tool_call_id:
            entry["tcid"] = event.tool_call_id
        if event.is_error:
            entry["err"] = True
    elif isinstance(event, LifecycleEvent):
        entry.update(s="lifecycle", phase=event.phase.value)
    elif isinstance(event, ContentEvent):
        entry.update(s="content", len=len(event.delta))
    elif isinstance(event, ReasoningEvent):
        entry.update(s="reasoning", len=len(event.delta))
    elif isinstance(event, AssistantEvent):
        entry.update(s="assistant", len=len(event.delta))
        if event.text is not None:
            entry["text"] = _preview(event.text)
    elif isinstance(event, ErrorStreamEvent):
        entry.update(s="error", msg=_preview(event.message, 120))
    return entry


def log_event(event: Union[ChatEvent, AgentEvent], session_key: Optional[str] = None) -> None:
    """Write the summary line for ``event``; never raises."""
    try:
        entry = chat_entry(event) if isinstance(event, ChatEvent) else agent_entry(event)
        if session_key:
            entry["sk"] = session_key
        trace(_COMPONENT, json.dumps(entry, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        pass
