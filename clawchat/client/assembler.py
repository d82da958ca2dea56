"""Message assembler.

Owns the main conversation's transcript and applies streamed fragments to
the message of the active run. A run's message is created lazily on its
first fragment with ``id == runId``.

Trailing-segment rule for text and thinking fragments: the fragment
extends the last part of the same kind only if that part comes after the
last tool call; otherwise a new part is appended. A reply therefore keeps
its emission order, e.g. ``[thinking, tool_call, thinking, text]``.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from clawchat.constants import OPTIMISTIC_ID_PREFIX
from clawchat.models import (
    ContentPart,
    ContentPartType,
    Message,
    Role,
    ToolStatus,
)

logger = logging.getLogger(__name__)


class MessageAssembler:
    """Ordered transcript of the main conversation.

    Attributes:
        version: Incremented on every mutation.
    """

    def __init__(self, clock: Callable[[], float]):
        self._clock = clock
        self._messages: List[Message] = []
        self._version = 0

    # =========================================================================
    # Read-only accessors
    # =========================================================================

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def version(self) -> int:
        return self._version

    def find(self, message_id: str) -> Optional[Message]:
        for message in reversed(self._messages):
            if message.id == message_id:
                return message
        return None

    def optimistic_messages(self) -> List[Message]:
        """User messages submitted locally and not yet replaced by history."""
        return [
            m for m in self._messages
            if m.role == Role.USER.value and m.id.startswith(OPTIMISTIC_ID_PREFIX)
        ]

    # =========================================================================
    # Transcript mutations
    # =========================================================================

    def add_user_message(self, text: str) -> Message:
        """Append an optimistic user message with a client-generated id."""
        message = Message(
            role=Role.USER.value,
            content=[ContentPart(type=ContentPartType.TEXT, text=text)],
            id=f"{OPTIMISTIC_ID_PREFIX}{uuid.uuid4().hex[:12]}",
            timestamp=self._now_ms(),
        )
        self._messages.append(message)
        self._bump()
        return message

    def append_error(self, text: str) -> Message:
        """Append a visible system-role error message."""
        message = Message(
            role=Role.SYSTEM.value,
            content=[ContentPart(type=ContentPartType.TEXT, text=text)],
            id=f"error-{uuid.uuid4().hex[:12]}",
            timestamp=self._now_ms(),
            is_error=True,
        )
        self._messages.append(message)
        self._bump()
        return message

    def replace(self, messages: List[Message]) -> None:
        """Replace the whole transcript (history merge)."""
        self._messages = list(messages)
        self._bump()

    # =========================================================================
    # Streaming fragments
    # =========================================================================

    def apply_text(self, run_id: str, delta: str) -> None:
        if delta:
            self._append_fragment(self._get_or_create(run_id), ContentPartType.TEXT, delta)

    def apply_thinking(self, run_id: str, delta: str) -> None:
        if delta:
            self._append_fragment(self._get_or_create(run_id), ContentPartType.THINKING, delta)

    def apply_text_snapshot(self, run_id: str, text: str) -> None:
        """Apply a cumulative text snapshot as a delta."""
        self._apply_snapshot(run_id, ContentPartType.TEXT, text)

    def apply_thinking_snapshot(self, run_id: str, text: str) -> None:
        self._apply_snapshot(run_id, ContentPartType.THINKING, text)

    def apply_message_snapshot(self, run_id: str, data: Dict[str, Any]) -> None:
        """Apply a cumulative assistant message from a ``chat`` event.

        Only the suffix beyond what is already assembled is applied, so a
        gateway that sends both snapshots and ``agent`` streams does not
        duplicate text. Empty snapshots create no message.
        """
        if data.get("role") not in (None, Role.ASSISTANT.value):
            return
        content = data.get("content")
        text_parts: List[str] = []
        thinking_parts: List[str] = []
        if isinstance(content, str):
            text_parts.append(content)
        elif isinstance(content, list):
            for item in content:
                if not isinstance(item, dict):
                    continue
                part = ContentPart.from_wire(item)
                if part is None or not part.text:
                    continue
                if part.type == ContentPartType.TEXT:
                    text_parts.append(part.text)
                elif part.type == ContentPartType.THINKING:
                    thinking_parts.append(part.text)
        reasoning = data.get("reasoning")
        if not thinking_parts and isinstance(reasoning, str):
            thinking_parts.append(reasoning)

        self._apply_snapshot(run_id, ContentPartType.THINKING, "".join(thinking_parts))
        self._apply_snapshot(run_id, ContentPartType.TEXT, "".join(text_parts))

    def tool_start(
        self,
        run_id: str,
        name: str,
        tool_call_id: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> Optional[ContentPart]:
        """Append a running tool call.

        Returns:
            The new part, or None if a part with ``tool_call_id`` already exists.
        """
        message = self._get_or_create(run_id)
        parts = self._parts_of(message)
        if tool_call_id and any(p.is_tool_call and p.tool_call_id == tool_call_id for p in parts):
            logger.debug(f"Duplicate tool start for {tool_call_id}")
            return None
        part = ContentPart(
            type=ContentPartType.TOOL_CALL,
            name=name,
            tool_call_id=tool_call_id,
            arguments=arguments,
            status=ToolStatus.RUNNING,
        )
        parts.append(part)
        self._bump()
        return part

    def tool_result(
        self,
        run_id: str,
        name: str,
        tool_call_id: Optional[str] = None,
        result: Optional[str] = None,
        is_error: bool = False,
    ) -> Optional[ContentPart]:
        """Resolve the matching running tool call in place; never appends.

        Returns:
            The resolved part, or None if nothing matched.
        """
        message = self.find(run_id)
        if message is None or isinstance(message.content, str):
            return None
        part = find_tool_call(message.content, name, tool_call_id)
        if part is None or part.status != ToolStatus.RUNNING:
            logger.debug(f"No running tool call for result {name}/{tool_call_id}")
            return None
        part.status = ToolStatus.ERROR if is_error else ToolStatus.SUCCESS
        part.result = result
        self._bump()
        return part

    def complete(
        self,
        run_id: str,
        stop_reason: Optional[str] = None,
        run_duration: Optional[float] = None,
        thinking_duration: Optional[float] = None,
    ) -> Optional[Message]:
        """Finalise the run's message, if one was assembled."""
        message = self.find(run_id)
        if message is None:
            return None
        if stop_reason:
            message.stop_reason = stop_reason
        if run_duration is not None:
            message.run_duration = run_duration
        if thinking_duration is not None:
            message.thinking_duration = thinking_duration
        self._bump()
        return message

    def discard(self, run_id: str) -> bool:
        """Remove the run's message if it has no content."""
        message = self.find(run_id)
        if message is None or message.parts:
            return False
        self._messages.remove(message)
        self._bump()
        return True

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _bump(self) -> None:
        self._version += 1

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _get_or_create(self, run_id: str) -> Message:
        message = self.find(run_id)
        if message is None:
            message = Message(
                role=Role.ASSISTANT.value,
                content=[],
                id=run_id,
                timestamp=self._now_ms(),
            )
            self._messages.append(message)
            self._bump()
        return message

    @staticmethod
    def _parts_of(message: Message) -> List[ContentPart]:
        if isinstance(message.content, str):
            message.content = message.parts
        return message.content

    def _append_fragment(self, message: Message, kind: ContentPartType, delta: str) -> None:
        parts = self._parts_of(message)
        last_tool = -1
        last_same = -1
        for index, part in enumerate(parts):
            if part.is_tool_call:
                last_tool = index
            elif part.type == kind:
                last_same = index
        if last_same > last_tool:
            parts[last_same].text = (parts[last_same].text or "") + delta
        else:
            parts.append(ContentPart(type=kind, text=delta))
        self._bump()

    def _assembled(self, run_id: str, kind: ContentPartType) -> str:
        message = self.find(run_id)
        if message is None:
            return ""
        return "".join(p.text or "" for p in message.parts if p.type == kind)

    def _apply_snapshot(self, run_id: str, kind: ContentPartType, snapshot: str) -> None:
        if not snapshot:
            return
        current = self._assembled(run_id, kind)
        if snapshot.startswith(current):
            suffix = snapshot[len(current):]
            if suffix:
                self._append_fragment(self._get_or_create(run_id), kind, suffix)
        elif not current.startswith(snapshot):
            logger.debug(f"Snapshot for {run_id} diverges from assembled {kind.value}; skipped")


def _awaiting_result(part: ContentPart) -> bool:
    if part.status is None:
        return part.result is None
    return part.status == ToolStatus.RUNNING


def find_tool_call(
    parts: List[ContentPart],
    name: Optional[str],
    tool_call_id: Optional[str] = None,
) -> Optional[ContentPart]:
    """Find the tool call a result belongs to.

    Matches ``tool_call_id`` when given, else the most recent call of
    ``name`` still waiting for its result. A call that already finished
    without a result payload does not count as waiting.
    """
    if tool_call_id:
        for part in reversed(parts):
            if part.is_tool_call and part.tool_call_id == tool_call_id:
                return part
    if name:
        for part in reversed(parts):
            if part.is_tool_call and part.name == name and _awaiting_result(part):
                return part
    return None
