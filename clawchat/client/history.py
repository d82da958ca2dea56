"""History resume engine.

Fetches the canonical transcript of the main conversation on connect,
after every run and on demand, and merges it into the assembler:

- Canonical messages replace the local transcript.
- Optimistic user messages (``local-`` ids) survive unless a canonical
  user message has the same text; the result is sorted by timestamp.
- The message of a live run that is still streaming is kept.

If the fetched transcript shows a run still in flight (the last message
is from the user, or the last assistant message has no terminal stop
reason) the tracker is forced into STREAMING and the fetch is repeated on
a fixed interval until the run completes.

The engine also discovers sub-agents from ``sessions_spawn`` results and
imports each child's history once into the subagent registry.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from clawchat.client.assembler import MessageAssembler, find_tool_call
from clawchat.client.lifecycle import RunLifecycleTracker
from clawchat.client.scheduling import Scheduler, TimerHandle
from clawchat.client.session import SessionContext
from clawchat.client.subagents import SubagentRegistry
from clawchat.constants import (
    HEARTBEAT_MARKER,
    NO_REPLY_MARKER,
    OPTIMISTIC_ID_PREFIX,
    REQ_HISTORY,
    REQ_SUBHISTORY,
    SPAWN_TOOL_NAME,
    has_unquoted_marker,
    is_terminal_stop_reason,
)
from clawchat.models import Message, Role, ToolStatus

logger = logging.getLogger(__name__)

# (prefix, method, params) -> request id, or None if the frame was not sent
RequestSender = Callable[[str, str, Dict[str, Any]], Optional[str]]

_CHILD_KEY_FIELDS = ("childSessionKey", "sessionKey", "session_key")


# =============================================================================
# Canonical history normalisation
# =============================================================================

def detect_in_flight(raw_messages: List[Any]) -> bool:
    """Return True if the transcript ends in the middle of a run.

    This is a heuristic: a history endpoint that persists messages before
    the run completes can make a finished run look in flight for one poll.
    """
    raw = [m for m in raw_messages if isinstance(m, dict)]
    if not raw:
        return False
    if raw[-1].get("role") == Role.USER.value:
        return True
    for message in reversed(raw):
        if message.get("role") == Role.ASSISTANT.value:
            return not is_terminal_stop_reason(message.get("stopReason"))
    return False


def is_control_reply(message: Message) -> bool:
    """True for assistant replies that are only a heartbeat or silent-reply marker."""
    if message.role != Role.ASSISTANT.value or message.tool_calls:
        return False
    text = message.text.strip()
    if not text:
        return False
    return has_unquoted_marker(text, HEARTBEAT_MARKER) or has_unquoted_marker(text, NO_REPLY_MARKER)


def fold_tool_results(messages: List[Message]) -> List[Message]:
    """Move tool-result messages into the tool calls they answer.

    Matched result messages are dropped; unmatched ones are kept.
    """
    folded: List[Message] = []
    for message in messages:
        if not message.is_tool_result:
            folded.append(message)
            continue
        target = None
        for previous in reversed(folded):
            if previous.role != Role.ASSISTANT.value:
                continue
            target = find_tool_call(previous.tool_calls, message.tool_name, message.tool_call_id)
            if target is not None:
                break
        if target is None or target.result is not None:
            folded.append(message)
            continue
        target.result = message.text
        target.status = ToolStatus.ERROR if message.is_error else ToolStatus.SUCCESS
    return folded


def normalize_history(raw_messages: List[Any]) -> List[Message]:
    """Turn a ``chat.history`` message list into transcript messages.

    Missing timestamps inherit the previous message's timestamp; missing ids
    become ``hist-<timestamp>-<index>``.
    """
    messages: List[Message] = []
    last_ts: Optional[int] = None
    for index, raw in enumerate(raw_messages):
        if not isinstance(raw, dict):
            continue
        message = Message.from_wire(raw, fallback_id="")
        if message.timestamp is None:
            message.timestamp = last_ts
        last_ts = message.timestamp
        if not message.id:
            message.id = f"hist-{message.timestamp or 0}-{index}"
        messages.append(message)

    messages = fold_tool_results(messages)
    for message in messages:
        for part in message.tool_calls:
            if part.status is None and part.result is not None:
                part.status = ToolStatus.SUCCESS
    return [m for m in messages if not is_control_reply(m)]


def merge_optimistic(canonical: List[Message], local: List[Message]) -> List[Message]:
    """Append optimistic user messages not yet reflected in ``canonical``."""
    canonical_texts = {
        m.text for m in canonical if m.role == Role.USER.value
    }
    kept = [
        m for m in local
        if m.id.startswith(OPTIMISTIC_ID_PREFIX) and m.text not in canonical_texts
    ]
    if not kept:
        return list(canonical)
    merged = list(canonical) + kept
    merged.sort(key=lambda m: m.timestamp or 0)
    return merged


def spawned_session_keys(messages: List[Message]) -> List[Tuple[Optional[str], str]]:
    """Return ``(toolCallId, childSessionKey)`` for every resolved spawn call."""
    found = []
    for message in messages:
        if message.role != Role.ASSISTANT.value:
            continue
        for part in message.tool_calls:
            if part.name != SPAWN_TOOL_NAME or not part.result:
                continue
            key = child_session_key(part.result)
            if key:
                found.append((part.tool_call_id, key))
    return found


def child_session_key(result: str) -> Optional[str]:
    """Extract the child conversation key from a spawn tool result."""
    try:
        data = json.loads(result)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    for field_name in _CHILD_KEY_FIELDS:
        value = data.get(field_name)
        if isinstance(value, str) and value:
            return value
    return None


# =============================================================================
# Engine
# =============================================================================

@dataclass
class _Durations:
    run_duration: Optional[float]
    thinking_duration: Optional[float]


class HistoryResumeEngine:
    """Fetches, merges and polls the canonical transcript."""

    def __init__(
        self,
        session: SessionContext,
        send_request: RequestSender,
        assembler: MessageAssembler,
        tracker: RunLifecycleTracker,
        registry: SubagentRegistry,
        scheduler: Scheduler,
        poll_interval: float = 3.0,
        history_limit: int = 200,
        on_resume_complete: Optional[Callable[[], None]] = None,
    ):
        self._session = session
        self._send_request = send_request
        self._assembler = assembler
        self._tracker = tracker
        self._registry = registry
        self._scheduler = scheduler
        self._poll_interval = poll_interval
        self._history_limit = history_limit
        self._on_resume_complete = on_resume_complete

        self._main_request: Optional[str] = None
        self._poll: Optional[TimerHandle] = None
        self._fetched_subsessions: Set[str] = set()
        self._pending_durations: Optional[_Durations] = None
        self._durations_by_id: Dict[str, _Durations] = {}

    @property
    def is_polling(self) -> bool:
        return self._poll is not None

    @property
    def fetch_in_progress(self) -> bool:
        return self._main_request is not None

    # =========================================================================
    # Requests
    # =========================================================================

    def fetch(self) -> Optional[str]:
        """Request the main transcript unless a fetch is already outstanding."""
        session_key = self._session.main_session_key
        if session_key is None:
            logger.debug("History fetch skipped: no main session key")
            return None
        if self._main_request is not None:
            logger.debug("History fetch already in progress")
            return None
        request_id = self._send_request(
            REQ_HISTORY, "chat.history",
            {"sessionKey": session_key, "limit": self._history_limit},
        )
        self._main_request = request_id
        return request_id

    def fetch_subagent(self, session_key: str) -> Optional[str]:
        """Request a child conversation's history once per key."""
        if session_key in self._fetched_subsessions:
            return None
        request_id = self._send_request(
            REQ_SUBHISTORY, "chat.history",
            {"sessionKey": session_key, "limit": self._history_limit},
        )
        if request_id is not None:
            self._fetched_subsessions.add(session_key)
        return request_id

    def remember_durations(self, run_duration: Optional[float], thinking_duration: Optional[float]) -> None:
        """Carry the last run's durations onto its canonical message at the next merge."""
        if run_duration is None and thinking_duration is None:
            return
        self._pending_durations = _Durations(run_duration, thinking_duration)

    # =========================================================================
    # Responses
    # =========================================================================

    def on_history_response(self, request_id: str, payload: Any) -> None:
        """Merge a canonical transcript and update resume state."""
        if request_id == self._main_request:
            self._main_request = None
        raw_messages = _messages_of(payload)

        canonical = normalize_history(raw_messages)
        self._apply_durations(canonical)
        in_flight = detect_in_flight(raw_messages)

        merged = merge_optimistic(canonical, self._assembler.optimistic_messages())
        live = self._live_message(in_flight)
        if live is not None and all(m.id != live.id for m in merged):
            merged.append(live)
        self._assembler.replace(merged)

        for tool_call_id, child_key in spawned_session_keys(canonical):
            if tool_call_id:
                self._registry.link(tool_call_id, child_key)
            self.fetch_subagent(child_key)

        self._update_resume(in_flight)

    def on_history_failed(self, request_id: str) -> None:
        if request_id == self._main_request:
            self._main_request = None
        if self._tracker.resumed:
            self._schedule_poll()

    def on_subhistory_response(self, session_key: str, payload: Any) -> None:
        if self._registry.load_from_history(session_key, _messages_of(payload)):
            logger.debug(f"Imported sub-agent history for {session_key}")

    def on_subhistory_failed(self, session_key: str) -> None:
        # Allow a later retry
        self._fetched_subsessions.discard(session_key)

    def clear_subsessions(self) -> None:
        self._fetched_subsessions.clear()

    def stop(self) -> None:
        """Cancel polling and forget outstanding fetches (connection closed)."""
        self._cancel_poll()
        self._main_request = None
        self._fetched_subsessions.clear()

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _live_message(self, in_flight: bool) -> Optional[Message]:
        """The active run's streamed message, if it must survive this merge.

        A detached run keeps its partial message only while the gateway
        still reports the run in flight; otherwise the canonical reply
        replaces it.
        """
        tracker = self._tracker
        if not tracker.is_active or tracker.run_id is None:
            return None
        if tracker.resumed and not in_flight:
            return None
        return self._assembler.find(tracker.run_id)

    def _apply_durations(self, canonical: List[Message]) -> None:
        if self._pending_durations is not None:
            for message in reversed(canonical):
                if message.role == Role.ASSISTANT.value:
                    self._durations_by_id[message.id] = self._pending_durations
                    break
            self._pending_durations = None

        for message in canonical:
            durations = self._durations_by_id.get(message.id)
            if durations is None:
                continue
            if durations.run_duration is not None:
                message.run_duration = durations.run_duration
            if durations.thinking_duration is not None:
                message.thinking_duration = durations.thinking_duration

    def _update_resume(self, in_flight: bool) -> None:
        tracker = self._tracker
        if in_flight:
            if tracker.is_active and not tracker.resumed:
                # A live run is streaming; its own terminal event ends it.
                return
            if tracker.force_streaming():
                logger.info("Run in progress on the gateway; resuming")
            self._schedule_poll()
            return

        self._cancel_poll()
        if tracker.is_active and tracker.resumed:
            logger.info("Resumed run completed")
            if self._on_resume_complete:
                self._on_resume_complete()

    def _schedule_poll(self) -> None:
        if self._poll is None:
            self._poll = self._scheduler.call_later(self._poll_interval, self._on_poll)

    def _cancel_poll(self) -> None:
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None

    def _on_poll(self) -> None:
        self._poll = None
        if not self._tracker.resumed:
            return
        if self.fetch() is None and self._main_request is None:
            # Not sent (disconnected or no key); try again later
            self._schedule_poll()


def _messages_of(payload: Any) -> List[Any]:
    if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
        return payload["messages"]
    if isinstance(payload, list):
        return payload
    return []
