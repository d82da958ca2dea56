"""Subagent registry.

Tracks every conversation other than the main one as a compact activity
log, keyed by conversation key. Sub-agents are started by ``sessions_spawn``
tool calls in the main transcript; the registry links each spawn's
toolCallId to the child conversation key, either explicitly (the spawn
result names the child key) or by FIFO auto-linking (the oldest pending
spawn is bound to the next unknown key that produces events).

All data is cleared whenever the main run ends.
"""

import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from clawchat.constants import is_terminal_stop_reason
from clawchat.events import (
    AgentEvent,
    ChatState,
    ContentEvent,
    ErrorStreamEvent,
    LifecycleEvent,
    LifecyclePhase,
    ReasoningEvent,
    ToolEvent,
    ToolPhase,
)
from clawchat.models import (
    ContentPartType,
    Message,
    SubagentEntry,
    SubagentEntryType,
    SubagentSession,
    SubagentStatus,
    ToolStatus,
)

logger = logging.getLogger(__name__)


class SubagentRegistry:
    """Per-conversation-key store of sub-agent activity.

    Attributes:
        version: Incremented on every mutation; poll it to detect changes.
    """

    def __init__(self, coalesce_gap: float = 2.0, clock: Optional[Callable[[], float]] = None):
        """Initialize the registry.

        Args:
            coalesce_gap: Seconds within which consecutive text (or
                reasoning) fragments extend the previous entry.
            clock: Returns the current time in seconds; used for events
                that carry no timestamp.
        """
        self._gap_ms = coalesce_gap * 1000.0
        self._clock = clock
        self._sessions: Dict[str, SubagentSession] = {}
        # toolCallId -> conversation key
        self._links: Dict[str, str] = {}
        self._pending_spawns: Deque[str] = deque()
        self._version = 0

    # =========================================================================
    # Read-only accessors
    # =========================================================================

    @property
    def version(self) -> int:
        return self._version

    @property
    def links(self) -> Dict[str, str]:
        return dict(self._links)

    @property
    def pending_spawns(self) -> List[str]:
        return list(self._pending_spawns)

    def session_keys(self) -> List[str]:
        return list(self._sessions)

    def get_entries_for_session(self, session_key: str) -> Optional[SubagentSession]:
        return self._sessions.get(session_key)

    def get_entries_for_tool_call(self, tool_call_id: str) -> Optional[SubagentSession]:
        """Return the session linked to a spawn tool call, if any."""
        session_key = self._links.get(tool_call_id)
        if session_key is None:
            return None
        return self._sessions.get(session_key)

    def is_linked(self, session_key: str) -> bool:
        return session_key in self._links.values()

    # =========================================================================
    # Linking
    # =========================================================================

    def register_spawn(self, tool_call_id: str) -> None:
        """Queue a spawn tool call for auto-linking.

        Ids already queued or already linked are ignored.
        """
        if tool_call_id in self._links or tool_call_id in self._pending_spawns:
            return
        self._pending_spawns.append(tool_call_id)
        logger.debug(f"Registered spawn {tool_call_id} ({len(self._pending_spawns)} pending)")

    def link(self, tool_call_id: str, session_key: str) -> None:
        """Record an explicit spawn -> conversation link.

        Links are permanent until clear(); a conflicting link is logged
        and ignored.
        """
        existing = self._links.get(tool_call_id)
        if existing is not None:
            if existing != session_key:
                logger.warning(
                    f"Spawn {tool_call_id} already linked to {existing}, ignoring {session_key}"
                )
            return
        for linked_id, key in self._links.items():
            if key == session_key:
                logger.warning(
                    f"Conversation {session_key} already linked to spawn {linked_id}, "
                    f"ignoring {tool_call_id}"
                )
                return

        try:
            self._pending_spawns.remove(tool_call_id)
        except ValueError:
            pass
        self._links[tool_call_id] = session_key
        self._bump()

    def _auto_link(self, session_key: str) -> None:
        if self.is_linked(session_key):
            return
        if self._pending_spawns:
            tool_call_id = self._pending_spawns.popleft()
            self._links[tool_call_id] = session_key
            logger.debug(f"Auto-linked {session_key} to spawn {tool_call_id}")

    # =========================================================================
    # Event ingestion
    # =========================================================================

    def ingest_event(self, session_key: str, event: AgentEvent) -> None:
        """Apply one ``agent`` event from a non-main conversation."""
        if isinstance(event, LifecycleEvent):
            if event.phase == LifecyclePhase.START:
                self._auto_link(session_key)
                self._ensure_session(session_key)
            elif event.phase == LifecyclePhase.END:
                self._set_status(session_key, SubagentStatus.DONE)
            else:
                self._set_status(session_key, SubagentStatus.ERROR)
            self._bump()
            return

        # Auto-link even if the lifecycle start was missed
        self._auto_link(session_key)
        session = self._ensure_session(session_key)
        ts = event.ts if event.ts is not None else self._now_ms()

        if isinstance(event, ContentEvent):
            self._append_text(session, SubagentEntryType.TEXT, event.delta, ts)
        elif isinstance(event, ReasoningEvent):
            self._append_text(session, SubagentEntryType.REASONING, event.delta, ts)
        elif isinstance(event, ToolEvent):
            self._apply_tool(session, event, ts)
        elif isinstance(event, ErrorStreamEvent):
            self._set_status(session_key, SubagentStatus.ERROR)
            self._bump()

    def ingest_chat_event(self, session_key: str, state: ChatState) -> None:
        """Mark a known conversation done or errored on its terminal chat event."""
        if state == ChatState.DELTA or session_key not in self._sessions:
            return
        self._set_status(
            session_key,
            SubagentStatus.ERROR if state == ChatState.ERROR else SubagentStatus.DONE,
        )
        self._bump()

    def load_from_history(self, session_key: str, raw_messages: List[Dict[str, Any]]) -> bool:
        """Reconstruct a conversation's activity from its canonical history.

        Only fills a session that has no entries yet, so repeated fetches
        are harmless.

        Returns:
            True if entries were imported.
        """
        session = self._sessions.get(session_key)
        if session is not None and session.entries:
            return False
        session = self._ensure_session(session_key)

        finished = False
        for index, raw in enumerate(raw_messages):
            if not isinstance(raw, dict):
                continue
            message = Message.from_wire(raw, fallback_id=f"{session_key}-{index}")
            ts = float(message.timestamp or 0)
            if is_terminal_stop_reason(message.stop_reason):
                finished = True
            if message.is_tool_result:
                self._resolve_tool(
                    session,
                    message.tool_name,
                    message.tool_call_id,
                    ToolStatus.ERROR if message.is_error else ToolStatus.SUCCESS,
                )
                continue
            if message.role != "assistant":
                continue
            for part in message.parts:
                if part.type == ContentPartType.TEXT and part.text:
                    session.entries.append(SubagentEntry(SubagentEntryType.TEXT, part.text, ts))
                elif part.type == ContentPartType.THINKING and part.text:
                    session.entries.append(SubagentEntry(SubagentEntryType.REASONING, part.text, ts))
                elif part.is_tool_call and part.name:
                    status = part.status or (ToolStatus.SUCCESS if part.result is not None else ToolStatus.RUNNING)
                    session.entries.append(SubagentEntry(
                        SubagentEntryType.TOOL, part.name, ts,
                        tool_status=status, tool_call_id=part.tool_call_id,
                    ))

        if finished:
            self._set_status(session_key, SubagentStatus.DONE)
        self._bump()
        return True

    def clear(self) -> None:
        """Drop all sessions, links and pending spawns."""
        self._sessions.clear()
        self._links.clear()
        self._pending_spawns.clear()
        self._bump()

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _bump(self) -> None:
        self._version += 1

    def _now_ms(self) -> float:
        return self._clock() * 1000.0 if self._clock else 0.0

    def _ensure_session(self, session_key: str) -> SubagentSession:
        session = self._sessions.get(session_key)
        if session is None:
            session = SubagentSession()
            self._sessions[session_key] = session
        return session

    def _set_status(self, session_key: str, status: SubagentStatus) -> None:
        session = self._sessions.get(session_key)
        if session is None:
            return
        # error is terminal; done never reverts to active
        if session.status == SubagentStatus.ERROR:
            return
        if session.status == SubagentStatus.DONE and status == SubagentStatus.ACTIVE:
            return
        session.status = status

    def _append_text(self, session: SubagentSession, entry_type: SubagentEntryType, delta: str, ts: float) -> None:
        if not delta:
            return
        last = session.entries[-1] if session.entries else None
        if last is not None and last.type == entry_type and ts - last.ts < self._gap_ms:
            last.text += delta
            last.ts = ts
        else:
            session.entries.append(SubagentEntry(entry_type, delta, ts))
        self._bump()

    def _apply_tool(self, session: SubagentSession, event: ToolEvent, ts: float) -> None:
        if event.phase == ToolPhase.START:
            if event.tool_call_id and any(
                e.tool_call_id == event.tool_call_id for e in session.entries
            ):
                return
            session.entries.append(SubagentEntry(
                SubagentEntryType.TOOL, event.name, ts,
                tool_status=ToolStatus.RUNNING, tool_call_id=event.tool_call_id,
            ))
            self._bump()
        elif event.phase == ToolPhase.RESULT:
            if self._resolve_tool(
                session, event.name, event.tool_call_id,
                ToolStatus.ERROR if event.is_error else ToolStatus.SUCCESS,
            ):
                self._bump()

    @staticmethod
    def _resolve_tool(
        session: SubagentSession,
        name: Optional[str],
        tool_call_id: Optional[str],
        status: ToolStatus,
    ) -> bool:
        """Move the matching running tool entry to ``status``."""
        target = None
        if tool_call_id:
            for entry in reversed(session.entries):
                if entry.type == SubagentEntryType.TOOL and entry.tool_call_id == tool_call_id:
                    target = entry
                    break
        if target is None and name:
            for entry in reversed(session.entries):
                if (entry.type == SubagentEntryType.TOOL and entry.text == name
                        and entry.tool_status == ToolStatus.RUNNING):
                    target = entry
                    break
        if target is None or target.tool_status != ToolStatus.RUNNING:
            return False
        target.tool_status = status
        return True
