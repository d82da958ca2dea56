"""Event router.

Parses each decoded inbound frame and hands it to the component that owns
it. ``chat`` and ``agent`` events are split by conversation key: the
main key goes to the run tracker and message assembler, every other key
to the subagent registry. The key is compared on every event because the
main key may change across reconnects. Frames are handled strictly in
delivery order; nothing is buffered.
"""

import logging
from typing import Any, Callable, Optional, Union

from clawchat.client.debug_log import log_event
from clawchat.client.session import SessionContext
from clawchat.events import (
    AgentEvent,
    ChallengeEvent,
    ChatEvent,
    HelloFrame,
    OtherEvent,
    ResponseFrame,
    parse_frame,
)
from clawchat.models import MalformedEventError
from clawchat.trace import clear_trace_session_context, set_trace_session_context, trace

logger = logging.getLogger(__name__)

StreamEvent = Union[ChatEvent, AgentEvent]


class EventRouter:
    """Dispatches inbound frames by type and conversation key."""

    def __init__(
        self,
        session: SessionContext,
        on_main_event: Callable[[StreamEvent], None],
        on_subagent_event: Callable[[str, StreamEvent], None],
        on_response: Callable[[ResponseFrame], None],
        on_challenge: Callable[[ChallengeEvent], None],
        on_hello: Optional[Callable[[HelloFrame], None]] = None,
    ):
        self._session = session
        self._on_main_event = on_main_event
        self._on_subagent_event = on_subagent_event
        self._on_response = on_response
        self._on_challenge = on_challenge
        self._on_hello = on_hello

    def route(self, data: Any) -> None:
        """Handle one decoded frame. Malformed frames are skipped."""
        try:
            frame = parse_frame(data)
        except MalformedEventError as e:
            logger.debug(f"Skipping malformed frame: {e}")
            trace("router", f"malformed frame skipped: {e}")
            return

        if isinstance(frame, ResponseFrame):
            self._on_response(frame)
        elif isinstance(frame, ChallengeEvent):
            self._on_challenge(frame)
        elif isinstance(frame, HelloFrame):
            if self._on_hello:
                self._on_hello(frame)
        elif isinstance(frame, (ChatEvent, AgentEvent)):
            self._route_stream_event(frame)
        elif isinstance(frame, OtherEvent):
            logger.debug(f"Ignoring '{frame.name}' event")

    def _route_stream_event(self, event: StreamEvent) -> None:
        main_key = self._session.main_session_key
        if main_key is None:
            logger.debug(f"Dropping {type(event).__name__} before handshake: {event.session_key}")
            return

        if event.session_key == main_key:
            log_event(event)
            self._on_main_event(event)
        else:
            set_trace_session_context(event.session_key)
            try:
                log_event(event, session_key=event.session_key)
            finally:
                clear_trace_session_context()
            self._on_subagent_event(event.session_key, event)
