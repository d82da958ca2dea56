"""Gateway chat client.

Wires the protocol components together on top of a transport:

    Transport -> EventRouter -> {MessageAssembler, RunLifecycleTracker}  (main key)
                             -> SubagentRegistry                         (other keys)

The HistoryResumeEngine replaces the assembler's transcript on connect,
after every run and on refresh, and re-enters streaming for runs found in
flight. Everything runs on one event loop; no locks are needed.

Usage:
    from clawchat.client import GatewayClient, load_client_config

    client = GatewayClient.from_config(load_client_config())
    client.set_transcript_callback(lambda messages: render(messages))
    await client.start()
    client.send_message("hello")
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from clawchat.client.assembler import MessageAssembler
from clawchat.client.catalog import (
    ConfigProviders,
    catalog_entries,
    merge_models,
    parse_config_providers,
)
from clawchat.client.config import ClientConfig
from clawchat.client.handshake import HandshakeManager
from clawchat.client.history import HistoryResumeEngine, child_session_key
from clawchat.client.identity import DeviceIdentityStore
from clawchat.client.lifecycle import RunLifecycleTracker, RunState
from clawchat.client.router import EventRouter, StreamEvent
from clawchat.client.scheduling import AsyncioScheduler, Scheduler
from clawchat.client.session import SessionContext
from clawchat.client.subagents import SubagentRegistry
from clawchat.client.transport import ConnectionState, Transport, WebSocketTransport
from clawchat.constants import (
    REQ_ABORT,
    REQ_CONFIG,
    REQ_HISTORY,
    REQ_MODELS,
    REQ_SEND,
    REQ_SUBHISTORY,
    SPAWN_TOOL_NAME,
)
from clawchat.events import (
    AssistantEvent,
    ChatEvent,
    ChatState,
    ContentEvent,
    ErrorStreamEvent,
    LifecycleEvent,
    LifecyclePhase,
    ReasoningEvent,
    ResponseFrame,
    ToolEvent,
    ToolPhase,
    build_request,
)
from clawchat.models import (
    ClawChatError,
    Message,
    ModelChoice,
    RequestRejectedError,
    RunInProgressError,
)

logger = logging.getLogger(__name__)

TranscriptCallback = Callable[[List[Message]], None]
RunStateCallback = Callable[[RunState, Optional[str], bool], None]
ErrorCallback = Callable[[RequestRejectedError], None]
ConnectionCallback = Callable[[ConnectionState], None]
ModelsCallback = Callable[[List[ModelChoice]], None]


class GatewayClient:
    """Session streaming client for one main conversation.

    Attributes:
        session: Connection-scoped state (main key, pending requests).
        assembler: Transcript of the main conversation.
        tracker: Active run state.
        subagents: Sub-agent activity store.
        history: Canonical history fetch/resume engine.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Transport,
        scheduler: Optional[Scheduler] = None,
        identity_store: Optional[DeviceIdentityStore] = None,
    ):
        self._config = config
        self._transport = transport
        self._scheduler = scheduler or AsyncioScheduler()
        gateway = config.gateway
        streaming = config.streaming

        self.session = SessionContext(default_session_key=gateway.session_key)
        self.assembler = MessageAssembler(clock=self._scheduler.now)
        self.subagents = SubagentRegistry(
            coalesce_gap=streaming.subagent_coalesce_gap,
            clock=self._scheduler.now,
        )
        self.tracker = RunLifecycleTracker(
            self._scheduler,
            silence_threshold=streaming.silence_threshold,
            on_state_change=self._on_tracker_state,
        )
        self.history = HistoryResumeEngine(
            session=self.session,
            send_request=self._request,
            assembler=self.assembler,
            tracker=self.tracker,
            registry=self.subagents,
            scheduler=self._scheduler,
            poll_interval=streaming.resume_poll_interval,
            history_limit=gateway.history_limit,
            on_resume_complete=self._on_resume_complete,
        )
        self._handshake = HandshakeManager(
            config=gateway,
            session=self.session,
            send_request=self._request,
            clock=self._scheduler.now,
            identity_store=identity_store,
            on_connected=self._on_connected,
        )
        self._router = EventRouter(
            session=self.session,
            on_main_event=self._on_main_event,
            on_subagent_event=self._on_subagent_event,
            on_response=self._on_response,
            on_challenge=self._handshake.on_challenge,
            on_hello=self._handshake.on_hello,
        )

        self._send_request_id: Optional[str] = None
        # chat.send requests aborted before their ack named the run
        self._abandoned_sends: Set[str] = set()
        self._config_providers: Optional[ConfigProviders] = None
        self._catalog: Optional[List[Any]] = None
        self._models: List[ModelChoice] = []
        self._notified_version = -1

        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_run_state: Optional[RunStateCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._on_connection: Optional[ConnectionCallback] = None
        self._on_models: Optional[ModelsCallback] = None

        transport.set_message_callback(self._router.route)
        transport.set_state_callback(self._on_transport_state)

    @classmethod
    def from_config(cls, config: ClientConfig) -> "GatewayClient":
        """Build a client with the bundled websocket transport."""
        gateway = config.gateway
        identity_store = DeviceIdentityStore(gateway.identity_path) if gateway.device_identity else None
        transport = WebSocketTransport(gateway.url, config.recovery)
        return cls(config, transport, identity_store=identity_store)

    # =========================================================================
    # Properties and callbacks
    # =========================================================================

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def is_connected(self) -> bool:
        return self._handshake.is_connected and self._transport.state == ConnectionState.CONNECTED

    @property
    def messages(self) -> List[Message]:
        return self.assembler.messages

    @property
    def models(self) -> List[ModelChoice]:
        return list(self._models)

    def set_transcript_callback(self, callback: Optional[TranscriptCallback]) -> None:
        self._on_transcript = callback

    def set_run_state_callback(self, callback: Optional[RunStateCallback]) -> None:
        self._on_run_state = callback

    def set_error_callback(self, callback: Optional[ErrorCallback]) -> None:
        self._on_error = callback

    def set_connection_callback(self, callback: Optional[ConnectionCallback]) -> None:
        self._on_connection = callback

    def set_models_callback(self, callback: Optional[ModelsCallback]) -> None:
        self._on_models = callback

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the transport if it manages its own connection loop."""
        start = getattr(self._transport, "start", None)
        if start is not None:
            start()

    async def close(self) -> None:
        """Stop timers and close the transport."""
        self.tracker.stop()
        self.history.stop()
        close = getattr(self._transport, "close", None)
        if close is not None:
            await close()

    # =========================================================================
    # User actions
    # =========================================================================

    def send_message(self, text: str) -> Message:
        """Submit a user message and start a run.

        Returns:
            The optimistic user message added to the transcript.

        Raises:
            ClawChatError: If the gateway session is not established.
            RunInProgressError: If a run is already active.
        """
        if not self.is_connected or self.session.main_session_key is None:
            raise ClawChatError("Not connected to the gateway")
        if self.tracker.is_active:
            raise RunInProgressError()

        message = self.assembler.add_user_message(text)
        self.tracker.begin()
        self._send_request_id = self._request(REQ_SEND, "chat.send", {
            "sessionKey": self.session.main_session_key,
            "message": text,
            "idempotencyKey": str(uuid.uuid4()),
        })
        if self._send_request_id is None:
            self._finish_run(RunState.ERROR, error_text="Message could not be sent")
        self._notify_transcript()
        return message

    def abort(self) -> bool:
        """Abort the active run without waiting for the gateway.

        Returns:
            True if a run was active.
        """
        if not self.tracker.is_active:
            return False
        params: Dict[str, Any] = {"sessionKey": self.session.main_session_key}
        if self.tracker.run_id:
            params["runId"] = self.tracker.run_id
        elif self._send_request_id:
            self._abandoned_sends.add(self._send_request_id)
        self._request(REQ_ABORT, "chat.abort", params)
        self._finish_run(RunState.ABORTED)
        return True

    def refresh_history(self) -> Optional[str]:
        """Re-fetch the canonical transcript (pull-to-refresh)."""
        return self.history.fetch()

    def request_models(self) -> bool:
        """Ask for the model catalogue once per connection.

        Returns:
            True if the requests were sent.
        """
        if self.session.models_requested or not self.is_connected:
            return False
        self.session.models_requested = True
        self._config_providers = None
        self._catalog = None
        self._request(REQ_CONFIG, "config.get", {})
        self._request(REQ_MODELS, "models.list", {})
        return True

    # =========================================================================
    # Outbound requests
    # =========================================================================

    def _request(self, prefix: str, method: str, params: Dict[str, Any]) -> Optional[str]:
        request_id = self.session.next_request_id(prefix)
        if not self._transport.send(build_request(request_id, method, params)):
            logger.debug(f"{method} not sent: transport {self._transport.state.value}")
            return None
        self.session.track(request_id, method, params)
        return request_id

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    def _on_response(self, frame: ResponseFrame) -> None:
        pending = self.session.resolve(frame.id)
        if pending is None:
            logger.debug(f"Response for unknown request {frame.id}")
            return
        prefix = frame.id.rsplit("-", 1)[0]

        if pending.method == "connect":
            if not self._handshake.on_connect_response(frame):
                self._report(pending.method, frame)
            return

        if prefix == REQ_HISTORY:
            if frame.ok:
                self.history.on_history_response(frame.id, frame.payload)
                self._notify_transcript()
            else:
                self.history.on_history_failed(frame.id)
                self._report(pending.method, frame)
            return

        if prefix == REQ_SUBHISTORY:
            session_key = pending.params.get("sessionKey", "")
            if frame.ok:
                self.history.on_subhistory_response(session_key, frame.payload)
            else:
                self.history.on_subhistory_failed(session_key)
                self._report(pending.method, frame)
            return

        if prefix == REQ_SEND:
            is_active_send = frame.id == self._send_request_id
            if frame.ok:
                run_id = frame.payload.get("runId") if isinstance(frame.payload, dict) else None
                aborted = frame.id in self._abandoned_sends
                self._abandoned_sends.discard(frame.id)
                if not isinstance(run_id, str) or not run_id:
                    return
                if aborted:
                    self._retire_aborted_run(run_id)
                elif is_active_send:
                    self.tracker.bind(run_id)
                return
            self._abandoned_sends.discard(frame.id)
            self._report(pending.method, frame)
            if is_active_send and self.tracker.is_active:
                self._finish_run(RunState.ERROR, error_text=frame.error_message)
            return

        if prefix in (REQ_CONFIG, REQ_MODELS):
            self._on_catalog_response(prefix, frame)
            return

        if not frame.ok:
            self._report(pending.method, frame)

    def _on_catalog_response(self, prefix: str, frame: ResponseFrame) -> None:
        if not frame.ok:
            self._report("config.get" if prefix == REQ_CONFIG else "models.list", frame)
        if prefix == REQ_CONFIG:
            self._config_providers = parse_config_providers(frame.payload if frame.ok else None)
        else:
            self._catalog = catalog_entries(frame.payload if frame.ok else None)
        if self._config_providers is None or self._catalog is None:
            return
        self._models = merge_models(self._config_providers, self._catalog)
        logger.debug(f"Model catalogue: {len(self._models)} choices")
        if self._on_models:
            self._on_models(self.models)

    def _on_main_event(self, event: StreamEvent) -> None:
        if not self.tracker.accept(event.run_id):
            return
        run_id = event.run_id

        if isinstance(event, ChatEvent):
            self._on_main_chat(event)
        elif isinstance(event, ContentEvent):
            self.assembler.apply_text(run_id, event.delta)
        elif isinstance(event, ReasoningEvent):
            self.assembler.apply_thinking(run_id, event.delta)
        elif isinstance(event, AssistantEvent):
            if event.text is not None:
                self.assembler.apply_text_snapshot(run_id, event.text)
            else:
                self.assembler.apply_text(run_id, event.delta)
        elif isinstance(event, ToolEvent):
            self._on_main_tool(event)
        elif isinstance(event, LifecycleEvent):
            if event.phase == LifecyclePhase.ERROR:
                self._finish_run(RunState.ERROR, error_text=event.error)
        elif isinstance(event, ErrorStreamEvent):
            self._finish_run(RunState.ERROR, error_text=event.message)

        self._notify_transcript()

    def _on_main_chat(self, event: ChatEvent) -> None:
        if event.state == ChatState.DELTA:
            if event.message:
                self.assembler.apply_message_snapshot(event.run_id, event.message)
        elif event.state == ChatState.FINAL:
            stop_reason = None
            if event.message:
                self.assembler.apply_message_snapshot(event.run_id, event.message)
                stop_reason = event.message.get("stopReason")
            self._finish_run(RunState.FINAL, stop_reason=stop_reason)
        elif event.state == ChatState.ABORTED:
            self._finish_run(RunState.ABORTED)
        else:
            self._finish_run(RunState.ERROR, error_text=event.error_message)

    def _on_main_tool(self, event: ToolEvent) -> None:
        if event.phase == ToolPhase.START:
            part = self.assembler.tool_start(event.run_id, event.name, event.tool_call_id, event.arguments)
            if part is not None and event.name == SPAWN_TOOL_NAME and event.tool_call_id:
                self.subagents.register_spawn(event.tool_call_id)
        elif event.phase == ToolPhase.RESULT:
            part = self.assembler.tool_result(
                event.run_id, event.name, event.tool_call_id, event.result, event.is_error,
            )
            if part is not None and part.name == SPAWN_TOOL_NAME and part.tool_call_id and part.result:
                child_key = child_session_key(part.result)
                if child_key:
                    self.subagents.link(part.tool_call_id, child_key)

    def _on_subagent_event(self, session_key: str, event: StreamEvent) -> None:
        if isinstance(event, ChatEvent):
            self.subagents.ingest_chat_event(session_key, event.state)
        else:
            self.subagents.ingest_event(session_key, event)

    # =========================================================================
    # Run completion
    # =========================================================================

    def _finish_run(
        self,
        state: RunState,
        error_text: Optional[str] = None,
        stop_reason: Optional[str] = None,
        measure: bool = True,
        refetch: bool = True,
    ) -> None:
        outcome = self.tracker.finish(state, measure=measure)
        if outcome is None:
            return
        run_id = outcome.run_id

        if state == RunState.FINAL:
            if run_id:
                self.assembler.complete(
                    run_id,
                    stop_reason=stop_reason,
                    run_duration=outcome.duration,
                    thinking_duration=outcome.thinking_duration,
                )
            self.history.remember_durations(outcome.duration, outcome.thinking_duration)
        elif state == RunState.ABORTED:
            if run_id and not self.assembler.discard(run_id):
                self.assembler.complete(run_id, stop_reason="aborted")
        else:
            if run_id and not self.assembler.discard(run_id):
                self.assembler.complete(run_id, stop_reason="error")
            self.assembler.append_error(error_text or "Unknown error")

        logger.info(f"Run {run_id} ended: {state.value}")
        self.subagents.clear()
        self.history.clear_subsessions()
        self._send_request_id = None
        if refetch:
            self.history.fetch()
        self._notify_transcript()

    def _retire_aborted_run(self, run_id: str) -> None:
        """Ignore a run that was aborted before its chat.send ack arrived."""
        logger.debug(f"Aborted send acknowledged as run {run_id}")
        if self.tracker.run_id == run_id:
            # Its first events arrived before the ack and were taken as an external run
            self._finish_run(RunState.ABORTED, refetch=False)
        else:
            self.tracker.mark_finished(run_id)

    def _on_resume_complete(self) -> None:
        self._finish_run(RunState.FINAL, measure=False, refetch=False)

    # =========================================================================
    # Connection
    # =========================================================================

    def _on_connected(self) -> None:
        self.history.fetch()

    def _on_transport_state(self, state: ConnectionState) -> None:
        if state in (ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED):
            self._handshake.reset()
            self.history.stop()
            self.session.reset_connection()
            self.tracker.mark_detached()
            self._send_request_id = None
            self._abandoned_sends.clear()
        if self._on_connection:
            try:
                self._on_connection(state)
            except Exception as e:
                logger.warning(f"Error in connection callback: {e}")

    # =========================================================================
    # Observers
    # =========================================================================

    def _on_tracker_state(self, state: RunState, run_id: Optional[str], silent: bool) -> None:
        if self._on_run_state:
            try:
                self._on_run_state(state, run_id, silent)
            except Exception as e:
                logger.warning(f"Error in run state callback: {e}")

    def _notify_transcript(self) -> None:
        version = self.assembler.version
        if version == self._notified_version:
            return
        self._notified_version = version
        if self._on_transcript:
            try:
                self._on_transcript(self.assembler.messages)
            except Exception as e:
                logger.warning(f"Error in transcript callback: {e}")

    def _report(self, method: str, frame: ResponseFrame) -> None:
        error = RequestRejectedError(method, frame.error_message or "Request failed", frame.error_code)
        logger.warning(str(error))
        if self._on_error:
            try:
                self._on_error(error)
            except Exception as e:
                logger.warning(f"Error in error callback: {e}")
