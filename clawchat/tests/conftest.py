"""Pytest fixtures for clawchat tests.

Provides a manually driven scheduler, an in-memory transport that records
outbound frames, and builders for inbound gateway frames.
"""

import heapq
import itertools
from typing import Any, Callable, Dict, List, Optional

import pytest

from clawchat.client.config import ClientConfig, GatewayConfig
from clawchat.client.gateway import GatewayClient
from clawchat.client.transport import ConnectionState

MAIN_KEY = "agent:main:main"


class _ManualTimer:
    def __init__(self, due: float, callback: Callable[[], Any]):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when a test calls advance()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._seq = itertools.count()
        self._heap: List[tuple] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], Any]) -> _ManualTimer:
        timer = _ManualTimer(self._now + delay, callback)
        heapq.heappush(self._heap, (timer.due, next(self._seq), timer))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t in self._heap if not t.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            due, _, timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self._now = due
            timer.callback()
        self._now = target


class RecordingTransport:
    """Transport fake: records sent frames, delivers frames on demand."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._state = ConnectionState.DISCONNECTED
        self._on_message: Optional[Callable[[Any], None]] = None
        self._on_state: Optional[Callable[[ConnectionState], None]] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def send(self, frame: Dict[str, Any]) -> bool:
        if self._state != ConnectionState.CONNECTED:
            return False
        self.sent.append(frame)
        return True

    def set_message_callback(self, callback) -> None:
        self._on_message = callback

    def set_state_callback(self, callback) -> None:
        self._on_state = callback

    def set_state(self, state: ConnectionState) -> None:
        self._state = state
        if self._on_state:
            self._on_state(state)

    def deliver(self, frame: Any) -> None:
        self._on_message(frame)

    def requests(self, method: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("method") == method]

    def last_request(self, method: str) -> Dict[str, Any]:
        matching = self.requests(method)
        assert matching, f"no {method} request sent"
        return matching[-1]


class Frames:
    """Builders for inbound gateway frames."""

    main_key = MAIN_KEY

    @staticmethod
    def challenge(nonce: str = "nonce-1") -> Dict[str, Any]:
        return {"type": "event", "event": "connect.challenge", "payload": {"nonce": nonce, "ts": 1}}

    @staticmethod
    def response(request_id: str, ok: bool = True, payload: Any = None, error: Optional[str] = None) -> Dict[str, Any]:
        frame: Dict[str, Any] = {"type": "res", "id": request_id, "ok": ok}
        if payload is not None:
            frame["payload"] = payload
        if error is not None:
            frame["error"] = {"code": "INVALID_REQUEST", "message": error}
        return frame

    @staticmethod
    def chat(run_id: str, state: str, message: Optional[Dict[str, Any]] = None,
             error: Optional[str] = None, session_key: str = MAIN_KEY) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"runId": run_id, "sessionKey": session_key, "state": state}
        if message is not None:
            payload["message"] = message
        if error is not None:
            payload["errorMessage"] = error
        return {"type": "event", "event": "chat", "payload": payload}

    @staticmethod
    def agent(run_id: str, stream: str, data: Dict[str, Any], session_key: str = MAIN_KEY,
              seq: Optional[int] = None, ts: Optional[float] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"runId": run_id, "sessionKey": session_key, "stream": stream, "data": data}
        if seq is not None:
            payload["seq"] = seq
        if ts is not None:
            payload["ts"] = ts
        return {"type": "event", "event": "agent", "payload": payload}

    @staticmethod
    def text(run_id: str, delta: str, **kwargs) -> Dict[str, Any]:
        return Frames.agent(run_id, "content", {"delta": delta}, **kwargs)

    @staticmethod
    def thinking(run_id: str, delta: str, **kwargs) -> Dict[str, Any]:
        return Frames.agent(run_id, "reasoning", {"delta": delta}, **kwargs)

    @staticmethod
    def tool(run_id: str, phase: str, name: str, tool_call_id: Optional[str] = None,
             result: Any = None, is_error: bool = False, **kwargs) -> Dict[str, Any]:
        data: Dict[str, Any] = {"phase": phase, "name": name}
        if tool_call_id:
            data["toolCallId"] = tool_call_id
        if result is not None:
            data["result"] = result
        if is_error:
            data["isError"] = True
        return Frames.agent(run_id, "tool", data, **kwargs)

    @staticmethod
    def lifecycle(run_id: str, phase: str, **kwargs) -> Dict[str, Any]:
        return Frames.agent(run_id, "lifecycle", {"phase": phase}, **kwargs)

    @staticmethod
    def hello_ok(session_key: str = MAIN_KEY) -> Dict[str, Any]:
        return {"type": "hello-ok", "snapshot": {"sessionDefaults": {"mainSessionKey": session_key}}}


def connect(client: GatewayClient, transport: RecordingTransport,
            history: Optional[List[Dict[str, Any]]] = None, session_key: str = MAIN_KEY) -> None:
    """Drive the client through challenge, connect ack and the first history fetch."""
    transport.set_state(ConnectionState.CONNECTED)
    transport.deliver(Frames.challenge())
    connect_req = transport.last_request("connect")
    transport.deliver(Frames.response(connect_req["id"], payload=Frames.hello_ok(session_key)))
    history_req = transport.last_request("chat.history")
    transport.deliver(Frames.response(history_req["id"], payload={"messages": history or []}))


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def frames():
    return Frames


@pytest.fixture
def config():
    return ClientConfig(gateway=GatewayConfig(device_identity=False))


@pytest.fixture
def client(config, transport, scheduler):
    return GatewayClient(config, transport, scheduler=scheduler)


@pytest.fixture
def connected_client(client, transport):
    connect(client, transport)
    return client


@pytest.fixture
def connect_client(transport):
    """Return a function that connects a client with a given history."""
    def _connect(client: GatewayClient, history: Optional[List[Dict[str, Any]]] = None,
                 session_key: str = MAIN_KEY) -> None:
        connect(client, transport, history=history, session_key=session_key)
    return _connect
