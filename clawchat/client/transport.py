"""Duplex transport to the gateway.

The protocol core only needs a fire-and-forget ``send``, a connection
state, and a single callback receiving decoded frames in receipt order.
``WebSocketTransport`` provides that over the ``websockets`` library and
owns the reconnection policy; the core never retries on its own.

State machine:
    DISCONNECTED -> CONNECTING (on start())
    CONNECTING -> CONNECTED (socket open)
    CONNECTED -> RECONNECTING (socket lost, recovery enabled)
    RECONNECTING -> CONNECTING (on retry attempt)
    RECONNECTING -> DISCONNECTED (max attempts exceeded)
    * -> DISCONNECTED (on close())
"""

import asyncio
import json
import logging
import random
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Set

import websockets

from clawchat.client.config import RecoveryConfig

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


MessageCallback = Callable[[Any], None]
StateCallback = Callable[[ConnectionState], None]


class Transport(Protocol):
    """What the protocol core consumes from a transport."""

    @property
    def state(self) -> ConnectionState:
        ...

    def send(self, frame: Dict[str, Any]) -> bool:
        """Queue ``frame`` for sending. Returns False when not connected."""
        ...

    def set_message_callback(self, callback: Optional[MessageCallback]) -> None:
        ...

    def set_state_callback(self, callback: Optional[StateCallback]) -> None:
        ...


def calculate_backoff(attempt: int, config: RecoveryConfig) -> float:
    """Seconds to wait before reconnection ``attempt`` (1-based).

    The delay doubles from ``base_delay`` up to ``max_delay`` and is then
    spread by ``jitter_factor`` in either direction, never below 100 ms.
    """
    delay = min(config.max_delay, config.base_delay * 2 ** (attempt - 1))
    spread = delay * config.jitter_factor
    return max(0.1, delay + random.uniform(-spread, spread))


class WebSocketTransport:
    """Websocket transport with automatic reconnection.

    Attributes:
        url: Gateway websocket URL.
        config: Reconnection policy.
        state: Current connection state.
    """

    def __init__(self, url: str, config: Optional[RecoveryConfig] = None):
        self._url = url
        self._config = config or RecoveryConfig()
        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[Any] = None
        self._run_task: Optional[asyncio.Task] = None
        self._send_tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._on_message: Optional[MessageCallback] = None
        self._on_state: Optional[StateCallback] = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def url(self) -> str:
        return self._url

    @property
    def config(self) -> RecoveryConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def set_message_callback(self, callback: Optional[MessageCallback]) -> None:
        self._on_message = callback

    def set_state_callback(self, callback: Optional[StateCallback]) -> None:
        self._on_state = callback

    # =========================================================================
    # Connection Management
    # =========================================================================

    def start(self) -> asyncio.Task:
        """Start the connection loop on the running event loop."""
        if self._run_task is None or self._run_task.done():
            self._closing = False
            self._run_task = asyncio.get_running_loop().create_task(self._connection_loop())
        return self._run_task

    async def close(self) -> None:
        """Close the socket and stop reconnecting."""
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error during close: {e}")
        if self._run_task and not self._run_task.done():
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        self._run_task = None
        self._ws = None
        self._transition_to(ConnectionState.DISCONNECTED)

    def send(self, frame: Dict[str, Any]) -> bool:
        """Send a frame without waiting for the write to complete."""
        if self._ws is None or self._state != ConnectionState.CONNECTED:
            logger.debug(f"Dropping frame while {self._state.value}: {frame.get('method')}")
            return False
        task = asyncio.get_running_loop().create_task(self._send(json.dumps(frame)))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        return True

    async def _send(self, message: str) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(message)
        except websockets.ConnectionClosed as e:
            logger.debug(f"Send failed, connection closed: {e}")

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _transition_to(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.debug(f"Connection state: {old_state.value} -> {new_state.value}")

        if self._on_state:
            try:
                self._on_state(new_state)
            except Exception as e:
                logger.warning(f"Error in state callback: {e}")

    def _deliver(self, message: Any) -> None:
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        try:
            frame = json.loads(message)
        except json.JSONDecodeError:
            logger.debug(f"Dropping undecodable frame: {message[:100]!r}")
            return
        if self._on_message:
            try:
                self._on_message(frame)
            except Exception:
                logger.exception("Error in message callback")

    async def _connection_loop(self) -> None:
        """Connect, read frames until the socket drops, then back off and retry."""
        attempt = 0

        while not self._closing:
            self._transition_to(ConnectionState.CONNECTING)
            try:
                async with websockets.connect(
                    self._url,
                    open_timeout=self._config.connection_timeout,
                ) as ws:
                    self._ws = ws
                    attempt = 0
                    logger.info(f"Connected to {self._url}")
                    self._transition_to(ConnectionState.CONNECTED)

                    async for message in ws:
                        self._deliver(message)

                logger.info("Connection closed by gateway")

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Connection to {self._url} failed: {e}")
            finally:
                self._ws = None

            if self._closing:
                break
            if not self._config.enabled:
                logger.info("Automatic reconnection disabled")
                break

            attempt += 1
            if attempt > self._config.max_attempts:
                logger.error(f"Reconnection failed after {attempt - 1} attempts")
                break

            self._transition_to(ConnectionState.RECONNECTING)
            delay = calculate_backoff(attempt, self._config)
            logger.info(
                f"Reconnection attempt {attempt}/{self._config.max_attempts} in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

        self._transition_to(ConnectionState.DISCONNECTED)
