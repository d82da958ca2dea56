"""Per-connection session state.

Holds what used to be ambient globals in a chat client: the main
conversation key, the server-assigned session id, outstanding request
ids and the one-shot request guards. Owned by the GatewayClient and
shared with the handshake, router and history components.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """A request awaiting its ``res`` frame."""
    method: str
    params: Dict[str, Any] = field(default_factory=dict)


class SessionContext:
    """Connection-scoped state shared by the protocol components.

    Attributes:
        main_session_key: Conversation key of "my" conversation; None until
            the first successful handshake.
        server_session_id: Opaque id from the ``hello`` frame.
        models_requested: Guard for the once-per-connection model catalogue.
    """

    def __init__(self, default_session_key: Optional[str] = None):
        self.main_session_key: Optional[str] = None
        self.server_session_id: Optional[str] = None
        self.models_requested = False
        self._default_session_key = default_session_key
        self._counter = 0
        self._pending: Dict[str, PendingRequest] = {}

    @property
    def default_session_key(self) -> Optional[str]:
        return self._default_session_key

    def is_main(self, session_key: Optional[str]) -> bool:
        """Return True if ``session_key`` is the current main conversation."""
        return self.main_session_key is not None and session_key == self.main_session_key

    def set_main_session_key(self, session_key: str) -> None:
        if session_key != self.main_session_key:
            logger.info(f"Main session key: {self.main_session_key} -> {session_key}")
        self.main_session_key = session_key

    # =========================================================================
    # Requests
    # =========================================================================

    def next_request_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def track(self, request_id: str, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._pending[request_id] = PendingRequest(method=method, params=dict(params or {}))

    def resolve(self, request_id: str) -> Optional[PendingRequest]:
        """Pop the pending request for ``request_id``, if known."""
        return self._pending.pop(request_id, None)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def reset_connection(self) -> None:
        """Forget everything tied to the closed socket.

        The main key is kept until the next handshake replaces it.
        """
        if self._pending:
            logger.debug(f"Dropping {len(self._pending)} unanswered requests")
        self._pending.clear()
        self.server_session_id = None
        self.models_requested = False
