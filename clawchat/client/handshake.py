"""Handshake manager.

Every fresh socket starts with a ``connect.challenge`` event from the
gateway. The manager answers it with a ``connect`` request, optionally
carrying a device-identity block signed over the challenge nonce, and on
a successful acknowledgment records the main conversation key and asks
for the transcript. Reconnection itself belongs to the transport; a new
challenge simply re-runs the handshake.
"""

import logging
import platform
from typing import Any, Callable, Dict, Optional

from clawchat.client.config import GatewayConfig
from clawchat.client.identity import DeviceIdentityStore, build_device_auth_payload
from clawchat.client.session import SessionContext
from clawchat.constants import HELLO_OK, REQ_CONNECT
from clawchat.events import ChallengeEvent, HelloFrame, ResponseFrame
from clawchat.models import DeviceIdentityError

logger = logging.getLogger(__name__)

# (prefix, method, params) -> request id, or None if the frame was not sent
RequestSender = Callable[[str, str, Dict[str, Any]], Optional[str]]


class HandshakeManager:
    """Answers authentication challenges and processes the connect ack."""

    def __init__(
        self,
        config: GatewayConfig,
        session: SessionContext,
        send_request: RequestSender,
        clock: Callable[[], float],
        identity_store: Optional[DeviceIdentityStore] = None,
        on_connected: Optional[Callable[[], None]] = None,
    ):
        self._config = config
        self._session = session
        self._send_request = send_request
        self._clock = clock
        self._identity_store = identity_store
        self._on_connected = on_connected
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """True once the current socket's connect request was acknowledged."""
        return self._connected

    def reset(self) -> None:
        self._connected = False

    def on_hello(self, frame: HelloFrame) -> None:
        self._session.server_session_id = frame.session_id
        logger.debug(f"Server session id: {frame.session_id}")

    def on_challenge(self, event: ChallengeEvent) -> Optional[str]:
        """Send the connect request for a challenge nonce.

        Returns:
            The connect request id, or None if the transport refused it.
        """
        self._connected = False
        params = self.build_connect_params(event.nonce)
        request_id = self._send_request(REQ_CONNECT, "connect", params)
        if request_id is None:
            logger.warning("Connect request not sent; waiting for the next challenge")
        return request_id

    def build_connect_params(self, nonce: str) -> Dict[str, Any]:
        config = self._config
        params: Dict[str, Any] = {
            "minProtocol": config.min_protocol,
            "maxProtocol": config.max_protocol,
            "client": {
                "id": config.client_id,
                "displayName": config.client_id,
                "version": config.client_version,
                "platform": platform.system().lower() or "python",
                "mode": config.client_mode,
            },
            "role": config.role,
            "scopes": list(config.scopes),
        }
        device = self._device_block(nonce)
        if device is not None:
            params["device"] = device
        if config.token:
            params["auth"] = {"token": config.token}
        return params

    def _device_block(self, nonce: str) -> Optional[Dict[str, Any]]:
        """Sign the challenge with the device key; None degrades to token-only auth."""
        if self._identity_store is None:
            return None
        config = self._config
        try:
            identity = self._identity_store.load_or_create()
            signed_at = int(self._clock() * 1000)
            payload = build_device_auth_payload(
                device_id=identity.device_id,
                client_id=config.client_id,
                client_mode=config.client_mode,
                role=config.role,
                scopes=list(config.scopes),
                signed_at_ms=signed_at,
                token=config.token,
                nonce=nonce,
            )
            signature = self._identity_store.sign(identity.private_key, payload)
        except DeviceIdentityError as e:
            logger.warning(f"Device identity unavailable, connecting without it: {e}")
            return None

        return {
            "id": identity.device_id,
            "publicKey": identity.public_key,
            "signature": signature,
            "signedAt": signed_at,
            "nonce": nonce,
        }

    def on_connect_response(self, frame: ResponseFrame) -> bool:
        """Process the connect acknowledgment.

        Returns:
            True if the gateway accepted the connection.
        """
        if not frame.ok:
            logger.error(f"Connect rejected: {frame.error_message}")
            return False

        payload = frame.payload if isinstance(frame.payload, dict) else {}
        if payload.get("type") not in (None, HELLO_OK):
            logger.debug(f"Unexpected connect payload type: {payload.get('type')!r}")

        session_key = _main_session_key(payload) or self._session.default_session_key
        if session_key:
            self._session.set_main_session_key(session_key)
        else:
            logger.warning("Connect ack carried no main session key")

        self._connected = True
        logger.info("Gateway handshake complete")
        if self._on_connected:
            self._on_connected()
        return True


def _main_session_key(payload: Dict[str, Any]) -> Optional[str]:
    snapshot = payload.get("snapshot")
    if isinstance(snapshot, dict):
        defaults = snapshot.get("sessionDefaults")
        if isinstance(defaults, dict):
            key = defaults.get("mainSessionKey")
            if isinstance(key, str) and key:
                return key
    key = payload.get("sessionKey")
    if isinstance(key, str) and key:
        return key
    return None
