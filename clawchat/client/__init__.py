"""Gateway session streaming client."""

from clawchat.client.config import (
    ClientConfig,
    GatewayConfig,
    RecoveryConfig,
    StreamingConfig,
    load_client_config,
)
from clawchat.client.gateway import GatewayClient
from clawchat.client.lifecycle import RunState
from clawchat.client.transport import ConnectionState, Transport, WebSocketTransport

__all__ = [
    "ClientConfig",
    "ConnectionState",
    "GatewayClient",
    "GatewayConfig",
    "RecoveryConfig",
    "RunState",
    "StreamingConfig",
    "Transport",
    "WebSocketTransport",
    "load_client_config",
]
