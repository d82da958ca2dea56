"""clawchat - session streaming client for agent gateways.

Usage:
    from clawchat.client import GatewayClient, load_client_config
    from clawchat.models import Message, ContentPart
"""

from clawchat.client import (
    ClientConfig,
    ConnectionState,
    GatewayClient,
    RunState,
    load_client_config,
)
from clawchat.models import (
    ClawChatError,
    ContentPart,
    ContentPartType,
    Message,
    RequestRejectedError,
    RunInProgressError,
    SubagentSession,
    ToolStatus,
)
from clawchat.trace import trace

__version__ = "0.1.0"

__all__ = [
    # Client
    "ClientConfig",
    "ConnectionState",
    "GatewayClient",
    "RunState",
    "load_client_config",
    # Models
    "ClawChatError",
    "ContentPart",
    "ContentPartType",
    "Message",
    "RequestRejectedError",
    "RunInProgressError",
    "SubagentSession",
    "ToolStatus",
    # Trace
    "trace",
]
