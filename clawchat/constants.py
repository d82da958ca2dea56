"""Protocol-wide constants shared by the client components."""

# Control markers the gateway injects as whole assistant replies.
HEARTBEAT_MARKER = "HEARTBEAT_OK"
NO_REPLY_MARKER = "NO_REPLY"

# Payload type of a successful connect acknowledgment.
HELLO_OK = "hello-ok"

# Tool whose invocation starts a sub-agent conversation.
SPAWN_TOOL_NAME = "sessions_spawn"

# Stop reasons that mean the assistant turn is complete. Anything else
# (notably "toolUse") means the run is still producing output.
STOP_REASON_INJECTED = "injected"
TERMINAL_STOP_REASONS = frozenset({
    "end_turn",
    "endTurn",
    "stop",
    "stop_sequence",
    "stopSequence",
    "max_tokens",
    "maxTokens",
    "length",
    "refusal",
    "error",
    "aborted",
    STOP_REASON_INJECTED,
})

# Prefix of client-generated ids for optimistic user messages.
OPTIMISTIC_ID_PREFIX = "local-"

# Request id prefixes; responses are dispatched by prefix.
REQ_CONNECT = "connect"
REQ_SEND = "send"
REQ_ABORT = "abort"
REQ_HISTORY = "history"
REQ_SUBHISTORY = "subhistory"
REQ_MODELS = "models"
REQ_CONFIG = "config"


def has_unquoted_marker(text: str, marker: str) -> bool:
    """Return True if ``marker`` occurs in ``text`` outside double quotes."""
    i = 0
    n = len(text)
    while i < n:
        if text[i] == '"':
            i += 1
            while i < n and text[i] != '"':
                i += 1
            i += 1
        elif text.startswith(marker, i):
            return True
        else:
            i += 1
    return False


def is_terminal_stop_reason(stop_reason) -> bool:
    return bool(stop_reason) and stop_reason in TERMINAL_STOP_REASONS
