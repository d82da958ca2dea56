"""Client configuration loading with layered precedence.

Configuration precedence (highest wins):
1. Environment variables (CLAWCHAT_*)
2. Project config (<workspace>/.clawchat/client.json)
3. User config (~/.clawchat/client.json)
4. Built-in defaults

``CLAWCHAT_*`` keys may also come from a ``.env`` file in the workspace,
read with python-dotenv without touching ``os.environ``; the process
environment still wins.

Usage:
    from clawchat.client.config import load_client_config

    config = load_client_config(workspace_path=Path.cwd())
    print(config.gateway.url, config.streaming.silence_threshold)

Environment Variables:
    CLAWCHAT_GATEWAY_URL: Gateway websocket URL (http(s) is converted)
    CLAWCHAT_GATEWAY_TOKEN: Bearer token sent in the connect request
    CLAWCHAT_CLIENT_ID: Client identity reported at handshake
    CLAWCHAT_ROLE: Requested role (default: operator)
    CLAWCHAT_HISTORY_LIMIT: Messages requested per history fetch (default: 200)
    CLAWCHAT_DEVICE_IDENTITY: Sign connect requests with a device key (default: true)
    CLAWCHAT_IDENTITY_PATH: Device key file (default: ~/.clawchat/device.json)
    CLAWCHAT_SESSION_KEY: Fallback main conversation key
    CLAWCHAT_SILENCE_THRESHOLD: Seconds without events before a run is "silent" (default: 3.0)
    CLAWCHAT_RESUME_POLL_INTERVAL: Seconds between resume polls (default: 3.0)
    CLAWCHAT_SUBAGENT_COALESCE_GAP: Seconds within which sub-agent text coalesces (default: 2.0)
    CLAWCHAT_AUTO_RECONNECT: Enable transport reconnection (default: true)
    CLAWCHAT_RETRY_MAX_ATTEMPTS: Maximum reconnection attempts (default: 10)
    CLAWCHAT_RETRY_BASE_DELAY: Initial backoff delay seconds (default: 1.0)
    CLAWCHAT_RETRY_MAX_DELAY: Maximum backoff delay seconds (default: 15.0)
    CLAWCHAT_RETRY_JITTER: Random jitter factor (default: 0.3)
    CLAWCHAT_CONNECTION_TIMEOUT: Per-attempt timeout seconds (default: 5.0)
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, get_args, get_origin, get_type_hints

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".clawchat"
CONFIG_FILE_NAME = "client.json"
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUTHY


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Coerce an environment string to a config field's type.

    ``Optional[X]`` is treated as ``X``; lists are comma separated.
    """
    if type(None) in get_args(target_type):
        target_type = next(a for a in get_args(target_type) if a is not type(None))

    if target_type is bool:
        return _parse_bool(value)
    if get_origin(target_type) is list:
        return [item.strip() for item in value.split(",") if item.strip()]
    if target_type in (int, float):
        return target_type(value)
    return value


def normalize_gateway_url(url: str) -> str:
    """Convert an http(s) gateway address to its websocket form."""
    url = url.strip()
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


@dataclass
class GatewayConfig:
    """Gateway connection and handshake settings.

    Attributes:
        url: Websocket URL of the gateway.
        token: Optional bearer token for the connect request.
        client_id: Client identity reported at handshake.
        client_mode: Client mode reported at handshake.
        client_version: Client version reported at handshake.
        role: Requested role.
        scopes: Requested scopes.
        min_protocol: Lowest protocol version this client speaks.
        max_protocol: Highest protocol version this client speaks.
        history_limit: Messages requested per history fetch.
        device_identity: Whether to sign connect requests with a device key.
        identity_path: Device key file; defaults to ~/.clawchat/device.json.
        session_key: Main conversation key to assume when the connect
            acknowledgment names none.
    """
    url: str = "ws://127.0.0.1:18789"
    token: Optional[str] = None
    client_id: str = "clawchat-python"
    client_mode: str = "webchat"
    client_version: str = "0.1.0"
    role: str = "operator"
    scopes: List[str] = field(default_factory=lambda: ["operator.admin"])
    min_protocol: int = 3
    max_protocol: int = 3
    history_limit: int = 200
    device_identity: bool = True
    identity_path: Optional[str] = None
    session_key: Optional[str] = None

    def __post_init__(self):
        """Validate configuration values."""
        self.url = normalize_gateway_url(self.url)
        if not self.url.startswith(("ws://", "wss://")):
            raise ValueError(f"Unsupported gateway URL: {self.url}")
        if self.min_protocol > self.max_protocol:
            raise ValueError("min_protocol must be <= max_protocol")
        if self.history_limit < 1:
            raise ValueError("history_limit must be at least 1")


@dataclass
class StreamingConfig:
    """Timing of run tracking and sub-agent coalescing, in seconds."""
    silence_threshold: float = 3.0
    resume_poll_interval: float = 3.0
    subagent_coalesce_gap: float = 2.0

    def __post_init__(self):
        if self.silence_threshold <= 0:
            raise ValueError("silence_threshold must be positive")
        if self.resume_poll_interval < 0.5:
            raise ValueError("resume_poll_interval must be at least 0.5 seconds")
        if self.subagent_coalesce_gap < 0:
            raise ValueError("subagent_coalesce_gap must not be negative")


@dataclass
class RecoveryConfig:
    """How the bundled websocket transport reconnects after a drop.

    The protocol core never retries on its own; these settings only
    matter to ``WebSocketTransport``.

    Attributes:
        enabled: Reconnect after the socket drops.
        max_attempts: Consecutive failed attempts before the transport gives up.
        base_delay: Backoff before the first retry, in seconds.
        max_delay: Upper bound on any single backoff, in seconds.
        jitter_factor: Fraction of each delay randomised in both directions.
        connection_timeout: Seconds allowed for one connect attempt.
    """
    enabled: bool = True
    max_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 15.0
    jitter_factor: float = 0.3
    connection_timeout: float = 5.0

    def __post_init__(self):
        problems = []
        if self.max_attempts < 1:
            problems.append(f"max_attempts={self.max_attempts} (need >= 1)")
        if self.base_delay < 0.1:
            problems.append(f"base_delay={self.base_delay} (need >= 0.1)")
        if self.max_delay < self.base_delay:
            problems.append(f"max_delay={self.max_delay} is below base_delay")
        if not 0.0 <= self.jitter_factor <= 1.0:
            problems.append(f"jitter_factor={self.jitter_factor} (need 0.0-1.0)")
        if self.connection_timeout < 1.0:
            problems.append(f"connection_timeout={self.connection_timeout} (need >= 1.0)")
        if problems:
            raise ValueError("Invalid recovery settings: " + ", ".join(problems))


@dataclass
class ClientConfig:
    """Root client configuration."""
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)


_SECTIONS: Dict[str, Type] = {
    "gateway": GatewayConfig,
    "streaming": StreamingConfig,
    "recovery": RecoveryConfig,
}

# Maps "section.field" paths to environment variable names
ENV_VAR_MAPPING: Dict[str, str] = {
    "gateway.url": "CLAWCHAT_GATEWAY_URL",
    "gateway.token": "CLAWCHAT_GATEWAY_TOKEN",
    "gateway.client_id": "CLAWCHAT_CLIENT_ID",
    "gateway.role": "CLAWCHAT_ROLE",
    "gateway.history_limit": "CLAWCHAT_HISTORY_LIMIT",
    "gateway.device_identity": "CLAWCHAT_DEVICE_IDENTITY",
    "gateway.identity_path": "CLAWCHAT_IDENTITY_PATH",
    "gateway.session_key": "CLAWCHAT_SESSION_KEY",
    "streaming.silence_threshold": "CLAWCHAT_SILENCE_THRESHOLD",
    "streaming.resume_poll_interval": "CLAWCHAT_RESUME_POLL_INTERVAL",
    "streaming.subagent_coalesce_gap": "CLAWCHAT_SUBAGENT_COALESCE_GAP",
    "recovery.enabled": "CLAWCHAT_AUTO_RECONNECT",
    "recovery.max_attempts": "CLAWCHAT_RETRY_MAX_ATTEMPTS",
    "recovery.base_delay": "CLAWCHAT_RETRY_BASE_DELAY",
    "recovery.max_delay": "CLAWCHAT_RETRY_MAX_DELAY",
    "recovery.jitter_factor": "CLAWCHAT_RETRY_JITTER",
    "recovery.connection_timeout": "CLAWCHAT_CONNECTION_TIMEOUT",
}


def get_config_paths(workspace_path: Optional[Path] = None) -> Dict[str, Path]:
    """Locations searched for client.json, lowest precedence first."""
    paths = {"user": Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME}
    if workspace_path:
        paths["project"] = workspace_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    return paths


def _read_config_file(path: Path) -> Optional[Dict[str, Any]]:
    """Return the JSON object stored at ``path``, or None if unusable."""
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        logger.warning(f"Skipping {path}: not valid JSON ({e})")
        return None
    except OSError as e:
        logger.warning(f"Skipping {path}: {e}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Skipping {path}: top level must be an object")
        return None
    return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Merge nested dicts from ``overlay`` over ``base`` without mutating either.

    Only dict values recurse; a list in ``overlay`` replaces the one in ``base``.
    """
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = _deep_merge(current, value)
        merged[key] = value
    return merged


def _apply_env_overrides(
    config_dict: Dict[str, Any],
    environ: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """Overlay ``CLAWCHAT_*`` variables onto a raw config dict.

    Args:
        config_dict: Sections loaded from config files; left untouched.
        environ: Variables to read; defaults to ``os.environ``.

    Returns:
        A copy of ``config_dict`` with every parseable override applied.
        A value that cannot be coerced is logged and skipped.
    """
    environ = os.environ if environ is None else environ
    result = {k: (dict(v) if isinstance(v, dict) else v) for k, v in config_dict.items()}

    for path, env_var in ENV_VAR_MAPPING.items():
        raw = environ.get(env_var)
        if raw is None:
            continue

        section, field_name = path.split(".")
        if not isinstance(result.get(section), dict):
            result[section] = {}

        field_type = get_type_hints(_SECTIONS[section]).get(field_name, str)
        try:
            result[section][field_name] = _parse_env_value(raw, field_type)
        except ValueError as e:
            logger.warning(f"Ignoring {env_var}={raw!r}: {e}")
            continue
        logger.debug(f"{env_var} overrides {path}")

    return result


def _dict_to_section(section: str, data: Any) -> Any:
    """Convert one section dict to its dataclass, falling back to defaults."""
    section_type = _SECTIONS[section]
    if not isinstance(data, dict):
        logger.warning(f"Invalid '{section}' config (expected dict), using defaults")
        return section_type()

    valid_fields = {f.name for f in fields(section_type)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    unknown = {k for k in data.keys() if not k.startswith("_")} - valid_fields
    if unknown:
        logger.warning(f"Unknown {section} config keys (ignored): {unknown}")

    try:
        return section_type(**filtered)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid {section} config values, using defaults: {e}")
        return section_type()


def _dict_to_config(data: Dict[str, Any]) -> ClientConfig:
    return ClientConfig(**{
        section: _dict_to_section(section, data.get(section, {}))
        for section in _SECTIONS
    })


def _dotenv_overrides(workspace_path: Optional[Path]) -> Dict[str, Optional[str]]:
    """Read CLAWCHAT_* keys from the workspace .env file, if any."""
    if not workspace_path:
        return {}
    env_path = workspace_path / ".env"
    if not env_path.exists():
        return {}
    values = dotenv_values(env_path)
    return {k: v for k, v in values.items() if k.startswith("CLAWCHAT_")}


def load_client_config(workspace_path: Optional[Path] = None) -> ClientConfig:
    """Build the client configuration from every available layer.

    Later layers win: defaults, ``~/.clawchat/client.json``,
    ``<workspace>/.clawchat/client.json``, the workspace ``.env`` file,
    then the process environment.

    Args:
        workspace_path: Project directory holding ``.clawchat/`` and
            ``.env``. Without it only the user file and the environment
            are consulted.
    """
    merged: Dict[str, Any] = {}
    for path in get_config_paths(workspace_path).values():
        if not path.exists():
            continue
        data = _read_config_file(path)
        if data is not None:
            merged = _deep_merge(merged, data)
            logger.debug(f"Config layer loaded: {path}")

    environ: Dict[str, Optional[str]] = dict(_dotenv_overrides(workspace_path))
    environ.update(os.environ)
    return _dict_to_config(_apply_env_overrides(merged, environ))


def generate_example_config() -> str:
    """Render the built-in defaults as a client.json template."""
    example: Dict[str, Any] = {"_comment": "clawchat client configuration"}
    example.update(asdict(ClientConfig()))
    return json.dumps(example, indent=2)


__all__ = [
    "ClientConfig",
    "GatewayConfig",
    "RecoveryConfig",
    "StreamingConfig",
    "generate_example_config",
    "get_config_paths",
    "load_client_config",
    "normalize_gateway_url",
]
