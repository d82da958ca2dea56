"""Tests for layered client configuration."""

import json

import pytest

from clawchat.client.config import (
    ENV_VAR_MAPPING,
    ClientConfig,
    GatewayConfig,
    RecoveryConfig,
    StreamingConfig,
    _apply_env_overrides,
    _deep_merge,
    generate_example_config,
    get_config_paths,
    load_client_config,
    normalize_gateway_url,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate from the developer's environment and home directory."""
    for env_var in ENV_VAR_MAPPING.values():
        monkeypatch.delenv(env_var, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


def write_config(directory, data):
    config_dir = directory / ".clawchat"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "client.json").write_text(json.dumps(data))


class TestDataclasses:

    def test_defaults(self):
        config = ClientConfig()
        assert config.gateway.url == "ws://127.0.0.1:18789"
        assert config.gateway.history_limit == 200
        assert config.streaming.silence_threshold == 3.0
        assert config.recovery.max_attempts == 10

    def test_http_url_is_converted(self):
        assert GatewayConfig(url="https://gw.example.com").url == "wss://gw.example.com"
        assert normalize_gateway_url(" http://localhost:18789 ") == "ws://localhost:18789"

    @pytest.mark.parametrize("kwargs", [
        {"url": "ftp://nope"},
        {"min_protocol": 4, "max_protocol": 3},
        {"history_limit": 0},
    ])
    def test_invalid_gateway(self, kwargs):
        with pytest.raises(ValueError):
            GatewayConfig(**kwargs)

    @pytest.mark.parametrize("kwargs", [
        {"silence_threshold": 0},
        {"resume_poll_interval": 0.1},
        {"subagent_coalesce_gap": -1},
    ])
    def test_invalid_streaming(self, kwargs):
        with pytest.raises(ValueError):
            StreamingConfig(**kwargs)

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_delay": 0.01},
        {"base_delay": 5.0, "max_delay": 1.0},
        {"jitter_factor": 1.5},
        {"connection_timeout": 0.5},
    ])
    def test_invalid_recovery(self, kwargs):
        with pytest.raises(ValueError):
            RecoveryConfig(**kwargs)


class TestLoading:

    def test_defaults_without_files(self, clean_env, tmp_path):
        config = load_client_config(workspace_path=tmp_path)
        assert config == ClientConfig()

    def test_project_overrides_user(self, clean_env, tmp_path):
        write_config(clean_env, {"gateway": {"url": "ws://user:1", "role": "viewer"}})
        workspace = tmp_path / "project"
        write_config(workspace, {"gateway": {"url": "ws://project:2"}})

        config = load_client_config(workspace_path=workspace)
        assert config.gateway.url == "ws://project:2"
        assert config.gateway.role == "viewer"

    def test_env_overrides_files(self, clean_env, tmp_path, monkeypatch):
        write_config(tmp_path, {"streaming": {"silence_threshold": 5.0}})
        monkeypatch.setenv("CLAWCHAT_SILENCE_THRESHOLD", "7.5")
        monkeypatch.setenv("CLAWCHAT_AUTO_RECONNECT", "false")
        monkeypatch.setenv("CLAWCHAT_HISTORY_LIMIT", "50")

        config = load_client_config(workspace_path=tmp_path)
        assert config.streaming.silence_threshold == 7.5
        assert config.recovery.enabled is False
        assert config.gateway.history_limit == 50

    def test_dotenv_supplies_token(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("CLAWCHAT_GATEWAY_TOKEN=from-dotenv\nOTHER=ignored\n")
        config = load_client_config(workspace_path=tmp_path)
        assert config.gateway.token == "from-dotenv"

    def test_process_env_beats_dotenv(self, clean_env, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("CLAWCHAT_GATEWAY_TOKEN=from-dotenv\n")
        monkeypatch.setenv("CLAWCHAT_GATEWAY_TOKEN", "from-env")
        assert load_client_config(workspace_path=tmp_path).gateway.token == "from-env"

    def test_invalid_section_falls_back_to_defaults(self, clean_env, tmp_path):
        write_config(tmp_path, {
            "streaming": {"resume_poll_interval": 0.01},
            "recovery": "not a dict",
            "gateway": {"url": "ws://ok:1", "unknown_key": True},
        })
        config = load_client_config(workspace_path=tmp_path)
        assert config.streaming == StreamingConfig()
        assert config.recovery == RecoveryConfig()
        assert config.gateway.url == "ws://ok:1"

    def test_invalid_json_is_skipped(self, clean_env, tmp_path):
        config_dir = tmp_path / ".clawchat"
        config_dir.mkdir()
        (config_dir / "client.json").write_text("{broken")
        assert load_client_config(workspace_path=tmp_path) == ClientConfig()


class TestHelpers:

    def test_env_value_applied(self):
        result = _apply_env_overrides({}, {"CLAWCHAT_GATEWAY_URL": "ws://env:1"})
        assert result == {"gateway": {"url": "ws://env:1"}}

    def test_invalid_env_value_ignored(self):
        result = _apply_env_overrides({}, {"CLAWCHAT_RETRY_MAX_ATTEMPTS": "many"})
        assert result == {"recovery": {}}

    def test_deep_merge(self):
        merged = _deep_merge({"a": {"b": 1, "c": 2}, "l": [1]}, {"a": {"b": 3}, "l": [2]})
        assert merged == {"a": {"b": 3, "c": 2}, "l": [2]}

    def test_example_config_is_loadable(self):
        data = json.loads(generate_example_config())
        assert set(data) >= {"gateway", "streaming", "recovery"}

    def test_config_paths(self, clean_env, tmp_path):
        paths = get_config_paths(tmp_path)
        assert paths["user"] == clean_env / ".clawchat" / "client.json"
        assert paths["project"] == tmp_path / ".clawchat" / "client.json"
