"""Unit tests for the runtime settings model.

Tests verify that ``ToolmeshSettings`` binds the ``TOOLMESH_*`` variables
documented in ``.env.example`` and derives the grouped configuration objects.
"""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from toolmesh.capabilities.base import PermissionClass
from toolmesh.core.config import ToolmeshSettings
from toolmesh.policy.models import RiskLevel
from toolmesh.schemas.config import load_server_configs, parse_server_configs


@pytest.fixture
def env_example_path() -> Path:
    """Get path to .env.example file."""
    return Path(__file__).resolve().parents[3] / ".env.example"


@pytest.fixture
def env_example_vars(env_example_path: Path) -> dict[str, str]:
    """Parse .env.example file and return environment variables."""
    env_vars = {}
    with open(env_example_path) as f:
        for line in f:
            line = line.strip()
            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, value = line.split("=", 1)
                env_vars[key.strip()] = value.strip()
    return env_vars


class TestSettingsBinding:
    """Test environment variable binding."""

    def test_every_documented_variable_is_a_field(self, env_example_vars: dict[str, str]):
        aliases = {field.alias for field in ToolmeshSettings.model_fields.values()}
        assert set(env_example_vars) == aliases

    def test_environment_variables_bind(self, env_example_vars: dict[str, str], monkeypatch):
        for key, value in env_example_vars.items():
            monkeypatch.setenv(key, value)

        settings = ToolmeshSettings(_env_file=None)

        assert settings.max_concurrency == 8
        assert settings.default_timeout_ms == 20000
        assert settings.trust_level is PermissionClass.network
        assert settings.max_argument_bytes == 32000
        assert settings.workspace_root == Path("/srv/workspace")
        assert settings.request_timeout_ms == 15000
        assert settings.pool_max_clients_per_server == 3
        assert settings.servers_file == Path("servers.json")
        assert (settings.http_host, settings.http_port) == ("0.0.0.0", 9000)
        assert settings.allow_capability_overwrite is False
        assert settings.adaptive_risk_threshold is RiskLevel.high
        assert settings.log_level == "DEBUG"
        assert settings.log_format == "json"
        assert settings.log_file_dir == Path("logs")

    def test_env_file_is_read(self, env_example_path: Path):
        settings = ToolmeshSettings(_env_file=env_example_path)
        assert settings.max_concurrency == 8
        assert settings.retry_max_attempts == 5

    def test_defaults(self):
        settings = ToolmeshSettings(_env_file=None)
        assert settings.max_concurrency == 4
        assert settings.trust_level is PermissionClass.write
        assert settings.servers_file is None
        assert settings.server_configs() == []

    def test_field_names_work_as_keywords(self, tmp_path: Path):
        settings = ToolmeshSettings(_env_file=None, max_concurrency=2, workspace_root=tmp_path)
        assert settings.max_concurrency == 2
        assert settings.workspace_root == tmp_path

    @pytest.mark.parametrize(
        "key,value",
        [
            ("TOOLMESH_MAX_CONCURRENCY", "0"),
            ("TOOLMESH_TRUST_LEVEL", "root"),
            ("TOOLMESH_RETRY_JITTER", "1.5"),
            ("TOOLMESH_LOG_FORMAT", "xml"),
        ],
    )
    def test_invalid_values_are_rejected(self, key: str, value: str, monkeypatch):
        monkeypatch.setenv(key, value)
        with pytest.raises(ValidationError):
            ToolmeshSettings(_env_file=None)


class TestDerivedConfigs:
    def test_grouped_configurations(self, env_example_vars: dict[str, str], monkeypatch):
        for key, value in env_example_vars.items():
            monkeypatch.setenv(key, value)
        settings = ToolmeshSettings(_env_file=None)

        policy = settings.retry_policy()
        assert (policy.max_attempts, policy.base_delay, policy.max_delay, policy.jitter) == (5, 0.25, 4.0, 0.2)
        assert settings.confirmation_config().adaptive_risk_threshold is RiskLevel.high
        validation = settings.validation_config()
        assert validation.trust_level is PermissionClass.network
        assert validation.max_argument_bytes == 32000

    def test_server_configs_are_loaded_from_file(self, tmp_path: Path):
        servers = tmp_path / "servers.json"
        servers.write_text(json.dumps({"mcpServers": {"fs": {"command": "fs-server"}}}), encoding="utf-8")

        settings = ToolmeshSettings(_env_file=None, servers_file=servers)

        [config] = settings.server_configs()
        assert config.name == "fs"
        assert config.transport == "pipe"


class TestServerConfigDocuments:
    def test_mcp_servers_mapping(self):
        configs = parse_server_configs(
            {
                "mcpServers": {
                    "local": {"command": "npx", "args": ["-y", "server"], "env": {"DEBUG": "1"}, "trust": True},
                    "api": {
                        "httpUrl": "https://api.example.com/mcp",
                        "headers": {"X-Tenant": "acme"},
                        "timeout": 5000,
                        "auth": {"type": "api-key", "apiKey": "k"},
                    },
                    "events": {"url": "https://events.example.com/sse", "includeTools": ["watch"], "namePrefix": ""},
                }
            }
        )

        local, api, events = configs
        assert (local.transport, local.command, local.args, local.env, local.trust) == (
            "pipe",
            "npx",
            ["-y", "server"],
            {"DEBUG": "1"},
            True,
        )
        assert (api.transport, api.url, api.timeout_ms, api.timeout_seconds) == (
            "request",
            "https://api.example.com/mcp",
            5000,
            5.0,
        )
        assert api.auth is not None and api.auth.api_key == "k"
        assert events.transport == "stream"
        assert events.qualified_name("watch") == "watch"
        assert events.accepts_tool("watch") and not events.accepts_tool("other")

    def test_servers_list_and_bare_list(self):
        entry = {"name": "db", "transport": "request", "url": "http://mock/db", "excludeTools": ["drop"]}
        for document in ({"servers": [entry]}, [entry]):
            [config] = parse_server_configs(document)
            assert config.qualified_name("query") == "db:query"
            assert not config.accepts_tool("drop")

    @pytest.mark.parametrize(
        "document,error",
        [
            ({"other": []}, ValueError),
            ({"mcpServers": {"x": {"args": []}}}, ValueError),
            ({"servers": [{"name": "p", "transport": "pipe"}]}, ValidationError),
            ({"servers": [{"name": "h", "transport": "request"}]}, ValidationError),
            ({"servers": [{"name": "h", "transport": "request", "url": "u", "bogus": 1}]}, ValidationError),
            ({"servers": [{"name": "h", "transport": "request", "url": "u", "auth": {"type": "basic"}}]}, ValidationError),
        ],
    )
    def test_invalid_documents(self, document, error):
        with pytest.raises(error):
            parse_server_configs(document)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_server_configs(tmp_path / "absent.json")
