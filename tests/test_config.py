"""
Tests for configuration loading from YAML and the environment.
"""

import pytest

from shared_canvas.config import CanvasConfig, ReaderConfig, ServiceEndpoints
from shared_canvas.cosmos import CosmosAuthMethod, CosmosConfig
from shared_canvas.exceptions import AuthenticationError, ConfigurationError

ENDPOINT_VARS = {
    "CANVAS_GETBOARD_ENDPOINT": "https://canvas.test/api/board",
    "CANVAS_LOGIN_ENDPOINT": "https://canvas.test/.auth/login",
    "CANVAS_UPDATEPIXEL_ENDPOINT": "https://canvas.test/api/update-pixel",
    "CANVAS_WEBSOCKET_ENDPOINT": "wss://canvas.test/hubs/changes",
    "CANVAS_USER_ENDPOINT": "https://canvas.test/api/user",
    "CANVAS_ADMIN_ENDPOINT": "https://canvas.test/admin",
    "CANVAS_LOGOUT_ENDPOINT": "https://canvas.test/.auth/logout",
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [
        "CANVAS_WIDTH",
        "CANVAS_HEIGHT",
        "CANVAS_THROTTLE_RATE",
        "CANVAS_APPEND_CHUNK_SIZE",
        "CANVAS_BOARD_NAME",
        "CANVAS_POLL_INTERVAL",
        "CANVAS_START_FROM_BEGINNING",
        "CANVAS_COSMOS_ENDPOINT",
        "CANVAS_COSMOS_AUTH_METHOD",
        "CANVAS_COSMOS_KEY",
        "CANVAS_COSMOS_PREFERRED_LOCATIONS",
        *ENDPOINT_VARS,
    ]:
        monkeypatch.delenv(name, raising=False)


class TestCanvasConfig:
    def test_defaults(self):
        config = CanvasConfig.from_env()
        assert (config.width, config.height) == (1000, 1000)
        assert config.throttle_seconds == 30
        assert config.append_chunk_size == 300
        assert config.cursor_blob_name == "default.cursor.json"
        assert config.reader_cursor_blob_name == "default.reader-cursor.json"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CANVAS_THROTTLE_RATE", "5")
        monkeypatch.setenv("CANVAS_BOARD_NAME", "spring")

        config = CanvasConfig.from_env()

        assert config.throttle_seconds == 5
        assert config.board_name == "spring"

    def test_unparsable_throttle_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("CANVAS_THROTTLE_RATE", "fast")
        assert CanvasConfig.from_env().throttle_seconds == 30

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "canvas.yaml"
        path.write_text("canvas:\n  width: 64\n  height: 32\n  board_container: art\n  unknown: 1\n")

        config = CanvasConfig.from_yaml(path)

        assert (config.width, config.height) == (64, 32)
        assert config.board_container == "art"

    def test_environment_beats_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "canvas.yaml"
        path.write_text("canvas:\n  width: 64\n")
        monkeypatch.setenv("CANVAS_WIDTH", "10")

        assert CanvasConfig.from_yaml(path).width == 10

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            CanvasConfig.from_yaml(tmp_path / "nope.yaml")

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "canvas.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            CanvasConfig.from_yaml(path)

    @pytest.mark.parametrize("kwargs", [{"width": 0}, {"append_chunk_size": 0}, {"throttle_seconds": -1}])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            CanvasConfig(**kwargs)


class TestReaderConfig:
    def test_environment(self, monkeypatch):
        monkeypatch.setenv("CANVAS_POLL_INTERVAL", "2.5")
        monkeypatch.setenv("CANVAS_START_FROM_BEGINNING", "false")

        config = ReaderConfig.from_env()

        assert config.poll_delay == 2.5
        assert not config.start_from_beginning

    def test_bad_poll_interval(self, monkeypatch):
        monkeypatch.setenv("CANVAS_POLL_INTERVAL", "soon")
        with pytest.raises(ConfigurationError):
            ReaderConfig.from_env()


class TestServiceEndpoints:
    def test_from_env(self, monkeypatch):
        for name, value in ENDPOINT_VARS.items():
            monkeypatch.setenv(name, value)

        endpoints = ServiceEndpoints.from_env(throttle_rate=12)
        data = endpoints.to_dict()

        assert data["getBoardEndpoint"] == "https://canvas.test/api/board"
        assert data["websocketEndpoint"] == "wss://canvas.test/hubs/changes"
        assert data["throttleRate"] == 12
        assert set(data) == {
            "getBoardEndpoint",
            "loginEndpoint",
            "updatePixelEndpoint",
            "websocketEndpoint",
            "userEndpoint",
            "adminEndpoint",
            "logoutEndpoint",
            "throttleRate",
        }

    def test_missing_endpoint_named(self, monkeypatch):
        for name, value in ENDPOINT_VARS.items():
            if name != "CANVAS_LOGOUT_ENDPOINT":
                monkeypatch.setenv(name, value)

        with pytest.raises(ConfigurationError) as exc_info:
            ServiceEndpoints.from_env()

        assert exc_info.value.setting == "logoutEndpoint"

    def test_yaml_section(self, tmp_path):
        lines = ["endpoints:"]
        for key in ServiceEndpoints("a", "b", "c", "d", "e", "f", "g").to_dict():
            if key != "throttleRate":
                lines.append(f"  {key}: https://yaml.test/{key}")
        path = tmp_path / "canvas.yaml"
        path.write_text("\n".join(lines) + "\n")

        endpoints = ServiceEndpoints.from_env(config_path=path)

        assert endpoints.user == "https://yaml.test/userEndpoint"


class TestCosmosConfig:
    def test_missing_endpoint(self):
        with pytest.raises(ConfigurationError):
            CosmosConfig.from_env()

    def test_key_auth_requires_key(self, monkeypatch):
        monkeypatch.setenv("CANVAS_COSMOS_ENDPOINT", "https://acct.documents.azure.com:443/")
        monkeypatch.setenv("CANVAS_COSMOS_AUTH_METHOD", "key")
        with pytest.raises(AuthenticationError):
            CosmosConfig.from_env()

    def test_unknown_auth_method(self, monkeypatch):
        monkeypatch.setenv("CANVAS_COSMOS_ENDPOINT", "https://acct.documents.azure.com:443/")
        monkeypatch.setenv("CANVAS_COSMOS_AUTH_METHOD", "certificate")
        with pytest.raises(ConfigurationError):
            CosmosConfig.from_env()

    def test_default_credential_and_locations(self, monkeypatch):
        monkeypatch.setenv("CANVAS_COSMOS_ENDPOINT", "https://acct.documents.azure.com:443/")
        monkeypatch.setenv("CANVAS_COSMOS_AUTH_METHOD", "default_credential")
        monkeypatch.setenv("CANVAS_COSMOS_PREFERRED_LOCATIONS", "West Europe, North Europe")

        config = CosmosConfig.from_env()

        assert config.auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL
        assert config.key is None
        assert config.preferred_locations == ["West Europe", "North Europe"]
