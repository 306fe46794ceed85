import json
import logging

import pytest
from pydantic import ValidationError

from gateway_core.config.settings import GatewaySettings
from gateway_core.infrastructure.logging.logger import JsonFormatter


def test_yaml_config_file_is_loaded(tmp_path, monkeypatch):
    cfg = tmp_path / "gateway.yaml"
    cfg.write_text("default_backend: gemini\nport: 4000\ndocker_base_url: http://box:9000/v1/\n", encoding="utf-8")
    monkeypatch.setenv("GATEWAY_CONFIG_FILE", str(cfg))
    s = GatewaySettings()
    assert s.default_backend == "gemini"
    assert s.port == 4000
    assert s.docker_base_url == "http://box:9000/v1"


def test_env_overrides_yaml(tmp_path, monkeypatch):
    cfg = tmp_path / "gateway.yaml"
    cfg.write_text("port: 4000\n", encoding="utf-8")
    monkeypatch.setenv("GATEWAY_CONFIG_FILE", str(cfg))
    monkeypatch.setenv("PORT", "5000")
    assert GatewaySettings().port == 5000


def test_unknown_default_backend_rejected():
    with pytest.raises(ValidationError):
        GatewaySettings(default_backend="gpt")


def test_json_formatter_merges_extra():
    record = logging.LogRecord("gateway_core", logging.INFO, __file__, 1, "Chat completed", None, None)
    record.extra = {"trace_id": "t-1", "backend": "mock"}
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "Chat completed"
    assert payload["level"] == "INFO"
    assert payload["trace_id"] == "t-1"
    assert payload["ts"].endswith("Z")
