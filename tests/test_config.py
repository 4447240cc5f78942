from __future__ import annotations

import json
from pathlib import Path

from opencode_gateway.config import ENV_MAP, load_config


def _clear_env(monkeypatch) -> None:
    for name in list(ENV_MAP) + ["GATEWAY_CONFIG"]:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_file(monkeypatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    config = load_config(str(tmp_path / "missing.json"))
    assert config.port == 8083
    assert config.backend_url == "http://127.0.0.1:4097"
    assert config.disable_tools is True
    assert config.startup_attempts == 60


def test_json_file_then_env_override(monkeypatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    cfg = tmp_path / "config.json"
    cfg.write_text(
        json.dumps({"PORT": 9000, "backendUrl": "http://127.0.0.1:5000/", "isolate_home": False}),
        encoding="utf-8",
    )
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("DISABLE_TOOLS", "off")

    config = load_config(str(cfg))

    assert config.port == 9100
    assert config.backend_url == "http://127.0.0.1:5000"
    assert config.isolate_home is False
    assert config.disable_tools is False


def test_invalid_values_keep_defaults(monkeypatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    cfg = tmp_path / "config.json"
    cfg.write_text("{not json", encoding="utf-8")
    monkeypatch.setenv("REQUEST_TIMEOUT", "soon")
    monkeypatch.setenv("DEBUG", "yes")

    config = load_config(str(cfg))

    assert config.request_timeout == 180.0
    assert config.debug is True
