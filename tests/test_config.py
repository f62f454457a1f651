import json

import pytest

from hubbridge.lib import config


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "hub": {"server_url": "http://hub:8096", "username": "tv", "password": "from-file"},
        "device": {"id": "mpv-tv", "name": "TV"},
        "player": {"load_delay_ms": 250},
    }))
    monkeypatch.setenv("HUBBRIDGE_CONFIG", str(path))
    monkeypatch.delenv("HUB_PASSWORD", raising=False)
    config.reload_config()
    yield path
    monkeypatch.delenv("HUBBRIDGE_CONFIG")
    config.reload_config()


def test_values_and_defaults(config_file):
    assert config.cfg("hub", "server_url") == "http://hub:8096"
    assert config.cfg("player", "load_delay_ms", default=100) == 250
    assert config.cfg("player", "mpv_path", default="mpv") == "mpv"
    assert config.cfg("paths", "data_dir", default="/tmp/x") == "/tmp/x"
    assert config.cfg("device")["name"] == "TV"


def test_password_env_overrides_file(config_file, monkeypatch):
    assert config.hub_password() == "from-file"
    monkeypatch.setenv("HUB_PASSWORD", "secret")
    assert config.hub_password() == "secret"


def test_invalid_json_falls_back_to_empty(tmp_path, monkeypatch):
    bad = tmp_path / "bad.json"
    bad.write_text("{oops")
    monkeypatch.setattr(config, "_SEARCH_PATHS", [])
    monkeypatch.setenv("HUBBRIDGE_CONFIG", str(bad))
    try:
        assert config.reload_config() == {}
        assert config.cfg("hub", "server_url", default="fallback") == "fallback"
    finally:
        monkeypatch.delenv("HUBBRIDGE_CONFIG")
        config.reload_config()
