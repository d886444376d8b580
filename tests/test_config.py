from __future__ import annotations

import json

import pytest

from roomrelay.config import ConfigError, load_config
from roomrelay.constants import DEFAULT_ROOMS


def test_missing_tokens_refuses_to_start():
    with pytest.raises(ConfigError, match="INVITE_TOKEN"):
        load_config({})


def test_open_mode_when_tokens_not_required():
    config = load_config({"RELAY_REQUIRE_TOKENS": "false"})
    assert config.tokens == ()
    assert config.rooms == DEFAULT_ROOMS
    assert config.port == 8787


def test_environment_values():
    config = load_config(
        {
            "INVITE_TOKENS": "one, two ,,",
            "PORT": "9000",
            "CLIENT_ORIGIN": "http://a.test, http://b.test",
            "RELAY_ROOMS": "Family, Attic,family",
            "RELAY_DEDUP_CAPACITY": "10",
            "RELAY_DEDUP_SHARDS": "2",
        }
    )
    assert config.tokens == ("one", "two")
    assert config.port == 9000
    assert config.allowed_origins == ("http://a.test", "http://b.test")
    assert config.rooms == ("family", "attic")
    assert config.dedup_capacity == 10
    assert config.dedup_shards == 2


def test_single_invite_token_fallback():
    assert load_config({"INVITE_TOKEN": "solo"}).tokens == ("solo",)


@pytest.mark.parametrize(
    "env",
    [
        {"INVITE_TOKEN": "t", "PORT": "http"},
        {"INVITE_TOKEN": "t", "PORT": "70000"},
        {"INVITE_TOKEN": "t", "RELAY_ROOMS": " , "},
        {"INVITE_TOKEN": "t", "RELAY_ROOMS": "x" * 65},
        {"INVITE_TOKEN": "t", "RELAY_DEDUP_CAPACITY": "0"},
        {"INVITE_TOKEN": "t", "RELAY_DEDUP_CAPACITY": "2", "RELAY_DEDUP_SHARDS": "3"},
        {"INVITE_TOKEN": "t", "RELAY_REQUIRE_TOKENS": "maybe"},
    ],
)
def test_invalid_settings(env):
    with pytest.raises(ConfigError):
        load_config(env)


def test_json_file_is_overridden_by_environment(tmp_path):
    path = tmp_path / "relay.json"
    path.write_text(json.dumps({"tokens": ["from-file"], "rooms": ["lobby"], "port": 7000}))

    config = load_config({"RELAY_CONFIG": str(path), "PORT": "7001"})
    assert config.tokens == ("from-file",)
    assert config.rooms == ("lobby",)
    assert config.port == 7001


def test_json_file_must_be_object(tmp_path):
    path = tmp_path / "relay.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigError):
        load_config({"RELAY_CONFIG": str(path)})


def test_missing_json_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config({"RELAY_CONFIG": str(tmp_path / "nope.json")})


def test_tls_paths_must_come_in_pairs():
    with pytest.raises(ConfigError, match="together"):
        load_config({"INVITE_TOKEN": "t", "RELAY_TLS_CERT": "/tmp/cert.pem"})


def test_tls_paths_from_environment():
    config = load_config(
        {"INVITE_TOKEN": "t", "RELAY_TLS_CERT": "/tmp/cert.pem", "RELAY_TLS_KEY": "/tmp/key.pem"}
    )
    assert config.tls_enabled
    assert config.tls_key == "/tmp/key.pem"
    assert not load_config({"INVITE_TOKEN": "t"}).tls_enabled
