from __future__ import annotations

import pytest
from pydantic import ValidationError

from yoping.config import ACCESS_TOKEN_ENV, ServerConfig, load_config
from yoping.core.push import DEFAULT_RECEIPT_DELAY, EXPO_PUSH_URL


def test_defaults_without_file(monkeypatch):
    monkeypatch.delenv(ACCESS_TOKEN_ENV, raising=False)
    cfg = load_config()
    assert (cfg.host, cfg.port) == ("0.0.0.0", 3000)
    assert cfg.push.enabled is True
    assert cfg.push.url == EXPO_PUSH_URL
    assert cfg.push.receipt_delay == DEFAULT_RECEIPT_DELAY
    assert cfg.push.access_token is None
    assert not cfg.in_memory


def test_yaml_file_overrides_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv(ACCESS_TOKEN_ENV, raising=False)
    path = tmp_path / "server.yaml"
    path.write_text(
        "listen: '127.0.0.1:4100'\n"
        "db_path: ':memory:'\n"
        "send_timeout: 2.5\n"
        "push:\n"
        "  enabled: false\n"
        "  receipt_delay: 30\n",
        encoding="utf-8",
    )

    cfg = load_config(path)

    assert cfg.port == 4100
    assert cfg.in_memory
    assert cfg.send_timeout == 2.5
    assert cfg.push.enabled is False
    assert cfg.push.receipt_delay == 30


def test_empty_yaml_is_all_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path).listen == "0.0.0.0:3000"


def test_access_token_from_environment(monkeypatch):
    monkeypatch.setenv(ACCESS_TOKEN_ENV, "expo-secret")
    assert load_config().push.access_token == "expo-secret"


@pytest.mark.parametrize("listen", ["3000", ":3000", "localhost:", "localhost:http"])
def test_listen_must_be_host_port(listen):
    with pytest.raises(ValidationError):
        ServerConfig(listen=listen)


def test_ipv6_style_listen_keeps_last_colon_as_port():
    cfg = ServerConfig(listen="::1:9000")
    assert (cfg.host, cfg.port) == ("::1", 9000)
