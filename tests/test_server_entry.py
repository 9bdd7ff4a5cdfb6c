import logging

import pytest

from core.config import ConfigStore
from hotdeploy_server import build_parser, configure_logging, resolve_config

logger = logging.getLogger("hotdeploy.test")


def test_unusable_log_file_falls_back_to_stderr(tmp_path, capsys):
    configure_logging("INFO", str(tmp_path))
    assert "cannot open log file" in capsys.readouterr().err


def test_cli_flags_override_stored_config(tmp_path, monkeypatch):
    monkeypatch.delenv("HOTDEPLOY_AUTH_TOKEN", raising=False)
    store = ConfigStore(str(tmp_path / "config.json"))
    args = build_parser().parse_args(["--host", "0.0.0.0", "--port", "9100"])
    config = resolve_config(store, args, logger)
    assert (config.host, config.port, config.enable_auth) == ("0.0.0.0", 9100, False)


def test_env_token_turns_auth_on(tmp_path, monkeypatch):
    monkeypatch.setenv("HOTDEPLOY_AUTH_TOKEN", " secret ")
    store = ConfigStore(str(tmp_path / "config.json"))
    config = resolve_config(store, build_parser().parse_args([]), logger)
    assert config.enable_auth is True
    assert config.auth_token == "secret"


def test_empty_env_token_refuses_to_start(tmp_path, monkeypatch):
    monkeypatch.setenv("HOTDEPLOY_AUTH_TOKEN", "  ")
    store = ConfigStore(str(tmp_path / "config.json"))
    with pytest.raises(SystemExit):
        resolve_config(store, build_parser().parse_args([]), logger)
