"""Tests for settings/secrets loading."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from app.config import AppConfig, get_config, load_config, set_config


def test_defaults_when_files_missing(tmp_path):
    cfg = load_config(settings_path=tmp_path / "relay.settings.yaml")
    assert cfg.server.port == 8000
    assert cfg.store.db_path == "relay.duckdb"
    assert cfg.auth.token_query_param == "token"
    assert cfg.realtime.typing_ttl_seconds == 5.0
    assert cfg.secrets.jwt.algorithm == "HS256"


def test_settings_and_secrets_merged(tmp_path):
    settings_file = tmp_path / "relay.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 9000\n"
        "logging:\n"
        "  level: DEBUG\n"
        "realtime:\n"
        "  max_text_length: 200\n"
        "  outbound_queue_size: 16\n",
        encoding="utf-8",
    )
    (tmp_path / "relay.secrets.yaml").write_text(
        "jwt:\n"
        "  secret_key: s3cret\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)

    assert cfg.server.port == 9000
    assert cfg.logging.level == "debug"
    assert cfg.realtime.max_text_length == 200
    assert cfg.realtime.outbound_queue_size == 16
    assert cfg.secrets.jwt.secret_key == "s3cret"


def test_db_path_relative_to_settings_dir(tmp_path):
    settings_file = tmp_path / "relay.settings.yaml"
    settings_file.write_text("store:\n  db_path: data/relay.duckdb\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.store.db_path) == tmp_path / "data" / "relay.duckdb"


def test_db_path_in_memory_unchanged(tmp_path):
    settings_file = tmp_path / "relay.settings.yaml"
    settings_file.write_text("store:\n  db_path: ':memory:'\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file)
    assert cfg.store.db_path == ":memory:"


def test_db_path_absolute_unchanged(tmp_path):
    absolute_path = tmp_path / "absolute" / "relay.duckdb"
    settings_file = tmp_path / "relay.settings.yaml"
    settings_file.write_text(f"store:\n  db_path: {absolute_path}\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.store.db_path) == absolute_path


def test_explicit_secrets_path(tmp_path):
    settings_file = tmp_path / "relay.settings.yaml"
    secrets_file = tmp_path / "elsewhere.yaml"
    secrets_file.write_text("jwt:\n  secret_key: other\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file, secrets_path=secrets_file)
    assert cfg.secrets.jwt.secret_key == "other"


@pytest.mark.parametrize("section", [
    "logging:\n  level: loud\n",
    "realtime:\n  typing_ttl_seconds: 0\n",
    "realtime:\n  outbound_queue_size: -1\n",
])
def test_invalid_values_rejected(tmp_path, section):
    settings_file = tmp_path / "relay.settings.yaml"
    settings_file.write_text(section, encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(settings_path=settings_file)


def test_set_config_overrides_cached_config():
    config = AppConfig()
    config.server.port = 1234
    set_config(config)
    try:
        assert get_config() is config
    finally:
        set_config(None)
