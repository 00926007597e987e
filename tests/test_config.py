"""Tests for configuration loading and XDG paths."""

import pytest

from idlewatch.config import (
    Config,
    ConfigError,
    get_xdg_config_home,
    get_xdg_data_home,
    get_xdg_state_home,
    print_paths,
)


def test_defaults():
    config = Config()
    assert config.listener.idle_timeout == 1740
    assert config.listener.reconnect_delay == 5
    assert config.listener.folder == "INBOX"
    assert config.manager.reconcile_interval == 60
    assert config.manager.stop_timeout == 10
    assert config.logging.level == "INFO"


def test_missing_default_file_gives_defaults():
    config = Config.load()
    assert config == Config()
    assert config.source is None
    assert get_xdg_config_home().is_dir()


def test_missing_explicit_file_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        Config.load(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[listener\nidle_timeout = ")
    with pytest.raises(ConfigError, match="Invalid config file"):
        Config.load(path)


@pytest.mark.parametrize("body", [
    "[listener]\nidle_timeout = 'soon'\n",
    "[listener]\nidle_timeout = 0\n",
    "[listener]\nreconnect_delay = -1\n",
    "[manager]\nreconcile_interval = 0\n",
    "listener = 5\n",
])
def test_bad_values(tmp_path, body):
    path = tmp_path / "config.toml"
    path.write_text(body)
    with pytest.raises(ConfigError):
        Config.load(path)


def test_partial_file_keeps_other_defaults(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[listener]\nfolder = "Support"\n\n[logging]\nlevel = "debug"\n')

    config = Config.load(path)
    assert config.listener.folder == "Support"
    assert config.listener.idle_timeout == 1740
    assert config.logging.level == "DEBUG"
    assert config.source == path


def test_save_and_load(tmp_path):
    config = Config()
    config.listener.idle_timeout = 600
    config.manager.stop_timeout = 3
    config.storage.database = "/var/lib/idlewatch/mail.db"
    path = tmp_path / "nested" / "config.toml"

    config.save(path)
    assert Config.load(path) == config


def test_save_to_default_location():
    Config().save()
    assert Config.config_file_path().exists()
    assert Config.load().source == Config.config_file_path()


def test_database_path():
    config = Config()
    assert config.database_path() == get_xdg_data_home() / "idlewatch.db"
    config.storage.database = "/tmp/other.db"
    assert str(config.database_path()) == "/tmp/other.db"


def test_log_file_path():
    config = Config()
    assert config.log_file_path() is None
    config.logging.file = "idlewatch.log"
    assert config.log_file_path() == get_xdg_state_home() / "idlewatch.log"
    config.logging.file = "/var/log/idlewatch.log"
    assert str(config.log_file_path()) == "/var/log/idlewatch.log"


def test_print_paths(capsys):
    print_paths()
    out = capsys.readouterr().out
    assert str(get_xdg_config_home()) in out
    assert "idlewatch.db" in out
    assert "(stderr only)" in out
