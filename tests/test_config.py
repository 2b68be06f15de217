"""Tests for configuration file support."""

import json
import os
import tempfile
from pathlib import Path
from unittest import mock


def test_get_config_value_env_precedence():
    """Verify environment variables take precedence over config file."""
    from tbot_relay.config import _get_config_value

    config = {"listen": ":5000"}

    with mock.patch.dict(os.environ, {"TBOT_LISTEN": ":6000"}):
        value = _get_config_value("TBOT_LISTEN", ["listen"], ":8684", config)
        assert value == ":6000"


def test_get_config_value_config_file():
    """Verify config file values are used when env var not set."""
    from tbot_relay.config import _get_config_value

    config = {"listen": ":5000"}

    with mock.patch.dict(os.environ, {}, clear=True):
        value = _get_config_value("TBOT_LISTEN", ["listen"], ":8684", config)
        assert value == ":5000"


def test_get_config_value_default():
    """Verify default is used when neither env var nor config file has value."""
    from tbot_relay.config import _get_config_value

    with mock.patch.dict(os.environ, {}, clear=True):
        value = _get_config_value("TBOT_LISTEN", ["listen"], ":8684", {})
        assert value == ":8684"


def test_get_config_value_nested_path():
    """Verify nested config paths work correctly."""
    from tbot_relay.config import _get_config_value

    config = {"agent": {"timeout": 30, "watch_scripts": True}}

    with mock.patch.dict(os.environ, {}, clear=True):
        timeout = _get_config_value("TBOT_EXEC_TIMEOUT", ["agent", "timeout"], 15.0, config, float)
        assert timeout == 30.0
        watch = _get_config_value(
            "TBOT_WATCH_SCRIPTS", ["agent", "watch_scripts"], False, config, bool
        )
        assert watch is True


def test_get_config_value_bool_coercion():
    """Verify boolean string coercion works."""
    from tbot_relay.config import _get_config_value

    for true_val in ["true", "True", "TRUE", "1", "yes", "YES"]:
        with mock.patch.dict(os.environ, {"TEST_BOOL": true_val}):
            value = _get_config_value("TEST_BOOL", ["test"], False, {}, bool)
            assert value is True, f"Failed for '{true_val}'"

    for false_val in ["false", "False", "0", "no", ""]:
        with mock.patch.dict(os.environ, {"TEST_BOOL": false_val}):
            value = _get_config_value("TEST_BOOL", ["test"], True, {}, bool)
            assert value is False, f"Failed for '{false_val}'"


def test_get_config_value_int_coercion():
    """Verify integer coercion works for string values."""
    from tbot_relay.config import _get_config_value

    with mock.patch.dict(os.environ, {"TEST_INT": "42"}):
        value = _get_config_value("TEST_INT", ["test"], 0, {}, int)
        assert value == 42
        assert isinstance(value, int)

    with mock.patch.dict(os.environ, {}, clear=True):
        assert _get_config_value("TEST_INT", ["test"], 0, {"test": "99"}, int) == 99
        assert _get_config_value("TEST_INT", ["test"], 0, {"test": 77}, int) == 77


def test_get_config_value_invalid_falls_back_to_default():
    """A config value that cannot be coerced yields the default."""
    from tbot_relay.config import _get_config_value

    with mock.patch.dict(os.environ, {}, clear=True):
        assert _get_config_value("TEST_INT", ["test"], 7, {"test": "seven"}, int) == 7


def test_get_config_value_missing_nested_key():
    """Verify missing nested keys return default."""
    from tbot_relay.config import _get_config_value

    with mock.patch.dict(os.environ, {}, clear=True):
        value = _get_config_value(
            "TBOT_WATCH_SCRIPTS", ["agent", "watch_scripts"], False, {"agent": {}}, bool
        )
        assert value is False


def test_load_config_file_not_exists():
    """Verify _load_config_file returns empty dict when file doesn't exist."""
    from tbot_relay import config

    with mock.patch.object(config, "CONFIG_FILE", Path("/nonexistent/config.json")):
        assert config._load_config_file() == {}


def test_load_config_file_valid():
    """Verify _load_config_file loads valid JSON."""
    from tbot_relay import config

    with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
        json.dump({"listen": ":5000", "log_level": "DEBUG"}, f)

    try:
        with mock.patch.object(config, "CONFIG_FILE", Path(f.name)):
            assert config._load_config_file() == {"listen": ":5000", "log_level": "DEBUG"}
    finally:
        os.unlink(f.name)


def test_load_config_file_invalid_json():
    """Verify _load_config_file returns empty dict for invalid JSON."""
    from tbot_relay import config

    with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
        f.write("not valid json {{{")

    try:
        with mock.patch.object(config, "CONFIG_FILE", Path(f.name)):
            assert config._load_config_file() == {}
    finally:
        os.unlink(f.name)


def test_load_settings_from_config():
    """Settings pick up nested agent/hub sections and aliases."""
    from tbot_relay.config import load_settings

    config = {
        "telegram_token": "123:abc",
        "data_dir": "/var/lib/tbot",
        "base_dir": "/opt/bot",
        "aliases": {"lmegyesi": ["megyesilaszlo", "laszlomegyesi"]},
        "agent": {"name": "build-box", "upstream": "http://hub:8684/", "register_interval": 30},
        "hub": {"stale_after_intervals": 5, "local_exec": "yes"},
        "log_level": "debug",
    }
    with mock.patch.dict(os.environ, {}, clear=True):
        settings = load_settings(config)

    assert settings.telegram_token == "123:abc"
    assert settings.data_dir == Path("/var/lib/tbot")
    assert settings.base_dir == Path("/opt/bot")
    assert settings.agent_name == "build-box"
    assert settings.upstream == "http://hub:8684"
    assert settings.register_interval == 30.0
    assert settings.stale_after_intervals == 5
    assert settings.hub_local_exec is True
    assert settings.aliases == {"lmegyesi": ["megyesilaszlo", "laszlomegyesi"]}
    assert settings.log_level == "DEBUG"
    assert settings.exec_timeout == 15.0


def test_data_dir_defaults_to_base_dir():
    """Without a data dir, state lives next to the scripts."""
    from tbot_relay.config import load_settings

    with mock.patch.dict(os.environ, {"TBOT_BASE_DIR": "/srv/bot"}, clear=True):
        settings = load_settings({})
    assert settings.data_dir == Path("/srv/bot")


def test_default_base_dir_uses_bruno_home():
    """BRUNO_HOME points at the sibling admin/bot directory."""
    from tbot_relay.config import default_base_dir

    with mock.patch.dict(os.environ, {"BRUNO_HOME": "/home/bruno/app"}, clear=True):
        assert default_base_dir() == Path("/home/bruno/admin/bot")

    with mock.patch.dict(os.environ, {}, clear=True):
        assert default_base_dir() == Path.cwd()


def test_split_listen():
    from tbot_relay.config import split_listen

    assert split_listen(":8684") == ("", 8684)
    assert split_listen("127.0.0.1:9000") == ("127.0.0.1", 9000)
    assert split_listen("8080") == ("", 8080)
