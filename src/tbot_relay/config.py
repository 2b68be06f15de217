# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Configuration: environment variables first, then the JSON config file, then defaults.

The config file lives at ~/.config/tbot-relay/config.json unless
TBOT_RELAY_CONFIG points elsewhere. Example:

    {
      "telegram_token": "123:abc",
      "data_dir": "/var/lib/tbot",
      "listen": ":8684",
      "log_level": "INFO",
      "aliases": {"lmegyesi": ["megyesilaszlo", "laszlomegyesi"]},
      "agent": {"name": "build-box", "upstream": "http://hub:8684",
                "timeout": 15, "register_interval": 60, "watch_scripts": false},
      "hub": {"stale_after_intervals": 3, "dispatch_timeout": 120, "local_exec": false},
      "http_timeout": 30
    }
"""

import json
import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config/tbot-relay"
CONFIG_FILE = Path(os.environ.get("TBOT_RELAY_CONFIG", str(CONFIG_DIR / "config.json")))

DEFAULT_PORT = 8684
DEFAULT_EXEC_TIMEOUT = 15.0
DEFAULT_REGISTER_INTERVAL = 60.0
DEFAULT_STALE_AFTER_INTERVALS = 3
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_DISPATCH_TIMEOUT = 120.0

_TRUE_STRINGS = ("1", "true", "yes", "on")


def _load_config_file() -> dict:
    """Load the JSON config file. Missing or invalid files yield an empty dict."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        data = json.loads(CONFIG_FILE.read_text())
    except (json.JSONDecodeError, OSError) as e:
        log.warning(f"Failed to load config file {CONFIG_FILE}: {e}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring config file {CONFIG_FILE}: top level is not an object")
        return {}
    return data


def _coerce(value: Any, type_: type) -> Any:
    if type_ is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_STRINGS
    if value is None:
        return None
    return type_(value)


def _get_config_value(
    env_var: str, config_path: list[str], default: Any, config: dict, type_: type = str
) -> Any:
    """Resolve a setting: env var wins, then the nested config key, then the default."""
    env_value = os.environ.get(env_var)
    if env_value is not None:
        return _coerce(env_value, type_)

    node: Any = config
    for key in config_path:
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    try:
        return _coerce(node, type_)
    except (TypeError, ValueError):
        log.warning(f"Invalid value for {'.'.join(config_path)}: {node!r}, using {default!r}")
        return default


def default_base_dir() -> Path:
    """Directory holding the <command>.sh scripts.

    Mirrors the deployment layout the bot was born in: $BRUNO_HOME/../admin/bot
    when BRUNO_HOME is set, the working directory otherwise.
    """
    bruno_home = os.environ.get("BRUNO_HOME")
    if bruno_home:
        return Path(bruno_home).parent / "admin" / "bot"
    return Path.cwd()


def split_listen(listen: str) -> tuple[str, int]:
    """Split a ":8684" or "0.0.0.0:8684" listen address into (host, port)."""
    host, sep, port = listen.rpartition(":")
    if not sep:
        host, port = "", listen
    return host, int(port)


@dataclass
class Settings:
    telegram_token: str = ""
    data_dir: Path = field(default_factory=default_base_dir)
    base_dir: Path = field(default_factory=default_base_dir)
    listen: str = f":{DEFAULT_PORT}"
    upstream: str = ""
    agent_name: str = field(default_factory=socket.gethostname)
    exec_timeout: float = DEFAULT_EXEC_TIMEOUT
    register_interval: float = DEFAULT_REGISTER_INTERVAL
    stale_after_intervals: int = DEFAULT_STALE_AFTER_INTERVALS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    dispatch_timeout: float = DEFAULT_DISPATCH_TIMEOUT
    watch_scripts: bool = False
    hub_local_exec: bool = False
    aliases: dict[str, list[str]] = field(default_factory=dict)
    log_level: str = "INFO"


def load_settings(config: dict | None = None) -> Settings:
    """Build Settings from the environment and the config file."""
    if config is None:
        config = _load_config_file()

    base_dir = _get_config_value("TBOT_BASE_DIR", ["base_dir"], None, config)
    base_dir = Path(base_dir) if base_dir else default_base_dir()
    data_dir = _get_config_value("TBOT_DATA_DIR", ["data_dir"], None, config)

    aliases = config.get("aliases", {})
    if not isinstance(aliases, dict):
        log.warning("Ignoring 'aliases' in config: expected an object")
        aliases = {}

    return Settings(
        telegram_token=_get_config_value("TELEGRAM_TOKEN", ["telegram_token"], "", config),
        data_dir=Path(data_dir) if data_dir else base_dir,
        base_dir=base_dir,
        listen=_get_config_value("TBOT_LISTEN", ["listen"], f":{DEFAULT_PORT}", config),
        upstream=_get_config_value("TBOT_UPSTREAM", ["agent", "upstream"], "", config).rstrip("/"),
        agent_name=_get_config_value(
            "TBOT_AGENT_NAME", ["agent", "name"], socket.gethostname(), config
        ),
        exec_timeout=_get_config_value(
            "TBOT_EXEC_TIMEOUT", ["agent", "timeout"], DEFAULT_EXEC_TIMEOUT, config, float
        ),
        register_interval=_get_config_value(
            "TBOT_REGISTER_INTERVAL",
            ["agent", "register_interval"],
            DEFAULT_REGISTER_INTERVAL,
            config,
            float,
        ),
        stale_after_intervals=_get_config_value(
            "TBOT_STALE_AFTER_INTERVALS",
            ["hub", "stale_after_intervals"],
            DEFAULT_STALE_AFTER_INTERVALS,
            config,
            int,
        ),
        http_timeout=_get_config_value(
            "TBOT_HTTP_TIMEOUT", ["http_timeout"], DEFAULT_HTTP_TIMEOUT, config, float
        ),
        dispatch_timeout=_get_config_value(
            "TBOT_DISPATCH_TIMEOUT",
            ["hub", "dispatch_timeout"],
            DEFAULT_DISPATCH_TIMEOUT,
            config,
            float,
        ),
        watch_scripts=_get_config_value(
            "TBOT_WATCH_SCRIPTS", ["agent", "watch_scripts"], False, config, bool
        ),
        hub_local_exec=_get_config_value(
            "TBOT_HUB_LOCAL_EXEC", ["hub", "local_exec"], False, config, bool
        ),
        aliases={str(k): [str(a) for a in v] for k, v in aliases.items() if isinstance(v, list)},
        log_level=_get_config_value("TBOT_LOG_LEVEL", ["log_level"], "INFO", config).upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
