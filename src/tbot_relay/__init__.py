# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""tbot-relay - Relay chat commands to remote agents and queue offline messages."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tbot-relay")
except PackageNotFoundError:  # pragma: no cover - fallback for dev
    __version__ = "0.1.0"
