# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""In-memory agent registry: name -> address, last write wins.

Entries are never evicted. An entry whose last heartbeat is older than
``stale_after`` seconds is reported as stale so dispatch can warn about it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

log = logging.getLogger(__name__)


@dataclass
class Registration:
    name: str
    address: str
    last_seen: float

    def is_stale(self, stale_after: float, now: float | None = None) -> bool:
        if stale_after <= 0:
            return False
        now = time.time() if now is None else now
        return now - self.last_seen > stale_after

    def to_dict(self, stale_after: float) -> dict:
        return {
            "name": self.name,
            "address": self.address,
            "lastSeen": int(self.last_seen * 1000),
            "stale": self.is_stale(stale_after),
        }


class AgentRegistry:
    def __init__(self, stale_after: float = 180.0, lock: threading.RLock | None = None):
        self.stale_after = stale_after
        self.lock = lock if lock is not None else threading.RLock()
        self._agents: dict[str, Registration] = {}

    def register(self, name: str, address: str) -> Registration:
        with self.lock:
            previous = self._agents.get(name)
            reg = Registration(name=name, address=address, last_seen=time.time())
            self._agents[name] = reg
        if previous is None:
            log.info(f"Registered agent {name!r} at {address}")
        elif previous.address != address:
            log.info(f"Agent {name!r} moved from {previous.address} to {address}")
        else:
            log.debug(f"Heartbeat from agent {name!r} at {address}")
        return reg

    def get(self, name: str) -> Registration | None:
        with self.lock:
            return self._agents.get(name)

    def names(self) -> list[str]:
        with self.lock:
            return sorted(self._agents)

    def describe_known(self) -> str:
        """Stable, human-readable list of known agent names."""
        names = self.names()
        return ", ".join(names) if names else "(none)"

    def to_list(self) -> list[dict]:
        with self.lock:
            return [self._agents[n].to_dict(self.stale_after) for n in sorted(self._agents)]
