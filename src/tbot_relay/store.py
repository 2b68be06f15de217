# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Durable users and per-user pending message queues.

A data directory holds three files:

    tbot.lock    - exclusive advisory lock, held for the life of the process
    users.json   - array of {"name", "aliases", "lastChatId"} records
    queues.json  - object mapping user name -> array of pending texts

Both JSON files are replaced atomically (temp file in the same directory,
fsync, os.replace), so readers never see a truncated or mixed-version file.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tbot_relay.errors import Locked, PersistenceError

log = logging.getLogger(__name__)

LOCK_FILENAME = "tbot.lock"
USERS_FILENAME = "users.json"
QUEUES_FILENAME = "queues.json"


@dataclass
class User:
    name: str
    aliases: list[str] = field(default_factory=list)
    last_chat_id: int | None = None

    def to_dict(self) -> dict:
        return {"name": self.name, "aliases": list(self.aliases), "lastChatId": self.last_chat_id}

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        """Build a User, accepting both current keys and the legacy Name/Aliases/LastChatID."""
        name = data.get("name", data.get("Name")) or ""
        aliases = data.get("aliases", data.get("Aliases")) or []
        if not isinstance(aliases, list):
            raise TypeError(f"aliases must be a list, not {type(aliases).__name__}")
        chat_id = data.get("lastChatId", data.get("LastChatID"))
        # 0 was the legacy "unknown chat" marker
        return cls(
            name=str(name),
            aliases=[str(a) for a in aliases],
            last_chat_id=int(chat_id) if chat_id else None,
        )


def _read_json(path: Path) -> Any:
    """Return the decoded document, or None when the file does not exist."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, OSError) as e:
        raise PersistenceError(f"{path}: {e}") from e


def _write_json_atomic(path: Path, data: Any) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".new", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


class Store:
    """Users and queues of one data directory.

    Every public method runs under ``lock``. Pass the owner's state lock to get
    one process-wide lock around mutation and persistence.
    """

    def __init__(self, path: Path, lock: threading.RLock | None = None):
        self.path = Path(path)
        self.users_path = self.path / USERS_FILENAME
        self.queues_path = self.path / QUEUES_FILENAME
        self.lock = lock if lock is not None else threading.RLock()
        self._lock_fh = None
        self._users: list[User] = []
        self._by_name: dict[str, User] = {}
        self._queues: dict[str, list[str]] = {}

    # -------------------------------------------------------------------------
    # Directory lock
    # -------------------------------------------------------------------------

    @classmethod
    def acquire(cls, path: Path, lock: threading.RLock | None = None) -> "Store":
        """Create the directory if needed and take its exclusive lock.

        Raises Locked when another process (or another Store in this one)
        already holds the directory.
        """
        store = cls(path, lock)
        try:
            store.path.mkdir(parents=True, exist_ok=True)
            lock_fh = open(store.path / LOCK_FILENAME, "a")  # noqa: SIM115
        except OSError as e:
            raise PersistenceError(f"{store.path}: {e}") from e
        try:
            fcntl.flock(lock_fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            lock_fh.close()
            raise Locked(f"{store.path} is locked by another process") from e
        store._lock_fh = lock_fh
        log.debug(f"Acquired data directory {store.path}")
        return store

    def close(self) -> None:
        """Release the directory lock."""
        if self._lock_fh is None:
            return
        try:
            fcntl.flock(self._lock_fh, fcntl.LOCK_UN)
        finally:
            self._lock_fh.close()
            self._lock_fh = None

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def load(self) -> None:
        """Replace in-memory state with the files on disk.

        Missing files mean empty state. A malformed file raises PersistenceError
        after the other file has still been loaded. Bad user records are skipped
        and reported the same way.
        """
        with self.lock:
            first_error: PersistenceError | None = None

            self._users = []
            self._by_name = {}
            try:
                raw_users = _read_json(self.users_path) or []
                if not isinstance(raw_users, list):
                    raise PersistenceError(f"{self.users_path}: expected a JSON array")
                for item in raw_users:
                    if not isinstance(item, dict):
                        continue
                    try:
                        user = User.from_dict(item)
                    except (TypeError, ValueError) as e:
                        log.warning(f"Skipping bad user record {item!r}: {e}")
                        if first_error is None:
                            first_error = PersistenceError(f"{self.users_path}: {e}")
                        continue
                    if not user.name:
                        continue
                    self._index(user)
            except PersistenceError as e:
                first_error = e

            self._queues = {}
            try:
                raw_queues = _read_json(self.queues_path) or {}
                if not isinstance(raw_queues, dict):
                    raise PersistenceError(f"{self.queues_path}: expected a JSON object")
                for name, texts in raw_queues.items():
                    if isinstance(texts, list):
                        self._queues[str(name)] = [str(t) for t in texts]
            except PersistenceError as e:
                if first_error is None:
                    first_error = e

            log.debug(f"Loaded {len(self._users)} users, {len(self._queues)} queues")
            if first_error is not None:
                raise first_error

    def save(self) -> None:
        """Write users.json and queues.json. Both are attempted; the first error is raised."""
        with self.lock:
            users, queues = self.snapshot()
            first_error: PersistenceError | None = None
            for path, data in ((self.users_path, users), (self.queues_path, queues)):
                try:
                    _write_json_atomic(path, data)
                except (OSError, TypeError, ValueError) as e:
                    log.error(f"Failed to save {path}: {e}")
                    if first_error is None:
                        first_error = PersistenceError(f"{path}: {e}")
            if first_error is not None:
                raise first_error

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def _index(self, user: User) -> None:
        self._users.append(user)
        self._by_name[user.name] = user
        for alias in user.aliases:
            self._by_name.setdefault(alias, user)

    @property
    def users(self) -> list[User]:
        with self.lock:
            return list(self._users)

    def get_user(self, name: str) -> User | None:
        """Look up a user by canonical name or alias."""
        with self.lock:
            return self._by_name.get(name)

    def ensure_user(self, name: str, aliases: list[str] | None = None) -> tuple[User, bool]:
        """Return (user, created). New users get the given static aliases."""
        with self.lock:
            user = self._by_name.get(name)
            if user is not None:
                return user, False
            user = User(name=name, aliases=list(aliases or []))
            self._index(user)
            return user, True

    def set_chat_id(self, name: str, chat_id: int) -> bool:
        """Record the user's current chat. Returns True when it changed."""
        with self.lock:
            user = self._by_name.get(name)
            if user is None or user.last_chat_id == chat_id:
                return False
            user.last_chat_id = chat_id
            return True

    # -------------------------------------------------------------------------
    # Queues
    # -------------------------------------------------------------------------

    def enqueue(self, name: str, text: str) -> None:
        with self.lock:
            self._queues.setdefault(name, []).append(text)

    def pending(self, name: str) -> list[str]:
        with self.lock:
            return list(self._queues.get(name, []))

    def replace_queue(self, name: str, remaining: list[str]) -> None:
        with self.lock:
            self._queues[name] = list(remaining)

    def queued_names(self) -> list[str]:
        with self.lock:
            return [name for name, texts in self._queues.items() if texts]

    def snapshot(self) -> tuple[list[dict], dict[str, list[str]]]:
        """JSON-ready copies of the users list and the queue mapping."""
        with self.lock:
            return (
                [u.to_dict() for u in self._users],
                {name: list(texts) for name, texts in self._queues.items()},
            )
