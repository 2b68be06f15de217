# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Sandboxed command executor.

Commands are allow-listed ``<name>.sh`` files in one flat directory. A command
runs as a single bounded attempt:

- spawn the script in its own process group, cwd = base dir,
  env = current env + TBOT_SENDER
- start a cancellation timer
- on timer fire: SIGKILL the process group, raise Timeout with partial output
- on exit: return the output, or raise ExecutionFailed for non-zero status

stdout and stderr are merged into one captured stream which is also mirrored
to our own stdout.
"""

import logging
import os
import re
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from tbot_relay.config import DEFAULT_EXEC_TIMEOUT
from tbot_relay.errors import ExecutionFailed, NotFound, PermissionDenied, Timeout
from tbot_relay.metrics import metrics

log = logging.getLogger(__name__)

SENDER_ENV_VAR = "TBOT_SENDER"
SCRIPT_SUFFIX = ".sh"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def is_safe_command_name(name: str) -> bool:
    """Reject anything that could leave the flat script directory."""
    return bool(_SAFE_NAME.match(name)) and ".." not in name


@dataclass
class ExecutionResult:
    output: bytes
    returncode: int


class CommandAllowList:
    """Mapping of command name -> script path, built from a flat directory."""

    def __init__(self, base_dir: Path, scripts: dict[str, Path] | None = None):
        self.base_dir = Path(base_dir)
        self._scripts: dict[str, Path] = dict(scripts or {})

    @classmethod
    def scan(cls, base_dir: Path) -> "CommandAllowList":
        allow_list = cls(base_dir)
        allow_list.refresh()
        return allow_list

    def refresh(self) -> None:
        """Rebuild the mapping from the directory contents."""
        scripts = {}
        try:
            entries = list(self.base_dir.iterdir())
        except OSError as e:
            log.warning(f"Cannot scan script directory {self.base_dir}: {e}")
            entries = []
        for path in entries:
            if path.suffix != SCRIPT_SUFFIX or not path.is_file():
                continue
            name = path.name[: -len(SCRIPT_SUFFIX)]
            if not is_safe_command_name(name):
                log.warning(f"Skipping script with unsafe name: {path.name}")
                continue
            scripts[name] = path
        # Single assignment; readers never see a half-built dict
        self._scripts = scripts
        log.info(f"Allow-listed {len(scripts)} commands in {self.base_dir}")

    def names(self) -> list[str]:
        return sorted(self._scripts)

    def resolve(self, name: str) -> Path:
        """Return the script for ``name`` or raise NotFound / PermissionDenied."""
        if not is_safe_command_name(name):
            raise NotFound(f"{name!r}: no such command")
        path = self._scripts.get(name)
        if path is None or not path.is_file():
            raise NotFound(f"{name!r}: no such command")
        if not os.access(path, os.X_OK):
            mode = path.stat().st_mode & 0o777
            raise PermissionDenied(f"{path}: not executable (permission={mode:04o})")
        return path


def result_body(output: bytes, error: Exception | None = None) -> bytes:
    """Captured output, followed by the error text when there is one."""
    if error is None:
        return output
    if output and not output.endswith(b"\n"):
        output += b"\n"
    return output + f"{type(error).__name__}: {error}".encode()


def _mirror(chunk: bytes) -> None:
    out = getattr(sys.stdout, "buffer", None)
    try:
        if out is not None:
            out.write(chunk)
        else:
            sys.stdout.write(chunk.decode(errors="replace"))
        sys.stdout.flush()
    except (OSError, ValueError):
        pass  # mirroring is best effort


def execute(
    base_dir: Path,
    command: str,
    args: list[str],
    sender: str,
    timeout: float = DEFAULT_EXEC_TIMEOUT,
    allow_list: CommandAllowList | None = None,
) -> ExecutionResult:
    """Run ``<base_dir>/<command>.sh args...`` once, bounded by ``timeout`` seconds."""
    base_dir = Path(base_dir)
    if allow_list is None:
        allow_list = CommandAllowList.scan(base_dir)
    name = command[1:] if command.startswith("/") else command
    script = allow_list.resolve(name)

    env = dict(os.environ)
    env[SENDER_ENV_VAR] = sender
    argv = [str(script), *args]
    log.info(f"Calling {argv!r} for {sender!r}")
    metrics.inc("tbot_executions_total")

    try:
        proc = subprocess.Popen(
            argv,
            cwd=base_dir,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        metrics.inc("tbot_executions_failed_total")
        raise ExecutionFailed(f"start {argv!r}: {e}") from e

    timed_out = threading.Event()

    def _kill() -> None:
        if proc.returncode is not None:
            return
        timed_out.set()
        log.warning(f"{name} exceeded {timeout}s, killing process group {proc.pid}")
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    timer = threading.Timer(timeout, _kill)
    timer.daemon = True
    timer.start()

    chunks = []
    try:
        for chunk in iter(lambda: proc.stdout.read1(4096), b""):
            chunks.append(chunk)
            _mirror(chunk)
        returncode = proc.wait()
    finally:
        timer.cancel()
        proc.stdout.close()

    output = b"".join(chunks)
    # A script that exited on its own before the kill is judged by its exit status
    if timed_out.is_set() and returncode == -signal.SIGKILL:
        metrics.inc("tbot_executions_failed_total")
        raise Timeout(f"{name}: timed out after {timeout}s", output=output)
    if returncode != 0:
        metrics.inc("tbot_executions_failed_total")
        raise ExecutionFailed(
            f"{name}: exit status {returncode}", output=output, returncode=returncode
        )
    return ExecutionResult(output=output, returncode=returncode)


# =============================================================================
# Script directory watcher
# =============================================================================


class ScriptDirHandler(FileSystemEventHandler):
    """Refresh the allow-list whenever a script is added, removed or changed."""

    def __init__(self, allow_list: CommandAllowList):
        self.allow_list = allow_list

    def on_any_event(self, event) -> None:
        if event.event_type not in ["created", "deleted", "modified", "moved"]:
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if not any(str(p).endswith(SCRIPT_SUFFIX) for p in paths):
            return
        log.debug(f"Script directory changed ({event.event_type}: {event.src_path})")
        self.allow_list.refresh()


class ScriptDirWatcher:
    def __init__(self, allow_list: CommandAllowList):
        self.allow_list = allow_list
        self.observer = Observer()

    def start(self) -> None:
        self.observer.schedule(
            ScriptDirHandler(self.allow_list), str(self.allow_list.base_dir), recursive=False
        )
        self.observer.start()
        log.info(f"Watching {self.allow_list.base_dir} for script changes")

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join(timeout=2)
