# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Hub - owns users, queues and the agent registry; relays chat commands to agents.

Chat side:
- Long-polls Telegram for updates
- Tracks each sender's current chat and flushes their pending queue when it changes
- ``/<command> <agent> [args...]`` is dispatched to the agent's /execute endpoint
  and the response body is replied verbatim

HTTP side:
- PUT  /register/<agent>?port=<p>     agent heartbeat (address = peer host + port)
- POST /message/<user>                deliver body to user, or queue it
- GET  /message/<user>/<text>         same, text in the path
- GET  /                              users JSON, newline, queues JSON
- GET  /agents                        registry as JSON
- GET  /metrics                       Prometheus text format

All state sits behind one process-wide lock that also guards persistence.
Chat sends happen outside it, ordered by a per-user delivery lock.
"""

from __future__ import annotations

import json
import logging
import signal
import ssl
import threading
import time
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import requests

from tbot_relay.config import Settings, split_listen
from tbot_relay.errors import NetworkError, PersistenceError, RelayError
from tbot_relay.executor import CommandAllowList, execute, result_body
from tbot_relay.metrics import metrics
from tbot_relay.registry import AgentRegistry
from tbot_relay.store import Store
from tbot_relay.telegram import ChatMessage

log = logging.getLogger(__name__)

HELP_COMMAND = "/help"
COMMAND_MARKER = "/"
METRICS_INTERVAL = 300  # Log a metrics summary every 5 minutes

HELP_TEXT = """/help Show this message.
/<command> <agent> [args...]  Run <command>.sh on <agent> and reply with its output.

Messages sent to you while you were away are delivered when you next write to me."""

USAGE_TEXT = "Usage: /<command> <agent> [args...]"


def parse_command(text: str) -> tuple[str, list[str]]:
    """Split chat text into (command, args) on whitespace.

    A trailing @botname on the command (Telegram's addressed form) is dropped.
    """
    tokens = text.split()
    if not tokens:
        return "", []
    command = tokens[0]
    if command.startswith(COMMAND_MARKER) and "@" in command:
        command = command.split("@", 1)[0]
    return command, tokens[1:]


class HubState:
    """Users, queues and agents of a hub, behind the store's lock."""

    def __init__(
        self,
        store: Store,
        bot=None,
        aliases: dict[str, list[str]] | None = None,
        stale_after: float = 180.0,
        dispatch_timeout: float = 120.0,
        local_name: str | None = None,
        local_allow_list: CommandAllowList | None = None,
        exec_timeout: float = 15.0,
    ):
        self.store = store
        self.lock = store.lock
        self.registry = AgentRegistry(stale_after=stale_after, lock=self.lock)
        self.bot = bot
        self.aliases = dict(aliases or {})
        self._alias_to_name = {a: name for name, al in self.aliases.items() for a in al}
        self.dispatch_timeout = dispatch_timeout
        self.local_name = local_name
        self.local_allow_list = local_allow_list
        self.exec_timeout = exec_timeout
        self._delivery_locks: dict[str, threading.RLock] = {}

    # -------------------------------------------------------------------------
    # Users and queues
    # -------------------------------------------------------------------------

    def canonical(self, name: str) -> str:
        """Resolve an alias (known user or static config) to its canonical name."""
        user = self.store.get_user(name)
        if user is not None:
            return user.name
        return self._alias_to_name.get(name, name)

    def _delivery_lock(self, name: str) -> threading.RLock:
        """Per-user lock ordering that user's sends. Taken before ``self.lock``, never after."""
        with self.lock:
            lock = self._delivery_locks.get(name)
            if lock is None:
                lock = self._delivery_locks[name] = threading.RLock()
            return lock

    def _save(self) -> None:
        try:
            self.store.save()
        except PersistenceError as e:
            log.error(f"Failed to save state: {e}")

    def _queue(self, name: str, text: str) -> None:
        with self.lock:
            log.info(f"Queueing message for {name}")
            self.store.enqueue(name, text)
            metrics.inc("tbot_messages_queued_total")
            self._save()

    def deliver_or_queue(self, name: str, text: str) -> bool:
        """Send ``text`` to the user now if reachable, else append it to their queue.

        Returns True only when ``text`` itself was sent. Never blocks waiting for
        the user, and never overtakes messages already queued for them.
        """
        with self.lock:
            name = self.canonical(name)
        with self._delivery_lock(name):
            with self.lock:
                user = self.store.get_user(name)
                chat_id = user.last_chat_id if user is not None else None
                has_pending = bool(self.store.pending(name))

            if chat_id is None or self.bot is None:
                self._queue(name, text)
                return False

            if has_pending:
                self._queue(name, text)
                _, sent_last = self._flush(name, chat_id)
                return sent_last

            try:
                self.bot.send(chat_id, text)
            except NetworkError as e:
                log.warning(f"Failed to send to {name}, queueing: {e}")
                self._queue(name, text)
                return False
            log.info(f"Sent message to {name}")
            metrics.inc("tbot_messages_delivered_total")
            return True

    def _flush(self, name: str, chat_id: int) -> tuple[int, bool]:
        """Returns (delivered, whether the newest queued entry was delivered)."""
        with self._delivery_lock(name):
            with self.lock:
                pending = self.store.pending(name)
            if not pending or self.bot is None:
                return 0, False

            remaining = []
            sent_last = True
            for i, text in enumerate(pending):
                try:
                    self.bot.send(chat_id, text)
                except NetworkError as e:
                    log.warning(f"Flush to {name} failed, keeping message queued: {e}")
                    remaining.append(text)
                    if i == len(pending) - 1:
                        sent_last = False

            with self.lock:
                # Anything queued while we were sending stays behind the failures
                added = self.store.pending(name)[len(pending) :]
                self.store.replace_queue(name, remaining + added)
                self._save()

            delivered = len(pending) - len(remaining)
            metrics.inc("tbot_flush_delivered_total", delivered)
            log.info(f"Flushed {delivered}/{len(pending)} queued messages to {name}")
            return delivered, sent_last

    def flush(self, name: str, chat_id: int) -> int:
        """Send the user's queue in order; failures stay queued in relative order.

        Returns the number of messages delivered.
        """
        return self._flush(name, chat_id)[0]

    def flush_all(self) -> int:
        """Flush every queue whose user has a known chat (run at startup)."""
        with self.lock:
            targets = []
            for name in self.store.queued_names():
                user = self.store.get_user(name)
                if user is not None and user.last_chat_id is not None:
                    targets.append((user.name, user.last_chat_id))
        return sum(self.flush(name, chat_id) for name, chat_id in targets)

    def observe_sender(self, msg: ChatMessage) -> None:
        """Create the sender's record if new; on a chat change, record it and flush.

        A sender writing from a configured alias is recorded under the canonical name.
        """
        with self.lock:
            name = self.canonical(msg.sender)
            user, created = self.store.ensure_user(name, self.aliases.get(name))
            if created:
                log.info(f"New user {user.name} (aliases: {user.aliases})")
            changed = self.store.set_chat_id(user.name, msg.chat_id)
            if changed:
                log.info(f"User {user.name} is now reachable in chat {msg.chat_id}")
            needs_flush = changed and bool(self.store.pending(user.name))
            if (changed or created) and not needs_flush:
                self._save()
        if needs_flush:
            self.flush(user.name, msg.chat_id)

    def status_json(self) -> str:
        users, queues = self.store.snapshot()
        return json.dumps(users) + "\n" + json.dumps(queues) + "\n"

    # -------------------------------------------------------------------------
    # Chat commands
    # -------------------------------------------------------------------------

    def handle_message(self, msg: ChatMessage) -> None:
        """Process one inbound chat message."""
        if not msg.text or msg.is_group:
            return
        if not msg.sender:
            log.debug(f"Ignoring message without a username in chat {msg.chat_id}")
            return
        log.info(f"[{msg.sender}] {msg.text}")
        self.observe_sender(msg)

        command, args = parse_command(msg.text)
        if command == HELP_COMMAND:
            self._reply(msg, HELP_TEXT)
            return
        if not command.startswith(COMMAND_MARKER) or not args:
            self._reply(msg, USAGE_TEXT)
            return

        self._reply(msg, self.dispatch(msg.sender, command, args[0], args[1:]))

    def dispatch(self, sender: str, command: str, agent_name: str, args: list[str]) -> str:
        """Run ``command`` on the named agent; return the text to reply with."""
        command = command[len(COMMAND_MARKER) :] if command.startswith(COMMAND_MARKER) else command

        if self.local_allow_list is not None and agent_name == self.local_name:
            return self._execute_locally(sender, command, args)

        reg = self.registry.get(agent_name)
        if reg is None:
            return (
                f"{agent_name!r} is not a known agent.\n"
                f"Known agents: {self.registry.describe_known()}"
            )

        prefix = ""
        if reg.is_stale(self.registry.stale_after):
            age = int(time.time() - reg.last_seen)
            log.warning(f"Dispatching to stale agent {agent_name!r} (last seen {age}s ago)")
            prefix = f"(warning: {agent_name} last registered {age}s ago)\n"

        url = f"{reg.address}/execute/{urllib.parse.quote(command, safe='')}"
        metrics.inc("tbot_dispatch_total")
        try:
            resp = requests.get(
                url, params={"from": sender, "args": args}, timeout=self.dispatch_timeout
            )
        except requests.RequestException as e:
            metrics.inc("tbot_dispatch_failed_total")
            log.error(f"Dispatch to {url} failed: {e}")
            return prefix + f"{url}: {e}"
        log.info(f"Dispatched {command} to {agent_name}: {resp.status_code}")
        return prefix + resp.text

    def _execute_locally(self, sender: str, command: str, args: list[str]) -> str:
        try:
            result = execute(
                self.local_allow_list.base_dir,
                command,
                args,
                sender,
                timeout=self.exec_timeout,
                allow_list=self.local_allow_list,
            )
        except RelayError as e:
            log.warning(f"Local execution of {command} failed: {e}")
            return result_body(getattr(e, "output", b""), e).decode(errors="replace")
        return result_body(result.output).decode(errors="replace")

    def _reply(self, msg: ChatMessage, text: str) -> None:
        if self.bot is None:
            return
        try:
            self.bot.reply(msg, text)
        except NetworkError as e:
            log.error(f"Failed to reply to {msg.sender}: {e}")


# =============================================================================
# HTTP surface
# =============================================================================


class HubHTTPServer(ThreadingHTTPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address, state: HubState):
        super().__init__(address, HubRequestHandler)
        self.state = state


class HubRequestHandler(BaseHTTPRequestHandler):
    server: HubHTTPServer

    def log_message(self, format, *args):
        log.debug(f"{self.client_address[0]} - {format % args}")

    def send_text(self, text: str, status: int = 200, content_type: str = "text/plain") -> None:
        body = text.encode()
        self.send_response(status)
        self.send_header("Content-Type", f"{content_type}; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_body(self) -> str:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return ""
        return self.rfile.read(length).decode(errors="replace")

    def _split(self) -> tuple[str, dict]:
        parsed = urllib.parse.urlsplit(self.path)
        return parsed.path, urllib.parse.parse_qs(parsed.query)

    def do_PUT(self):
        path, params = self._split()
        if not path.startswith("/register/"):
            self.send_text("Not found", 404)
            return
        self._register(urllib.parse.unquote(path[len("/register/") :]), params)

    def do_GET(self):
        path, _ = self._split()
        if path == "/":
            self.send_text(self.server.state.status_json(), content_type="application/json")
        elif path == "/agents":
            self.send_text(
                json.dumps(self.server.state.registry.to_list()), content_type="application/json"
            )
        elif path == "/metrics":
            self.send_text(metrics.to_prometheus())
        elif path.startswith("/message/"):
            user, _, text = path[len("/message/") :].partition("/")
            self._message(urllib.parse.unquote(user), urllib.parse.unquote(text))
        else:
            self.send_text("Not found", 404)

    def do_POST(self):
        path, _ = self._split()
        text = self._read_body()
        if path in ("/", "/message", "/message/"):
            self.send_text("POST needs username", 400)
        elif path.startswith("/message/"):
            user = urllib.parse.unquote(path[len("/message/") :].strip("/"))
            self._message(user, text)
        else:
            self.send_text("Not found", 404)

    def _register(self, name: str, params: dict) -> None:
        port = (params.get("port") or [""])[0]
        if not name or "/" in name:
            self.send_text("Missing agent name", 400)
            return
        if not port.isdigit() or not 0 < int(port) < 65536:
            self.send_text(f"Invalid port {port!r}", 400)
            return
        # Assumes agents and hub share a flat network: no proxy headers are trusted.
        host = self.client_address[0]
        if ":" in host:
            host = f"[{host}]"
        scheme = "https" if isinstance(self.connection, ssl.SSLSocket) else "http"
        address = f"{scheme}://{host}:{port}"
        self.server.state.registry.register(name, address)
        metrics.inc("tbot_registrations_total")
        self.send_text(f"registered {name!r} to {address!r}")

    def _message(self, user: str, text: str) -> None:
        if not user:
            self.send_text("Missing user name", 400)
            return
        if not text:
            self.send_text("Empty message", 400)
            return
        if self.server.state.deliver_or_queue(user, text):
            self.send_text("sent", 201)
        else:
            self.send_text("queued")


def make_server(listen: str, state: HubState) -> HubHTTPServer:
    host, port = split_listen(listen)
    return HubHTTPServer((host, port), state)


# =============================================================================
# Main loop
# =============================================================================


class Hub:
    """Runs the HTTP listener and the chat poll loop until signalled."""

    def __init__(self, settings: Settings, state: HubState):
        self.settings = settings
        self.state = state
        self.shutdown_event = threading.Event()

    def poll_updates(self) -> None:
        """Consume the chat update stream; a bad update never stops the loop."""
        for update in self.state.bot.iter_updates(self.shutdown_event):
            msg = ChatMessage.from_update(update)
            if msg is None:
                continue
            try:
                self.state.handle_message(msg)
            except Exception as e:
                log.exception(f"Error handling update {update.get('update_id')}: {e}")

    def run(self) -> None:
        server = make_server(self.settings.listen, self.state)

        flushed = self.state.flush_all()
        if flushed:
            log.info(f"Delivered {flushed} queued messages on startup")

        def shutdown_handler(signum, frame):
            log.info(f"Received signal {signum}, shutting down...")
            self.shutdown_event.set()

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)

        def metrics_worker():
            while not self.shutdown_event.wait(METRICS_INTERVAL):
                log.info(f"Metrics: {metrics.log_summary()}")

        threads = [
            threading.Thread(target=server.serve_forever, name="http-server", daemon=True),
            threading.Thread(target=self.poll_updates, name="update-poller", daemon=True),
            threading.Thread(target=metrics_worker, name="metrics-worker", daemon=True),
        ]
        for t in threads:
            t.start()
        log.info(f"Listening on {self.settings.listen}")

        try:
            while not self.shutdown_event.is_set():
                self.shutdown_event.wait(1)
        except KeyboardInterrupt:
            log.info("Shutting down")
        finally:
            self.shutdown_event.set()
            server.shutdown()
            server.server_close()
            for t in threads:
                t.join(timeout=2)
