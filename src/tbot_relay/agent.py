# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Agent - a stateless dispatch target that runs allow-listed scripts for the hub.

- Registers ``PUT <upstream>/register/<name>?port=<port>`` at start and every
  register_interval seconds; failures are logged and retried, never fatal
- ``GET /execute/<command>?from=<sender>&args=a1&args=a2`` runs the script and
  returns its combined output; executor errors map to non-2xx statuses
- ``POST /message/<path>`` is proxied to the hub's /message/<path>
- ``GET /`` returns a JSON status with the allow-listed commands
"""

import json
import logging
import signal
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import requests

from tbot_relay.config import (
    DEFAULT_EXEC_TIMEOUT,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_REGISTER_INTERVAL,
    split_listen,
)
from tbot_relay.errors import (
    ExecutionFailed,
    NotFound,
    PermissionDenied,
    RelayError,
    Timeout,
)
from tbot_relay.executor import CommandAllowList, ScriptDirWatcher, execute, result_body
from tbot_relay.metrics import metrics

log = logging.getLogger(__name__)

STATUS_FOR_ERROR = {
    NotFound: 404,
    PermissionDenied: 403,
    Timeout: 504,
    ExecutionFailed: 500,
}


def status_for(error: RelayError) -> int:
    for error_type, status in STATUS_FOR_ERROR.items():
        if isinstance(error, error_type):
            return status
    return 500


class Agent:
    def __init__(
        self,
        name: str,
        upstream: str,
        base_dir: Path,
        listen: str = ":0",
        timeout: float = DEFAULT_EXEC_TIMEOUT,
        register_interval: float = DEFAULT_REGISTER_INTERVAL,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        allow_list: CommandAllowList | None = None,
    ):
        self.name = name
        self.upstream = upstream.rstrip("/")
        self.base_dir = Path(base_dir)
        self.listen = listen
        self.port = split_listen(listen)[1]
        self.timeout = timeout
        self.register_interval = register_interval
        self.http_timeout = http_timeout
        self.allow_list = allow_list or CommandAllowList.scan(self.base_dir)
        self.shutdown_event = threading.Event()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    @property
    def register_url(self) -> str:
        return f"{self.upstream}/register/{urllib.parse.quote(self.name, safe='')}"

    def register(self) -> bool:
        """Announce our port to the hub once. Never raises."""
        try:
            resp = requests.put(
                self.register_url, params={"port": self.port}, timeout=self.http_timeout
            )
        except requests.RequestException as e:
            log.warning(f"Register on {self.register_url} failed: {e}")
            return False
        log.info(f"Register on {resp.url}: {resp.status_code} {resp.reason}")
        if resp.ok:
            metrics.inc("tbot_registrations_total")
        return resp.ok

    def registration_loop(self) -> None:
        """Register immediately, then every register_interval until shutdown."""
        while not self.shutdown_event.is_set():
            self.register()
            self.shutdown_event.wait(self.register_interval)

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    def execute(self, command: str, args: list[str], sender: str) -> tuple[int, bytes]:
        """Run a command; returns (HTTP status, body)."""
        try:
            result = execute(
                self.base_dir,
                command,
                args,
                sender,
                timeout=self.timeout,
                allow_list=self.allow_list,
            )
        except RelayError as e:
            log.warning(f"Execute {command} for {sender!r} failed: {e}")
            return status_for(e), result_body(getattr(e, "output", b""), e)
        return 200, result_body(result.output)

    def proxy_message(self, path: str, body: bytes) -> tuple[int, bytes]:
        """Forward a message to the hub unchanged; mirror its status and body."""
        url = f"{self.upstream}/message/{path}"
        try:
            resp = requests.post(url, data=body, timeout=self.http_timeout)
        except requests.RequestException as e:
            log.warning(f"Message {url} failed: {e}")
            return 502, str(e).encode()
        log.info(f"Message {url}: {resp.status_code}")
        return resp.status_code, resp.content

    def status(self) -> dict:
        return {
            "name": self.name,
            "upstream": self.upstream,
            "commands": self.allow_list.names(),
        }

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def make_server(self) -> "AgentHTTPServer":
        host, port = split_listen(self.listen)
        server = AgentHTTPServer((host, port), self)
        self.port = server.server_address[1]
        return server

    def run(self, watch_scripts: bool = False) -> None:
        server = self.make_server()
        watcher = ScriptDirWatcher(self.allow_list) if watch_scripts else None
        if watcher is not None:
            watcher.start()

        def shutdown_handler(signum, frame):
            log.info(f"Received signal {signum}, shutting down...")
            self.shutdown_event.set()

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)

        threads = [
            threading.Thread(target=server.serve_forever, name="http-server", daemon=True),
            threading.Thread(target=self.registration_loop, name="registration", daemon=True),
        ]
        for t in threads:
            t.start()
        log.info(f"Agent {self.name!r} listening on port {self.port}, upstream {self.upstream}")

        try:
            while not self.shutdown_event.is_set():
                self.shutdown_event.wait(1)
        except KeyboardInterrupt:
            log.info("Shutting down")
        finally:
            self.shutdown_event.set()
            server.shutdown()
            server.server_close()
            if watcher is not None:
                watcher.stop()
            for t in threads:
                t.join(timeout=2)


class AgentHTTPServer(ThreadingHTTPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address, agent: Agent):
        super().__init__(address, AgentRequestHandler)
        self.agent = agent


class AgentRequestHandler(BaseHTTPRequestHandler):
    server: AgentHTTPServer

    def log_message(self, format, *args):
        log.debug(f"{self.client_address[0]} - {format % args}")

    def send_body(self, body: bytes, status: int = 200, content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        parsed = urllib.parse.urlsplit(self.path)
        if parsed.path == "/":
            body = json.dumps(self.server.agent.status()).encode()
            self.send_body(body, content_type="application/json")
            return
        if not parsed.path.startswith("/execute/"):
            self.send_body(b"Not found", 404)
            return

        command = urllib.parse.unquote(parsed.path[len("/execute/") :])
        params = urllib.parse.parse_qs(parsed.query, keep_blank_values=True)
        sender = (params.get("from") or [""])[0]
        args = params.get("args", [])
        status, body = self.server.agent.execute(command, args, sender)
        self.send_body(body, status)

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else b""
        path = urllib.parse.urlsplit(self.path).path
        if not path.startswith("/message/"):
            self.send_body(b"Not found", 404)
            return
        status, resp_body = self.server.agent.proxy_message(path[len("/message/") :], body)
        self.send_body(resp_body, status)
