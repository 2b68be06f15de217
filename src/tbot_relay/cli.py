# tbot-relay - Chat command relay hub and remote script agents
# Copyright (c) 2025 xnoto

"""Command line entry point.

    tbot-relay hub                       run the hub (needs TELEGRAM_TOKEN)
    tbot-relay agent --upstream URL      run an agent
    tbot-relay send <user> <text...>     deliver via a running hub, or queue directly
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import threading
import urllib.parse
from pathlib import Path

import requests

from tbot_relay import __version__
from tbot_relay.agent import Agent
from tbot_relay.config import Settings, configure_logging, load_settings, split_listen
from tbot_relay.errors import Locked, NetworkError, PersistenceError
from tbot_relay.executor import CommandAllowList
from tbot_relay.hub import Hub, HubState
from tbot_relay.store import Store
from tbot_relay.telegram import TelegramClient

log = logging.getLogger(__name__)


def _open_store(settings: Settings, lock: threading.RLock | None = None) -> Store:
    """Acquire and load the data directory. Raises Locked; load errors are logged."""
    log.info(f"Opening {settings.data_dir}")
    store = Store.acquire(settings.data_dir, lock)
    try:
        store.load()
    except PersistenceError as e:
        log.warning(f"Starting from partial state: {e}")
    return store


def _hub_state(settings: Settings, store: Store, bot) -> HubState:
    local_allow_list = None
    if settings.hub_local_exec:
        local_allow_list = CommandAllowList.scan(settings.base_dir)
    return HubState(
        store,
        bot=bot,
        aliases=settings.aliases,
        stale_after=settings.register_interval * settings.stale_after_intervals,
        dispatch_timeout=settings.dispatch_timeout,
        local_name=settings.agent_name,
        local_allow_list=local_allow_list,
        exec_timeout=settings.exec_timeout,
    )


def run_hub(settings: Settings) -> int:
    if not settings.telegram_token:
        log.error("You have to set environment variable TELEGRAM_TOKEN first!")
        return 1
    try:
        store = _open_store(settings, threading.RLock())
    except Locked as e:
        log.error(str(e))
        return 1

    with store:
        bot = TelegramClient(settings.telegram_token, timeout=settings.http_timeout)
        try:
            log.info(f"Bot started with {bot.get_me().get('username')!r}")
        except NetworkError as e:
            log.warning(f"Could not identify bot, polling anyway: {e}")
        Hub(settings, _hub_state(settings, store, bot)).run()
    return 0


def run_agent(settings: Settings) -> int:
    if not settings.upstream:
        log.error("An agent needs an upstream hub URL (--upstream or TBOT_UPSTREAM)")
        return 1
    agent = Agent(
        name=settings.agent_name,
        upstream=settings.upstream,
        base_dir=settings.base_dir,
        listen=settings.listen,
        timeout=settings.exec_timeout,
        register_interval=settings.register_interval,
        http_timeout=settings.http_timeout,
    )
    agent.run(watch_scripts=settings.watch_scripts)
    return 0


def hub_url_for(listen: str) -> str:
    host, port = split_listen(listen)
    if host in ("", "0.0.0.0", "::"):
        host = "localhost"
    return f"http://{host}:{port}"


def run_send(settings: Settings, user: str, text: str, hub_url: str | None = None) -> int:
    """Deliver through a running hub; if none answers, open the data directory ourselves."""
    url = f"{hub_url or hub_url_for(settings.listen)}/message/{urllib.parse.quote(user, safe='')}"
    log.info(f"Calling {url}")
    try:
        resp = requests.post(url, data=text.encode(), timeout=settings.http_timeout)
    except requests.RequestException as e:
        log.warning(f"Hub not reachable: {e}")
    else:
        log.info(f"{resp.status_code} {resp.reason}")
        sys.stdout.write(resp.text)
        return 0 if resp.ok else 1

    try:
        store = _open_store(settings)
    except Locked as e:
        log.error(str(e))
        return 1
    with store:
        bot = None
        if settings.telegram_token:
            bot = TelegramClient(settings.telegram_token, timeout=settings.http_timeout)
        state = _hub_state(settings, store, bot)
        if state.deliver_or_queue(user, text):
            log.info(f"Sent to {user}")
        else:
            log.info(f"Queued for {user}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tbot-relay", description="Relay chat commands to remote script agents."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose logging")
    parser.add_argument("--data", type=Path, help="data directory (users, queues, lock)")
    parser.add_argument("--http", dest="listen", help="HTTP address to listen on, e.g. :8684")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("hub", help="run the hub")

    agent = sub.add_parser("agent", help="run an agent")
    agent.add_argument("--upstream", help="hub base URL, e.g. http://hub:8684")
    agent.add_argument("--name", help="agent name (default: hostname)")
    agent.add_argument("--base-dir", type=Path, help="directory holding <command>.sh scripts")
    agent.add_argument("--timeout", type=float, help="script timeout in seconds")
    agent.add_argument(
        "--watch", action="store_true", default=None, help="re-scan scripts when they change"
    )

    send = sub.add_parser("send", help="send a message to a user")
    send.add_argument("--hub", help="hub base URL (default: derived from --http)")
    send.add_argument("user")
    send.add_argument("text", nargs="+")
    return parser


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Command line flags override env and config file settings."""
    overrides = {
        "data_dir": args.data,
        "listen": args.listen,
        "upstream": getattr(args, "upstream", None),
        "agent_name": getattr(args, "name", None),
        "base_dir": getattr(args, "base_dir", None),
        "exec_timeout": getattr(args, "timeout", None),
        "watch_scripts": getattr(args, "watch", None),
    }
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    settings = dataclasses.replace(
        settings, **{k: v for k, v in overrides.items() if v is not None}
    )
    if settings.upstream:
        settings.upstream = settings.upstream.rstrip("/")
    return settings


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = apply_args(load_settings(), args)
    configure_logging(settings.log_level)

    if args.command == "hub":
        return run_hub(settings)
    if args.command == "agent":
        return run_agent(settings)
    return run_send(settings, args.user, " ".join(args.text), args.hub)


if __name__ == "__main__":
    sys.exit(main())
