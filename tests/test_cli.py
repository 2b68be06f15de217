"""Tests for the command line entry point."""

import json
import threading
from pathlib import Path

import pytest

from tbot_relay.cli import apply_args, build_parser, hub_url_for, run_agent, run_hub, run_send
from tbot_relay.config import Settings
from tbot_relay.hub import HubHTTPServer, HubState
from tbot_relay.store import Store


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        base_dir=tmp_path,
        listen="127.0.0.1:1",
        agent_name="box",
        http_timeout=2,
    )


def test_hub_url_for():
    assert hub_url_for(":8684") == "http://localhost:8684"
    assert hub_url_for("0.0.0.0:9000") == "http://localhost:9000"
    assert hub_url_for("10.1.2.3:9000") == "http://10.1.2.3:9000"


def test_flags_override_settings(settings):
    args = build_parser().parse_args(
        [
            "-v",
            "--data",
            "/var/tbot",
            "--http",
            ":9999",
            "agent",
            "--upstream",
            "http://hub:8684/",
            "--name",
            "web1",
            "--timeout",
            "5",
            "--watch",
        ]
    )
    updated = apply_args(settings, args)

    assert updated.data_dir == Path("/var/tbot")
    assert updated.listen == ":9999"
    assert updated.upstream == "http://hub:8684"
    assert updated.agent_name == "web1"
    assert updated.exec_timeout == 5.0
    assert updated.watch_scripts is True
    assert updated.log_level == "DEBUG"


def test_unset_flags_keep_settings(settings):
    updated = apply_args(settings, build_parser().parse_args(["agent"]))
    assert updated == settings


def test_send_joins_text():
    args = build_parser().parse_args(["send", "alice", "hello", "there"])
    assert args.user == "alice"
    assert args.text == ["hello", "there"]


def test_hub_needs_token(settings):
    assert run_hub(settings) == 1


def test_agent_needs_upstream(settings):
    assert run_agent(settings) == 1


def test_send_without_hub_queues_directly(settings):
    assert run_send(settings, "alice", "deploy done") == 0

    queues = json.loads((settings.data_dir / "queues.json").read_text())
    assert queues == {"alice": ["deploy done"]}


def test_send_fallback_survives_bad_user_records(settings):
    settings.data_dir.mkdir(parents=True)
    (settings.data_dir / "users.json").write_text(json.dumps([{"name": "x", "aliases": 5}]))

    assert run_send(settings, "alice", "still queued") == 0

    queues = json.loads((settings.data_dir / "queues.json").read_text())
    assert queues == {"alice": ["still queued"]}


def test_send_fails_when_data_dir_is_locked(settings):
    with Store.acquire(settings.data_dir):
        assert run_send(settings, "alice", "hi") == 1


def test_send_through_running_hub(settings, tmp_path, capsys):
    store = Store.acquire(tmp_path / "hubdata", threading.RLock())
    server = HubHTTPServer(("127.0.0.1", 0), HubState(store))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        hub_url = f"http://127.0.0.1:{server.server_address[1]}"
        assert run_send(settings, "bob", "via http", hub_url=hub_url) == 0
    finally:
        server.shutdown()
        server.server_close()

    assert store.pending("bob") == ["via http"]
    assert capsys.readouterr().out == "queued"
    store.close()
