"""End-to-end: a real agent registers with a real hub and runs a chat command."""

import threading

import pytest

from tbot_relay.agent import Agent
from tbot_relay.hub import HubHTTPServer, HubState
from tbot_relay.store import Store
from tbot_relay.telegram import ChatMessage


class RecordingBot:
    def __init__(self):
        self.sent = []

    def send(self, chat_id, text, reply_to=None):
        self.sent.append((chat_id, text, reply_to))

    def reply(self, msg, text):
        self.send(msg.chat_id, text, reply_to=msg.message_id)


def _serve(server):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


@pytest.fixture
def hub(tmp_path):
    store = Store.acquire(tmp_path / "data", threading.RLock())
    bot = RecordingBot()
    state = HubState(store, bot=bot, dispatch_timeout=10)
    server = _serve(HubHTTPServer(("127.0.0.1", 0), state))
    yield state, bot, f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
    store.close()


@pytest.fixture
def agent(tmp_path, hub):
    _, _, hub_url = hub
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    script = scripts / "greet.sh"
    script.write_text('#!/bin/sh\necho "hi $TBOT_SENDER, args: $*"\n')
    script.chmod(0o755)

    agent = Agent(name="box", upstream=hub_url, base_dir=scripts, listen="127.0.0.1:0")
    server = _serve(agent.make_server())
    yield agent
    server.shutdown()
    server.server_close()


def test_register_then_run_command(hub, agent):
    state, bot, _ = hub
    assert agent.register() is True

    reg = state.registry.get("box")
    assert reg.address == f"http://127.0.0.1:{agent.port}"

    state.handle_message(
        ChatMessage(
            message_id=5,
            chat_id=900,
            chat_type="private",
            sender="alice",
            text="/greet box one two",
        )
    )

    assert bot.sent == [(900, "hi alice, args: one two\n", 5)]


def test_unknown_command_error_reaches_the_chat(hub, agent):
    state, bot, _ = hub
    agent.register()
    reply = state.dispatch("alice", "/nope", "box", [])
    assert reply.startswith("NotFound:")


def test_agent_proxies_messages_to_hub(hub, agent):
    state, bot, _ = hub
    status, body = agent.proxy_message("carol", b"build finished")
    assert (status, body) == (200, b"queued")
    assert state.store.pending("carol") == ["build finished"]

    state.handle_message(
        ChatMessage(message_id=1, chat_id=77, chat_type="private", sender="carol", text="hi")
    )
    assert bot.sent[0] == (77, "build finished", None)
