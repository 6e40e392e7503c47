"""Shared fixtures: replay builders and a scripted engine binary."""

import base64
import json
import os
import socket
import stat
import sys
from pathlib import Path

import pytest

from .config import HarnessSettings
from .roster import PlayerIdentity, encode_roster

REPO_ROOT = Path(__file__).resolve().parent.parent

PLAYERS = [
    PlayerIdentity(name="Alice", id="id-alice"),
    PlayerIdentity(name="Bob", id="id-bob"),
]


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def action(player, client_to_server, type_tag, payload=b""):
    return {
        "player": player,
        "clientToServer": client_to_server,
        "type": type_tag,
        "payload": base64.b64encode(payload).decode("ascii"),
    }


def replay_dict(actions, port=None, seed=42, extra_args=()):
    return {
        "cmdlineArgs": [
            "--replay=true",
            f"--players={encode_roster(PLAYERS, ['deck-a', 'deck-b'])}",
            f"--port={port or free_port()}",
            "--seed=1",
            *extra_args,
        ],
        "seed": seed,
        "actions": actions,
    }


# A short, plausible session: both players send a greeting, the engine
# answers each, then player 0 acts and both get a state update.
SESSION = [
    action(0, True, 1, b"hello"),
    action(0, False, 2, b"welcome 0"),
    action(1, True, 1, b"hello"),
    action(1, False, 2, b"welcome 1"),
    action(0, True, 7, b"\x00\x01\x02"),
    action(0, False, 9, b"state\x00\xff"),
    action(1, False, 9, b"state\x00\xff"),
]


@pytest.fixture
def settings():
    return HarnessSettings(
        ENGINE_HOST="127.0.0.1",
        RECEIVE_TIMEOUT=5.0,
        HANDSHAKE_TIMEOUT=5.0,
        STARTUP_TIMEOUT=15.0,
        SHUTDOWN_GRACE=5.0,
    )


@pytest.fixture
def engine_binary(tmp_path):
    """Executable wrapper that starts the scripted fake engine."""
    wrapper = tmp_path / "bin" / "engine"
    wrapper.parent.mkdir()
    pythonpath = os.pathsep.join(filter(None, [str(REPO_ROOT), os.environ.get("PYTHONPATH")]))
    wrapper.write_text(
        "#!/bin/sh\n"
        f"PYTHONPATH='{pythonpath}' exec '{sys.executable}' -m replay_harness._testing_engine \"$@\"\n"
    )
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(wrapper)


@pytest.fixture
def write_session(tmp_path):
    """
    Write a replay and the script the fake engine follows.

    By default the engine plays exactly the recorded session; pass
    `engine_actions` to make it diverge and `engine_flags` for fault injection.
    """
    counter = {"n": 0}

    def _write(actions=None, engine_actions=None, engine_flags=(), name=None):
        counter["n"] += 1
        stem = name or f"replay_{counter['n']}"
        actions = SESSION if actions is None else actions
        engine_actions = actions if engine_actions is None else engine_actions
        port = free_port()
        script_dir = tmp_path / "scripts"
        script_dir.mkdir(exist_ok=True)
        script_path = script_dir / f"{stem}.script.json"
        extra = [f"--script={script_path}", *engine_flags]
        script_path.write_text(json.dumps(replay_dict(engine_actions, port=port, extra_args=extra)))

        replay_dir = tmp_path / "replays"
        replay_dir.mkdir(exist_ok=True)
        replay_path = replay_dir / f"{stem}.json"
        replay_path.write_text(json.dumps(replay_dict(actions, port=port, extra_args=extra)))
        return replay_path

    return _write
