"""
replay_harness/_testing_engine.py - Scripted Engine for Tests

Honours the engine subprocess contract (readiness byte on --pipe, two TCP
players, identity handshake) and then plays the server side of a script,
which is a replay file: inbound actions are read and discarded, outbound
actions are sent verbatim.

Usage:
    python -m replay_harness._testing_engine --players=<b64> --port=<n> --seed=<n>
        --pipe=<fd> --script=<replay.json> [--reverse-roster] [--accept-all-first]
        [--exit-before-ready] [--silent-handshake] [--framing=terminator|length]
"""
import argparse
import os
import socket
import sys
import time

from .config import HarnessSettings
from .framing import FramedConnection, codec_from_settings
from .replay import load
from .roster import decode_roster

IO_TIMEOUT = 30.0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="testing-engine")
    parser.add_argument("--players", required=True)
    parser.add_argument("--port", type=int, required=True)
    parser.add_argument("--seed", type=int, required=True)
    parser.add_argument("--pipe", type=int, required=True)
    parser.add_argument("--script", required=True)
    parser.add_argument("--reverse-roster", action="store_true")
    parser.add_argument("--accept-all-first", action="store_true")
    parser.add_argument("--exit-before-ready", action="store_true")
    parser.add_argument("--silent-handshake", action="store_true")
    parser.add_argument("--framing", choices=["terminator", "length"], default="terminator")
    args, _ = parser.parse_known_args(argv)
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.exit_before_ready:
        return 3

    ids = [player.id for player in decode_roster(args.players)]
    if args.reverse_roster:
        ids.reverse()
    script = load(args.script)
    codec = codec_from_settings(HarnessSettings(FRAMING=args.framing))

    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind(("127.0.0.1", args.port))
    listener.listen(2)
    os.write(args.pipe, b"\x01")
    os.close(args.pipe)

    listener.settimeout(IO_TIMEOUT)
    if args.accept_all_first:
        # No identity is answered until both players are connected
        accepted = [listener.accept()[0] for _ in range(2)]
        pending = iter(accepted)
    else:
        pending = (listener.accept()[0] for _ in range(2))

    connections = {}
    for sock in pending:
        sock.settimeout(IO_TIMEOUT)
        identity = sock.recv(256).decode("utf-8")
        if args.silent_handshake:
            time.sleep(IO_TIMEOUT)
            return 4
        index = ids.index(identity)
        sock.sendall(bytes([index]))
        sock.settimeout(None)
        connections[index] = FramedConnection(sock, codec, label=identity)
    listener.close()

    for action in script.actions:
        connection = connections[action.player]
        if action.client_to_server:
            if connection.receive(IO_TIMEOUT) is None:
                return 1
        else:
            connection.send_message(action.message_bytes())

    # Stay up until the harness hangs up
    for connection in connections.values():
        while connection.receive(IO_TIMEOUT) is not None:
            pass
        connection.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
