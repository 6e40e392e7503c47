"""
replay_harness/test_engine.py - Verification Engine Tests

Runs ReplayVerifier over socket pairs; the test plays the engine side.

Tests:
- Empty replays pass
- Outbound frames are written once, byte-identical to full_frame()
- Matching inbound messages never reach the mismatch policy
- Unread output for the sending player blocks the send (UnsolicitedSend)
- Missing output is ReceiveTimeout
- Differences fail strictly, or update the recording when accepted
"""
import json
import logging
import socket

import pytest

from .conftest import action, replay_dict
from .engine import (
    InteractiveUpdatePolicy,
    ReplayVerifier,
    StrictPolicy,
    describe_difference,
)
from .errors import (
    HarnessErrorCode,
    MalformedReplay,
    PacketMismatch,
    ReceiveTimeout,
    UnsolicitedSend,
)
from .framing import FramedConnection, TerminatorCodec
from .replay import Replay, load

END = b"\xfa\xfb"
CODEC = TerminatorCodec(END)


class RecordingConnection(FramedConnection):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes = []

    def send_frame(self, frame):
        self.writes.append(frame)
        super().send_frame(frame)


@pytest.fixture
def wire():
    """Two harness connections and the matching engine-side sockets."""
    pairs = [socket.socketpair() for _ in range(2)]
    connections = {
        index: RecordingConnection(harness, CODEC, label=f"player {index}")
        for index, (harness, _) in enumerate(pairs)
    }
    engine = {index: engine_side for index, (_, engine_side) in enumerate(pairs)}
    yield connections, engine
    for connection in connections.values():
        connection.close()
    for sock in engine.values():
        sock.close()


def make_replay(actions):
    return Replay.model_validate(replay_dict(actions, port=4000))


def never_asked(question):
    raise AssertionError(f"policy should not be consulted: {question}")


class TestPassingReplays:

    def test_empty_replay_passes(self, wire):
        connections, _ = wire

        assert ReplayVerifier(make_replay([]), connections).run() == 0

    def test_outbound_frame_written_in_one_operation(self, wire):
        connections, engine = wire
        replay = make_replay([action(1, True, 7, b"\x00move\xff")])

        ReplayVerifier(replay, connections).run()

        expected = replay.actions[0].full_frame(CODEC)
        assert connections[1].writes == [expected]
        assert connections[0].writes == []
        assert engine[1].recv(256) == expected

    def test_matching_inbound_does_not_prompt(self, wire):
        connections, engine = wire
        replay = make_replay([action(0, False, 2, b"state"), action(1, False, 2, b"other")])
        engine[0].sendall(b"\x02state" + END)
        engine[1].sendall(b"\x02other" + END)

        verifier = ReplayVerifier(
            replay, connections, policy=InteractiveUpdatePolicy(never_asked), receive_timeout=1.0
        )

        assert verifier.run() == 2
        assert verifier.updated_actions == []

    def test_actions_route_by_resolved_index(self, wire):
        connections, engine = wire
        # Swap which socket answers for which index
        swapped = {0: connections[1], 1: connections[0]}
        replay = make_replay([action(0, True, 1, b"x")])

        ReplayVerifier(replay, swapped).run()

        assert engine[1].recv(64) == b"\x01x" + END


class TestUnsolicitedSend:

    def test_pending_output_on_target_connection(self, wire):
        connections, engine = wire
        replay = make_replay([action(0, True, 1, b"input")])
        engine[0].sendall(b"\x09surprise" + END)

        with pytest.raises(UnsolicitedSend) as exc_info:
            ReplayVerifier(replay, connections).run()

        assert exc_info.value.error.action_index == 0
        assert connections[0].writes == []

    def test_pending_output_on_other_connection_does_not_block(self, wire):
        connections, engine = wire
        replay = make_replay([action(0, True, 1, b"input")])
        engine[1].sendall(b"\x09later" + END)

        assert ReplayVerifier(replay, connections).run() == 1
        assert engine[0].recv(64) == b"\x01input" + END

    def test_interleaved_output_for_both_players(self, wire):
        """Output queued for player 1 waits while player 0 answers its own message."""
        connections, engine = wire
        replay = make_replay([
            action(0, False, 2, b"a"),
            action(0, True, 1, b"b"),
            action(1, False, 2, b"c"),
        ])
        engine[0].sendall(b"\x02a" + END)
        engine[1].sendall(b"\x02c" + END)

        assert ReplayVerifier(replay, connections, receive_timeout=1.0).run() == 3
        assert connections[0].writes == [b"\x01b" + END]

    def test_buffered_surplus_counts_as_pending(self, wire):
        connections, engine = wire
        replay = make_replay([action(0, False, 2, b"a"), action(0, True, 1, b"b")])
        engine[0].sendall(b"\x02a" + END + b"\x02extra" + END)

        with pytest.raises(UnsolicitedSend) as exc_info:
            ReplayVerifier(replay, connections, receive_timeout=1.0).run()

        assert exc_info.value.error.action_index == 1


class TestReceiveTimeout:

    def test_no_output(self, wire):
        connections, _ = wire
        replay = make_replay([action(1, False, 2, b"never")])

        with pytest.raises(ReceiveTimeout) as exc_info:
            ReplayVerifier(replay, connections, receive_timeout=0.1).run()

        assert exc_info.value.error.code == HarnessErrorCode.RECEIVE_TIMEOUT
        assert exc_info.value.error.action_index == 0

    def test_engine_hung_up(self, wire):
        connections, engine = wire
        replay = make_replay([action(0, False, 2, b"never")])
        engine[0].close()

        with pytest.raises(ReceiveTimeout):
            ReplayVerifier(replay, connections, receive_timeout=1.0).run()

    def test_output_to_other_player_does_not_satisfy(self, wire):
        connections, engine = wire
        replay = make_replay([action(0, False, 2, b"mine")])
        engine[1].sendall(b"\x02mine" + END)

        with pytest.raises(ReceiveTimeout):
            ReplayVerifier(replay, connections, receive_timeout=0.1).run()


class TestStrictMismatch:

    def test_length_difference(self, wire, caplog):
        connections, engine = wire
        replay = make_replay([action(0, False, 2, b"abc")])
        engine[0].sendall(b"\x02abcd" + END)

        with caplog.at_level(logging.ERROR), pytest.raises(PacketMismatch) as exc_info:
            ReplayVerifier(replay, connections, policy=StrictPolicy(), receive_timeout=1.0).run()

        details = exc_info.value.error.details
        assert details["expected_length"] == 4
        assert details["observed_length"] == 5
        assert "Packets have different lengths: 4 vs 5" in caplog.text

    def test_byte_difference(self, wire, caplog):
        connections, engine = wire
        replay = make_replay([action(1, False, 2, b"zz"), action(0, False, 2, b"abc")])
        engine[1].sendall(b"\x02zz" + END)
        engine[0].sendall(b"\x02abX" + END)

        with caplog.at_level(logging.ERROR), pytest.raises(PacketMismatch) as exc_info:
            ReplayVerifier(replay, connections, receive_timeout=1.0).run()

        error = exc_info.value.error
        assert error.action_index == 1
        assert error.details["first_offset"] == 3
        assert error.details["offsets"] == [(3, ord("X"), ord("c"))]
        assert "[3]: 88 vs. 99 (X vs. c)" in caplog.text

    def test_type_tag_difference(self, wire):
        connections, engine = wire
        replay = make_replay([action(0, False, 2, b"abc")])
        engine[0].sendall(b"\x03abc" + END)

        with pytest.raises(PacketMismatch) as exc_info:
            ReplayVerifier(replay, connections, receive_timeout=1.0).run()

        assert exc_info.value.error.details["first_offset"] == 0

    def test_unmapped_player(self, wire):
        connections, _ = wire
        replay = make_replay([action(1, True, 1, b"x")])

        with pytest.raises(MalformedReplay):
            ReplayVerifier(replay, {0: connections[0]}).run()


class TestInteractiveUpdate:

    def write_replay(self, tmp_path, actions):
        path = tmp_path / "golden.json"
        path.write_text(json.dumps(replay_dict(actions, port=4000)))
        return path

    def test_accepted_update_is_persisted(self, wire, tmp_path):
        connections, engine = wire
        path = self.write_replay(tmp_path, [
            action(1, False, 2, b"first"),
            action(0, False, 2, b"old"),
            action(1, False, 2, b"keep"),
        ])
        replay = load(path)
        engine[1].sendall(b"\x02first" + END + b"\x02keep" + END)
        engine[0].sendall(b"\x05brand new" + END)
        questions = []

        def accept(question):
            questions.append(question)
            return True

        verifier = ReplayVerifier(
            replay,
            connections,
            policy=InteractiveUpdatePolicy(accept),
            receive_timeout=1.0,
            replay_path=path,
        )

        assert verifier.run() == 3
        assert verifier.updated_actions == [1]
        assert len(questions) == 1

        persisted = load(path)
        assert persisted.actions[1].type_tag == 5
        assert persisted.actions[1].payload == b"brand new"
        assert persisted.actions[0] == replay.actions[0]
        assert persisted.actions[2].payload == b"keep"
        assert persisted.cmdline_args == replay.cmdline_args
        assert persisted.seed == replay.seed

    def test_declined_update_fails_and_leaves_file(self, wire, tmp_path):
        connections, engine = wire
        path = self.write_replay(tmp_path, [action(0, False, 2, b"old")])
        before = path.read_text()
        engine[0].sendall(b"\x02new" + END)

        verifier = ReplayVerifier(
            load(path),
            connections,
            policy=InteractiveUpdatePolicy(lambda question: False),
            receive_timeout=1.0,
            replay_path=path,
        )

        with pytest.raises(PacketMismatch):
            verifier.run()
        assert path.read_text() == before

    def test_update_needs_a_file(self, wire):
        connections, engine = wire
        engine[0].sendall(b"\x02new" + END)
        verifier = ReplayVerifier(
            make_replay([action(0, False, 2, b"old")]),
            connections,
            policy=InteractiveUpdatePolicy(never_asked),
            receive_timeout=1.0,
        )

        with pytest.raises(PacketMismatch):
            verifier.run()

    def test_default_prompt_reads_stdin(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "yes")

        assert InteractiveUpdatePolicy().accept_update(0, b"a", b"b") is True


def test_describe_difference_equal_lengths():
    details = describe_difference(b"\x01abc", b"\x01xbz")

    assert details["first_offset"] == 1
    assert details["differing_bytes"] == 2
    assert details["offsets"] == [(1, ord("x"), ord("a")), (3, ord("z"), ord("c"))]


def test_describe_difference_lengths_only():
    assert describe_difference(b"\x01", b"\x01ab") == {"expected_length": 1, "observed_length": 3}
