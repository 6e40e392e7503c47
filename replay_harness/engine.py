"""
replay_harness/engine.py - Verification Engine

Walks a replay's action log against a live engine.

Guarantees:
- Actions are applied strictly in log order, one at a time
- An outbound frame is never written while output for that player is unread
- Every inbound message is compared byte for byte with the golden message
- The replay file is only rewritten after the operator accepts a difference

The response to a difference is an injected MismatchPolicy, so strict and
interactive-update runs share one comparison path.
"""
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Union

from . import replay as replay_store
from .bootstrap import EngineSession
from .config import HarnessSettings, get_settings
from .errors import (
    MalformedReplay,
    PacketMismatch,
    ReceiveTimeout,
    ReplayOutcome,
    UnsolicitedSend,
    VerificationStatus,
)
from .framing import FramedConnection
from .replay import GameAction, Replay

logger = logging.getLogger(__name__)


class MismatchPolicy(Protocol):
    def accept_update(self, index: int, expected: bytes, observed: bytes) -> bool:
        """Return True to adopt `observed` as the new golden message."""
        ...


class StrictPolicy:
    """Every difference fails the replay."""

    def accept_update(self, index: int, expected: bytes, observed: bytes) -> bool:
        return False


def prompt_yes_no(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


class InteractiveUpdatePolicy:
    """
    Ask the operator whether the engine's new output should become golden.

    Parameters:
        confirm (Callable[[str], bool] | None): Question callback; defaults to a
            y/N prompt on stdin.
    """

    def __init__(self, confirm: Optional[Callable[[str], bool]] = None):
        self.confirm = confirm or prompt_yes_no

    def accept_update(self, index: int, expected: bytes, observed: bytes) -> bool:
        return self.confirm(
            f"[{index}]: Replace the recorded message ({len(expected)} bytes) "
            f"with the engine's output ({len(observed)} bytes)?"
        )


def describe_difference(expected: bytes, observed: bytes, limit: int = 64) -> Dict[str, object]:
    """
    Summarise how two messages differ.

    Returns:
        dict: "expected_length" and "observed_length"; when lengths match also
        "first_offset" and "offsets", a list of (offset, observed byte,
        expected byte) for up to `limit` differing positions.
    """
    details: Dict[str, object] = {
        "expected_length": len(expected),
        "observed_length": len(observed),
    }
    if len(expected) == len(observed):
        offsets = [
            (j, observed[j], expected[j])
            for j in range(len(expected))
            if observed[j] != expected[j]
        ]
        details["first_offset"] = offsets[0][0] if offsets else None
        details["offsets"] = offsets[:limit]
        details["differing_bytes"] = len(offsets)
    return details


def _printable(value: int) -> str:
    char = chr(value)
    return char if char.isprintable() else "."


def log_difference(index: int, expected: bytes, observed: bytes, details: Dict[str, object]) -> None:
    if expected[:1] != observed[:1]:
        logger.error(
            "[%d]: Message types differ: %s vs %s",
            index,
            observed[0] if observed else None,
            expected[0] if expected else None,
        )
    if len(expected) != len(observed):
        logger.error(
            "[%d]: Packets have different lengths: %d vs %d", index, len(expected), len(observed)
        )
        return
    logger.error("[%d]: Packet difference (%d byte(s)):", index, details["differing_bytes"])
    for offset, got, want in details["offsets"]:
        logger.error(
            "[%d]: %d vs. %d (%s vs. %s)", offset, got, want, _printable(got), _printable(want)
        )


class ReplayVerifier:
    """
    Drives one replay over already-established connections.

    Parameters:
        replay (Replay): The golden record; its action list is updated in place
            when the policy accepts a difference.
        connections (Dict[int, FramedConnection]): Connection per resolved player index.
        policy (MismatchPolicy): Decides what happens on a difference.
        receive_timeout (float): Seconds to wait for each inbound message.
        replay_path (str | Path | None): Where accepted updates are persisted.
    """

    def __init__(
        self,
        replay: Replay,
        connections: Dict[int, FramedConnection],
        policy: Optional[MismatchPolicy] = None,
        receive_timeout: Optional[float] = None,
        replay_path: Optional[Union[str, Path]] = None,
    ):
        self.replay = replay
        self.connections = connections
        self.policy = policy or StrictPolicy()
        self.receive_timeout = (
            receive_timeout if receive_timeout is not None else get_settings().RECEIVE_TIMEOUT
        )
        self.replay_path = replay_path
        self.position = 0
        self.updated_actions: List[int] = []

    def run(self) -> int:
        """
        Apply every action in order.

        Returns:
            int: Number of actions verified.

        Raises:
            UnsolicitedSend, ReceiveTimeout, PacketMismatch, MalformedReplay
        """
        for index, action in enumerate(self.replay.actions):
            self.position = index
            connection = self._connection_for(index, action)
            if action.client_to_server:
                self._send(index, action, connection)
            else:
                self._expect(index, action, connection)
        self.position = len(self.replay.actions)
        return self.position

    def _connection_for(self, index: int, action: GameAction) -> FramedConnection:
        connection = self.connections.get(action.player)
        if connection is None:
            raise MalformedReplay(
                f"Action refers to player {action.player} but no connection has that index",
                action_index=index,
                details={"player": action.player, "indices": sorted(self.connections)},
            )
        return connection

    def _send(self, index: int, action: GameAction, connection: FramedConnection) -> None:
        # Output waiting for the other player is read by a later action
        if connection.has_pending():
            logger.error("[%d]: Core sent something but wanted to send", index)
            raise UnsolicitedSend(
                f"Engine sent data to player {action.player} while the replay expected to send",
                action_index=index,
                details={"player": action.player},
            )
        connection.send_frame(action.full_frame(connection.codec))

    def _expect(self, index: int, action: GameAction, connection: FramedConnection) -> None:
        observed = connection.receive(self.receive_timeout)
        if observed is None:
            logger.error("[%d]: Could not receive a packet in time", index)
            raise ReceiveTimeout(
                f"No message from player {action.player} within {self.receive_timeout}s",
                action_index=index,
                details={"player": action.player, "timeout": self.receive_timeout},
            )

        expected = action.message_bytes()
        if observed == expected:
            return

        details = describe_difference(expected, observed)
        log_difference(index, expected, observed, details)
        if observed and self.replay_path is not None and self.policy.accept_update(index, expected, observed):
            self._adopt(index, action, observed)
            return
        raise PacketMismatch(
            f"Message for player {action.player} differs from the recording",
            action_index=index,
            details=details,
        )

    def _adopt(self, index: int, action: GameAction, observed: bytes) -> None:
        self.replay.actions[index] = action.with_observed(observed)
        replay_store.save(self.replay_path, self.replay)
        self.updated_actions.append(index)
        logger.warning("[%d]: Recording updated with the engine's output", index)


def verify_replay(
    path: Union[str, Path],
    core_path: str,
    *,
    policy: Optional[MismatchPolicy] = None,
    profile: bool = False,
    settings: Optional[HarnessSettings] = None,
) -> ReplayOutcome:
    """
    Verify one replay file against a fresh engine process.

    Parameters:
        path (str | Path): Replay file.
        core_path (str): Engine binary.
        policy (MismatchPolicy | None): Difference handling; strict by default.
        profile (bool): Run the engine under the profiler launcher.
        settings (HarnessSettings | None): Overrides the global settings.

    Returns:
        ReplayOutcome: A PASS outcome.

    Raises:
        HarnessException: Any failure; the engine has been stopped and both
            connections closed by the time it propagates.
    """
    settings = settings or get_settings()
    replay = replay_store.load(path)
    with EngineSession(replay, core_path, profile=profile, settings=settings) as session:
        verifier = ReplayVerifier(
            replay,
            session.connections,
            policy=policy,
            receive_timeout=settings.RECEIVE_TIMEOUT,
            replay_path=path,
        )
        verified = verifier.run()
    return ReplayOutcome(
        path=str(path),
        status=VerificationStatus.PASS,
        action_count=len(replay.actions),
        actions_verified=verified,
        updated_actions=verifier.updated_actions,
    )
