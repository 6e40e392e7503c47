"""
replay_harness/bootstrap.py - Session Bootstrap

Starts the engine under test and hands back two handshake-verified
connections keyed by the player index the engine assigned.

Lifecycle:
1. Open a readiness pipe; the child inherits the write end (--pipe=<fd>)
2. Spawn the engine with the recorded launch arguments plus seed and pipe
3. Block until the engine writes one byte (listener ready) or exits
4. Connect once per roster identity, then send each identity and read one
   index byte
5. On scope exit: close connections, then reap the engine (grace period on
   success, immediate kill on failure)
"""
import logging
import os
import select
import shlex
import socket
import subprocess
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Optional

from .config import HarnessSettings, get_settings
from .errors import EngineStartupFailed, HandshakeFailed
from .framing import FramedConnection, codec_from_settings
from .replay import Replay
from .roster import PlayerIdentity

logger = logging.getLogger(__name__)

REPLAY_FLAG = "--replay"
PIPE_ARG = "--pipe="
SEED_ARG = "--seed="


def build_launch_arguments(replay: Replay, pipe_handle: str) -> list[str]:
    """
    Rebuild the engine's arguments from the recorded command line.

    Replay-mode markers and any recorded seed or pipe handle are dropped; the
    replay's seed and the live pipe handle are appended.
    """
    arguments = [
        arg for arg in replay.cmdline_args
        if not (
            arg == REPLAY_FLAG
            or arg.startswith(REPLAY_FLAG + "=")
            or arg.startswith(PIPE_ARG)
            or arg.startswith(SEED_ARG)
        )
    ]
    arguments.append(f"{SEED_ARG}{replay.seed}")
    arguments.append(f"{PIPE_ARG}{pipe_handle}")
    return arguments


def build_launch_command(
    replay: Replay,
    core_path: str,
    pipe_handle: str,
    profile: bool = False,
    settings: Optional[HarnessSettings] = None,
) -> list[str]:
    """
    Build the full argv used to start the engine.

    Parameters:
        replay (Replay): Replay whose launch arguments and seed are used.
        core_path (str): Path to the engine binary.
        pipe_handle (str): Descriptor the engine writes its readiness byte to.
        profile (bool): Wrap the command in the configured profiler launcher.
        settings (HarnessSettings | None): Overrides the global settings.

    Returns:
        list[str]: argv for subprocess.Popen.
    """
    settings = settings or get_settings()
    command = [str(core_path)] + build_launch_arguments(replay, pipe_handle)
    if profile:
        command = shlex.split(settings.PROFILER_COMMAND) + command
    return command


class EngineSession:
    """
    A running engine plus one connection per player.

    Use as a context manager; every resource acquired in __enter__ is released
    in __exit__ on every path, including failures part-way through startup.
    """

    def __init__(
        self,
        replay: Replay,
        core_path: str,
        profile: bool = False,
        settings: Optional[HarnessSettings] = None,
    ):
        self.replay = replay
        self.core_path = str(core_path)
        self.profile = profile
        self.settings = settings or get_settings()
        self.process: Optional[subprocess.Popen] = None
        self.connections: dict[int, FramedConnection] = {}
        self._stack = ExitStack()
        self._failed = False

    def __enter__(self) -> "EngineSession":
        try:
            self._start()
        except BaseException:
            self._failed = True
            self._stack.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self._failed = True
        self._stack.close()

    def _start(self) -> None:
        players = self.replay.roster()
        port = self.replay.port()

        read_fd, write_fd = os.pipe()
        self._stack.callback(_close_fd, read_fd)
        try:
            command = build_launch_command(
                self.replay, self.core_path, str(write_fd), self.profile, self.settings
            )
            logger.debug("Starting engine: %s", shlex.join(command))
            try:
                self.process = subprocess.Popen(
                    command,
                    cwd=Path(self.core_path).resolve().parent,
                    pass_fds=(write_fd,),
                )
            except OSError as e:
                raise EngineStartupFailed(f"Cannot start engine {self.core_path}: {e}") from e
        finally:
            # Only the child may hold the write end, so EOF means it went away
            os.close(write_fd)
        self._stack.callback(self._stop_process)

        self._wait_ready(read_fd)

        codec = codec_from_settings(self.settings)
        # Every player is connected before any identity is sent; the engine
        # may not answer a handshake until it has accepted both.
        sockets = []
        for player in players:
            sock = self._connect(port, player)
            self._stack.callback(_close_socket, sock)
            sockets.append(sock)

        for position, (player, sock) in enumerate(zip(players, sockets)):
            index = self._handshake(sock, player)
            if index in self.connections:
                raise HandshakeFailed(
                    f"Engine assigned index {index} to both {self.connections[index].label} "
                    f"and {player.id}",
                    details={"index": index},
                )
            connection = FramedConnection(sock, codec, label=f"player {index} ({player.id})")
            self._stack.callback(connection.close)
            self.connections[index] = connection
            logger.debug("Roster slot %d (%s) resolved to player index %d", position, player.id, index)

    def _wait_ready(self, read_fd: int) -> None:
        timeout = self.settings.STARTUP_TIMEOUT
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = self.settings.POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise EngineStartupFailed(
                        f"Engine did not signal readiness within {timeout}s"
                    )
                wait = min(wait, remaining)
            readable, _, _ = select.select([read_fd], [], [], wait)
            if readable:
                if os.read(read_fd, 1):
                    logger.debug("Engine signalled readiness")
                    return
                raise EngineStartupFailed(
                    "Engine closed the readiness pipe without signalling",
                    details={"returncode": self.process.poll()},
                )
            if self.process.poll() is not None:
                raise EngineStartupFailed(
                    f"Engine exited with code {self.process.returncode} before signalling readiness",
                    details={"returncode": self.process.returncode},
                )

    def _connect(self, port: int, player: PlayerIdentity) -> socket.socket:
        try:
            return socket.create_connection(
                (self.settings.ENGINE_HOST, port), timeout=self.settings.HANDSHAKE_TIMEOUT
            )
        except OSError as e:
            raise HandshakeFailed(
                f"Cannot connect to {self.settings.ENGINE_HOST}:{port} for {player.id}: {e}"
            ) from e

    def _handshake(self, sock: socket.socket, player: PlayerIdentity) -> int:
        """Send the identity and return the index byte the engine answers with."""
        deadline = time.monotonic() + self.settings.HANDSHAKE_TIMEOUT
        try:
            sock.sendall(player.handshake_bytes)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise HandshakeFailed(
                        f"No player index for {player.id} within "
                        f"{self.settings.HANDSHAKE_TIMEOUT}s"
                    )
                readable, _, _ = select.select(
                    [sock], [], [], min(self.settings.POLL_INTERVAL, remaining)
                )
                if readable:
                    reply = sock.recv(1)
                    break
                if self.process.poll() is not None:
                    raise HandshakeFailed(
                        f"Engine exited with code {self.process.returncode} during handshake",
                        details={"returncode": self.process.returncode},
                    )
        except OSError as e:
            raise HandshakeFailed(f"Handshake with engine failed for {player.id}: {e}") from e

        if not reply:
            raise HandshakeFailed(f"Engine closed the connection during handshake for {player.id}")
        index = reply[0]
        if index not in (0, 1):
            raise HandshakeFailed(
                f"Engine assigned invalid player index {index} to {player.id}",
                details={"index": index},
            )
        sock.settimeout(None)
        return index

    def _stop_process(self) -> None:
        process = self.process
        if process is None or process.poll() is not None:
            return
        if not self._failed:
            try:
                process.wait(timeout=self.settings.SHUTDOWN_GRACE)
                return
            except subprocess.TimeoutExpired:
                logger.debug("Engine still running after %ss, killing", self.settings.SHUTDOWN_GRACE)
        process.kill()
        process.wait()


def _close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


def _close_socket(sock: socket.socket) -> None:
    sock.close()
