"""
Replay Harness.

Replays recorded two-player game sessions against a fresh engine build and
fails on the first wire-level difference.

Core Principles:
- ORDERED: actions are applied strictly in recorded order
- BYTE-EXACT: engine output must equal the recording byte for byte
- CONTAINED: every engine process and socket is released when a replay ends
"""

from .engine import InteractiveUpdatePolicy, ReplayVerifier, StrictPolicy, verify_replay
from .errors import (
    EngineStartupFailed,
    HandshakeFailed,
    HarnessError,
    HarnessErrorCode,
    HarnessException,
    MalformedReplay,
    PacketMismatch,
    ReceiveTimeout,
    ReplayOutcome,
    UnsolicitedSend,
    VerificationStatus,
)
from .replay import GameAction, Replay, load, save
from .roster import PlayerIdentity, decode_roster
from .runner import RunResult, run_directory, run_path, run_replay_file

__all__ = [
    "EngineStartupFailed",
    "GameAction",
    "HandshakeFailed",
    "HarnessError",
    "HarnessErrorCode",
    "HarnessException",
    "InteractiveUpdatePolicy",
    "MalformedReplay",
    "PacketMismatch",
    "PlayerIdentity",
    "ReceiveTimeout",
    "Replay",
    "ReplayOutcome",
    "ReplayVerifier",
    "RunResult",
    "StrictPolicy",
    "UnsolicitedSend",
    "VerificationStatus",
    "decode_roster",
    "load",
    "run_directory",
    "run_path",
    "run_replay_file",
    "save",
    "verify_replay",
]
