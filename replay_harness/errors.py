"""
replay_harness/errors.py - Error Taxonomy and Replay Outcomes

Every way a replay can fail has exactly one code. Errors are contracts, not strings.
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional


class VerificationStatus(str, Enum):
    """Final outcome of one replay."""
    PASS = "PASS"
    FAIL = "FAIL"


class HarnessErrorCode(str, Enum):
    # Input
    MALFORMED_REPLAY = "MALFORMED_REPLAY"

    # Session bootstrap
    ENGINE_STARTUP_FAILED = "ENGINE_STARTUP_FAILED"
    HANDSHAKE_FAILED = "HANDSHAKE_FAILED"

    # Verification
    UNSOLICITED_SEND = "UNSOLICITED_SEND"
    RECEIVE_TIMEOUT = "RECEIVE_TIMEOUT"
    PACKET_MISMATCH = "PACKET_MISMATCH"

    # Transport failures outside the taxonomy (reset connections, broken pipes)
    IO_ERROR = "IO_ERROR"


@dataclass(frozen=True)
class HarnessError:
    """Immutable description of a replay failure."""
    code: HarnessErrorCode
    message: str
    action_index: Optional[int] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize the HarnessError into a plain dictionary.

        Returns:
            dict: Dictionary with keys:
                - "code": string value of the error code.
                - "message": human-readable error message.
                - "action_index": index of the failing action, or None.
                - "details": additional context; empty dict if no details were set.
        """
        return {
            "code": self.code.value,
            "message": self.message,
            "action_index": self.action_index,
            "details": self.details or {},
        }


class HarnessException(Exception):
    """Base class for every per-replay failure."""
    code: HarnessErrorCode = HarnessErrorCode.IO_ERROR

    def __init__(
        self,
        message: str,
        *,
        action_index: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Create the exception and its attached HarnessError.

        Parameters:
            message (str): Human-readable description; also the exception message.
            action_index (Optional[int]): Index of the action being processed when the failure occurred.
            details (Optional[Dict[str, Any]]): Machine-readable context (lengths, offsets, byte values).
        """
        self.error = HarnessError(
            code=self.code,
            message=message,
            action_index=action_index,
            details=details,
        )
        if action_index is not None:
            message = f"[{action_index}]: {message}"
        super().__init__(message)


class MalformedReplay(HarnessException):
    """Replay file is unreadable, incomplete or lacks launch parameters."""
    code = HarnessErrorCode.MALFORMED_REPLAY


class EngineStartupFailed(HarnessException):
    """Engine process never signalled readiness."""
    code = HarnessErrorCode.ENGINE_STARTUP_FAILED


class HandshakeFailed(HarnessException):
    """Identity exchange did not yield a usable player index."""
    code = HarnessErrorCode.HANDSHAKE_FAILED


class UnsolicitedSend(HarnessException):
    """Engine produced output while the script expected input."""
    code = HarnessErrorCode.UNSOLICITED_SEND


class ReceiveTimeout(HarnessException):
    """Expected engine output never arrived."""
    code = HarnessErrorCode.RECEIVE_TIMEOUT


class PacketMismatch(HarnessException):
    """Engine output diverged from the golden payload."""
    code = HarnessErrorCode.PACKET_MISMATCH


@dataclass
class ReplayOutcome:
    """Outcome of verifying one replay file."""
    path: str
    status: VerificationStatus
    action_count: int = 0
    actions_verified: int = 0
    updated_actions: List[int] = field(default_factory=list)
    error: Optional[HarnessError] = None

    @property
    def passed(self) -> bool:
        return self.status == VerificationStatus.PASS

    @property
    def exit_code(self) -> int:
        """
        Map the outcome to a machine-friendly exit code.

        Returns:
            int: 0 for PASS, 2 for FAIL.
        """
        return 0 if self.passed else 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "status": self.status.value,
            "action_count": self.action_count,
            "actions_verified": self.actions_verified,
            "updated_actions": list(self.updated_actions),
            "error": self.error.to_dict() if self.error else None,
            "exit_code": self.exit_code,
        }
