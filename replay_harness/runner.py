"""
replay_harness/runner.py - Batch Runner

Runs one replay file or every file in a directory, one after another.
Per-replay failures are converted into outcomes here and never escape.

Replays are never run concurrently: each one owns the engine process and the
recorded TCP port while it runs.
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .config import HarnessSettings, get_settings
from .engine import MismatchPolicy, verify_replay
from .errors import (
    HarnessError,
    HarnessErrorCode,
    HarnessException,
    ReplayOutcome,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Aggregate of one batch run."""
    count: int = 0
    successful: int = 0
    failed_files: List[str] = field(default_factory=list)
    outcomes: List[ReplayOutcome] = field(default_factory=list)
    stopped_early: bool = False

    def record(self, outcome: ReplayOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.passed:
            self.successful += 1
        else:
            self.failed_files.append(outcome.path)
        self.count += 1

    def summary(self) -> str:
        return f"Passed: {self.successful}/{self.count}"

    @property
    def exit_code(self) -> int:
        return 0 if not self.failed_files and not self.stopped_early else 2


def run_replay_file(
    path: Union[str, Path],
    core_path: str,
    *,
    policy: Optional[MismatchPolicy] = None,
    profile: bool = False,
    settings: Optional[HarnessSettings] = None,
) -> ReplayOutcome:
    """
    Verify one replay and report the outcome instead of raising.

    Parameters:
        path (str | Path): Replay file.
        core_path (str): Engine binary.
        policy (MismatchPolicy | None): Difference handling; strict by default.
        profile (bool): Run the engine under the profiler launcher.
        settings (HarnessSettings | None): Overrides the global settings.

    Returns:
        ReplayOutcome: PASS, or FAIL carrying the HarnessError that stopped the replay.
    """
    logger.info("Testing %s", path)
    try:
        outcome = verify_replay(path, core_path, policy=policy, profile=profile, settings=settings)
    except HarnessException as e:
        logger.error("%s: %s", path, e)
        return _failed(path, e.error)
    except OSError as e:
        logger.exception("%s: I/O failure while replaying", path)
        return _failed(path, HarnessError(code=HarnessErrorCode.IO_ERROR, message=str(e)))
    logger.info("===Passed=== %s (%d action(s))", path, outcome.actions_verified)
    return outcome


def _failed(path: Union[str, Path], error: HarnessError) -> ReplayOutcome:
    return ReplayOutcome(
        path=str(path),
        status=VerificationStatus.FAIL,
        actions_verified=error.action_index or 0,
        error=error,
    )


def iter_replay_files(directory: Union[str, Path]) -> Iterator[str]:
    """Regular files in `directory`, in directory iteration order (unsorted)."""
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_file():
                yield entry.path


def run_directory(
    directory: Union[str, Path],
    core_path: str,
    *,
    stop_on_error: bool = False,
    policy: Optional[MismatchPolicy] = None,
    profile: bool = False,
    settings: Optional[HarnessSettings] = None,
) -> RunResult:
    """
    Verify every replay in `directory`, sequentially.

    With stop_on_error the run halts at the first failing replay; that replay
    is not added to `count` or `failed_files`.
    """
    settings = settings or get_settings()
    result = RunResult()
    for path in list(iter_replay_files(directory)):
        outcome = run_replay_file(path, core_path, policy=policy, profile=profile, settings=settings)
        if not outcome.passed and stop_on_error:
            result.outcomes.append(outcome)
            result.stopped_early = True
            logger.info("Stopping at first failure: %s", path)
            return result
        result.record(outcome)
    return result


def run_path(
    target: Union[str, Path],
    core_path: str,
    *,
    stop_on_error: bool = False,
    policy: Optional[MismatchPolicy] = None,
    profile: bool = False,
    settings: Optional[HarnessSettings] = None,
) -> RunResult:
    """Directory mode for directories, single-file mode otherwise."""
    if Path(target).is_dir():
        return run_directory(
            target,
            core_path,
            stop_on_error=stop_on_error,
            policy=policy,
            profile=profile,
            settings=settings,
        )
    result = RunResult()
    result.record(
        run_replay_file(target, core_path, policy=policy, profile=profile, settings=settings)
    )
    return result
