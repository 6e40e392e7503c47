#!/usr/bin/env python3
"""
replay_harness/cli.py - Command-Line Interface

Usage:
    python -m replay_harness <engine-binary> <replay.json>
    python -m replay_harness <engine-binary> <replay-dir> --stop_on_error
    python -m replay_harness <engine-binary> <replay.json> --ask_for_updates

Exit Codes:
    0 = every replay passed
    2 = at least one replay failed, or bad arguments
"""
import argparse
import logging
import sys
from pathlib import Path

from .config import LOG_LEVELS, get_settings
from .engine import InteractiveUpdatePolicy, StrictPolicy
from .runner import RunResult, run_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replay-harness",
        description="Replay recorded game sessions against an engine build and compare every message",
    )
    parser.add_argument("core_path", help="Path to the engine binary under test")
    parser.add_argument("replay_path", help="Replay file, or a directory of replay files")
    parser.add_argument(
        "--stop_on_error",
        action="store_true",
        help="Stop a directory run at the first failing replay",
    )
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Start the engine under the configured profiler",
    )
    parser.add_argument(
        "--ask_for_updates",
        action="store_true",
        help="On a difference, offer to overwrite the recording with the engine's output",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds to wait for each expected engine message",
    )
    parser.add_argument(
        "--framing",
        choices=["terminator", "length"],
        help="Wire framing used by the engine",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default from settings)",
    )
    return parser


def main(argv=None):
    """
    Parse arguments, run the replays and exit with the run's exit code.

    Directory runs print the failing files and a `Passed: n/m` summary; single
    files print a pass/fail banner.
    """
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.timeout is not None:
        overrides["RECEIVE_TIMEOUT"] = args.timeout
    if args.framing:
        overrides["FRAMING"] = args.framing
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level
    settings = get_settings().model_copy(update=overrides)

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    core_path = Path(args.core_path)
    if not core_path.exists():
        print(f"Error: Engine binary not found: {core_path}", file=sys.stderr)
        sys.exit(2)
    target = Path(args.replay_path)
    if not target.exists():
        print(f"Error: Replay path not found: {target}", file=sys.stderr)
        sys.exit(2)

    policy = InteractiveUpdatePolicy() if args.ask_for_updates else StrictPolicy()
    result = run_path(
        target,
        str(core_path),
        stop_on_error=args.stop_on_error,
        policy=policy,
        profile=args.profile,
        settings=settings,
    )

    if target.is_dir():
        print_statistics(result)
    else:
        print("===Passed===" if result.successful else "===Failed===")

    sys.exit(result.exit_code)


def print_statistics(result: RunResult) -> None:
    if result.stopped_early:
        print(f"Successful runs: {result.successful}")
        return
    print("======STATISTICS=======")
    for path in result.failed_files:
        print(path)
    print(result.summary())


if __name__ == "__main__":
    main()
