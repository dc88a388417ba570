"""Local demo agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import sys
import time

from agent_tasks.orchestrator.classifier import COMPLETION_MARKER, FAILURE_MARKER


def main(argv: list[str] | None = None) -> int:
    """Read the prompt from stdin and answer deterministically per ``--mode``."""

    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--mode",
        choices=("complete", "fail", "silent", "error", "sleep"),
        default="complete",
    )
    parser.add_argument("--reason", default="criteria not met")
    parser.add_argument("--sleep-seconds", type=float, default=30.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    prompt = sys.stdin.read()
    first_line = next((line for line in prompt.splitlines() if line.strip()), "")
    print(f"echo-agent received {len(prompt)} chars: {first_line}", flush=True)

    if args.mode == "complete":
        print("Working on the requirement...", flush=True)
        print(COMPLETION_MARKER, flush=True)
    elif args.mode == "fail":
        print(FAILURE_MARKER, flush=True)
        print(f"Reason: {args.reason}", flush=True)
    elif args.mode == "error":
        print(f"fatal: {args.reason}", file=sys.stderr, flush=True)
    elif args.mode == "sleep":
        print("sleeping", flush=True)
        time.sleep(args.sleep_seconds)

    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
