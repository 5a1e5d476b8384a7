"""Local stand-in agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import signal
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt and optionally misbehave the way real agents do."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--session-id", required=True)
    parser.add_argument("--resume", action="store_true")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--rate-limit", action="store_true")
    parser.add_argument("--ignore-sigterm", action="store_true")
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    print(f"session={args.session_id} resume={str(args.resume).lower()}", flush=True)
    print(f"echo: {args.prompt}", flush=True)
    if args.rate_limit:
        print("Error: 429 rate limit exceeded, retry after 1s", file=sys.stderr, flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.exit_code != 0:
        print(f"agent failed with code {args.exit_code}", file=sys.stderr, flush=True)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
