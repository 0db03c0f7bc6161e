#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fake worker process for procpool tests")
    parser.add_argument("--name", default="task")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--fail-times", type=int, default=0)
    parser.add_argument("--counter", type=Path)
    parser.add_argument("--journal", type=Path)
    parser.add_argument("--spam-bytes", type=int, default=0)
    parser.add_argument("--echo-stdin", action="store_true")
    return parser.parse_args()


def _bump_counter(path: Path) -> int:
    count = int(path.read_text(encoding="utf-8")) if path.exists() else 0
    count += 1
    path.write_text(str(count), encoding="utf-8")
    return count


def _journal(path: Path, event: str, name: str) -> None:
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps({"event": event, "name": name, "t": time.monotonic()}) + "\n")


def main() -> int:
    args = parse_args()
    if args.journal:
        _journal(args.journal, "start", args.name)

    attempt = _bump_counter(args.counter) if args.counter else 1
    print(json.dumps({"name": args.name, "attempt": attempt, "pid": os.getpid()}), flush=True)

    if args.echo_stdin:
        sys.stdout.write(sys.stdin.read())
        sys.stdout.flush()

    if args.spam_bytes > 0:
        chunk = ("x" * 127 + "\n").encode("utf-8")
        remaining = args.spam_bytes
        while remaining > 0:
            sys.stdout.buffer.write(chunk[: min(len(chunk), remaining)])
            sys.stdout.flush()
            remaining -= len(chunk)

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)

    if args.journal:
        _journal(args.journal, "end", args.name)

    if attempt <= args.fail_times:
        print(f"forced failure {attempt}", file=sys.stderr, flush=True)
        return 1
    return args.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
