#!/usr/bin/env python3
"""Waits for a start flag, then begins and completes one run."""
import sys
import time
from pathlib import Path

from repexp.config import Settings
from repexp.store import RunStore


def main() -> int:
    results_dir = Path(sys.argv[1])
    start_flag = Path(sys.argv[2])
    store = RunStore(results_dir, settings=Settings(fsync=False))
    deadline = time.monotonic() + 30
    while not start_flag.exists():
        if time.monotonic() > deadline:
            return 2
        time.sleep(0.005)
    handle = store.begin_run("exp", "20240101T000000Z", {"rate": 10})
    store.complete(handle)
    sys.stdout.write(f"{handle.repeat}\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
