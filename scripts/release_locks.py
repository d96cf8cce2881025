#!/usr/bin/env python3
"""
Clears generation locks left behind by crashed workers.

A lock older than every attempt of a job could take (timeouts plus backoff)
cannot belong to a live job.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from upcycle.core import config
from upcycle.core.db import init_db
from upcycle.core.records import ProjectStore


def default_cutoff() -> float:
    attempts = config.GENERATION_MAX_RETRIES + 1
    backoff = sum(config.GENERATION_BACKOFF_SEC * attempt for attempt in range(1, attempts))
    return config.GENERATION_TIMEOUT_SEC * attempts + backoff


def main(argv=None):
    parser = argparse.ArgumentParser(description="Release stale generation locks")
    parser.add_argument("--older-than", type=float, default=None,
                        help="Lock age in seconds (default: worst-case job duration)")
    args = parser.parse_args(argv)

    older_than = args.older_than if args.older_than is not None else default_cutoff()
    if older_than < 0:
        print("ERROR: --older-than must be >= 0")
        return 1

    init_db(config.DB_PATH)
    released = ProjectStore(config.DB_PATH).release_stale_locks(older_than)
    print(f"✓ Released {released} stale generation locks older than {older_than:g}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
