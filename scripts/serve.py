#!/usr/bin/env python3
"""
Starts the generation API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

import uvicorn

sys.path.insert(0, str(Path(__file__).parent.parent))

from upcycle.core import config


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the upcycle generation API")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args(argv)

    issues = config.validate_config()
    if issues:
        for issue in issues:
            print(f"ERROR: {issue}")
        return 1

    uvicorn.run("upcycle.api.main:app", host=args.host, port=args.port, reload=args.reload,
                log_level="debug" if config.debug_enabled() else "info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
