"""Command line entry point: serve the API or lint a hero policy file."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

import uvicorn

from heroreel.config import settings
from heroreel.policy import load_policy


def check_policy(path: Path) -> int:
    """Print the problems found in ``path``; non-zero when any were found."""

    result = load_policy(path)
    for issue in result.issues:
        print(f"{issue.field}: {issue.message}")
    if result.issues:
        return 1
    print(f"{path}: ok")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="heroreel")
    parser.add_argument(
        "--check-policy",
        type=Path,
        metavar="PATH",
        help="validate a hero policy file and exit",
    )
    args = parser.parse_args(argv)

    if args.check_policy is not None:
        return check_policy(args.check_policy)

    uvicorn.run(
        "heroreel.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
    return 0


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    sys.exit(main())
