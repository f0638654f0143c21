"""Command-line entry point for the binary log analyzer."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, Sequence

from .analyzer import AnalysisError, BinlogAnalyzer
from .config import DEFAULT_PORT, DEFAULT_WORKERS, Config

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse the command-line options."""
    parser = argparse.ArgumentParser(
        prog="binlogscope",
        description=(
            "Analyses Aurora MySQL binary logs to identify SQL statements "
            "executed within a specific time frame."
        ),
    )
    parser.add_argument("-H", "--host", required=True, help="MySQL host address")
    parser.add_argument("-P", "--port", type=int, default=DEFAULT_PORT, help="MySQL port")
    parser.add_argument("-u", "--user", required=True, help="MySQL user")
    parser.add_argument("-p", "--password", required=True, help="MySQL password")
    parser.add_argument(
        "-s", "--start-time", required=True,
        help="Binary log start time (YYYY-MM-DD HH:MM:SS, UTC)",
    )
    parser.add_argument(
        "-e", "--end-time", required=True,
        help="Binary log end time (YYYY-MM-DD HH:MM:SS, UTC)",
    )
    parser.add_argument("-o", "--output", default="", help="Result file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Detailed output")
    parser.add_argument(
        "-w", "--workers", type=int, default=DEFAULT_WORKERS, help="Parallel workers"
    )
    return parser.parse_args(argv)


def _parse_time(text: str) -> datetime:
    return datetime.strptime(text, TIME_FORMAT).replace(tzinfo=timezone.utc)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the analyzer; return the process exit status."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        stream=sys.stderr,
    )

    try:
        start = _parse_time(args.start_time)
    except ValueError as exc:
        print(f"Invalid start time format: {exc}", file=sys.stderr)
        return 1
    try:
        end = _parse_time(args.end_time)
    except ValueError as exc:
        print(f"Invalid end time format: {exc}", file=sys.stderr)
        return 1
    if start > end:
        print("The start time cannot be later than the end time.", file=sys.stderr)
        return 1

    if args.verbose:
        print(
            f"Search time range (UTC): {start.strftime(TIME_FORMAT)} ~ "
            f"{end.strftime(TIME_FORMAT)}",
            file=sys.stderr,
        )

    password = args.password
    config = Config(
        host=args.host,
        port=args.port,
        user=args.user,
        password=password,
        start_time=start,
        end_time=end,
        output_file=args.output,
        verbose=args.verbose,
        workers=args.workers,
    )
    try:
        BinlogAnalyzer(config).analyze()
    except AnalysisError as exc:
        print(f"Binary log analysis failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())