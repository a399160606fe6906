"""
Ingestion worker CLI entry point.

Usage:
    python -m accession_archiver.worker [OPTIONS]

Options:
    --crawler TYPE      Crawl backend (default: browsertrix)
    --interval N        Seconds between scheduler ticks (default: from config)
    --once              Run a single tick and exit
"""
from __future__ import annotations

import argparse
import sys

from .loop import run_worker


def main(argv=None) -> int:
    """Main entry point for worker CLI."""
    parser = argparse.ArgumentParser(
        description="Accession ingestion worker - drives accessions to completion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with default settings
    python -m accession_archiver.worker

    # Tick every 30 seconds
    python -m accession_archiver.worker --interval 30

    # Single pass against the in-memory crawler
    python -m accession_archiver.worker --crawler memory --once
        """,
    )

    parser.add_argument(
        "--crawler",
        type=str,
        choices=["browsertrix", "memory"],
        default="browsertrix",
        help="Crawl backend (default: browsertrix)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between scheduler ticks (default: from config)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scheduler tick and exit",
    )

    args = parser.parse_args(argv)

    print("Starting ingestion worker...")
    print(f"  Crawler: {args.crawler}")
    print(f"  Interval: {args.interval or 'from config'}")
    print(f"  Mode: {'single tick' if args.once else 'continuous'}")
    print()

    try:
        dispatched = run_worker(
            crawler_backend=args.crawler,
            interval_seconds=args.interval,
            once=args.once,
        )
        if args.once:
            print(f"Dispatched {dispatched} accession(s)")
        return 0
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
        return 0
    except Exception as e:
        print(f"Worker error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
