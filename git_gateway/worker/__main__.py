"""
Git Gateway worker entry point.

Usage:
    python -m git_gateway.worker [OPTIONS]

Options:
    --poll-interval N       Seconds between idle polls (default: from config)
    --batch-size N          Events processed per cycle (default: from config)
    --no-compensations      Do not execute pending compensation entries
"""
from __future__ import annotations

import argparse
import sys

from .loop import run_worker


def main() -> int:
    """Main entry point for worker CLI."""
    parser = argparse.ArgumentParser(
        description="Git Gateway worker - processes pending webhook events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with default settings
    python -m git_gateway.worker

    # Poll every 10 seconds, 50 events per cycle
    python -m git_gateway.worker --poll-interval 10 --batch-size 50
        """,
    )

    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between idle poll cycles (default: from config)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Max events processed per cycle (default: from config)",
    )
    parser.add_argument(
        "--no-compensations",
        action="store_true",
        help="Skip pending compensation entries",
    )

    args = parser.parse_args()

    print("Starting Git Gateway worker...")
    print(f"  Poll interval: {args.poll_interval or 'from config'}")
    print(f"  Batch size: {args.batch_size or 'from config'}")
    print(f"  Compensations: {'off' if args.no_compensations else 'on'}")
    print()

    try:
        run_worker(
            poll_interval=args.poll_interval,
            batch_size=args.batch_size,
            run_compensations=not args.no_compensations,
        )
        return 0
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
        return 0
    except Exception as e:
        print(f"Worker error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
