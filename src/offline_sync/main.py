#!/usr/bin/env python3
"""offline-sync entry point.

Usage:
    offline-sync cli stats                      # Queue counts
    offline-sync cli --format json failed       # Failed entries as JSON
    offline-sync -d /tmp/cfg cli sync-now       # Sync using a custom config dir
    offline-sync serve [--port 8765]            # Run the engine with its HTTP API
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_parser() -> argparse.ArgumentParser:
    """Create the top-level argument parser.

    Returns:
        Parser with cli and serve subcommands
    """
    parser = argparse.ArgumentParser(
        prog="offline-sync",
        description="Offline-first sync engine: queue local mutations and replay them when online",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  offline-sync cli enqueue update employee emp-1 --payload '{"name": "John"}'
  offline-sync cli sync-now
  offline-sync cli conflicts
  offline-sync serve --port 8765
""",
    )
    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: $OFFLINE_SYNC_CONFIG_DIR or ~/.config/offline-sync/)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    from .cli import add_cli_subparser
    add_cli_subparser(subparsers)

    from .web import add_serve_subparser
    add_serve_subparser(subparsers)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for offline-sync.

    Parses arguments and dispatches to the requested interface.

    Returns:
        Process exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    if args.interface == "cli":
        from .cli import run as run_cli
        return run_cli(args.config_dir, args)
    if args.interface == "serve":
        from .web import run as run_web
        return run_web(args.config_dir, args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
