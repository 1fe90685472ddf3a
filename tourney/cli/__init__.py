#!/usr/bin/env python3
"""
Tournament Engine CLI

Usage:
    python -m tourney.cli <command> [options]

Commands:
    init-db     Create missing tables
    sweep       Run one timeout sweep (warnings, auto-confirms, expiries)
    bracket     Preview a generated bracket without touching the database

Environment:
    DATABASE_URL    SQLAlchemy async URL
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from tourney.cli.bracket_commands import BracketCommand
from tourney.cli.db_commands import DbCommand, SweepCommand
from tourney.orm.tournament import TournamentFormat


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="tourney",
        description="Tournament bracket & match lifecycle engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s init-db
  %(prog)s sweep
  %(prog)s bracket --format double_elimination --count 6
  %(prog)s bracket --format single_elimination --players ann bob cid --json
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Create missing tables")
    init_parser.add_argument("--database-url", help="Override DATABASE_URL")

    sweep_parser = subparsers.add_parser("sweep", help="Run one timeout sweep")
    sweep_parser.add_argument("--database-url", help="Override DATABASE_URL")

    bracket_parser = subparsers.add_parser("bracket", help="Preview a bracket")
    bracket_parser.add_argument(
        "--format", "-f",
        dest="bracket_format",
        choices=[f.value for f in TournamentFormat],
        default=TournamentFormat.SINGLE_ELIMINATION.value,
        help="Tournament format"
    )
    players = bracket_parser.add_mutually_exclusive_group(required=True)
    players.add_argument("--players", "-p", nargs="+", help="Player names, best seed first")
    players.add_argument("--count", "-n", type=int, help="Number of anonymous seeds")
    bracket_parser.add_argument("--best-of", type=int, default=1)
    bracket_parser.add_argument("--grand-final-best-of", type=int, default=1)
    bracket_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    # Setup logging
    setup_logging(parsed.log_level)

    # Route to appropriate command handler
    command_map = {
        "init-db": DbCommand,
        "sweep": SweepCommand,
        "bracket": BracketCommand,
    }

    handler = command_map[parsed.command]()
    return handler.execute(parsed)


if __name__ == "__main__":
    sys.exit(main())
