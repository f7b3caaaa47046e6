"""CLI entry point for inspecting the sync run log."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from entsync.config import get_settings
from entsync.logging import setup_logging
from entsync.models.errors import SyncError
from entsync.stores.database import create_store_engine
from entsync.stores.sync_store import get_run, list_namespaces, list_runs


def _engine(args: argparse.Namespace):
    path = args.db or get_settings().database_path
    if path == ":memory:" or not Path(path).expanduser().exists():
        print(f"Error: no sync database at {path}", file=sys.stderr)
        sys.exit(1)
    return create_store_engine(path)


def _print(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_runs(args: argparse.Namespace) -> None:
    """List recent sync runs, newest first."""
    _print(list_runs(_engine(args), limit=args.limit))


def cmd_errors(args: argparse.Namespace) -> None:
    """Print the error log of one run."""
    run = get_run(_engine(args), args.run_uuid)
    if run is None:
        print(f"Error: run not found: {args.run_uuid}", file=sys.stderr)
        sys.exit(1)
    if args.summary:
        for error in run["errors"]:
            print(SyncError.model_validate(error).summary())
        return
    _print(run)


def cmd_namespaces(args: argparse.Namespace) -> None:
    """List registered entity namespaces."""
    _print(list_namespaces(_engine(args)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="entsync",
        description="entsync – inspect entity synchronization runs",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", default=None, help="Path to the sync database (default: ENTSYNC_DATABASE_PATH)")
    sub = parser.add_subparsers(dest="command")

    # runs
    p_runs = sub.add_parser("runs", parents=[common], help="List sync runs")
    p_runs.add_argument("--limit", type=int, default=20)
    p_runs.set_defaults(func=cmd_runs)

    # errors
    p_errors = sub.add_parser("errors", parents=[common], help="Show the error log of a run")
    p_errors.add_argument("run_uuid", help="UUID of the run")
    p_errors.add_argument("--summary", action="store_true", help="One line per error instead of JSON")
    p_errors.set_defaults(func=cmd_errors)

    # namespaces
    p_ns = sub.add_parser("namespaces", parents=[common], help="List entity namespaces")
    p_ns.set_defaults(func=cmd_namespaces)

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(get_settings().log_level.value)
    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
