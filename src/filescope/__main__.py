"""CLI entry point for FileScope.

Supports:
  - scanning: python -m filescope scan <path> [--top N]
  - serving: python -m filescope serve --base-dir <path>
"""

import argparse
import asyncio
import logging
import sys

from .context import ProjectContext
from .errors import FileScopeError
from .server import run_server


def _configure_logging(level: str, log_file: str = None) -> None:
    # stdout carries the MCP protocol when serving, so logs go to stderr or a file
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler(sys.stderr)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[handler],
    )


def _scan(path: str, data_dir: str = None, top: int = 10) -> int:
    context = ProjectContext(data_dir)
    try:
        config = context.initialize(path)
    except FileScopeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    files = context.list_all()
    print(f"Scanned {config.base_directory}: {len(files)} files")
    print(f"Tree saved as {config.filename} in {context.data_dir}")
    for entry in context.find_important_files(limit=top):
        print(f"  {entry['importance']:5.2f}  {entry['path']}  "
              f"({entry['dependentCount']} dependents)")
    context.shutdown()
    return 0


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="filescope",
        description="FileScope: dependency-aware file importance ranking for codebases"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Write logs to this file instead of stderr"
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Where saved trees and config.json live (default: $FILESCOPE_DATA_DIR or ~/.filescope)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Scan a project and print its most important files")
    scan_parser.add_argument("path", help="Path to project to scan")
    scan_parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Number of files to list (default: 10)"
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the MCP server")
    serve_parser.add_argument(
        "--base-dir",
        default=None,
        help="Project directory to load on startup (otherwise wait for set_project_path)"
    )

    args = parser.parse_args()
    _configure_logging(args.log_level, args.log_file)

    if args.command == "scan":
        return _scan(args.path, args.data_dir, args.top)
    elif args.command == "serve":
        return asyncio.run(run_server(args.base_dir, args.data_dir))
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
