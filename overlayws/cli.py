"""
overlayws CLI

Every command outputs structured JSON when --json is passed. Human
readable output is the default; progress goes to stderr through logging.

Usage:
    overlayws create MASTER_REPO NAME [--origin URL] [--overlay-bin PATH]
    overlayws cleanup WORKSPACE
    overlayws status WORKSPACE

Global options:
    --config PATH     JSON settings file (else $OVERLAYWS_CONFIG,
                      else ~/.config/overlayws/config.json)
    --json            Machine-readable output
    -v / -q           More / less logging

Exit codes: 0 on success, 1 on any error (including usage errors).
"""

import argparse
import json
import logging
import sys
from datetime import datetime

import overlayws as _overlayws_pkg

from .config import load_settings
from .errors import WorkspaceError
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that exits 1 on usage errors instead of 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"Error: {message}", file=sys.stderr)
        sys.exit(1)


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


def format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def get_verbosity(args) -> int:
    """Return verbosity level: 0=quiet, 1=normal, 2=verbose."""
    if getattr(args, "json", False):
        return 0
    if getattr(args, "verbose", False):
        return 2
    if getattr(args, "quiet", False):
        return 0
    return 1


def configure_logging(verbosity: int):
    level = {0: logging.WARNING, 1: logging.INFO, 2: logging.DEBUG}[verbosity]
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if verbosity < 2
        else "%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def make_manager(args, **overrides) -> WorkspaceManager:
    settings = load_settings(getattr(args, "config", None), **overrides)
    return WorkspaceManager(settings)


# ── Commands ──────────────────────────────────────────────────


def cmd_create(args):
    manager = make_manager(args, overlay_binary=args.overlay_bin)
    ws = manager.create(args.master_repo, args.name, origin=args.origin)

    if args.json:
        print_json(ws.info.to_dict())
        return

    print("")
    print("==========================================")
    print(f"Workspace '{args.name}' is ready!")
    print("==========================================")
    print(f"FUSE PID: {ws.overlay.pid}")
    print(f"HEAD:     {ws.info.head_commit}")
    print(f"Clone:    {ws.info.clone_strategy} from {ws.info.origin}")
    print("")
    print("IMPORTANT: Always work from the src/ directory:")
    print(f"  cd {args.name}/src")
    print("")
    print("Git Tips for FUSE Performance:")
    print("  - Commit specific files: git commit <file1> <file2> -m 'msg'")
    print("  - Add specific files: git add <specific_files>")
    print("  - Check status of subset: git status <directory>")
    print("")
    print(f"When done: overlayws cleanup {args.name}")
    print("==========================================")


def cmd_cleanup(args):
    manager = make_manager(args)
    report = manager.cleanup(args.workspace)

    if args.json:
        print_json(report.to_dict())
        return

    # Warnings were already logged as they happened.
    print(f"✓ Removed workspace {report.workspace}")


def cmd_status(args):
    manager = make_manager(args)
    st = manager.status(args.workspace)

    if args.json:
        print_json(st.to_dict())
    else:
        print(f"Workspace: {st.path}")
        if not st.exists or not st.valid:
            for problem in st.problems:
                print(f"  ✗ {problem}")
            sys.exit(1)
        if st.info:
            print(f"Master:    {st.info.get('master')}")
            print(f"HEAD:      {st.info.get('head_commit')}")
            print(f"Created:   {format_time(st.info.get('created_at', 0))}")
        pid = st.pid if st.pid is not None else "none"
        print(f"FUSE PID:  {pid} ({'running' if st.alive else 'not running'})")
        print(f"Mounted:   {'yes' if st.mounted else 'no'}")
        if st.consistent:
            print("✓ Workspace is healthy")
        else:
            for problem in st.problems:
                print(f"  ✗ {problem}")

    if not st.consistent:
        sys.exit(1)


# ── Parser ────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="overlayws",
        description="Create and clean up git workspaces backed by a FUSE overlay.",
    )
    parser.add_argument("--version", action="version",
                        version=f"overlayws {_overlayws_pkg.__version__}")
    parser.add_argument("--config", help="Path to a JSON settings file")
    parser.add_argument("--json", action="store_true", help="Output JSON")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors")

    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("create", help="Create a workspace overlaying a master repository")
    p.add_argument("master_repo", help="Path to the master git repository")
    p.add_argument("name", help="Workspace directory name (created in the current directory)")
    p.add_argument("--origin", help="Clone from this URL instead of the master (shallow clone)")
    p.add_argument("--overlay-bin", help="Overlay binary (overrides config)")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("cleanup", help="Stop the overlay, unmount and remove a workspace")
    p.add_argument("workspace", help="Workspace directory")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("status", help="Check a workspace's overlay process and mount")
    p.add_argument("workspace", help="Workspace directory")
    p.set_defaults(func=cmd_status)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(get_verbosity(args))

    try:
        args.func(args)
    except WorkspaceError as e:
        if args.json:
            print_json({"error": str(e), "kind": type(e).__name__})
        else:
            print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.debug("Unhandled error", exc_info=True)
        if args.json:
            print_json({"error": str(e), "kind": type(e).__name__})
        else:
            print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
