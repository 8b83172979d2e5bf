from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from afu9 import __version__
from afu9.cli.lawbook import handle_lawbook_command, register_lawbook_parser
from afu9.cli.loop import handle_loop_command, register_loop_parser
from afu9.cli.verdict import handle_verdict_command, register_verdict_parser
from afu9.core.errors import main_with_error_handling
from afu9.logging import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="afu9", description="AFU-9 control plane tools")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register_verdict_parser(subparsers)
    register_lawbook_parser(subparsers)
    register_loop_parser(subparsers)

    return parser


@main_with_error_handling()
def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING, json=False)

    if args.command == "verdict":
        return handle_verdict_command(args)
    if args.command == "lawbook":
        return handle_lawbook_command(args)
    if args.command == "loop":
        return handle_loop_command(args)
    return 127


def main(argv: Sequence[str] | None = None) -> None:
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
