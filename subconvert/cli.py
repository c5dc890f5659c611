#!/usr/bin/env python3
"""Command line entry point: `subconvert run [-c config] [-d dir] [-p port] [-m mode]`."""

from __future__ import annotations

import argparse
import os
import sys
from typing import List

from . import NAME, __version__
from .config import find_or_create_config
from .errors import SubconvertError
from .lifecycle import Supervisor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="subconvert",
        description=f"{NAME} - fetches remote templates and node data, then serves generated configurations",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="Run service")
    run.add_argument("-c", "--config", default="", help="config file path")
    run.add_argument("-d", "--dir", default="", help="working directory")
    run.add_argument("-p", "--port", type=int, default=None, help="server port")
    run.add_argument("-m", "--mode", default="", help="run mode (dev/prod)")
    return parser


def run_server(args: argparse.Namespace) -> int:
    if args.dir:
        try:
            os.chdir(args.dir)
        except OSError as e:
            print(f"failed to change working directory to {args.dir}: {e}", file=sys.stderr)
            return 1
        print(f"working directory changed to {os.path.abspath(args.dir)}", flush=True)
    try:
        config_path = find_or_create_config(args.config or None)
        print(f"using config file: {config_path}", flush=True)
        Supervisor(config_path, port=args.port, mode=args.mode).run()
    except (SubconvertError, OSError) as e:
        print(f"server initialization failed: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: List[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command != "run":
        parser.print_help()
        return
    sys.exit(run_server(args))


if __name__ == "__main__":
    main()
