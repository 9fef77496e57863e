"""Command line entry point: ``tradescan serve`` and ``tradescan repair-nearest``."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Sequence

from tradescan.config import ScanServiceConfig
from tradescan.exceptions import TradeScanError
from tradescan.service import ScanService
from tradescan.state.nearest import RecomputeScope

_logger = logging.getLogger(__name__)


def _config(args: argparse.Namespace) -> ScanServiceConfig:
    overrides = {}
    if args.db:
        overrides["db_file"] = args.db
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    return ScanServiceConfig.from_env(**overrides)


def cmd_serve(args: argparse.Namespace) -> int:
    from tradescan.web import run

    run(_config(args))
    return 0


def cmd_repair_nearest(args: argparse.Namespace) -> int:
    config = _config(args)
    with ScanService.open(config) as service:
        count = service.recompute_nearest(RecomputeScope(args.scope))
    print(json.dumps({"ok": True, "scope": args.scope, "annotated": count}, sort_keys=True))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tradescan")
    parser.add_argument("--db", default=None, help="SQLite database file (default: $TRADESCAN_DB_FILE)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP service")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    repair = sub.add_parser("repair-nearest", help="recompute nearest-waystone annotations")
    repair.add_argument("--scope", choices=[scope.value for scope in RecomputeScope], default=RecomputeScope.ALL.value)
    repair.set_defaults(func=cmd_repair_nearest)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return int(args.func(args))
    except TradeScanError as exc:
        _logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
