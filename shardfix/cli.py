"""
shardfix command line

Usage:
    shardfix repair --uri mongodb://127.0.0.1:27019 --store-name configCopy
    shardfix repair --uri mongodb://127.0.0.1:27019 --execute --verbose
    shardfix snapshot --uri mongodb://127.0.0.1:27019 --output sqlite:///config-copy.db
    shardfix repair --uri sqlite:///config-copy.db --execute

Environment Variables:
    SHARDFIX_STORE_URI: default --uri (default: mongodb://127.0.0.1:27017)
    SHARDFIX_STORE_NAME: default --store-name (default: config)
    SHARDFIX_WRITE_TIMEOUT_MS: majority write timeout (default: 5000)
    SHARDFIX_REQUIRE_CHUNKS: fail shards that own no chunks (default: 1)
    SHARDFIX_LOG_FILE: also write logs to this file

The JSON report is the only thing written to stdout; log lines go to stderr.
"""
import argparse
import logging
import sys
from typing import List, Optional

from bson import json_util

from shardfix import config
from shardfix.config import RepairConfig, WriteConcernSpec, is_mongo_uri
from shardfix.coordinator import run_with_config
from shardfix.errors import ShardFixError
from shardfix.snapshot import export_snapshot
from shared.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shardfix",
        description="Rename shards whose id differs from their replica set name",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    repair = sub.add_parser("repair", help="Detect (and with --execute, fix) mismatched shard ids")
    repair.add_argument("--uri", default=config.STORE_URI, help="mongodb:// URI or SQL snapshot URL")
    repair.add_argument("--store-name", default=config.STORE_NAME)
    repair.add_argument("--execute", action="store_true", help="Modify the metadata (default is a dry run)")
    repair.add_argument("--verbose", action="store_true")
    repair.add_argument(
        "--allow-chunkless-shards",
        action="store_true",
        default=not config.REQUIRE_CHUNKS,
        help="Accept shards that own no chunks instead of failing the repair",
    )
    repair.add_argument("--write-timeout-ms", type=int, default=config.WRITE_TIMEOUT_MS)
    repair.add_argument("--log-file", default=config.LOG_FILE)

    snapshot = sub.add_parser("snapshot", help="Copy live metadata into an offline SQL snapshot")
    snapshot.add_argument("--uri", default=config.STORE_URI, help="mongodb:// URI of the config server")
    snapshot.add_argument("--store-name", default=config.STORE_NAME)
    snapshot.add_argument("--output", required=True, help="SQLAlchemy URL, e.g. sqlite:///config-copy.db")
    snapshot.add_argument("--verbose", action="store_true")

    return parser


def cmd_repair(args) -> int:
    repair_config = RepairConfig(
        store_uri=args.uri,
        store_name=args.store_name,
        dry_run=not args.execute,
        verbose=args.verbose,
        require_chunks=not args.allow_chunkless_shards,
        write_concern=WriteConcernSpec(wtimeout_ms=args.write_timeout_ms),
        log_file=args.log_file,
    )
    report = run_with_config(repair_config, log_stream=sys.stderr)
    print(json_util.dumps(report.to_output(), indent=2))
    return 0 if report.success else 1


def cmd_snapshot(args) -> int:
    setup_logging("snapshot", level=logging.DEBUG if args.verbose else logging.INFO, stream=sys.stderr)
    if not is_mongo_uri(args.uri):
        logger.error(f"Snapshots are exported from a live server, got {args.uri!r}")
        return 2
    try:
        copied = export_snapshot(args.uri, args.store_name, args.output)
    except ShardFixError as e:
        logger.error(f"Snapshot failed: {e}")
        return 1
    print(json_util.dumps({"snapshot": args.output, "copied": copied, "ok": 1}, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "repair":
        return cmd_repair(args)
    return cmd_snapshot(args)


if __name__ == "__main__":
    sys.exit(main())
