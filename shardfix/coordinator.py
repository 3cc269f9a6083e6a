"""
Run Coordinator

Runs the pre-flight checks, loads every shard document and repairs the shards one
after another. Any failure stops the run at the shard where it happened; the
caller gets a report listing the shards completed before it.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, TextIO, Tuple

from shardfix.config import RepairConfig
from shardfix.errors import NoShardsError, ShardFixError, describe_error
from shardfix.schemas import RepairOutcome, RepairReport, ShardRecord
from shardfix.services.metadata_store import SHARDS, MetadataStore, SqlMetadataStore
from shardfix.services.mongo_store import MongoMetadataStore
from shardfix.services.preflight import (
    MongoPreconditionChecker,
    PreconditionChecker,
    SnapshotPreconditionChecker,
)
from shardfix.services.repair_engine import ShardRepairEngine
from shared.logging_config import setup_logging

logger = logging.getLogger(__name__)


@contextmanager
def open_store(config: RepairConfig) -> Iterator[Tuple[MetadataStore, PreconditionChecker]]:
    """Open the metadata store named by config.store_uri once for the whole run."""
    if config.is_mongo:
        store = MongoMetadataStore.from_uri(config.store_uri, config.store_name)
        checker = MongoPreconditionChecker(store.client)
    else:
        store = SqlMetadataStore.from_url(
            config.store_uri,
            config.store_name,
            busy_timeout_ms=config.write_concern.wtimeout_ms,
        )
        checker = SnapshotPreconditionChecker(store)
    try:
        yield store, checker
    finally:
        store.close()


def run_repair(config: RepairConfig, store: MetadataStore, checker: PreconditionChecker) -> RepairReport:
    """
    Repair every shard in the store.

    Args:
        config: Run options
        store: Open metadata store
        checker: Pre-flight checks for the same target

    Returns:
        RepairReport with one outcome per shard, in store order

    Raises:
        PreflightError: environment unsuitable, nothing was read
        NoShardsError: shards collection is empty
        ShardFixError: any repair failure; error.outcomes holds completed shards
    """
    checker.run_all(config.store_name, config.supported_versions)
    if config.dry_run:
        logger.info("Running in dry run mode. No modifications will be done to the metadata")

    shard_docs = store.find(SHARDS)
    if not shard_docs:
        raise NoShardsError("No shard documents found", store_name=config.store_name)
    logger.info(f"Found {len(shard_docs)} shard documents in {config.store_name}.shards")

    engine = ShardRepairEngine(store, config)
    outcomes = []
    for doc in shard_docs:
        try:
            outcomes.append(engine.repair_shard(ShardRecord.from_doc(doc)))
        except ShardFixError as e:
            e.outcomes = list(outcomes)
            raise

    return RepairReport(results=outcomes, ok=1, dry_run=config.dry_run)


def failure_report(config: RepairConfig, error: ShardFixError) -> RepairReport:
    completed = [o for o in error.outcomes if isinstance(o, RepairOutcome)]
    return RepairReport(results=completed, ok=0, error=describe_error(error), dry_run=config.dry_run)


def run_with_config(config: RepairConfig, log_stream: Optional[TextIO] = None) -> RepairReport:
    setup_logging(
        "shardfix",
        level=logging.DEBUG if config.verbose else logging.INFO,
        log_file=config.log_file,
        stream=log_stream,
    )
    try:
        with open_store(config) as (store, checker):
            report = run_repair(config, store, checker)
    except ShardFixError as e:
        logger.error(f"Repair aborted: {e}")
        if e.outcomes:
            logger.error(f"Shards completed before the failure: {[o.shard_id for o in e.outcomes]}")
        return failure_report(config, e)

    logger.debug("Execution is now complete")
    return report


def run(
    store_name: str = "config",
    dry_run: bool = True,
    verbose: bool = False,
    store_uri: Optional[str] = None,
    require_chunks: Optional[bool] = None,
    log_file: Optional[str] = None,
) -> RepairReport:
    """
    Detect and (unless dry_run) repair shard ids that differ from their replica set names.

    Sample usage:
        run("configCopy")
        run("configCopy", dry_run=False)
        run("configCopy", dry_run=False, verbose=True)
    """
    options = {"store_name": store_name, "dry_run": dry_run, "verbose": verbose}
    if store_uri is not None:
        options["store_uri"] = store_uri
    if require_chunks is not None:
        options["require_chunks"] = require_chunks
    if log_file is not None:
        options["log_file"] = log_file
    return run_with_config(RepairConfig(**options))
