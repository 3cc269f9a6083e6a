"""
Offline metadata snapshots

Copies config.shards, config.databases and config.chunks from a live server into
a SQL database so the repair can be rehearsed (and its dry-run report reviewed)
without touching the cluster. The server version and the source database name are
recorded alongside so the snapshot pre-flight checks have something to verify.
"""

import logging
from typing import Dict

from shardfix.errors import PreflightError
from shardfix.services.metadata_store import COLLECTIONS, MetadataStore, SqlMetadataStore
from shardfix.services.mongo_store import MongoMetadataStore
from shardfix.services.preflight import MongoPreconditionChecker

logger = logging.getLogger(__name__)


def copy_metadata(source: MetadataStore, target: SqlMetadataStore, server_info: Dict[str, str]) -> Dict[str, int]:
    """
    Copy the three metadata collections from source into target.

    Args:
        source: Store to read from
        target: Empty snapshot store
        server_info: Facts about the source server (server_version, ...)

    Returns:
        Number of documents copied per collection
    """
    for collection in COLLECTIONS:
        if target.count(collection, {}) != 0:
            raise PreflightError(
                "Snapshot target already holds metadata",
                collection=collection,
            )

    copied = {}
    for collection in COLLECTIONS:
        docs = source.find(collection)
        copied[collection] = target.load(collection, docs)
        logger.info(f"Copied {copied[collection]} documents from {source.store_name}.{collection}")

    info = dict(server_info)
    info["store_name"] = target.store_name
    info["empty"] = sum(copied.values()) == 0
    target.write_info(info)
    return copied


def export_snapshot(source_uri: str, store_name: str, output_url: str) -> Dict[str, int]:
    """Export store_name from the server at source_uri into the SQL database at output_url."""
    with MongoMetadataStore.from_uri(source_uri, store_name) as source:
        checker = MongoPreconditionChecker(source.client)
        checker.check_store_exists(store_name)
        server_info = checker.describe_server()
        with SqlMetadataStore.from_url(output_url, store_name, create=True) as target:
            return copy_metadata(source, target, server_info)
