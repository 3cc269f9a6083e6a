"""
Shard Repair Engine

Detects shards whose _id does not match the replica set name in their host field
and re-keys them, migrating every database placement and chunk ownership
reference to the new id.

Per shard the steps run strictly in order:
1. Re-key the shard document (remove old _id, insert under new _id)
2. Propagate the new id to config.databases
3. Propagate the new id to config.chunks
4. Verify no document references the old id

There is no rollback. A failure in any step leaves the steps before it applied
and aborts the run for manual inspection.
"""

import logging
from typing import Any, Dict

from shardfix.config import RepairConfig
from shardfix.errors import (
    IncompleteRepairError,
    MalformedHostError,
    NoChunksError,
    PropagationError,
    ShardReKeyError,
    StoreError,
    WriteTimeoutError,
)
from shardfix.schemas import RepairOutcome, ShardRecord, UpdateResult
from shardfix.services.metadata_store import CHUNKS, DATABASES, SHARDS, MetadataStore

logger = logging.getLogger(__name__)


class ShardRepairEngine:
    """
    Repairs one shard at a time against an exclusively owned metadata store.
    """

    # Field in each collection that holds a shard id
    REFERENCE_FIELDS = {
        SHARDS: "_id",
        DATABASES: "primary",
        CHUNKS: "shard",
    }

    def __init__(self, store: MetadataStore, config: RepairConfig):
        """
        Initialize repair engine.

        Args:
            store: Metadata store opened for this run
            config: Run options (dry run, write concern, chunk policy)
        """
        self.store = store
        self.config = config

    # ========================================================================
    # ENTRY POINT
    # ========================================================================

    def repair_shard(self, record: ShardRecord) -> RepairOutcome:
        """
        Bring one shard's _id in line with its replica set name.

        Steps:
        1. Compute the new id from the host prefix
        2. Return early if it already matches
        3. Count documents still using the old id
        4. Unless dry run: re-key, propagate to databases and chunks, verify

        Args:
            record: Shard document as loaded from config.shards

        Returns:
            RepairOutcome for the shard
        """
        logger.debug(f"Shard document: {record.to_doc()}")
        old_id = record.id
        new_id = self.canonical_id(record)
        outcome = RepairOutcome(shard_id=old_id)

        if new_id == old_id:
            logger.debug(f"Shard {old_id} already matches its replica set name")
            return outcome

        outcome.needs_fixing = True
        logger.info(f"Shard {old_id} does not match its replica set name {new_id}")
        docs_to_fix = self.count_references(old_id)
        outcome.docs_updated = docs_to_fix
        logger.debug(f"The metadata has {docs_to_fix} documents with old shard id {old_id} that need to be updated")

        if self.config.dry_run:
            return outcome

        self.rekey_shard(record, new_id)
        self.propagate_to_databases(old_id, new_id)
        self.propagate_to_chunks(old_id, new_id)
        self.verify(old_id)

        outcome.fixed = True
        logger.info(f"Shard {old_id} renamed to {new_id} ({docs_to_fix} documents updated)")
        return outcome

    @staticmethod
    def canonical_id(record: ShardRecord) -> str:
        new_id = record.replica_set_name
        if not new_id:
            raise MalformedHostError(
                "New shard id is too short: host has no replica set name",
                shard_id=record.id,
                host=record.host,
            )
        return new_id

    def count_references(self, shard_id: str) -> int:
        """Documents in shards, databases and chunks that carry shard_id."""
        return sum(
            self.store.count(collection, {field: shard_id})
            for collection, field in self.REFERENCE_FIELDS.items()
        )

    # ========================================================================
    # MUTATION STEPS
    # ========================================================================

    def rekey_shard(self, record: ShardRecord, new_id: str):
        """
        Replace the shard document with a copy keyed by new_id.

        _id is immutable and host carries a unique index, so the old document has
        to go before the new one can be inserted. Between the two writes no shard
        document exists for this host and references point at a missing id; the
        following steps close that gap before the engine returns.
        """
        old_id = record.id
        if new_id == old_id:
            raise ShardReKeyError("New shard id should be different from the old shard id", shard_id=old_id)

        logger.debug(f"Updating {self.store.store_name}.shards...")
        try:
            removed = self.store.remove(SHARDS, {"_id": old_id})
        except StoreError as e:
            raise ShardReKeyError(
                f"Shard document could not be removed: {e.message}",
                shard_id=old_id,
            ) from e
        logger.debug(f"remove result: {removed}")
        if removed.n_removed != 1:
            raise ShardReKeyError(
                "Failed to remove shard document",
                shard_id=old_id,
                expected=1,
                actual=removed.n_removed,
            )

        new_doc = record.rekeyed(new_id).to_doc()
        try:
            inserted = self.store.insert(SHARDS, new_doc)
        except StoreError as e:
            raise ShardReKeyError(
                f"Shard document could not be inserted: {e.message}",
                shard_id=old_id,
                new_shard_id=new_id,
            ) from e
        logger.debug(f"insert result: {inserted}")
        if inserted.n_inserted != 1:
            raise ShardReKeyError(
                "Failed to insert shard document",
                shard_id=old_id,
                new_shard_id=new_id,
                expected=1,
                actual=inserted.n_inserted,
            )
        logger.debug(f"Done updating {self.store.store_name}.shards")

    def propagate_to_databases(self, old_id: str, new_id: str) -> UpdateResult:
        # A shard may be primary for no database at all
        return self._propagate(DATABASES, old_id, new_id, require_match=False)

    def propagate_to_chunks(self, old_id: str, new_id: str) -> UpdateResult:
        return self._propagate(CHUNKS, old_id, new_id, require_match=self.config.require_chunks)

    def _propagate(self, collection: str, old_id: str, new_id: str, require_match: bool) -> UpdateResult:
        field = self.REFERENCE_FIELDS[collection]
        context: Dict[str, Any] = {"collection": collection, "shard_id": old_id, "new_shard_id": new_id}
        logger.info(f"Updating {self.store.store_name}.{collection}...")

        try:
            ret = self.store.bulk_update(
                collection,
                {field: old_id},
                {"$set": {field: new_id}},
                multi=True,
                write_concern=self.config.write_concern,
            )
        except WriteTimeoutError as e:
            raise PropagationError(
                f"Updating {collection} was not acknowledged in time",
                wtimeout_ms=self.config.write_concern.wtimeout_ms,
                **context,
            ) from e
        except StoreError as e:
            raise PropagationError(f"{collection} documents could not be updated: {e.message}", **context) from e

        logger.debug(f"update result: {ret}")
        if require_match and ret.n_matched == 0:
            raise NoChunksError(f"No matching {collection} documents found", **context)
        if ret.n_upserted != 0:
            raise PropagationError(
                f"Updating {collection} documents resulted in an upsert",
                n_upserted=ret.n_upserted,
                **context,
            )
        if ret.n_matched != ret.n_modified:
            raise PropagationError(
                f"Not all of the matched {collection} documents got updated",
                n_matched=ret.n_matched,
                n_modified=ret.n_modified,
                **context,
            )
        logger.info(f"Done updating {self.store.store_name}.{collection} ({ret.n_modified} documents)")
        return ret

    def verify(self, old_id: str):
        remaining = self.count_references(old_id)
        if remaining != 0:
            raise IncompleteRepairError(
                "Could not do all of the modifications",
                shard_id=old_id,
                expected=0,
                actual=remaining,
            )
