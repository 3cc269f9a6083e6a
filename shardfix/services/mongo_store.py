"""
Live metadata store backed by pymongo.

Runs directly against a config server replica set member. Propagation updates
are issued with the requested write concern; a write concern timeout surfaces as
WriteTimeoutError instead of being ignored.
"""

import logging
from typing import Any, Dict, List, Optional

import pymongo
from pymongo import errors as pymongo_errors, uri_parser
from pymongo.write_concern import WriteConcern

from shardfix.config import WriteConcernSpec
from shardfix.errors import DuplicateDocumentError, PreflightError, StoreError, WriteTimeoutError
from shardfix.schemas import InsertResult, RemoveResult, UpdateResult
from shardfix.services.metadata_store import MetadataStore, set_fields

logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = 10000


def connect(uri: str) -> pymongo.MongoClient:
    """
    Build a client for the config server member named in uri.

    A single-host mongodb:// URI without a replicaSet option pins the client to
    that node instead of discovering the replica set. Anything else (a seed list,
    an explicit replicaSet or directConnection, mongodb+srv) keeps normal discovery.
    """
    options = {"serverSelectionTimeoutMS": SERVER_SELECTION_TIMEOUT_MS}
    if uri.startswith("mongodb://"):
        parsed = uri_parser.parse_uri(uri)
        uri_options = parsed["options"]
        if (
            len(parsed["nodelist"]) == 1
            and "replicaSet" not in uri_options
            and "directConnection" not in uri_options
        ):
            options["directConnection"] = True
    return pymongo.MongoClient(uri, **options)


class MongoMetadataStore(MetadataStore):
    """Metadata store over client[store_name]"""

    def __init__(self, client, store_name: str, owns_client: bool = False):
        super().__init__(store_name)
        self.client = client
        self.db = client[store_name]
        self.owns_client = owns_client

    @classmethod
    def from_uri(cls, uri: str, store_name: str) -> "MongoMetadataStore":
        try:
            client = connect(uri)
        except (pymongo_errors.PyMongoError, ValueError) as e:
            raise PreflightError(f"Could not create a client for the store URI: {e}", uri=uri) from e
        return cls(client, store_name, owns_client=True)

    def close(self):
        if self.owns_client:
            self.client.close()

    def count(self, collection: str, query: Dict[str, Any]) -> int:
        try:
            return self.db[collection].count_documents(query)
        except pymongo_errors.PyMongoError as e:
            raise StoreError(f"count failed: {e}", collection=collection, query=query) from e

    def find(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            return list(self.db[collection].find(query or {}))
        except pymongo_errors.PyMongoError as e:
            raise StoreError(f"find failed: {e}", collection=collection, query=query) from e

    def remove(self, collection: str, query: Dict[str, Any]) -> RemoveResult:
        try:
            ret = self.db[collection].delete_one(query)
        except pymongo_errors.PyMongoError as e:
            raise StoreError(f"remove failed: {e}", collection=collection, query=query) from e
        logger.debug(f"remove {collection} {query}: {ret.raw_result}")
        return RemoveResult.parse({"n_removed": ret.deleted_count}, collection=collection, query=query)

    def insert(self, collection: str, doc: Dict[str, Any]) -> InsertResult:
        try:
            ret = self.db[collection].insert_one(doc)
        except pymongo_errors.DuplicateKeyError as e:
            raise DuplicateDocumentError(
                "Document conflicts with an existing _id or unique host",
                collection=collection,
                doc_id=doc.get("_id"),
            ) from e
        except pymongo_errors.PyMongoError as e:
            raise StoreError(f"insert failed: {e}", collection=collection, doc_id=doc.get("_id")) from e
        inserted = 1 if ret.acknowledged and ret.inserted_id is not None else 0
        logger.debug(f"insert {collection} {doc.get('_id')!r}: nInserted={inserted}")
        return InsertResult.parse({"n_inserted": inserted}, collection=collection, doc_id=doc.get("_id"))

    def bulk_update(
        self,
        collection: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
        multi: bool = True,
        write_concern: Optional[WriteConcernSpec] = None,
    ) -> UpdateResult:
        set_fields(update)
        coll = self.db[collection]
        if write_concern is not None:
            coll = coll.with_options(
                write_concern=WriteConcern(w=write_concern.w, wtimeout=write_concern.wtimeout_ms)
            )

        try:
            if multi:
                ret = coll.update_many(query, update, upsert=False)
            else:
                ret = coll.update_one(query, update, upsert=False)
        except pymongo_errors.WTimeoutError as e:
            raise WriteTimeoutError(
                "Update was not acknowledged by the requested write concern in time",
                collection=collection,
                query=query,
                wtimeout_ms=write_concern.wtimeout_ms if write_concern else None,
            ) from e
        except pymongo_errors.PyMongoError as e:
            raise StoreError(f"update failed: {e}", collection=collection, query=query) from e

        logger.debug(f"update {collection} {query}: {ret.raw_result}")
        return UpdateResult.parse(
            {
                "n_matched": ret.matched_count,
                "n_modified": ret.modified_count,
                "n_upserted": 0 if ret.upserted_id is None else 1,
            },
            collection=collection,
            query=query,
        )
