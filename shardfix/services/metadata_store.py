"""
Metadata Store Adapter

Primitive operations the repair needs against the three config collections
(shards, databases, chunks), with write results returned as typed records.

Two backends implement the same interface:
- MongoMetadataStore (services/mongo_store.py) talks to a live config server
- SqlMetadataStore (this module) works on an offline SQL snapshot of the metadata

Queries are equality filters on top-level fields, e.g. {"shard": "shard0"}.
Updates use the "$set" form, e.g. {"$set": {"shard": "rs0"}}.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from bson import json_util
from sqlalchemy import delete, func, or_, select, update as sql_update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from shardfix.config import WriteConcernSpec
from shardfix.database import init_db, make_engine, make_session_factory, missing_tables, sqlite_file
from shardfix.errors import DuplicateDocumentError, PreflightError, StoreError, WriteTimeoutError
from shardfix.models import ChunkDoc, DatabaseDoc, ShardDoc, SnapshotInfo
from shardfix.schemas import InsertResult, RemoveResult, UpdateResult

logger = logging.getLogger(__name__)

SHARDS = "shards"
DATABASES = "databases"
CHUNKS = "chunks"
COLLECTIONS = (SHARDS, DATABASES, CHUNKS)


class MetadataStore(ABC):
    """Interface over one metadata database (normally "config")"""

    def __init__(self, store_name: str):
        self.store_name = store_name

    @abstractmethod
    def count(self, collection: str, query: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    def find(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def remove(self, collection: str, query: Dict[str, Any]) -> RemoveResult:
        """Remove a single document matching query."""

    @abstractmethod
    def insert(self, collection: str, doc: Dict[str, Any]) -> InsertResult:
        ...

    @abstractmethod
    def bulk_update(
        self,
        collection: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
        multi: bool = True,
        write_concern: Optional[WriteConcernSpec] = None,
    ) -> UpdateResult:
        """Apply a "$set" update to matching documents. Never upserts."""

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def set_fields(update: Dict[str, Any]) -> Dict[str, Any]:
    """Return the field assignments of a {"$set": {...}} update."""
    if set(update) != {"$set"} or not isinstance(update["$set"], dict) or not update["$set"]:
        raise ValueError(f"Only non-empty $set updates are supported, got {update!r}")
    return update["$set"]


# ============================================================================
# SQL SNAPSHOT BACKEND
# ============================================================================

class SqlMetadataStore(MetadataStore):
    """
    Metadata store backed by a SQL snapshot (SQLite by default).

    Each operation runs in its own transaction and is committed before it returns,
    matching the per-document atomicity of the live store.
    """

    MODELS = {
        SHARDS: ShardDoc,
        DATABASES: DatabaseDoc,
        CHUNKS: ChunkDoc,
    }

    # Document field -> model attribute. Everything else lives in the extra column.
    COLUMNS = {
        SHARDS: {"_id": "id", "host": "host"},
        DATABASES: {"_id": "id", "primary": "primary", "partitioned": "partitioned"},
        CHUNKS: {"_id": "id", "ns": "ns", "shard": "shard"},
    }

    def __init__(self, session_factory: sessionmaker, store_name: str, engine=None):
        super().__init__(store_name)
        self.session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_url(
        cls,
        url: str,
        store_name: str,
        busy_timeout_ms: Optional[int] = None,
        create: bool = False,
    ) -> "SqlMetadataStore":
        """
        Open a metadata snapshot.

        Args:
            url: SQLAlchemy URL of the snapshot
            store_name: Name of the metadata database the snapshot was taken from
            busy_timeout_ms: SQLite lock wait, defaults to the configured write timeout
            create: Create missing tables (export target); otherwise the snapshot
                has to exist already with every metadata table

        Raises:
            PreflightError: snapshot file or tables missing and create is False
        """
        if not create:
            path = sqlite_file(url)
            if path is not None and not os.path.exists(path):
                raise PreflightError("Snapshot file does not exist", url=url)

        engine = make_engine(url) if busy_timeout_ms is None else make_engine(url, busy_timeout_ms)
        if create:
            init_db(engine)
        else:
            try:
                missing = missing_tables(engine)
            except SQLAlchemyError as e:
                engine.dispose()
                raise PreflightError(f"Snapshot could not be inspected: {e}", url=url) from e
            if missing:
                engine.dispose()
                raise PreflightError("Snapshot is missing metadata tables", url=url, missing_tables=missing)
        logger.debug(f"Opened metadata snapshot {engine.url!r} as store '{store_name}'")
        return cls(make_session_factory(engine), store_name, engine=engine)

    def close(self):
        if self.engine is not None:
            self.engine.dispose()

    # ------------------------------------------------------------------------
    # Document <-> row mapping
    # ------------------------------------------------------------------------

    def _model(self, collection: str):
        try:
            return self.MODELS[collection]
        except KeyError:
            raise ValueError(f"Unknown metadata collection '{collection}'") from None

    def _column(self, collection: str, field: str):
        attr = self.COLUMNS[collection].get(field)
        if attr is None:
            raise ValueError(f"Field '{field}' is not indexed in snapshot collection '{collection}'")
        return getattr(self._model(collection), attr)

    def _conditions(self, collection: str, query: Optional[Dict[str, Any]]):
        conditions = []
        for field, value in (query or {}).items():
            if isinstance(value, dict):
                raise ValueError(f"Operator queries are not supported on snapshots: {field}={value!r}")
            conditions.append(self._column(collection, field) == value)
        return conditions

    def _to_doc(self, collection: str, row) -> Dict[str, Any]:
        doc: Dict[str, Any] = {}
        for field, attr in self.COLUMNS[collection].items():
            value = getattr(row, attr)
            if value is not None or field == "_id":
                doc[field] = value
        doc.update(json_util.loads(row.extra or "{}"))
        return doc

    def _to_row(self, collection: str, doc: Dict[str, Any]):
        columns = self.COLUMNS[collection]
        values = {attr: doc.get(field) for field, attr in columns.items()}
        if values["id"] is not None and not isinstance(values["id"], str):
            # Newer servers key chunks by ObjectId; snapshots keep its string form
            values["id"] = str(values["id"])
        extra = {field: value for field, value in doc.items() if field not in columns}
        return self._model(collection)(extra=json_util.dumps(extra), **values)

    def _store_error(self, exc: SQLAlchemyError, operation: str, collection: str) -> StoreError:
        if isinstance(exc, OperationalError) and "locked" in str(exc).lower():
            return WriteTimeoutError(
                f"Snapshot {operation} timed out waiting for a lock",
                collection=collection,
            )
        return StoreError(f"Snapshot {operation} failed: {exc}", collection=collection)

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    def count(self, collection: str, query: Dict[str, Any]) -> int:
        model = self._model(collection)
        conditions = self._conditions(collection, query)
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(model).where(*conditions))

    def find(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        model = self._model(collection)
        conditions = self._conditions(collection, query)
        with self.session_factory() as session:
            rows = session.scalars(select(model).where(*conditions).order_by(model.id)).all()
            return [self._to_doc(collection, row) for row in rows]

    # ------------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------------

    def remove(self, collection: str, query: Dict[str, Any]) -> RemoveResult:
        model = self._model(collection)
        conditions = self._conditions(collection, query)
        with self.session_factory() as session:
            try:
                row_id = session.scalars(select(model.id).where(*conditions).limit(1)).first()
                removed = 0
                if row_id is not None:
                    removed = session.execute(delete(model).where(model.id == row_id)).rowcount
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise self._store_error(e, "remove", collection) from e
        return RemoveResult.parse({"n_removed": removed}, collection=collection, query=query)

    def insert(self, collection: str, doc: Dict[str, Any]) -> InsertResult:
        row = self._to_row(collection, doc)
        with self.session_factory() as session:
            try:
                session.add(row)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateDocumentError(
                    "Document conflicts with an existing _id or unique host",
                    collection=collection,
                    doc_id=doc.get("_id"),
                ) from e
            except SQLAlchemyError as e:
                session.rollback()
                raise self._store_error(e, "insert", collection) from e
        return InsertResult.parse({"n_inserted": 1}, collection=collection, doc_id=doc.get("_id"))

    def bulk_update(
        self,
        collection: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
        multi: bool = True,
        write_concern: Optional[WriteConcernSpec] = None,
    ) -> UpdateResult:
        # Commits are durable once they return; the busy timeout bounds the wait.
        model = self._model(collection)
        conditions = self._conditions(collection, query)
        assignments = {self._column(collection, f): v for f, v in set_fields(update).items()}

        with self.session_factory() as session:
            try:
                match_stmt = select(model.id).where(*conditions)
                if not multi:
                    match_stmt = match_stmt.limit(1)
                matched_ids = list(session.scalars(match_stmt).all())

                modified = 0
                if matched_ids:
                    # Like the live store, rows that already hold the value are matched, not modified
                    differs = or_(*[(column != value) | column.is_(None) for column, value in assignments.items()])
                    modified = session.execute(
                        sql_update(model)
                        .where(model.id.in_(matched_ids), differs)
                        .values({column.key: value for column, value in assignments.items()})
                        .execution_options(synchronize_session=False)
                    ).rowcount
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise self._store_error(e, "update", collection) from e

        return UpdateResult.parse(
            {"n_matched": len(matched_ids), "n_modified": modified, "n_upserted": 0},
            collection=collection,
            query=query,
        )

    # ------------------------------------------------------------------------
    # Snapshot bookkeeping
    # ------------------------------------------------------------------------

    def load(self, collection: str, docs: List[Dict[str, Any]]) -> int:
        """Bulk-load documents exported from a live store. Returns rows written."""
        rows = [self._to_row(collection, doc) for doc in docs]
        with self.session_factory() as session:
            try:
                session.add_all(rows)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateDocumentError(
                    "Snapshot already holds documents with the same keys",
                    collection=collection,
                ) from e
        return len(rows)

    def read_info(self) -> Dict[str, str]:
        with self.session_factory() as session:
            return {row.key: row.value for row in session.scalars(select(SnapshotInfo)).all()}

    def write_info(self, info: Dict[str, Any]):
        with self.session_factory() as session:
            for key, value in info.items():
                session.merge(SnapshotInfo(key=key, value=str(value)))
            session.commit()
