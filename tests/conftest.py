"""Shared fixtures: seeded in-memory metadata snapshots, fake pre-flight checkers and a fake config server."""

import logging
from typing import Any, Dict, List, Optional

import pytest

from shardfix.config import RepairConfig
from shardfix.errors import PreflightError
from shardfix.services import mongo_store as mongo_store_module
from shardfix.services.metadata_store import CHUNKS, COLLECTIONS, DATABASES, SHARDS, SqlMetadataStore
from shardfix.services.preflight import PreconditionChecker


def make_store(url: str = "sqlite://", store_name: str = "config") -> SqlMetadataStore:
    store = SqlMetadataStore.from_url(url, store_name, create=True)
    store.write_info({"store_name": store_name, "server_version": "4.2.18", "empty": False})
    return store


def seed(
    store: SqlMetadataStore,
    shards: List[Dict[str, Any]],
    databases: Optional[List[Dict[str, Any]]] = None,
    chunks: Optional[List[Dict[str, Any]]] = None,
) -> SqlMetadataStore:
    store.load(SHARDS, shards)
    store.load(DATABASES, databases or [])
    store.load(CHUNKS, chunks or [])
    return store


def chunk(chunk_id: str, shard: str, ns: str = "app.users") -> Dict[str, Any]:
    return {"_id": chunk_id, "ns": ns, "min": {"uid": chunk_id}, "max": {"uid": chunk_id + "~"}, "shard": shard}


def dump(store: SqlMetadataStore) -> Dict[str, List[Dict[str, Any]]]:
    return {collection: store.find(collection) for collection in COLLECTIONS}


class FakeChecker(PreconditionChecker):
    """Records which checks ran; fails the named check if asked to"""

    def __init__(self, fail_on: Optional[str] = None):
        self.fail_on = fail_on
        self.calls: List[str] = []

    def _check(self, name: str):
        self.calls.append(name)
        if name == self.fail_on:
            raise PreflightError(f"{name} failed")

    def check_store_exists(self, store_name: str):
        self._check("check_store_exists")

    def check_not_routing_layer(self):
        self._check("check_not_routing_layer")

    def check_replica_set_mode(self):
        self._check("check_replica_set_mode")

    def check_server_version(self, supported_versions):
        self._check("check_server_version")


class FakeServerCollection:
    def __init__(self, docs: List[Dict[str, Any]]):
        self.docs = docs

    def find(self, query):
        return iter([dict(d) for d in self.docs if all(d.get(k) == v for k, v in query.items())])


class FakeServerDatabase(dict):
    def __missing__(self, name):
        return FakeServerCollection([])


class FakeServerAdmin:
    def __init__(self, responses: Dict[str, Dict[str, Any]]):
        self.responses = responses

    def command(self, name):
        return self.responses[name]


class FakeConfigServer:
    """Read side of a config server member as pymongo exposes it: admin commands, databases, collections"""

    def __init__(self, databases: Dict[str, Dict[str, List[Dict[str, Any]]]], version: str = "4.2.18"):
        self.databases = databases
        self.admin = FakeServerAdmin({
            "serverStatus": {"ok": 1, "process": "mongod", "version": version},
            "getCmdLineOpts": {"ok": 1, "parsed": {"replication": {"replSetName": "csrs"}}},
        })
        self.closed = False

    def __getitem__(self, name):
        return FakeServerDatabase(
            {collection: FakeServerCollection(docs) for collection, docs in self.databases.get(name, {}).items()}
        )

    def list_databases(self):
        return iter([
            {"name": name, "empty": not any(collections.values())}
            for name, collections in self.databases.items()
        ])

    def close(self):
        self.closed = True


@pytest.fixture
def store():
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def cluster(store):
    """shard0 is backed by rs0 and needs renaming; rs1 is already consistent."""
    return seed(
        store,
        shards=[
            {"_id": "shard0", "host": "rs0/host1:27017,host2:27017", "state": 1, "tags": ["east"]},
            {"_id": "rs1", "host": "rs1/host3:27017,host4:27017", "state": 1},
        ],
        databases=[
            {"_id": "app", "primary": "shard0", "partitioned": True},
            {"_id": "billing", "primary": "rs1", "partitioned": False},
        ],
        chunks=[
            chunk("app.users-uid_1", "shard0"),
            chunk("app.users-uid_2", "shard0"),
            chunk("app.users-uid_3", "rs1"),
        ],
    )


@pytest.fixture
def execute_config() -> RepairConfig:
    return RepairConfig(store_uri="sqlite://", dry_run=False)


@pytest.fixture
def dry_run_config() -> RepairConfig:
    return RepairConfig(store_uri="sqlite://", dry_run=True)


@pytest.fixture(autouse=True)
def _drop_logging_handlers():
    """setup_logging() attaches stdout/file handlers to the root logger; detach them after each test."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def live_server(monkeypatch) -> FakeConfigServer:
    """A 4.0 config server whose shard0 is backed by rs0; every connect() returns it."""
    server = FakeConfigServer(
        {
            "admin": {"system.version": [{"_id": "featureCompatibilityVersion", "version": "4.0"}]},
            "config": {
                SHARDS: [{"_id": "shard0", "host": "rs0/host1:27017,host2:27017", "state": 1}],
                DATABASES: [{"_id": "app", "primary": "shard0", "partitioned": True}],
                CHUNKS: [chunk("app.users-uid_1", "shard0"), chunk("app.users-uid_2", "shard0")],
            },
        },
        version="4.0.28",
    )
    monkeypatch.setattr(mongo_store_module, "connect", lambda uri: server)
    return server
