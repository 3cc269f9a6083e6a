"""Run coordinator: pre-flight gating, sequencing and reports."""

from typing import Any, Dict, List

import pytest
from pymongo import errors as pymongo_errors

from shardfix.config import RepairConfig
from shardfix.coordinator import failure_report, run, run_repair, run_with_config
from shardfix.errors import NoChunksError, NoShardsError, PreflightError
from shardfix.services import mongo_store as mongo_store_module
from shardfix.services.metadata_store import CHUNKS, DATABASES, SHARDS, MetadataStore

from .conftest import FakeChecker, chunk, dump, make_store, seed


class RecordingStore(MetadataStore):
    """Delegates to another store and records every call"""

    def __init__(self, inner: MetadataStore):
        super().__init__(inner.store_name)
        self.inner = inner
        self.calls: List[str] = []

    def count(self, collection, query):
        self.calls.append(f"count:{collection}")
        return self.inner.count(collection, query)

    def find(self, collection, query=None):
        self.calls.append(f"find:{collection}")
        return self.inner.find(collection, query)

    def remove(self, collection, query):
        self.calls.append(f"remove:{collection}")
        return self.inner.remove(collection, query)

    def insert(self, collection, doc: Dict[str, Any]):
        self.calls.append(f"insert:{collection}")
        return self.inner.insert(collection, doc)

    def bulk_update(self, collection, query, update, multi=True, write_concern=None):
        self.calls.append(f"bulk_update:{collection}")
        return self.inner.bulk_update(collection, query, update, multi=multi, write_concern=write_concern)


def test_execute_run_reports_every_shard(cluster, execute_config):
    checker = FakeChecker()

    report = run_repair(execute_config, cluster, checker)

    assert report.success
    assert checker.calls == [
        "check_store_exists",
        "check_not_routing_layer",
        "check_replica_set_mode",
        "check_server_version",
    ]
    assert report.to_output() == {
        "Execution results": [
            {"_id": "rs1", "needsFixing": False, "fixed": False},
            {"_id": "shard0", "needsFixing": True, "fixed": True, "docsUpdated": 4},
        ],
        "dryRun": False,
        "ok": 1,
    }
    assert sorted(s["_id"] for s in cluster.find(SHARDS)) == ["rs0", "rs1"]


def test_dry_run_leaves_store_unchanged(cluster, dry_run_config):
    before = dump(cluster)

    report = run_repair(dry_run_config, cluster, FakeChecker())

    assert [o.needs_fixing for o in report.results] == [False, True]
    assert not any(o.fixed for o in report.results)
    assert dump(cluster) == before


def test_second_execute_run_changes_nothing(cluster, execute_config):
    run_repair(execute_config, cluster, FakeChecker())
    after_first = dump(cluster)

    report = run_repair(execute_config, cluster, FakeChecker())

    assert not any(o.needs_fixing for o in report.results)
    assert dump(cluster) == after_first


@pytest.mark.parametrize("failing_check", ["check_store_exists", "check_not_routing_layer", "check_server_version"])
def test_preflight_failure_reads_nothing(cluster, execute_config, failing_check):
    recording = RecordingStore(cluster)

    with pytest.raises(PreflightError):
        run_repair(execute_config, recording, FakeChecker(fail_on=failing_check))

    assert recording.calls == []


def test_empty_shards_collection(store, execute_config):
    with pytest.raises(NoShardsError):
        run_repair(execute_config, store, FakeChecker())


def test_shards_are_repaired_in_order_and_failure_keeps_completed(store, execute_config):
    seed(
        store,
        shards=[
            {"_id": "a_shard", "host": "rsA/hostA:27017"},
            {"_id": "b_shard", "host": "rsB/hostB:27017"},
            {"_id": "c_shard", "host": "rsC/hostC:27017"},
        ],
        databases=[{"_id": "app", "primary": "b_shard"}],
        chunks=[chunk("app.users-uid_1", "a_shard"), chunk("app.users-uid_2", "c_shard")],
    )
    recording = RecordingStore(store)

    with pytest.raises(NoChunksError) as excinfo:
        run_repair(execute_config, recording, FakeChecker())

    assert [o.shard_id for o in excinfo.value.outcomes] == ["a_shard"]
    # c_shard was never touched
    assert store.find(SHARDS, {"_id": "c_shard"}) != []
    assert "remove:shards" in recording.calls
    assert recording.calls.count("remove:shards") == 2

    report = failure_report(execute_config, excinfo.value)
    output = report.to_output()
    assert output["ok"] == 0
    assert output["Script execution failure"]["error"] == "NoChunksError"
    assert output["Script execution failure"]["context"]["shard_id"] == "b_shard"
    assert output["Execution results"] == [
        {"_id": "a_shard", "needsFixing": True, "fixed": True, "docsUpdated": 2},
    ]
    # b_shard was re-keyed and its database migrated before the chunk step failed
    assert store.find(DATABASES, {"_id": "app"})[0]["primary"] == "rsB"


def snapshot_url(tmp_path, name="config-copy.db"):
    return f"sqlite:///{tmp_path / name}"


def seed_snapshot(url, store_name="configCopy"):
    snapshot = make_store(url, store_name)
    seed(
        snapshot,
        shards=[{"_id": "shard0", "host": "rs0/host1:27017,host2:27017"}],
        databases=[{"_id": "app", "primary": "shard0"}],
        chunks=[chunk("app.users-uid_1", "shard0"), chunk("app.users-uid_2", "shard0")],
    )
    snapshot.close()


def test_run_against_snapshot_file(tmp_path):
    url = snapshot_url(tmp_path)
    seed_snapshot(url)

    dry = run("configCopy", store_uri=url)
    assert dry.success
    assert dry.results[0].needs_fixing is True
    assert dry.results[0].fixed is False

    report = run("configCopy", dry_run=False, verbose=True, store_uri=url)
    assert report.success
    assert report.results[0].fixed is True

    check = make_store(url, "configCopy")
    assert [s["_id"] for s in check.find(SHARDS)] == ["rs0"]
    assert {c["shard"] for c in check.find(CHUNKS)} == {"rs0"}
    check.close()


def test_run_returns_failure_report_for_wrong_store_name(tmp_path):
    url = snapshot_url(tmp_path)
    seed_snapshot(url)

    report = run("config", dry_run=False, store_uri=url)

    assert not report.success
    assert report.error["error"] == "PreflightError"
    assert report.results == []


def test_run_with_config_writes_log_file(tmp_path):
    url = snapshot_url(tmp_path)
    seed_snapshot(url)
    log_file = tmp_path / "logs" / "shardfix.log"

    report = run_with_config(
        RepairConfig(store_uri=url, store_name="configCopy", dry_run=True, log_file=str(log_file))
    )

    assert report.success
    assert "dry run mode" in log_file.read_text()


def test_store_name_must_not_be_blank():
    with pytest.raises(ValueError):
        RepairConfig(store_name="  ")


def test_unusable_store_uri_yields_failure_report(monkeypatch):
    def refuse(uri, **options):
        raise pymongo_errors.ConfigurationError("no hosts reachable")

    monkeypatch.setattr(mongo_store_module.pymongo, "MongoClient", refuse)

    report = run("config", store_uri="mongodb://h1:27019,h2:27019")

    assert not report.success
    assert report.error["error"] == "PreflightError"
    assert report.to_output()["ok"] == 0


def test_missing_snapshot_file_is_not_created(tmp_path):
    missing = tmp_path / "snapshot-typo.db"

    report = run("configCopy", store_uri=f"sqlite:///{missing}")

    assert not report.success
    assert report.error["error"] == "PreflightError"
    assert "does not exist" in report.error["message"]
    assert not missing.exists()


def test_snapshot_file_without_tables_is_refused(tmp_path):
    blank = tmp_path / "blank.db"
    blank.touch()

    report = run("configCopy", store_uri=f"sqlite:///{blank}")

    assert not report.success
    assert report.error["error"] == "PreflightError"
    assert "shards" in report.error["context"]["missing_tables"]
