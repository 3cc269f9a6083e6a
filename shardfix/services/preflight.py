"""
Pre-flight checks

The repair rewrites cluster metadata underneath the sharding machinery, so it may
only run against a config server member started without sharding enabled (plain
replica set or standalone), never against a mongos or a live CSRS, and only on
server versions the procedure was validated on.

Every check fails fast with PreflightError; nothing in shards/databases/chunks is
read before run_all() returns.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List

from pymongo import errors as pymongo_errors

from shardfix.errors import PreflightError
from shardfix.services.metadata_store import SqlMetadataStore

logger = logging.getLogger(__name__)


def major_minor(version: str) -> str:
    """'4.2.18' -> '4.2'"""
    parts = str(version).split(".")
    if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
        raise PreflightError("Could not parse the server version", version=version)
    return f"{parts[0]}.{parts[1]}"


class PreconditionChecker(ABC):
    """Environment checks that must all pass before any metadata is touched"""

    @abstractmethod
    def check_store_exists(self, store_name: str):
        ...

    @abstractmethod
    def check_not_routing_layer(self):
        ...

    @abstractmethod
    def check_replica_set_mode(self):
        ...

    @abstractmethod
    def check_server_version(self, supported_versions: Iterable[str]):
        ...

    def run_all(self, store_name: str, supported_versions: Iterable[str]):
        logger.debug("Running pre-flight checks")
        self.check_store_exists(store_name)
        self.check_not_routing_layer()
        self.check_replica_set_mode()
        self.check_server_version(supported_versions)
        logger.debug("Pre-flight checks completed successfully")

    @staticmethod
    def _check_version(version: str, supported_versions: Iterable[str]):
        supported = list(supported_versions)
        if major_minor(version) not in supported:
            raise PreflightError(
                "Unsupported version detected. Please reach out to Technical Support for assistance",
                version=version,
                supported=supported,
            )


# ============================================================================
# LIVE SERVER CHECKS
# ============================================================================

class MongoPreconditionChecker(PreconditionChecker):
    """Checks against the server a pymongo client is connected to"""

    def __init__(self, client):
        self.client = client

    def _command(self, name: str) -> Dict[str, Any]:
        try:
            res = self.client.admin.command(name)
        except pymongo_errors.PyMongoError as e:
            raise PreflightError(f"The {name} command failed: {e}") from e
        if not res or res.get("ok") != 1:
            raise PreflightError(f"The {name} command did not return ok", response=res)
        return res

    def server_status(self) -> Dict[str, Any]:
        return self._command("serverStatus")

    def check_store_exists(self, store_name: str):
        try:
            databases: List[Dict[str, Any]] = list(self.client.list_databases())
        except pymongo_errors.PyMongoError as e:
            raise PreflightError(f"Failed to obtain the list of databases: {e}") from e

        for db_doc in databases:
            if "name" not in db_doc:
                raise PreflightError("The name field is not present", response=db_doc)
            if db_doc["name"] != store_name:
                continue
            if "empty" not in db_doc:
                raise PreflightError("The empty field is not present", response=db_doc)
            if db_doc["empty"]:
                raise PreflightError("The target database is empty", store_name=store_name)
            return
        raise PreflightError("The target database could not be located", store_name=store_name)

    def check_not_routing_layer(self):
        process = self.server_status().get("process")
        if process is None:
            raise PreflightError("The process field is not present in serverStatus")
        if process == "mongos":
            raise PreflightError(
                "Mongos detected but the repair is not meant to be run on a mongos",
                process=process,
            )

    def check_replica_set_mode(self):
        res = self._command("getCmdLineOpts")
        if "parsed" not in res:
            raise PreflightError("The parsed field is not present in getCmdLineOpts")
        if "sharding" in res["parsed"]:
            raise PreflightError(
                "This server is running with sharding enabled. The CSRS should be running in "
                "standalone or non-configsvr replica set mode for the repair to work",
                sharding=res["parsed"]["sharding"],
            )

    def check_server_version(self, supported_versions: Iterable[str]):
        version = self.server_status().get("version")
        if version is None:
            raise PreflightError("The version field is not present in serverStatus")
        self._check_version(version, supported_versions)

    def describe_server(self) -> Dict[str, Any]:
        """Server facts recorded into snapshots so the version check can run offline"""
        status = self.server_status()
        return {"server_version": status.get("version", ""), "process": status.get("process", "")}


# ============================================================================
# SNAPSHOT CHECKS
# ============================================================================

class SnapshotPreconditionChecker(PreconditionChecker):
    """Runs the same checks against the facts recorded in an offline snapshot"""

    def __init__(self, store: SqlMetadataStore):
        self.store = store
        self._info = None

    @property
    def info(self) -> Dict[str, str]:
        if self._info is None:
            self._info = self.store.read_info()
        return self._info

    def check_store_exists(self, store_name: str):
        recorded = self.info.get("store_name")
        if recorded is None:
            raise PreflightError("The snapshot does not record a source database", store_name=store_name)
        if recorded != store_name:
            raise PreflightError(
                "The target database could not be located in the snapshot",
                store_name=store_name,
                recorded=recorded,
            )
        if self.info.get("empty") == "True":
            raise PreflightError("The target database is empty", store_name=store_name)

    def check_not_routing_layer(self):
        # The target is an offline file; no router can sit in front of it
        logger.debug("Snapshot target: routing layer check not applicable")

    def check_replica_set_mode(self):
        logger.debug("Snapshot target: sharding mode check not applicable")

    def check_server_version(self, supported_versions: Iterable[str]):
        version = self.info.get("server_version")
        if not version:
            raise PreflightError("The snapshot does not record a server version")
        self._check_version(version, supported_versions)
