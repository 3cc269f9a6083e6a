"""
Error taxonomy for shardfix.

Every failure raised by the repair carries a context dict (shard ids, expected vs.
actual counts, raw write results) so the final report can say exactly where the
run stopped. None of these are retried or rolled back; mutation-phase errors mean
the metadata needs manual inspection.
"""

from typing import Any, Dict, List, Optional


class ShardFixError(Exception):
    """Base class for all repair failures"""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context
        # Outcomes of shards completed before the failure, filled in by the coordinator
        self.outcomes: List[Any] = []

    def to_dict(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.context:
            info["context"] = self.context
        return info

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
        return f"{self.message} ({details})"


# ============================================================================
# ENVIRONMENT / INPUT ERRORS (raised before any mutation)
# ============================================================================

class PreflightError(ShardFixError):
    """Target server or snapshot is not suitable for the repair"""


class NoShardsError(ShardFixError):
    """The shards collection is empty"""


class MalformedHostError(ShardFixError):
    """A shard document has no usable replica set name in its host field"""


# ============================================================================
# MUTATION-PHASE ERRORS
# ============================================================================

class MutationError(ShardFixError):
    """A write step produced an unexpected result; metadata may be partially repaired"""


class ShardReKeyError(MutationError):
    """Removing or re-inserting the shard document did not touch exactly one document"""


class PropagationError(MutationError):
    """Updating database or chunk references produced an anomalous result"""


class NoChunksError(PropagationError):
    """No chunk documents referenced the shard being repaired"""


class IncompleteRepairError(MutationError):
    """References to the old shard id remain after all update steps"""


# ============================================================================
# STORE ADAPTER ERRORS
# ============================================================================

class StoreError(ShardFixError):
    """The metadata store rejected or failed an operation"""


class DuplicateDocumentError(StoreError):
    """Insert conflicted with a unique key (_id or host)"""


class WriteTimeoutError(StoreError):
    """Write was not acknowledged with the requested durability in time"""


class StoreResponseError(StoreError):
    """A store response did not carry the fields a write result requires"""


def describe_error(error: Optional[BaseException]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    if isinstance(error, ShardFixError):
        return error.to_dict()
    return {"error": type(error).__name__, "message": str(error)}
