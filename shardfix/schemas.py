"""
Typed records exchanged between the store adapters, the repair engine and the report.

Write results are validated here, at the adapter boundary, so call sites never
have to check whether a response carries the counters they need.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shardfix.errors import MalformedHostError, StoreResponseError


# ============================================================================
# METADATA DOCUMENTS
# ============================================================================

class ShardRecord(BaseModel):
    """A config.shards document. Unknown fields (state, tags, ...) are kept as extras."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(alias="_id")
    host: str

    @property
    def replica_set_name(self) -> str:
        return self.host.split("/")[0]

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "ShardRecord":
        try:
            return cls.model_validate(doc)
        except ValidationError as exc:
            raise MalformedHostError(
                "Shard document is missing a string _id or host",
                shard_id=doc.get("_id"),
                host=doc.get("host"),
            ) from exc

    def to_doc(self) -> Dict[str, Any]:
        doc = {"_id": self.id, "host": self.host}
        doc.update(self.model_extra or {})
        return doc

    def rekeyed(self, new_id: str) -> "ShardRecord":
        return ShardRecord.model_validate({**self.to_doc(), "_id": new_id})


# ============================================================================
# WRITE RESULTS
# ============================================================================

class _WriteResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    @classmethod
    def parse(cls, raw: Dict[str, Any], **context: Any):
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise StoreResponseError(
                f"Store returned an invalid {cls.__name__}",
                response=raw,
                **context,
            ) from exc


class RemoveResult(_WriteResult):
    n_removed: int = Field(ge=0)


class InsertResult(_WriteResult):
    n_inserted: int = Field(ge=0)


class UpdateResult(_WriteResult):
    n_matched: int = Field(ge=0)
    n_modified: int = Field(ge=0)
    n_upserted: int = Field(ge=0)


# ============================================================================
# REPORTING
# ============================================================================

class RepairOutcome(BaseModel):
    """Per-shard result of a repair run"""
    model_config = ConfigDict(populate_by_name=True)

    shard_id: str = Field(serialization_alias="_id")
    needs_fixing: bool = Field(default=False, serialization_alias="needsFixing")
    fixed: bool = False
    docs_updated: Optional[int] = Field(default=None, serialization_alias="docsUpdated")

    def to_output(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RepairReport(BaseModel):
    """Outcome of a whole run. ok is 1 on success and 0 on any fatal error."""
    results: List[RepairOutcome] = Field(default_factory=list)
    ok: int = 1
    error: Optional[Dict[str, Any]] = None
    dry_run: bool = True

    @field_validator("ok")
    @classmethod
    def _ok_flag(cls, value: int) -> int:
        if value not in (0, 1):
            raise ValueError("ok must be 0 or 1")
        return value

    @property
    def success(self) -> bool:
        return self.ok == 1

    def to_output(self) -> Dict[str, Any]:
        output: Dict[str, Any] = {}
        if self.error is not None:
            output["Script execution failure"] = self.error
        output["Execution results"] = [outcome.to_output() for outcome in self.results]
        output["dryRun"] = self.dry_run
        output["ok"] = self.ok
        return output
