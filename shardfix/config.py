import os
from typing import Optional, Tuple

from pydantic import BaseModel, Field, field_validator


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except Exception:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    return default


STORE_URI = str(os.getenv("SHARDFIX_STORE_URI", "mongodb://127.0.0.1:27017")).strip()
STORE_NAME = str(os.getenv("SHARDFIX_STORE_NAME", "config")).strip()
WRITE_TIMEOUT_MS = _int_env("SHARDFIX_WRITE_TIMEOUT_MS", 5000)
REQUIRE_CHUNKS = _bool_env("SHARDFIX_REQUIRE_CHUNKS", True)
LOG_FILE = os.getenv("SHARDFIX_LOG_FILE") or None

# Server versions (major.minor) the repair procedure has been validated against
SUPPORTED_VERSIONS: Tuple[str, ...] = ("3.6", "4.0", "4.2")

MONGO_URI_SCHEMES = ("mongodb://", "mongodb+srv://")


class WriteConcernSpec(BaseModel):
    """Durability requested for propagation updates"""
    w: str = "majority"
    wtimeout_ms: int = Field(default=WRITE_TIMEOUT_MS, gt=0)


class RepairConfig(BaseModel):
    """Options for a single repair run"""
    store_uri: str = STORE_URI
    store_name: str = STORE_NAME
    dry_run: bool = True
    verbose: bool = False
    require_chunks: bool = REQUIRE_CHUNKS
    write_concern: WriteConcernSpec = Field(default_factory=WriteConcernSpec)
    supported_versions: Tuple[str, ...] = SUPPORTED_VERSIONS
    log_file: Optional[str] = LOG_FILE

    @field_validator("store_name")
    @classmethod
    def _store_name_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("store_name must not be empty")
        return value

    @property
    def is_mongo(self) -> bool:
        return is_mongo_uri(self.store_uri)


def is_mongo_uri(uri: str) -> bool:
    return uri.startswith(MONGO_URI_SCHEMES)
