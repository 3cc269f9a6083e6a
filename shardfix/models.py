from sqlalchemy import Column, String, Text, Boolean, DateTime
from sqlalchemy.orm import declarative_base
from datetime import datetime

Base = declarative_base()

# ============================================================================
# SNAPSHOT MODEL DEFINITIONS
# ============================================================================
# Offline copies of the config metadata collections. Only the fields the repair
# reads or writes get their own column; every other field of the source
# document is kept in `extra` as Extended JSON so re-keying preserves it.

class ShardDoc(Base):
    """config.shards - one row per shard, keyed by shard id"""
    __tablename__ = "shards"

    id = Column(String, primary_key=True)
    host = Column(String, unique=True, nullable=False)  # "<replicaSetName>/<seedlist>"
    extra = Column(Text, default="{}")


class DatabaseDoc(Base):
    """config.databases - placement of each database on its primary shard"""
    __tablename__ = "databases"

    id = Column(String, primary_key=True)
    primary = Column("primary", String, index=True)
    partitioned = Column(Boolean)
    extra = Column(Text, default="{}")


class ChunkDoc(Base):
    """config.chunks - key range ownership"""
    __tablename__ = "chunks"

    id = Column(String, primary_key=True)
    ns = Column(String, index=True)
    shard = Column(String, index=True, nullable=False)
    extra = Column(Text, default="{}")


class SnapshotInfo(Base):
    """Facts about the source server recorded at export time"""
    __tablename__ = "snapshot_info"

    key = Column(String, primary_key=True)  # e.g., 'store_name', 'server_version'
    value = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
