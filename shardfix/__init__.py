"""
shardfix: shard name repair for sharded cluster metadata

Every shard document in the config metadata must be keyed by the name of the
replica set that backs it. shardfix finds shards whose _id drifted away from
their replica set name and re-keys them, migrating every database and chunk
reference to the new id.

Responsibilities:
- Pre-flight checks against the target server (or offline snapshot)
- Detection and dry-run reporting of mismatched shard ids
- Re-keying shard documents and propagating the new id
- Exporting live metadata into an offline SQL snapshot for rehearsals
"""

__version__ = "1.0.0"
