"""
Shard Name Repair Launcher

Runs the shard name repair from a source checkout without installing the package.

This tool:
- Runs pre-flight checks against the target config server or snapshot
- Reports shards whose _id differs from their replica set name
- With --execute, re-keys those shards and migrates database/chunk references

Usage:
    python scripts/run_fix_shard_names.py repair --uri mongodb://127.0.0.1:27019 --store-name configCopy
    python scripts/run_fix_shard_names.py repair --uri sqlite:///config-copy.db --execute --verbose
"""
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from shardfix.cli import main


if __name__ == "__main__":
    sys.exit(main())
