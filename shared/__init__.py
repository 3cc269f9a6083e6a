"""
Shared utilities for shardfix components.

This package contains common functionality used by the repair tool and its scripts:
- logging_config: consistent log formatting for the CLI and scripts
"""
