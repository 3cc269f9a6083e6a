"""
Repair services: metadata store adapters, pre-flight checks and the repair engine.
"""
