"""
Core modules for token-sync.

This package contains the usage pipeline: source discovery, incremental
file reading, record extraction, cumulative reconciliation, aggregation
and ledger merging.
"""
