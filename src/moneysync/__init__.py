"""MoneySync: offline-first synchronization core for personal financial data.

This package reconciles a device's local DuckDB cache with a remote server of
record:
- Durable change queue with coalescing and dead-lettering
- Last-write-wins conflict resolution with explicit delete rules
- Resumable per-entity-type pull cursors
- Retryable background jobs for sync and notification delivery
- Typer CLI for running cycles and inspecting queue state
"""

__version__ = "0.1.0"
