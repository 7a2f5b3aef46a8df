"""MoneySync Server - in-process server of record for development and tests.

The production server of record is an external service reached over
``POST /sync``. This package implements the same contract in memory so the
client can run end to end without network access (``use_local_server`` mode).
"""

__version__ = "0.1.0"

from .sync_service import LocalSyncServer

__all__ = ["LocalSyncServer"]
