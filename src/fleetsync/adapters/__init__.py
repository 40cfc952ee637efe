"""Adapters for the external collaborators of fleetsync."""

from contextlib import suppress

from fleetsync.adapters.base import (
    AuthProvider,
    ChangeFeed,
    RecordStore,
)
from fleetsync.adapters.memory import (
    MemoryAuthProvider,
    MemoryChangeFeed,
    MemoryRecordStore,
)
from fleetsync.adapters.rest import RestRecordStore

# Optional adapters - only available when dependencies are installed
with suppress(ImportError):
    from fleetsync.adapters.redis import RedisChangeFeed, publish_change

__all__ = [
    "AuthProvider",
    "ChangeFeed",
    "MemoryAuthProvider",
    "MemoryChangeFeed",
    "MemoryRecordStore",
    "RecordStore",
    "RedisChangeFeed",
    "RestRecordStore",
    "publish_change",
]
