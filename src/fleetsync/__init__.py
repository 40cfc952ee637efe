"""fleetsync - Client-side data synchronization for fleet operations."""

from contextlib import suppress

# Adapters
from fleetsync.adapters import (
    AuthProvider,
    ChangeFeed,
    MemoryAuthProvider,
    MemoryChangeFeed,
    MemoryRecordStore,
    RecordStore,
    RestRecordStore,
)

# Cache and executors
from fleetsync.cache import QueryCache, Subscription
from fleetsync.client import SyncClient
from fleetsync.config import AUTH_KEY_PREFIXES, CORE_KEY_PREFIXES, SyncConfig

# Duration parsing
from fleetsync.duration import parse_duration

# Events and errors
from fleetsync.events import AuthEvent, AuthEventKind, ChangeEvent, Operation, Session
from fleetsync.exceptions import (
    AuthError,
    NetworkError,
    PayloadError,
    SyncError,
    UnknownError,
    ValidationError,
    normalize_error,
)
from fleetsync.executor import QueryExecutor
from fleetsync.invalidation import InvalidationManager
from fleetsync.keys import make_key
from fleetsync.mutations import MutationExecutor
from fleetsync.realtime import RealtimeBridge
from fleetsync.resources import FLEET_RESOURCES, Resource, build_resources

# Core types
from fleetsync.types import (
    CacheEntry,
    CacheKey,
    Duration,
    EntryState,
    MutationResult,
    QueryConfig,
    QueryOptions,
)

# Optional adapter imports - only available when dependencies are installed
with suppress(ImportError):
    from fleetsync.adapters import RedisChangeFeed

__version__ = "0.1.0"

__all__ = [
    "AUTH_KEY_PREFIXES",
    "CORE_KEY_PREFIXES",
    "FLEET_RESOURCES",
    "AuthError",
    "AuthEvent",
    "AuthEventKind",
    "AuthProvider",
    "CacheEntry",
    "CacheKey",
    "ChangeEvent",
    "ChangeFeed",
    "Duration",
    "EntryState",
    "InvalidationManager",
    "MemoryAuthProvider",
    "MemoryChangeFeed",
    "MemoryRecordStore",
    "MutationExecutor",
    "MutationResult",
    "NetworkError",
    "Operation",
    "PayloadError",
    "QueryCache",
    "QueryConfig",
    "QueryExecutor",
    "QueryOptions",
    "RealtimeBridge",
    "RecordStore",
    "RedisChangeFeed",
    "Resource",
    "RestRecordStore",
    "Session",
    "Subscription",
    "SyncClient",
    "SyncConfig",
    "SyncError",
    "UnknownError",
    "ValidationError",
    "build_resources",
    "make_key",
    "normalize_error",
    "parse_duration",
]
