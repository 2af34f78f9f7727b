# === NAVMAP v1 ===
# {
#   "module": "tokenbucket.__init__",
#   "purpose": "Hierarchical token-bucket rate limiter with optional persistence.",
#   "sections": []
# }
# === /NAVMAP ===

"""Hierarchical token-bucket rate limiter with optional persistence.

Buckets refill over time, either in discrete batches per interval or
continuously, and can be chained: a child bucket only admits a request when
every ancestor can admit it too.  State (last fill time, tokens left) can be
saved to and loaded from Redis, SQLite, or an in-memory store.

Modules:
- bucket: TokenBucket entity and admission algorithm
- errors: Exception hierarchy and ErrorKind tags
- persistence: Store protocol, in-memory store, persistence identity
- redis_bucket_store / sqlite_bucket_store: Store backends
- config / loader: Pydantic models and YAML/env loading for bucket trees
- registry: Named bucket tree with telemetry
- instrumentation: Telemetry sink protocol and logging sink

Example:
    >>> from tokenbucket import TokenBucket
    >>> bucket = TokenBucket(size=100, tokens_to_add_per_interval=30, interval="minute")
    >>> bucket.try_remove(10)
    True
"""

from tokenbucket.bucket import BucketState, TokenBucket, wall_clock_ms
from tokenbucket.config import BucketSpec, BucketTreeConfig, StoreConfig
from tokenbucket.durations import DURATION_MS, parse_duration_ms
from tokenbucket.errors import (
    BucketConfigError,
    ErrorKind,
    ExceedsMaxWait,
    NoInfinityRemoval,
    NoPersistenceConfigured,
    NotEnoughSize,
    StoreError,
    TokenBucketError,
)
from tokenbucket.instrumentation import BucketTelemetrySink, LoggingTelemetrySink
from tokenbucket.loader import load_bucket_config
from tokenbucket.persistence import BucketPersistence, BucketStore, InMemoryBucketStore
from tokenbucket.registry import (
    BucketRegistry,
    create_store,
    get_bucket_registry,
    set_bucket_registry,
)

__all__ = [
    # Bucket
    "TokenBucket",
    "BucketState",
    "wall_clock_ms",
    # Durations
    "DURATION_MS",
    "parse_duration_ms",
    # Errors
    "ErrorKind",
    "TokenBucketError",
    "NotEnoughSize",
    "NoInfinityRemoval",
    "ExceedsMaxWait",
    "NoPersistenceConfigured",
    "StoreError",
    "BucketConfigError",
    # Persistence
    "BucketStore",
    "BucketPersistence",
    "InMemoryBucketStore",
    # Config
    "BucketSpec",
    "StoreConfig",
    "BucketTreeConfig",
    "load_bucket_config",
    # Registry
    "BucketRegistry",
    "create_store",
    "get_bucket_registry",
    "set_bucket_registry",
    # Instrumentation
    "BucketTelemetrySink",
    "LoggingTelemetrySink",
]
