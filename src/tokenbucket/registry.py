# === NAVMAP v1 ===
# {
#   "module": "tokenbucket.registry",
#   "purpose": "Named bucket tree built from configuration, with store wiring and telemetry.",
#   "sections": [
#     {
#       "id": "create-store",
#       "name": "create_store",
#       "anchor": "function-create-store",
#       "kind": "function"
#     },
#     {
#       "id": "bucketregistry",
#       "name": "BucketRegistry",
#       "anchor": "class-bucketregistry",
#       "kind": "class"
#     },
#     {
#       "id": "get-bucket-registry",
#       "name": "get_bucket_registry",
#       "anchor": "function-get-bucket-registry",
#       "kind": "function"
#     },
#     {
#       "id": "set-bucket-registry",
#       "name": "set_bucket_registry",
#       "anchor": "function-set-bucket-registry",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Named bucket tree built from configuration, with store wiring and telemetry.

Provides:
- One TokenBucket per configured name, parents constructed before children
- Persistence identities for buckets marked ``persist: true``
- Blocking, awaitable and non-waiting acquisition by bucket name
- Batch save/load of every persisted bucket
- Telemetry on every acquisition outcome
- A process-global registry for applications that want one shared tree
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Dict, List, Optional

from tokenbucket.bucket import BucketState, TokenBucket, wall_clock_ms
from tokenbucket.config import BucketTreeConfig, StoreConfig
from tokenbucket.errors import TokenBucketError
from tokenbucket.instrumentation import BucketTelemetrySink, emit_safe
from tokenbucket.persistence import BucketPersistence, BucketStore, InMemoryBucketStore

LOGGER = logging.getLogger(__name__)


def create_store(cfg: StoreConfig) -> BucketStore:
    """Build the store backend described by ``cfg``."""
    if cfg.kind == "memory":
        return InMemoryBucketStore()
    if cfg.kind == "redis":
        from tokenbucket.redis_bucket_store import RedisBucketStore

        return RedisBucketStore(
            dsn=cfg.dsn,
            host=cfg.host,
            port=cfg.port,
            db=cfg.db,
            password=cfg.password,
            unix_socket=cfg.unix_socket,
        )
    if cfg.kind == "sqlite":
        from tokenbucket.sqlite_bucket_store import SQLiteBucketStore

        return SQLiteBucketStore(Path(cfg.path))
    raise ValueError(f"Unknown store kind: {cfg.kind}")


class BucketRegistry:
    """Process-local registry of named buckets."""

    def __init__(
        self,
        cfg: BucketTreeConfig,
        *,
        store: Optional[BucketStore] = None,
        telemetry: Optional[BucketTelemetrySink] = None,
        now_ms: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        async_sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._cfg = cfg
        self._tele = telemetry
        self._now_ms = now_ms or wall_clock_ms
        self._owns_store = store is None and any(spec.persist for spec in cfg.buckets.values())
        self._store = store if store is not None else (
            create_store(cfg.store) if self._owns_store else None
        )

        self._clock_kwargs: Dict[str, Any] = {"now_ms": self._now_ms}
        if sleep is not None:
            self._clock_kwargs["sleep"] = sleep
        if async_sleep is not None:
            self._clock_kwargs["async_sleep"] = async_sleep

        self._buckets: Dict[str, TokenBucket] = {}
        self._build()

    def _build(self) -> None:
        """Construct buckets so that every parent exists before its children."""
        for name in self._cfg.build_order():
            spec = self._cfg.buckets[name]
            persistence = None
            if spec.persist and self._store is not None:
                persistence = BucketPersistence(
                    bucket_name=name,
                    store=self._store,
                    key_prefix=self._cfg.store.key_prefix,
                )
            self._buckets[name] = TokenBucket(
                size=spec.size,
                tokens_to_add_per_interval=spec.tokens_to_add_per_interval,
                interval=spec.interval,
                tokens_left=spec.tokens_left,
                last_fill=spec.last_fill,
                spread=spec.spread,
                max_wait=spec.max_wait,
                parent=self._buckets[spec.parent] if spec.parent else None,
                persistence=persistence,
                **self._clock_kwargs,
            )

        LOGGER.debug(
            "BucketRegistry initialized",
            extra={
                "buckets": list(self._buckets),
                "store_kind": self._cfg.store.kind if self._store is not None else None,
            },
        )

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def get(self, name: str) -> TokenBucket:
        """Return the bucket called ``name``.

        Raises:
            KeyError: If no such bucket is configured.
        """
        key = name.strip().lower()
        try:
            return self._buckets[key]
        except KeyError:
            raise KeyError(f"Unknown bucket: {name}") from None

    def names(self) -> List[str]:
        return list(self._buckets)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._buckets

    # ------------------------------------------------------------------ #
    # Acquisition
    # ------------------------------------------------------------------ #

    def acquire(self, name: str, tokens: float = 1) -> float:
        """Blocking acquisition; returns the tokens left (see TokenBucket.remove)."""
        bucket = self.get(name)
        start = self._now_ms()
        try:
            remaining = bucket.remove(tokens)
        except TokenBucketError as e:
            emit_safe(self._tele, "emit_reject", name=name, tokens=tokens, kind=e.kind)
            raise
        self._record_acquire(name, tokens, remaining, start)
        return remaining

    async def acquire_async(self, name: str, tokens: float = 1) -> float:
        """Awaitable acquisition; returns the tokens left."""
        bucket = self.get(name)
        start = self._now_ms()
        try:
            remaining = await bucket.remove_async(tokens)
        except TokenBucketError as e:
            emit_safe(self._tele, "emit_reject", name=name, tokens=tokens, kind=e.kind)
            raise
        self._record_acquire(name, tokens, remaining, start)
        return remaining

    def try_acquire(self, name: str, tokens: float = 1) -> bool:
        """Non-waiting acquisition."""
        allowed = self.get(name).try_remove(tokens)
        emit_safe(self._tele, "emit_try", name=name, tokens=tokens, allowed=allowed)
        return allowed

    def _record_acquire(self, name: str, tokens: float, remaining: float, start: float) -> None:
        waited_ms = max(int(self._now_ms() - start), 0)
        emit_safe(
            self._tele,
            "emit_acquire",
            name=name,
            tokens=tokens,
            remaining=remaining,
            waited_ms=waited_ms,
        )

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def _persisted_tips(self) -> List[TokenBucket]:
        """Persisted buckets whose save/load does not already run via a persisted child."""
        covered = {
            id(bucket.parent)
            for bucket in self._buckets.values()
            if bucket.persistence is not None
            and bucket.parent is not None
            and bucket.parent.persistence is not None
        }
        return [
            bucket
            for bucket in self._buckets.values()
            if bucket.persistence is not None and id(bucket) not in covered
        ]

    def save_all(self) -> int:
        """Save every persisted bucket (ancestors first). Returns buckets written."""
        for bucket in self._persisted_tips():
            bucket.save()
        count = sum(1 for bucket in self._buckets.values() if bucket.persistence is not None)
        LOGGER.debug("Saved bucket states", extra={"count": count})
        return count

    def load_all(self) -> int:
        """Load every persisted bucket (ancestors first). Returns buckets read."""
        for bucket in self._persisted_tips():
            bucket.load()
        count = sum(1 for bucket in self._buckets.values() if bucket.persistence is not None)
        LOGGER.debug("Loaded bucket states", extra={"count": count})
        return count

    def snapshot(self) -> Dict[str, BucketState]:
        return {name: bucket.snapshot() for name, bucket in self._buckets.items()}

    def close(self) -> None:
        """Close the store if this registry created it."""
        if self._owns_store and self._store is not None:
            self._store.close()
        LOGGER.debug("BucketRegistry closed")


# Global bucket registry singleton
_GLOBAL_BUCKET_REGISTRY: Optional[BucketRegistry] = None
_REGISTRY_LOCK = threading.Lock()


def get_bucket_registry(
    cfg: Optional[BucketTreeConfig] = None,
    *,
    telemetry: Optional[BucketTelemetrySink] = None,
) -> BucketRegistry:
    """Get or create the global bucket registry.

    Args:
        cfg: Configuration (used only on first call; loaded from the
             environment when omitted)
        telemetry: Optional telemetry sink

    Returns:
        Global BucketRegistry instance
    """
    global _GLOBAL_BUCKET_REGISTRY

    if _GLOBAL_BUCKET_REGISTRY is not None:
        return _GLOBAL_BUCKET_REGISTRY

    with _REGISTRY_LOCK:
        if _GLOBAL_BUCKET_REGISTRY is not None:
            return _GLOBAL_BUCKET_REGISTRY

        if cfg is None:
            from tokenbucket.loader import load_bucket_config

            cfg = load_bucket_config()

        _GLOBAL_BUCKET_REGISTRY = BucketRegistry(cfg, telemetry=telemetry)
        return _GLOBAL_BUCKET_REGISTRY


def set_bucket_registry(registry: Optional[BucketRegistry]) -> None:
    """Set the global bucket registry (for testing).

    Args:
        registry: Registry instance to use globally, or None to reset
    """
    global _GLOBAL_BUCKET_REGISTRY
    with _REGISTRY_LOCK:
        _GLOBAL_BUCKET_REGISTRY = registry


__all__ = [
    "BucketRegistry",
    "create_store",
    "get_bucket_registry",
    "set_bucket_registry",
]
