# === NAVMAP v1 ===
# {
#   "module": "tokenbucket.persistence",
#   "purpose": "Key/value persistence contract for bucket state (last fill, tokens left).",
#   "sections": [
#     {
#       "id": "bucketstore",
#       "name": "BucketStore",
#       "anchor": "class-bucketstore",
#       "kind": "class"
#     },
#     {
#       "id": "inmemorybucketstore",
#       "name": "InMemoryBucketStore",
#       "anchor": "class-inmemorybucketstore",
#       "kind": "class"
#     },
#     {
#       "id": "bucketpersistence",
#       "name": "BucketPersistence",
#       "anchor": "class-bucketpersistence",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Key/value persistence contract for bucket state.

A bucket persists exactly two scalars: the timestamp of its last refill and
the number of tokens left.  Stores only need batched get/set of string
values, which maps directly onto Redis ``MGET``/``MSET`` and onto a single
key/value table in SQLite.

Key layout::

    <prefix>:<bucket_name>:lastFill
    <prefix>:<bucket_name>:tokensLeft

Example:
    from tokenbucket.persistence import BucketPersistence, InMemoryBucketStore

    store = InMemoryBucketStore()
    bucket = TokenBucket(size=10, persistence=BucketPersistence("api", store))
    bucket.save()
"""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple, Union

DEFAULT_KEY_PREFIX = "tokenbucket"

StoredValue = Union[str, bytes, None]


class BucketStore(Protocol):
    """
    External key/value store for bucket state.
    Values are written as decimal strings and may come back as ``str`` or ``bytes``.
    """

    def get_many(self, keys: Sequence[str]) -> List[StoredValue]: ...
    def set_many(self, mapping: Mapping[str, str]) -> None: ...
    def close(self) -> None: ...


@dataclass
class InMemoryBucketStore:
    """Process-local bucket store; safe default."""

    _values: Dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get_many(self, keys: Sequence[str]) -> List[StoredValue]:
        with self._lock:
            return [self._values.get(key) for key in keys]

    def set_many(self, mapping: Mapping[str, str]) -> None:
        with self._lock:
            self._values.update(mapping)

    def close(self) -> None:
        with self._lock:
            self._values.clear()


def encode_value(value: float) -> str:
    """Render a float so that ``decode_value`` restores it exactly."""
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return repr(float(value))


def decode_value(raw: StoredValue) -> Optional[float]:
    """Parse a stored value; empty or missing values yield ``None``."""
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    raw = raw.strip()
    if not raw:
        return None
    return float(raw)


@dataclass(frozen=True)
class BucketPersistence:
    """Persistence identity of a bucket: its unique name and the store it lives in.

    Attributes:
        bucket_name: Name used in the store keys; must be unique per store.
        store: Backend implementing :class:`BucketStore`.
        key_prefix: Namespace prepended to every key.
    """

    bucket_name: str
    store: BucketStore
    key_prefix: str = DEFAULT_KEY_PREFIX

    def __post_init__(self) -> None:
        if not self.bucket_name or not self.bucket_name.strip():
            raise ValueError("bucket_name must be a non-empty string")

    @property
    def last_fill_key(self) -> str:
        return f"{self.key_prefix}:{self.bucket_name}:lastFill"

    @property
    def tokens_left_key(self) -> str:
        return f"{self.key_prefix}:{self.bucket_name}:tokensLeft"

    def write(self, last_fill: float, tokens_left: float) -> None:
        """Write both scalars in one batch."""
        self.store.set_many(
            {
                self.last_fill_key: encode_value(last_fill),
                self.tokens_left_key: encode_value(tokens_left),
            }
        )

    def read(self) -> Tuple[Optional[float], Optional[float]]:
        """Return ``(last_fill, tokens_left)``; either may be ``None`` when absent."""
        raw_last_fill, raw_tokens_left = self.store.get_many(
            [self.last_fill_key, self.tokens_left_key]
        )
        return decode_value(raw_last_fill), decode_value(raw_tokens_left)


__all__ = [
    "DEFAULT_KEY_PREFIX",
    "BucketStore",
    "InMemoryBucketStore",
    "BucketPersistence",
    "encode_value",
    "decode_value",
]
