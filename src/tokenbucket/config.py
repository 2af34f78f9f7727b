"""
Pydantic v2 Configuration Models for tokenbucket

Provides strict, typed configuration for a named tree of buckets:
- Per-bucket settings (size, refill rate, interval, spread, max wait, parent)
- Store backend selection (memory, redis, sqlite)
- Top-level BucketTreeConfig validating parent references and cycles

All models use extra="forbid" for strict validation. Durations accept
milliseconds or "second" / "minute" / "hour" / "day".
"""

from __future__ import annotations

import math
from typing import ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenbucket.durations import parse_duration_ms, parse_optional_duration_ms

# ============================================================================
# Bucket Models
# ============================================================================


class BucketSpec(BaseModel):
    """Configuration for one bucket in the tree."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    size: float = Field(default=1, description="Maximum tokens held; 'inf' for unbounded")
    tokens_to_add_per_interval: float = Field(default=1, description="Tokens added per interval")
    interval: int = Field(default=1000, description="Interval in ms (or duration keyword)")
    tokens_left: Optional[float] = Field(default=None, description="Initial tokens (default: size)")
    last_fill: Optional[float] = Field(default=None, description="Initial last fill timestamp (ms)")
    spread: bool = Field(default=False, description="Add tokens continuously along the interval")
    max_wait: Optional[int] = Field(default=None, description="Wait ceiling in ms (or keyword)")
    parent: Optional[str] = Field(default=None, description="Name of the parent bucket")
    persist: bool = Field(default=False, description="Save/load this bucket through the store")

    @field_validator("size", mode="before")
    @classmethod
    def parse_size(cls, v: Union[str, float, int]) -> float:
        if isinstance(v, str) and v.strip().lower() in ("inf", "infinity", "unlimited"):
            return math.inf
        return v

    @field_validator("size")
    @classmethod
    def validate_size(cls, v: float) -> float:
        if v < 0:
            raise ValueError("size must be >= 0")
        return v

    @field_validator("tokens_to_add_per_interval")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tokens_to_add_per_interval must be > 0")
        return v

    @field_validator("interval", mode="before")
    @classmethod
    def parse_interval(cls, v: Union[str, int, float]) -> int:
        ms = parse_duration_ms(v)
        if ms <= 0:
            raise ValueError("interval must be > 0 ms")
        return ms

    @field_validator("max_wait", mode="before")
    @classmethod
    def parse_max_wait(cls, v: Optional[Union[str, int, float]]) -> Optional[int]:
        ms = parse_optional_duration_ms(v)
        if ms is not None and ms < 0:
            raise ValueError("max_wait must be >= 0 ms")
        return ms

    @field_validator("tokens_left")
    @classmethod
    def validate_tokens_left(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("tokens_left must be >= 0")
        return v


# ============================================================================
# Store Models
# ============================================================================


class StoreConfig(BaseModel):
    """Configuration for the bucket state store."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    kind: Literal["memory", "redis", "sqlite"] = Field(default="memory", description="Backend")
    dsn: Optional[str] = Field(default=None, description="Redis connection string")
    host: str = Field(default="127.0.0.1", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=0, description="Redis database index")
    password: Optional[str] = Field(default=None, description="Redis password")
    unix_socket: Optional[str] = Field(default=None, description="Redis unix socket path")
    path: Optional[str] = Field(default=None, description="SQLite database path")
    key_prefix: str = Field(default="tokenbucket", description="Namespace for store keys")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be in 1..65535")
        return v

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("key_prefix must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_sqlite_path(self) -> "StoreConfig":
        if self.kind == "sqlite" and not self.path:
            raise ValueError("sqlite store requires 'path'")
        return self


# ============================================================================
# Top-level Configuration
# ============================================================================


class BucketTreeConfig(BaseModel):
    """Named buckets wired into a tree by their ``parent`` references."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    buckets: Dict[str, BucketSpec] = Field(default_factory=dict)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @field_validator("buckets")
    @classmethod
    def normalize_names(cls, v: Dict[str, BucketSpec]) -> Dict[str, BucketSpec]:
        """Lowercase bucket names and parent references."""
        normalized: Dict[str, BucketSpec] = {}
        for name, spec in v.items():
            key = name.strip().lower()
            if not key or ":" in key:
                raise ValueError(f"Invalid bucket name: {name!r}")
            if key in normalized:
                raise ValueError(f"Duplicate bucket name: {name!r}")
            if spec.parent is not None:
                spec = spec.model_copy(update={"parent": spec.parent.strip().lower()})
            normalized[key] = spec
        return normalized

    @model_validator(mode="after")
    def validate_tree(self) -> "BucketTreeConfig":
        for name, spec in self.buckets.items():
            if spec.parent is not None and spec.parent not in self.buckets:
                raise ValueError(f"Bucket '{name}' references unknown parent '{spec.parent}'")
        self.build_order()
        return self

    def build_order(self) -> List[str]:
        """Bucket names ordered so that every parent precedes its children.

        Raises:
            ValueError: If the parent references form a cycle.
        """
        order: List[str] = []
        state: Dict[str, str] = {}

        for start in self.buckets:
            path: List[str] = []
            name: Optional[str] = start
            while name is not None and state.get(name) != "done":
                if state.get(name) == "visiting":
                    cycle = " -> ".join(path[path.index(name) :] + [name])
                    raise ValueError(f"Bucket parent cycle: {cycle}")
                state[name] = "visiting"
                path.append(name)
                name = self.buckets[name].parent
            for visited in reversed(path):
                state[visited] = "done"
                order.append(visited)

        return order


__all__ = ["BucketSpec", "StoreConfig", "BucketTreeConfig"]
