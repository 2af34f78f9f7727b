# === NAVMAP v1 ===
# {
#   "module": "tokenbucket.loader",
#   "purpose": "Load bucket tree configuration from YAML, environment variables, and overrides.",
#   "sections": [
#     {
#       "id": "normalize-bucket-key",
#       "name": "_normalize_bucket_key",
#       "anchor": "function-normalize-bucket-key",
#       "kind": "function"
#     },
#     {
#       "id": "load-yaml-file",
#       "name": "_load_yaml_file",
#       "anchor": "function-load-yaml-file",
#       "kind": "function"
#     },
#     {
#       "id": "merge-dicts",
#       "name": "_merge_dicts",
#       "anchor": "function-merge-dicts",
#       "kind": "function"
#     },
#     {
#       "id": "parse-pairs",
#       "name": "_parse_pairs",
#       "anchor": "function-parse-pairs",
#       "kind": "function"
#     },
#     {
#       "id": "apply-env-overlays",
#       "name": "_apply_env_overlays",
#       "anchor": "function-apply-env-overlays",
#       "kind": "function"
#     },
#     {
#       "id": "apply-overrides",
#       "name": "_apply_overrides",
#       "anchor": "function-apply-overrides",
#       "kind": "function"
#     },
#     {
#       "id": "load-bucket-config",
#       "name": "load_bucket_config",
#       "anchor": "function-load-bucket-config",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Load bucket tree configuration from YAML, environment variables, and overrides.

Supports hierarchical configuration with precedence:
  Overrides > Environment > YAML > Defaults

YAML layout::

    store:
      kind: redis
      dsn: redis://localhost:6379/0
    buckets:
      daily:
        size: 1000
        interval: day
        persist: true
      api:
        size: 15
        tokens_to_add_per_interval: 15
        interval: 900000
        max_wait: hour
        parent: daily
        persist: true

Environment:
- TOKENBUCKET_CONFIG: YAML path used when none is passed
- TOKENBUCKET_STORE_KIND / TOKENBUCKET_STORE_DSN / TOKENBUCKET_STORE_PATH
- TOKENBUCKET_KEY_PREFIX
- TOKENBUCKET__<bucket>: "size:100,interval:minute,spread:true"
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

try:
    import yaml
except ImportError as e:
    raise RuntimeError("PyYAML is required for loading bucket configurations") from e

from pydantic import ValidationError

from tokenbucket.config import BucketTreeConfig
from tokenbucket.errors import BucketConfigError

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "TOKENBUCKET_"
ENV_BUCKET_PREFIX = "TOKENBUCKET__"


def _normalize_bucket_key(name: str) -> str:
    """Normalize bucket names to lowercase for consistent keying."""
    return name.strip().lower()


def _load_yaml_file(yaml_path: str | Path | None) -> dict[str, Any]:
    """Load and parse a YAML configuration file."""
    if not yaml_path:
        return {}

    path = Path(yaml_path)
    if not path.exists():
        raise BucketConfigError(f"Bucket config file not found: {yaml_path}")

    try:
        with open(path, encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        LOGGER.error(f"Failed to parse bucket config YAML {yaml_path}: {e}")
        raise BucketConfigError(f"Invalid YAML in {yaml_path}: {e}") from e

    if not isinstance(doc, dict):
        raise BucketConfigError(f"Bucket config {yaml_path} must be a mapping")
    LOGGER.info(f"Loaded bucket config from {yaml_path}")
    return doc


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge override into base dictionary."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def _normalize_buckets(cfg: dict[str, Any]) -> dict[str, Any]:
    """Lowercase bucket names and parent references."""
    buckets = cfg.get("buckets") or {}
    if not isinstance(buckets, dict):
        raise BucketConfigError("'buckets' must be a mapping of name -> settings")

    normalized: dict[str, Any] = {}
    for name, spec in buckets.items():
        if spec is None:
            spec = {}
        if not isinstance(spec, dict):
            raise BucketConfigError(f"Settings for bucket '{name}' must be a mapping")
        spec = dict(spec)
        if isinstance(spec.get("parent"), str):
            spec["parent"] = _normalize_bucket_key(spec["parent"])
        key = _normalize_bucket_key(str(name))
        normalized[key] = _merge_dicts(normalized.get(key, {}), spec)

    overlay = dict(cfg)
    overlay["buckets"] = normalized
    return overlay


def _parse_pairs(value: str) -> dict[str, str]:
    """Parse ``"size:100,interval:minute"`` into a dict of raw strings."""
    pairs: dict[str, str] = {}
    for pair in value.split(","):
        if ":" not in pair:
            if pair.strip():
                LOGGER.warning(f"Ignoring malformed bucket setting: {pair!r}")
            continue
        k, v = pair.split(":", 1)
        pairs[k.strip().lower()] = v.strip()
    return pairs


def _apply_env_overlays(cfg: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Apply environment variable overlays to configuration."""
    overlay = dict(cfg)

    store_keys = {
        "TOKENBUCKET_STORE_KIND": "kind",
        "TOKENBUCKET_STORE_DSN": "dsn",
        "TOKENBUCKET_STORE_PATH": "path",
        "TOKENBUCKET_KEY_PREFIX": "key_prefix",
    }
    for env_key, field_name in store_keys.items():
        if env.get(env_key):
            overlay["store"] = dict(overlay.get("store") or {})
            overlay["store"][field_name] = env[env_key]

    buckets_overlay: dict[str, Any] = {}
    for key, value in env.items():
        if key.startswith(ENV_BUCKET_PREFIX):
            name = _normalize_bucket_key(key[len(ENV_BUCKET_PREFIX) :])
            if not name:
                continue
            buckets_overlay[name] = _parse_pairs(value)

    if buckets_overlay:
        overlay = _normalize_buckets(_merge_dicts(overlay, {"buckets": buckets_overlay}))

    return overlay


def _apply_overrides(cfg: dict[str, Any], overrides: Sequence[str] | None) -> dict[str, Any]:
    """Apply ``"<bucket>=size:100,interval:minute"`` overrides."""
    if not overrides:
        return cfg

    buckets_overlay: dict[str, Any] = {}
    for override in overrides:
        if "=" not in override:
            LOGGER.warning(f"Invalid bucket override format: {override}")
            continue
        name, settings = override.split("=", 1)
        name = _normalize_bucket_key(name)
        if not name:
            LOGGER.warning(f"Invalid bucket override format: {override}")
            continue
        buckets_overlay[name] = _merge_dicts(
            buckets_overlay.get(name, {}), _parse_pairs(settings)
        )

    return _normalize_buckets(_merge_dicts(cfg, {"buckets": buckets_overlay}))


def _get_default_config() -> dict[str, Any]:
    """Return default configuration: no buckets, in-memory store."""
    return {
        "buckets": {},
        "store": {"kind": "memory", "key_prefix": "tokenbucket"},
    }


def load_bucket_config(
    yaml_path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Sequence[str] | None = None,
) -> BucketTreeConfig:
    """Load bucket tree configuration with hierarchical precedence.

    Precedence (highest to lowest):
      1. Programmatic overrides
      2. Environment variables
      3. YAML file
      4. Defaults

    Args:
        yaml_path: Path to YAML configuration file (falls back to TOKENBUCKET_CONFIG)
        env: Environment variables (defaults to os.environ)
        overrides: Strings of the form ``"<bucket>=key:value,key:value"``

    Returns:
        Validated BucketTreeConfig

    Raises:
        BucketConfigError: If the file is missing or invalid, or validation fails
    """
    if env is None:
        env = os.environ

    cfg = _get_default_config()

    yaml_path = yaml_path or env.get(f"{ENV_PREFIX}CONFIG") or None
    yaml_cfg = _load_yaml_file(yaml_path)
    if yaml_cfg:
        cfg = _merge_dicts(cfg, _normalize_buckets(yaml_cfg))

    cfg = _apply_env_overlays(cfg, env)
    cfg = _apply_overrides(cfg, overrides)

    try:
        tree = BucketTreeConfig.model_validate(cfg)
    except ValidationError as e:
        raise BucketConfigError(f"Invalid bucket configuration: {e}") from e

    LOGGER.debug(
        "Bucket configuration resolved",
        extra={"buckets": sorted(tree.buckets), "store_kind": tree.store.kind},
    )
    return tree


__all__ = ["load_bucket_config"]
