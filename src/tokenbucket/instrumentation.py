"""Bucket admission telemetry.

``BucketRegistry`` reports every admission outcome to a sink.  The default
sink writes structured records to the ``tokenbucket.telemetry`` logger;
applications can supply their own implementation of the protocol to feed
metrics systems instead.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from tokenbucket.errors import ErrorKind

logger = logging.getLogger(__name__)

TELEMETRY_LOGGER_NAME = "tokenbucket.telemetry"


class BucketTelemetrySink(Protocol):
    """Protocol for bucket admission telemetry."""

    def emit_acquire(self, *, name: str, tokens: float, remaining: float, waited_ms: int) -> None:
        """Emit when a blocking acquisition succeeded."""
        ...

    def emit_reject(self, *, name: str, tokens: float, kind: ErrorKind) -> None:
        """Emit when an acquisition was rejected with an error."""
        ...

    def emit_try(self, *, name: str, tokens: float, allowed: bool) -> None:
        """Emit the outcome of a non-waiting acquisition."""
        ...


class LoggingTelemetrySink:
    """Telemetry sink writing one structured log record per event."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or logging.getLogger(TELEMETRY_LOGGER_NAME)

    def _emit(self, level: int, event: str, payload: Dict[str, Any]) -> None:
        self._log.log(level, event, extra={"event": event, **payload})

    def emit_acquire(self, *, name: str, tokens: float, remaining: float, waited_ms: int) -> None:
        self._emit(
            logging.DEBUG,
            "bucket.acquire",
            {"bucket": name, "tokens": tokens, "remaining": remaining, "waited_ms": waited_ms},
        )

    def emit_reject(self, *, name: str, tokens: float, kind: ErrorKind) -> None:
        self._emit(
            logging.WARNING,
            "bucket.reject",
            {"bucket": name, "tokens": tokens, "kind": kind.value},
        )

    def emit_try(self, *, name: str, tokens: float, allowed: bool) -> None:
        self._emit(
            logging.DEBUG,
            "bucket.try",
            {"bucket": name, "tokens": tokens, "allowed": allowed},
        )


def emit_safe(sink: Optional[BucketTelemetrySink], method: str, **payload: Any) -> None:
    """Call ``sink.<method>(**payload)``, swallowing telemetry errors."""
    if sink is None:
        return
    try:
        getattr(sink, method)(**payload)
    except Exception:  # pragma: no cover - telemetry must not raise
        logger.debug("bucket telemetry emission failed", exc_info=True)


__all__ = [
    "BucketTelemetrySink",
    "LoggingTelemetrySink",
    "TELEMETRY_LOGGER_NAME",
    "emit_safe",
]
