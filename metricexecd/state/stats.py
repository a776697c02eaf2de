"""Runtime counters for the coprocess processor."""

from __future__ import annotations

import threading
from typing import Any

import msgspec


class ProcessorStats(msgspec.Struct):
    """Monotonic counters, plus the current process identity."""

    metrics_added: int = 0
    metrics_written: int = 0
    metrics_emitted: int = 0
    metrics_rejected: int = 0
    encode_errors: int = 0
    decode_errors: int = 0
    write_failures: int = 0
    accumulator_errors: int = 0
    restarts: int = 0
    spawn_failures: int = 0
    forced_kills: int = 0
    delivered: int = 0
    undelivered: int = 0
    stderr_lines: int = 0
    generation: int = 0
    pid: int | None = None
    lifecycle: str = "stopped"
    _lock: Any = msgspec.field(default_factory=threading.Lock)

    def incr(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def record_delivery(self, delivered: bool) -> None:
        self.incr("delivered" if delivered else "undelivered")

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            data = msgspec.structs.asdict(self)
        data.pop("_lock", None)
        return data


__all__ = ["ProcessorStats"]
