"""Per-connection bookkeeping: identity, activity timestamps, retry buffers."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, Dict, Optional

_ids = itertools.count(1)
_ids_lock = threading.Lock()


def _next_id() -> int:
    with _ids_lock:
        return next(_ids)


class Session:
    """State owned by exactly one relay engine for one accepted connection.

    Pending buffers hold at most one unflushed segment per direction; recording
    a second one before the first is taken overwrites it.
    """

    def __init__(self, idle_timeout: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.id = _next_id()
        self.idle_timeout = float(idle_timeout)
        self._clock = clock
        self.created_at: Optional[float] = clock()
        self.last_active_at: Optional[float] = self.created_at
        self._pending_up: Optional[bytes] = None
        self._pending_down: Optional[bytes] = None
        self.bytes_up = 0
        self.bytes_down = 0
        self.target: Optional[str] = None
        self._destroyed = False

    def touch(self) -> None:
        self.last_active_at = self._clock()

    def is_timed_out(self) -> bool:
        if self._destroyed:
            return True
        return self._clock() - self.last_active_at > self.idle_timeout

    def record_pending_up(self, data: bytes) -> None:
        self._pending_up = bytes(data) if data else None

    def record_pending_down(self, data: bytes) -> None:
        self._pending_down = bytes(data) if data else None

    def has_pending_up(self) -> bool:
        return self._pending_up is not None

    def has_pending_down(self) -> bool:
        return self._pending_down is not None

    def take_pending_up(self) -> bytes:
        data, self._pending_up = self._pending_up, None
        return data or b""

    def take_pending_down(self) -> bytes:
        data, self._pending_down = self._pending_down, None
        return data or b""

    def pending_sizes(self) -> Dict[str, int]:
        return {
            "up": len(self._pending_up or b""),
            "down": len(self._pending_down or b""),
        }

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        if self._destroyed:
            raise RuntimeError(f"session {self.id} already destroyed")
        self._destroyed = True
        self._pending_up = None
        self._pending_down = None
        self.created_at = None
        self.last_active_at = None

    def to_dict(self) -> Dict[str, object]:
        age = None
        if self.created_at is not None:
            age = round(self._clock() - self.created_at, 3)
        return {
            "session": self.id,
            "target": self.target,
            "bytes_up": self.bytes_up,
            "bytes_down": self.bytes_down,
            "age_s": age,
        }

    def log_failure(self, logger: logging.Logger, exc: BaseException) -> None:
        logger.warning(
            f"{self.id}: connection failed: {exc}",
            extra={"session": self.id, "target": self.target, "error": type(exc).__name__},
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
