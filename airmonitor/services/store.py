"""
Reading Store - bounded in-memory history with running statistics

Holds the state of the single sensor stream:
- current reading slot with connectivity status
- fixed-capacity history (oldest readings evicted first)
- running min/max/average/count

One lock serializes every read and write, so the store can be shared
between the event loop and worker threads.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from typing import Any

from airmonitor.schemas.readings import (
    ConnectionStatus,
    CurrentSnapshot,
    Reading,
    ReadingInput,
    RunningStats,
    StoreSnapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100
DEFAULT_HISTORY_LIMIT = 50


def now_ms() -> int:
    """Current wall-clock time in milliseconds since epoch."""
    return int(time.time() * 1000)


class ReadingStore:
    """In-memory store for one sensor's readings."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        default_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], int] = now_ms,
    ):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self.capacity = capacity
        self.default_limit = default_limit
        self._clock = clock
        self._lock = threading.Lock()

        self._history: deque[Reading] = deque(maxlen=capacity)
        self._current = CurrentSnapshot(updated_at=clock())
        self._stats = RunningStats()
        self._next_sequence_id = 1

    # ==================== WRITES ====================

    def record(self, payload: "Mapping[str, Any] | ReadingInput") -> StoreSnapshot:
        """
        Record a new reading.

        Args:
            payload: Raw device payload or an already validated ReadingInput

        Returns:
            New snapshot (current reading + stats)

        Raises:
            ValidationError: temperature or humidity missing/invalid (state untouched)
        """
        data = ReadingInput.parse(payload)

        with self._lock:
            timestamp = self._clock()
            reading = Reading(
                temperature=data.temperature,
                humidity=data.humidity,
                heat_index=data.heat_index,
                timestamp=timestamp,
                sequence_id=self._next_sequence_id,
            )
            self._next_sequence_id += 1

            self._current = CurrentSnapshot(
                status=ConnectionStatus.ACTIVE,
                reading=reading,
                updated_at=timestamp,
            )
            self._history.append(reading)
            self._stats = self._updated_stats(reading)

            snapshot = StoreSnapshot(current=self._current, stats=self._stats)

        logger.info(f"📊 New reading #{reading.sequence_id}: {reading.temperature}°C, {reading.humidity}%")
        return snapshot

    def _updated_stats(self, reading: Reading) -> RunningStats:
        """Fold a reading into the stats. Caller holds the lock."""
        stats = self._stats
        count = len(self._history)

        return RunningStats(
            max_temp=max(stats.max_temp, reading.temperature),
            min_temp=min(stats.min_temp, reading.temperature),
            max_hum=max(stats.max_hum, reading.humidity),
            min_hum=min(stats.min_hum, reading.humidity),
            # Mean over the buffered window, not the whole lifetime
            avg_temp=sum(r.temperature for r in self._history) / count,
            avg_hum=sum(r.humidity for r in self._history) / count,
            total_readings=stats.total_readings + 1,
        )

    def clear(self) -> None:
        """
        Drop history and reset statistics.

        The current reading, its timestamp and status are kept.
        """
        with self._lock:
            dropped = len(self._history)
            self._history.clear()
            self._stats = RunningStats()
            self._next_sequence_id = 1

        logger.info(f"🗑️ Cleared {dropped} readings")

    def mark_disconnected_if_stale(self, threshold_ms: int, now: int | None = None) -> StoreSnapshot | None:
        """
        Flag the stream as disconnected once it has been idle past the threshold.

        Fires only on the transition: returns the new snapshot the first time,
        None while already disconnected or still fresh.
        """
        with self._lock:
            if now is None:
                now = self._clock()

            if self._current.status == ConnectionStatus.DISCONNECTED:
                return None
            if now - self._current.updated_at <= threshold_ms:
                return None

            self._current = self._current.model_copy(update={"status": ConnectionStatus.DISCONNECTED})
            return StoreSnapshot(current=self._current, stats=self._stats)

    # ==================== READS ====================

    def history(self, limit: int | None = None) -> list[Reading]:
        """Last `limit` readings in chronological order (capped at buffer size)."""
        if limit is None:
            limit = self.default_limit
        if limit <= 0:
            return []

        with self._lock:
            items = list(self._history)
        return items[-limit:]

    def all_readings(self) -> list[Reading]:
        """Whole buffer in chronological order."""
        with self._lock:
            return list(self._history)

    def current_snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(current=self._current, stats=self._stats)

    def stats(self) -> RunningStats:
        with self._lock:
            return self._stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)
