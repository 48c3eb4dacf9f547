"""
Storage backends - in-memory (default) or database-backed

Both implement ReadingBackend and are selected once at startup; only one is
active at a time. Every call returns a BackendResult instead of raising, so
callers can report a missing or failing backend as a structured error.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from airmonitor.core.config import Settings
from airmonitor.core.exceptions import AirMonitorError, BackendError, BackendUnavailableError
from airmonitor.models.device import Device
from airmonitor.models.reading import StoredReading
from airmonitor.schemas.readings import (
    ConnectionStatus,
    CurrentSnapshot,
    Reading,
    ReadingInput,
    RunningStats,
    StoreSnapshot,
)
from airmonitor.services.store import DEFAULT_CAPACITY, DEFAULT_HISTORY_LIMIT, ReadingStore, now_ms

logger = logging.getLogger(__name__)


@dataclass
class BackendResult:
    """Outcome of a backend call."""

    success: bool
    data: Any = None
    error: AirMonitorError | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "BackendResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: AirMonitorError) -> "BackendResult":
        return cls(success=False, error=error)

    @property
    def message(self) -> str | None:
        return str(self.error) if self.error else None

    @property
    def unavailable(self) -> bool:
        return isinstance(self.error, BackendUnavailableError)


class ReadingBackend(ABC):
    """Source of truth for readings, current snapshot and statistics."""

    name: str = "backend"

    @abstractmethod
    async def record(self, data: ReadingInput, device_uid: str | None = None) -> BackendResult:
        """
        Store a validated reading.

        device_uid names the reporting device when the transport knows it
        (MQTT topic); None means the tracked device. Data is the new
        StoreSnapshot of the tracked stream, or None when the reading was
        stored for another device.
        """

    @abstractmethod
    async def current(self) -> BackendResult:
        """Data is the current StoreSnapshot."""

    @abstractmethod
    async def history(self, limit: int | None = None) -> BackendResult:
        """Data is a chronological list of Reading."""

    @abstractmethod
    async def all_readings(self) -> BackendResult:
        """Data is every retained Reading, chronological."""

    @abstractmethod
    async def stats(self) -> BackendResult:
        """Data is RunningStats."""

    @abstractmethod
    async def clear(self) -> BackendResult:
        """Drop history and statistics."""

    @abstractmethod
    async def mark_stale(self, threshold_ms: int) -> StoreSnapshot | None:
        """Return the new snapshot when the stream just went stale, else None."""


# ==================== IN-MEMORY ====================

class MemoryBackend(ReadingBackend):
    """Backend over the in-process ReadingStore."""

    name = "memory"

    def __init__(self, store: ReadingStore):
        self.store = store

    async def record(self, data: ReadingInput, device_uid: str | None = None) -> BackendResult:
        # One logical stream: every device feeds the same store
        return BackendResult.ok(self.store.record(data))

    async def current(self) -> BackendResult:
        return BackendResult.ok(self.store.current_snapshot())

    async def history(self, limit: int | None = None) -> BackendResult:
        return BackendResult.ok(self.store.history(limit))

    async def all_readings(self) -> BackendResult:
        return BackendResult.ok(self.store.all_readings())

    async def stats(self) -> BackendResult:
        return BackendResult.ok(self.store.stats())

    async def clear(self) -> BackendResult:
        self.store.clear()
        return BackendResult.ok()

    async def mark_stale(self, threshold_ms: int) -> StoreSnapshot | None:
        return self.store.mark_disconnected_if_stale(threshold_ms)


# ==================== DATABASE ====================

def _to_reading(row: StoredReading) -> Reading:
    return Reading(
        temperature=row.temperature,
        humidity=row.humidity,
        heat_index=row.heat_index,
        timestamp=row.recorded_at,
        sequence_id=row.id,
    )


class DatabaseBackend(ReadingBackend):
    """
    Backend persisting readings with SQLAlchemy.

    Readings are stored under the configured device. Statistics mirror the
    in-memory semantics: min/max/count over all stored readings of the device,
    averages over the latest `capacity` readings.

    Built without a session maker, every call reports BackendUnavailableError.
    """

    name = "database"

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None,
        device_uid: str,
        device_name: str | None = None,
        capacity: int = DEFAULT_CAPACITY,
        default_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], int] = now_ms,
    ):
        self.session_maker = session_maker
        self.device_uid = device_uid
        self.device_name = device_name
        self.capacity = capacity
        self.default_limit = default_limit
        self._clock = clock

        # Connectivity is tracked in-process, like the in-memory store
        self._status = ConnectionStatus.WAITING
        self._updated_at = clock()

    @property
    def configured(self) -> bool:
        return self.session_maker is not None

    @staticmethod
    def _unavailable() -> BackendResult:
        return BackendResult.fail(BackendUnavailableError("Database not configured"))

    async def _get_device(self, session: AsyncSession, device_uid: str, create: bool = False) -> Device | None:
        """Get existing device, optionally creating it."""
        result = await session.execute(
            select(Device).where(Device.device_uid == device_uid)
        )
        device = result.scalar_one_or_none()

        if not device and create:
            name = self.device_name if device_uid == self.device_uid else None
            device = Device(device_uid=device_uid, name=name)
            session.add(device)
            await session.flush()
            logger.info(f"🆕 Created new device: {device_uid}")

        return device

    async def _device_stats(self, session: AsyncSession, device_id: int) -> RunningStats:
        totals = await session.execute(
            select(
                func.max(StoredReading.temperature),
                func.min(StoredReading.temperature),
                func.max(StoredReading.humidity),
                func.min(StoredReading.humidity),
                func.count(StoredReading.id),
            ).where(StoredReading.device_id == device_id)
        )
        max_temp, min_temp, max_hum, min_hum, count = totals.one()

        if not count:
            return RunningStats()

        window = (
            select(StoredReading.temperature, StoredReading.humidity)
            .where(StoredReading.device_id == device_id)
            .order_by(StoredReading.id.desc())
            .limit(self.capacity)
            .subquery()
        )
        averages = await session.execute(
            select(func.avg(window.c.temperature), func.avg(window.c.humidity))
        )
        avg_temp, avg_hum = averages.one()

        return RunningStats(
            max_temp=max_temp,
            min_temp=min_temp,
            max_hum=max_hum,
            min_hum=min_hum,
            avg_temp=float(avg_temp),
            avg_hum=float(avg_hum),
            total_readings=count,
        )

    async def _latest_row(self, session: AsyncSession, device_id: int) -> StoredReading | None:
        result = await session.execute(
            select(StoredReading)
            .where(StoredReading.device_id == device_id)
            .order_by(StoredReading.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _snapshot(self, latest: StoredReading | None, stats: RunningStats) -> StoreSnapshot:
        current = CurrentSnapshot(
            status=self._status,
            reading=_to_reading(latest) if latest else None,
            updated_at=self._updated_at,
        )
        return StoreSnapshot(current=current, stats=stats)

    async def record(self, data: ReadingInput, device_uid: str | None = None) -> BackendResult:
        if not self.configured:
            return self._unavailable()

        device_uid = device_uid or self.device_uid
        tracked = device_uid == self.device_uid

        async with self.session_maker() as session:
            try:
                device = await self._get_device(session, device_uid, create=True)

                row = StoredReading(
                    device_id=device.id,
                    temperature=data.temperature,
                    humidity=data.humidity,
                    heat_index=data.heat_index,
                    recorded_at=self._clock(),
                )
                session.add(row)

                device.last_seen = datetime.now(timezone.utc)
                await session.flush()

                stats = await self._device_stats(session, device.id) if tracked else None
                await session.commit()

            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ Database error saving reading: {e}")
                return BackendResult.fail(BackendError(str(e)))

        logger.info(f"💾 Saved reading #{row.id} for {device_uid}")
        if not tracked:
            return BackendResult.ok()

        self._status = ConnectionStatus.ACTIVE
        self._updated_at = row.recorded_at
        return BackendResult.ok(self._snapshot(row, stats))

    async def current(self) -> BackendResult:
        if not self.configured:
            return self._unavailable()

        async with self.session_maker() as session:
            try:
                device = await self._get_device(session, self.device_uid)
                if not device:
                    return BackendResult.ok(self._snapshot(None, RunningStats()))

                latest = await self._latest_row(session, device.id)
                stats = await self._device_stats(session, device.id)
            except SQLAlchemyError as e:
                logger.error(f"❌ Database error fetching current reading: {e}")
                return BackendResult.fail(BackendError(str(e)))

        return BackendResult.ok(self._snapshot(latest, stats))

    async def history(self, limit: int | None = None) -> BackendResult:
        if not self.configured:
            return self._unavailable()

        if limit is None:
            limit = self.default_limit
        limit = min(limit, self.capacity)
        if limit <= 0:
            return BackendResult.ok([])

        return await self._device_readings(limit)

    async def all_readings(self) -> BackendResult:
        if not self.configured:
            return self._unavailable()

        return await self._device_readings(None)

    async def _device_readings(self, limit: int | None) -> BackendResult:
        async with self.session_maker() as session:
            try:
                device = await self._get_device(session, self.device_uid)
                if not device:
                    return BackendResult.ok([])

                query = (
                    select(StoredReading)
                    .where(StoredReading.device_id == device.id)
                    .order_by(StoredReading.id.desc())
                )
                if limit is not None:
                    query = query.limit(limit)

                result = await session.execute(query)
                rows = result.scalars().all()
            except SQLAlchemyError as e:
                logger.error(f"❌ Database error fetching readings: {e}")
                return BackendResult.fail(BackendError(str(e)))

        return BackendResult.ok([_to_reading(row) for row in reversed(rows)])

    async def stats(self) -> BackendResult:
        if not self.configured:
            return self._unavailable()

        async with self.session_maker() as session:
            try:
                device = await self._get_device(session, self.device_uid)
                if not device:
                    return BackendResult.ok(RunningStats())
                stats = await self._device_stats(session, device.id)
            except SQLAlchemyError as e:
                logger.error(f"❌ Database error computing stats: {e}")
                return BackendResult.fail(BackendError(str(e)))

        return BackendResult.ok(stats)

    async def clear(self) -> BackendResult:
        if not self.configured:
            return self._unavailable()

        async with self.session_maker() as session:
            try:
                device = await self._get_device(session, self.device_uid)
                if device:
                    await session.execute(
                        delete(StoredReading).where(StoredReading.device_id == device.id)
                    )
                    await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ Database error clearing readings: {e}")
                return BackendResult.fail(BackendError(str(e)))

        logger.info(f"🗑️ Cleared stored readings for {self.device_uid}")
        return BackendResult.ok()

    async def mark_stale(self, threshold_ms: int) -> StoreSnapshot | None:
        if not self.configured:
            return None
        if self._status == ConnectionStatus.DISCONNECTED:
            return None
        if self._clock() - self._updated_at <= threshold_ms:
            return None

        self._status = ConnectionStatus.DISCONNECTED

        result = await self.current()
        if result.success:
            return result.data
        return self._snapshot(None, RunningStats())

    # ==================== DEVICE QUERIES ====================

    async def latest_readings(self, limit: int = DEFAULT_HISTORY_LIMIT) -> BackendResult:
        """Newest readings across all devices, with device name and location."""
        if not self.configured:
            return self._unavailable()

        async with self.session_maker() as session:
            try:
                result = await session.execute(
                    select(StoredReading, Device)
                    .join(Device, StoredReading.device_id == Device.id)
                    .order_by(StoredReading.recorded_at.desc(), StoredReading.id.desc())
                    .limit(limit)
                )
                rows = result.all()
            except SQLAlchemyError as e:
                logger.error(f"❌ Database error fetching latest readings: {e}")
                return BackendResult.fail(BackendError(str(e)))

        return BackendResult.ok([
            {
                **_to_reading(reading).to_wire(),
                "deviceUid": device.device_uid,
                "deviceName": device.name,
                "location": device.location,
            }
            for reading, device in rows
        ])

    async def latest_per_device(self) -> BackendResult:
        """Most recent reading of each device that has any."""
        if not self.configured:
            return self._unavailable()

        async with self.session_maker() as session:
            try:
                newest = (
                    select(StoredReading.device_id, func.max(StoredReading.id).label("reading_id"))
                    .group_by(StoredReading.device_id)
                    .subquery()
                )
                result = await session.execute(
                    select(StoredReading, Device)
                    .join(newest, StoredReading.id == newest.c.reading_id)
                    .join(Device, StoredReading.device_id == Device.id)
                    .order_by(Device.device_uid)
                )
                rows = result.all()
            except SQLAlchemyError as e:
                logger.error(f"❌ Database error fetching latest per device: {e}")
                return BackendResult.fail(BackendError(str(e)))

        return BackendResult.ok([
            {
                "deviceUid": device.device_uid,
                "deviceName": device.name,
                "location": device.location,
                "reading": _to_reading(reading).to_wire(),
            }
            for reading, device in rows
        ])

    async def device_stats(self, device_uid: str) -> BackendResult:
        """RunningStats of any stored device; data is None for an unknown device."""
        if not self.configured:
            return self._unavailable()

        async with self.session_maker() as session:
            try:
                device = await self._get_device(session, device_uid)
                if not device:
                    return BackendResult.ok(None)
                stats = await self._device_stats(session, device.id)
            except SQLAlchemyError as e:
                logger.error(f"❌ Database error fetching stats for {device_uid}: {e}")
                return BackendResult.fail(BackendError(str(e)))

        return BackendResult.ok(stats)

    async def devices(self) -> BackendResult:
        """Active devices."""
        if not self.configured:
            return self._unavailable()

        async with self.session_maker() as session:
            try:
                result = await session.execute(
                    select(Device).where(Device.is_active == True).order_by(Device.device_uid)
                )
                devices = result.scalars().all()
            except SQLAlchemyError as e:
                logger.error(f"❌ Database error fetching devices: {e}")
                return BackendResult.fail(BackendError(str(e)))

        return BackendResult.ok([
            {
                "deviceUid": device.device_uid,
                "name": device.name,
                "location": device.location,
                "isActive": device.is_active,
                "lastSeen": device.last_seen.isoformat() if device.last_seen else None,
            }
            for device in devices
        ])


# ==================== SELECTION ====================

def select_backend(settings: Settings, store: ReadingStore, database: DatabaseBackend) -> ReadingBackend:
    """Pick the active backend for this process."""
    if settings.storage_backend == "database":
        if database.configured:
            logger.info("🗄️ Using database storage backend")
            return database
        logger.warning("⚠️ DATABASE_URL is not set - falling back to in-memory storage")

    logger.info("🧠 Using in-memory storage backend")
    return MemoryBackend(store)
