"""
Live Distributor - pushes snapshots to connected viewers

- Keeps the set of open subscribers (one per WebSocket)
- Sends an "initial" message on connect and "update" messages on each reading
- Runs the staleness watchdog that flags a silent sensor as disconnected
"""

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Protocol

from airmonitor.core.exceptions import DeliveryError
from airmonitor.schemas.messages import InitialMessage, UpdateMessage
from airmonitor.schemas.readings import CurrentSnapshot, RunningStats, StoreSnapshot
from airmonitor.services.backends import ReadingBackend
from airmonitor.services.store import now_ms

logger = logging.getLogger(__name__)

_subscriber_ids = itertools.count(1)


class Transport(Protocol):
    """Anything that can push JSON to a viewer (e.g. fastapi.WebSocket)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self) -> None: ...


class SubscriberState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Subscriber:
    """A connected viewer."""

    def __init__(self, transport: Transport):
        self.id = next(_subscriber_ids)
        self.transport = transport
        self.state = SubscriberState.CONNECTING

    @property
    def is_open(self) -> bool:
        return self.state == SubscriberState.OPEN

    async def send(self, message: InitialMessage | UpdateMessage, timeout: float | None = None) -> None:
        """
        Push one message.

        Raises:
            DeliveryError: the transport failed or did not accept the message in time
        """
        try:
            await asyncio.wait_for(self.transport.send_json(message.to_wire()), timeout)
        except Exception as e:
            raise DeliveryError(f"Subscriber {self.id}: {e!r}") from e

    async def close(self, timeout: float | None = None) -> None:
        """Close the transport so the viewer notices and can reconnect."""
        try:
            await asyncio.wait_for(self.transport.close(), timeout)
        except Exception as e:
            logger.debug(f"Subscriber {self.id} transport already gone: {e!r}")

    def __repr__(self) -> str:
        return f"<Subscriber {self.id} ({self.state.value})>"


class LiveDistributor:
    """Fan-out of snapshots to all open subscribers, plus the staleness watchdog."""

    def __init__(
        self,
        backend: ReadingBackend,
        stale_after_ms: int = 60_000,
        watchdog_interval: float = 30,
        send_timeout: float | None = 5,
    ):
        self.backend = backend
        self.stale_after_ms = stale_after_ms
        self.watchdog_interval = watchdog_interval
        self.send_timeout = send_timeout

        self._subscribers: set[Subscriber] = set()
        self._watchdog_task: asyncio.Task | None = None

    @property
    def subscribers(self) -> list[Subscriber]:
        return [s for s in self._subscribers if s.is_open]

    # ==================== SUBSCRIBERS ====================

    async def subscribe(self, transport: Transport) -> Subscriber:
        """Register a viewer and send it the current snapshot."""
        subscriber = Subscriber(transport)

        # Open before the snapshot read: broadcasts during the read reach this viewer
        subscriber.state = SubscriberState.OPEN
        self._subscribers.add(subscriber)
        logger.info(f"✅ Subscriber {subscriber.id} connected ({len(self._subscribers)} open)")

        result = await self.backend.current()
        if result.success:
            snapshot = result.data
        else:
            logger.error(f"❌ Could not load current snapshot for subscriber: {result.message}")
            snapshot = StoreSnapshot(current=CurrentSnapshot(updated_at=now_ms()), stats=RunningStats())

        try:
            await subscriber.send(InitialMessage.from_snapshot(snapshot), self.send_timeout)
        except DeliveryError as e:
            logger.warning(f"⚠️ Initial push failed: {e}")
            await self._drop(subscriber)

        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """Close and forget a subscriber. Safe to call more than once."""
        if subscriber.state == SubscriberState.CLOSED:
            return

        subscriber.state = SubscriberState.CLOSED
        self._subscribers.discard(subscriber)
        logger.info(f"❌ Subscriber {subscriber.id} disconnected ({len(self._subscribers)} open)")

    async def _drop(self, subscriber: Subscriber) -> None:
        """Unsubscribe and close the transport of a viewer that stopped accepting pushes."""
        self.unsubscribe(subscriber)
        await subscriber.close(self.send_timeout)

    # ==================== BROADCAST ====================

    async def broadcast(self, snapshot: StoreSnapshot) -> int:
        """
        Push an update to every open subscriber.

        Sends run concurrently; a subscriber that fails or times out is closed
        and removed without affecting the others.

        Returns:
            Number of subscribers that received the update
        """
        targets = self.subscribers
        if not targets:
            return 0

        message = UpdateMessage.from_snapshot(snapshot)
        results = await asyncio.gather(*(self._deliver(s, message) for s in targets))
        return sum(results)

    async def _deliver(self, subscriber: Subscriber, message: UpdateMessage) -> bool:
        try:
            await subscriber.send(message, self.send_timeout)
            return True
        except DeliveryError as e:
            logger.warning(f"⚠️ Dropping subscriber after failed push: {e}")
            await self._drop(subscriber)
            return False

    # ==================== WATCHDOG ====================

    async def check_staleness(self) -> bool:
        """
        One watchdog tick.

        Returns:
            True if the stream just went stale and the transition was broadcast
        """
        snapshot = await self.backend.mark_stale(self.stale_after_ms)
        if snapshot is None:
            return False

        logger.warning(f"⚠️ No data from sensor for over {self.stale_after_ms / 1000:.0f}s - marked disconnected")
        await self.broadcast(snapshot)
        return True

    async def _watchdog_loop(self):
        while True:
            await asyncio.sleep(self.watchdog_interval)
            try:
                await self.check_staleness()
            except Exception as e:
                logger.error(f"Watchdog error: {e}")

    def start(self):
        """Start the watchdog in the running event loop."""
        if self._watchdog_task and not self._watchdog_task.done():
            return
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info(f"⏱️ Watchdog started (every {self.watchdog_interval}s)")

    async def stop(self):
        """Stop the watchdog and close every subscriber."""
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None
            logger.info("⏱️ Watchdog stopped")

        for subscriber in list(self._subscribers):
            await self._drop(subscriber)
