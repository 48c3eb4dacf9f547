"""
Ingestion - entry point for readings arriving over HTTP or MQTT
"""

import logging
from collections.abc import Mapping
from typing import Any

from airmonitor.schemas.readings import ReadingInput
from airmonitor.services.backends import BackendResult, ReadingBackend
from airmonitor.services.distributor import LiveDistributor

logger = logging.getLogger(__name__)


class ReadingIngestor:
    """Validates device payloads and records them in the active backend."""

    def __init__(self, backend: ReadingBackend, distributor: LiveDistributor):
        self.backend = backend
        self.distributor = distributor

    async def accept(self, payload: Mapping[str, Any], device_uid: str | None = None) -> BackendResult:
        """
        Validate and record a payload. Does not broadcast.

        device_uid is the reporting device when known (MQTT topic).

        Raises:
            ValidationError: temperature or humidity missing/invalid
        """
        data = ReadingInput.parse(payload)
        result = await self.backend.record(data, device_uid)
        if not result.success:
            logger.error(f"❌ Failed to record reading: {result.message}")
        return result

    async def ingest(self, payload: Mapping[str, Any], device_uid: str | None = None) -> BackendResult:
        """Validate, record and push the new snapshot to live subscribers."""
        result = await self.accept(payload, device_uid)
        if result.success and result.data is not None:
            await self.distributor.broadcast(result.data)
        return result
