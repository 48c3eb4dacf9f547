"""
Reading schemas - in-memory data model shared by the store, backends and API.
Field names are camelCase on the wire (heatIndex, sequenceId, totalReadings, ...).
"""

import math
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from airmonitor.core.exceptions import ValidationError

# Initial statistics values, meaning "no data yet"
MAX_TEMP_UNSET = -999.0
MIN_TEMP_UNSET = 999.0
MAX_HUM_UNSET = 0.0
MIN_HUM_UNSET = 100.0


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class ConnectionStatus(str, Enum):
    """Connectivity of the sensor stream."""

    WAITING = "waiting"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class Reading(WireModel):
    """One timestamped sensor sample."""

    temperature: float
    humidity: float
    heat_index: float
    timestamp: int  # ms since epoch
    sequence_id: int


class CurrentSnapshot(WireModel):
    """Most recent reading plus connectivity status."""

    status: ConnectionStatus = ConnectionStatus.WAITING
    reading: Reading | None = None
    updated_at: int  # ms; last reading time, or start time before any reading


class RunningStats(WireModel):
    """Min/max/average/count over recorded readings."""

    max_temp: float = MAX_TEMP_UNSET
    min_temp: float = MIN_TEMP_UNSET
    max_hum: float = MAX_HUM_UNSET
    min_hum: float = MIN_HUM_UNSET
    avg_temp: float = 0.0
    avg_hum: float = 0.0
    total_readings: int = 0

    @property
    def has_data(self) -> bool:
        """False while min/max still hold their initial placeholder values."""
        return self.total_readings > 0


class StoreSnapshot(WireModel):
    """Current snapshot together with the running statistics."""

    current: CurrentSnapshot
    stats: RunningStats


def _parse_number(value: Any) -> float | None:
    """Parse a finite number from an untrusted value, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


class ReadingInput(WireModel):
    """Validated ingestion payload."""

    temperature: float
    humidity: float
    heat_index: float

    @classmethod
    def parse(cls, payload: "Mapping[str, Any] | ReadingInput") -> "ReadingInput":
        """
        Validate a raw payload from a device.

        Accepts numbers or numeric strings. heatIndex (or heat_index) is
        optional and falls back to the temperature when absent or invalid.

        Raises:
            ValidationError: temperature or humidity missing or not a finite number
        """
        if isinstance(payload, ReadingInput):
            return payload
        if not isinstance(payload, Mapping):
            raise ValidationError("Payload must be an object")

        if payload.get("temperature") is None or payload.get("humidity") is None:
            raise ValidationError("Missing required fields")

        temperature = _parse_number(payload["temperature"])
        if temperature is None:
            raise ValidationError("Invalid temperature", field="temperature")

        humidity = _parse_number(payload["humidity"])
        if humidity is None:
            raise ValidationError("Invalid humidity", field="humidity")

        raw_heat_index = payload.get("heatIndex", payload.get("heat_index"))
        heat_index = _parse_number(raw_heat_index)
        if heat_index is None:
            heat_index = temperature

        return cls(temperature=temperature, humidity=humidity, heat_index=heat_index)
