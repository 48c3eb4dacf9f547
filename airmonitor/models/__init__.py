# Database models
from airmonitor.models.device import Device
from airmonitor.models.reading import StoredReading

__all__ = ["Device", "StoredReading"]
