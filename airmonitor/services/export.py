"""
Export Service - CSV and JSON downloads of the reading history
"""

import csv
import io
from datetime import datetime, timezone

from airmonitor.schemas.readings import Reading, RunningStats

CSV_HEADER = ["Timestamp", "Temperature (°C)", "Humidity (%)", "Heat Index (°C)"]
CSV_FILENAME = "airquality_data.csv"
JSON_FILENAME = "airquality_data.json"


def format_timestamp(timestamp_ms: int) -> str:
    """ISO-8601 UTC with milliseconds, e.g. 2025-01-01T12:00:00.000Z"""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{timestamp_ms % 1000:03d}Z"


def readings_to_csv(readings: list[Reading]) -> str:
    """One row per reading, oldest first."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)

    for r in readings:
        writer.writerow([format_timestamp(r.timestamp), r.temperature, r.humidity, r.heat_index])

    return buffer.getvalue()


def readings_to_json(readings: list[Reading], stats: RunningStats, exported_at: datetime | None = None) -> dict:
    """Export document: export date, stats and the readings."""
    if exported_at is None:
        exported_at = datetime.now(timezone.utc)

    exported_ms = int(exported_at.timestamp() * 1000)

    return {
        "exportDate": format_timestamp(exported_ms),
        "stats": stats.to_wire(),
        "data": [r.to_wire() for r in readings],
    }
