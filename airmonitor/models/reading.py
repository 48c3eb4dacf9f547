"""
Reading model - persisted sensor readings
"""

from sqlalchemy import Integer, Float, BigInteger, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from airmonitor.core.database import Base


class StoredReading(Base):
    """Temperature/humidity sample from a device."""

    __tablename__ = "readings"

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[int] = mapped_column(Integer, ForeignKey("devices.id"), index=True)

    # Sensor data
    temperature: Mapped[float] = mapped_column(Float)  # Celsius
    humidity: Mapped[float] = mapped_column(Float)  # %
    heat_index: Mapped[float] = mapped_column(Float)  # Celsius

    # Milliseconds since epoch, same clock as the in-memory store
    recorded_at: Mapped[int] = mapped_column(BigInteger, index=True)

    def __repr__(self) -> str:
        return f"<StoredReading device={self.device_id} {self.temperature}°C {self.humidity}%>"
