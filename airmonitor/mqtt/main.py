"""
Air Monitor - MQTT Ingestion
Receives readings published by devices and feeds them to the ingestor
"""

import asyncio
import json
import logging

import paho.mqtt.client as mqtt

from airmonitor.core.config import Settings
from airmonitor.core.exceptions import ValidationError
from airmonitor.services.ingestion import ReadingIngestor

logger = logging.getLogger(__name__)


class MQTTIngestor:
    """Subscribes to device telemetry and records it on the event loop."""

    def __init__(self, settings: Settings, ingestor: ReadingIngestor, loop: asyncio.AbstractEventLoop | None = None):
        self.settings = settings
        self.ingestor = ingestor
        self._loop = loop

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Called when connected to MQTT broker."""
        logger.info(f"✅ Connected to MQTT broker: {self.settings.mqtt_broker}:{self.settings.mqtt_port}")

        client.subscribe(self.settings.mqtt_topic)
        logger.info(f"📡 Subscribed to: {self.settings.mqtt_topic}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """Called when disconnected from MQTT broker."""
        logger.warning(f"⚠️ Disconnected from MQTT broker: {reason_code}")

    def _on_message(self, client, userdata, msg):
        """Called on the network thread when a message is received."""
        # Topic: devices/{device_uid}/telemetry
        parts = msg.topic.split("/")
        if len(parts) != 3:
            logger.warning(f"Ignoring message on unexpected topic: {msg.topic}")
            return

        device_uid = parts[1]

        try:
            payload = json.loads(msg.payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"❌ Invalid payload from {device_uid}: {e}")
            return

        if not isinstance(payload, dict):
            logger.error(f"❌ Invalid payload from {device_uid}: expected an object")
            return

        logger.debug(f"📩 Received from {device_uid}: {payload}")

        # Store access happens on the event loop, never on this thread
        if self._loop:
            asyncio.run_coroutine_threadsafe(self._process(device_uid, payload), self._loop)

    async def _process(self, device_uid: str, payload: dict):
        try:
            await self.ingestor.ingest(payload, device_uid)
        except ValidationError as e:
            logger.warning(f"⚠️ Rejected reading from {device_uid}: {e}")

    def start(self):
        """Connect and run the network loop in a background thread."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        logger.info(f"🚀 Connecting to MQTT broker {self.settings.mqtt_broker}:{self.settings.mqtt_port}")
        self.client.connect_async(self.settings.mqtt_broker, self.settings.mqtt_port, 60)
        self.client.loop_start()

    def stop(self):
        """Stop the network loop and disconnect."""
        self.client.loop_stop()
        self.client.disconnect()
        logger.info("⏹️ MQTT ingestion stopped")
