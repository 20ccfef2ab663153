"""Home Assistant publisher over MQTT.

Announces one sensor per meter through MQTT discovery and publishes the
reconciled absolute index as its state. All messages are retained so Home
Assistant gets the last value back after a restart.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

import paho.mqtt.client as mqtt

from .config import Settings
from .models import CounterState, Notification
from .notifications import Subscription

logger = logging.getLogger(__name__)

NODE_ID = "ocea_exporter"
MANUFACTURER = "Ocea"


@dataclass(frozen=True)
class FluidSensor:
    """How a fluid is presented in Home Assistant."""

    name: str
    device_name: str
    unit: str
    device_class: str
    icon: str


FLUID_SENSORS: Dict[str, FluidSensor] = {
    "Cetc": FluidSensor("heating_energy_meter", "Heating Energy Meter", "kWh", "energy", "mdi:radiator"),
    "EauFroide": FluidSensor("water_meter", "Water Meter", "m³", "water", "mdi:water"),
    "EauChaude": FluidSensor("hot_water_meter", "Hot Water Meter", "m³", "water", "mdi:water-thermometer"),
}


def _default_client_factory() -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id="ocea-exporter")


class HomeAssistantPublisher:
    """Consumes counter notifications and mirrors them to MQTT."""

    RETRY_DELAY = 60  # seconds between connection attempts

    def __init__(
        self,
        settings: Settings,
        subscription: Subscription,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ):
        self.host = settings.mqtt_host
        self.port = settings.mqtt_port
        self.prefix = settings.mqtt_discovery_prefix.rstrip("/")
        self.subscription = subscription

        self.client = (client_factory or _default_client_factory)()
        if settings.mqtt_username:
            self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        self.connected = False
        self._legacy_cleared = False
        self._announced: Set[Tuple[str, str]] = set()

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            self.connected = True
            logger.info(f"Connected to MQTT broker {self.host}:{self.port}")
        else:
            logger.error(f"MQTT connection refused: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    async def connect(self):
        """Connect to the broker, retrying until it answers."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                await loop.run_in_executor(None, self.client.connect, self.host, self.port, 60)
                self.client.loop_start()
                return
            except OSError as e:
                logger.warning(f"MQTT broker {self.host}:{self.port} unreachable ({e}), retrying in {self.RETRY_DELAY}s")
                await asyncio.sleep(self.RETRY_DELAY)

    def close(self):
        self.client.loop_stop()
        self.client.disconnect()

    async def run(self):
        """Publish every notification received on the subscription."""
        await self.connect()
        while True:
            notification = await self.subscription.get()
            self.publish_notification(notification)

    # =========================================================================
    # Topics and payloads
    # =========================================================================

    def _topic(self, object_id: str, kind: str) -> str:
        return f"{self.prefix}/sensor/{NODE_ID}/{object_id}/{kind}"

    def _object_id(self, sensor: FluidSensor, state: CounterState) -> str:
        return f"{sensor.name}_{state.serial_number}"

    def discovery_payload(self, sensor: FluidSensor, state: CounterState) -> dict:
        object_id = self._object_id(sensor, state)
        return {
            "device_class": sensor.device_class,
            "enabled_by_default": True,
            "icon": sensor.icon,
            "name": sensor.device_name,
            "state_class": "total",
            "unit_of_measurement": sensor.unit,
            "state_topic": self._topic(object_id, "state"),
            "unique_id": f"{state.serial_number}_meter",
            "device": {
                "identifiers": [state.serial_number],
                "manufacturer": MANUFACTURER,
                "name": sensor.device_name,
            },
        }

    def _publish(self, topic: str, payload: str):
        self.client.publish(topic, payload, qos=1, retain=True)

    def clear_legacy_topics(self):
        """Remove the retained per-fluid topics used before serials were part of the id."""
        for sensor in FLUID_SENSORS.values():
            self._publish(self._topic(sensor.name, "config"), "")
            self._publish(self._topic(sensor.name, "state"), "")
        self._legacy_cleared = True

    def publish_notification(self, notification: Notification):
        """Announce new meters, then publish every counter's state."""
        if not self._legacy_cleared:
            self.clear_legacy_topics()

        for state in notification.counter_states:
            sensor = FLUID_SENSORS.get(state.fluid)
            if sensor is None:
                logger.warning(f"Unknown fluid {state.fluid}, not published to Home Assistant")
                continue

            object_id = self._object_id(sensor, state)
            key = (state.fluid, state.serial_number)
            if key not in self._announced:
                self._publish(self._topic(object_id, "config"), json.dumps(self.discovery_payload(sensor, state)))
                self._announced.add(key)
                logger.info(f"Announced {sensor.device_name} ({state.serial_number}) to Home Assistant")

            self._publish(self._topic(object_id, "state"), str(state.absolute_index))

        logger.debug(f"Published {len(notification.counter_states)} counters to MQTT")
