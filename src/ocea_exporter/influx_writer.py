"""InfluxDB writer for the reconciled counters."""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from .config import Settings
from .models import Notification
from .notifications import Subscription

logger = logging.getLogger(__name__)


class InfluxWriter:
    """Writes one point per counter on every notification."""

    MEASUREMENT = "ocea_counter"

    def __init__(self, settings: Settings, subscription: Subscription, client: Optional[InfluxDBClient] = None):
        self.client = client or InfluxDBClient(
            url=settings.influxdb_url,
            token=settings.influxdb_token,
            org=settings.influxdb_org
        )
        self.write_api = self.client.write_api(write_options=SYNCHRONOUS)
        self.bucket = settings.influxdb_bucket
        self.org = settings.influxdb_org
        self.subscription = subscription

    def close(self):
        """Close the InfluxDB client."""
        self.write_api.close()
        self.client.close()

    def build_points(self, notification: Notification) -> List[Point]:
        timestamp = notification.created_at or datetime.now(timezone.utc)
        return [
            Point(self.MEASUREMENT)
            .tag("fluid", state.fluid)
            .tag("serial", state.serial_number)
            .tag("local_id", notification.local_id)
            .field("absolute_index", float(state.absolute_index))
            .field("annual_index", float(state.annual_index))
            .time(timestamp, WritePrecision.S)
            for state in notification.counter_states
        ]

    def write_counters(self, notification: Notification) -> bool:
        """Write the counters of a notification. Errors are logged, not raised."""
        try:
            points = self.build_points(notification)
            self.write_api.write(bucket=self.bucket, org=self.org, record=points)
            logger.debug(f"Wrote {len(points)} counters to InfluxDB")
            return True
        except Exception as e:
            logger.error(f"Error writing counters to InfluxDB: {e}")
            return False

    async def run(self):
        """Write every notification received on the subscription."""
        logger.info(f"Writing counters to InfluxDB bucket {self.bucket}")
        while True:
            notification = await self.subscription.get()
            self.write_counters(notification)
