"""Device snapshot with backfill from the previous day.

Devices report once a day at different times, so early in the morning only
part of them appear in today's statement. Yesterday's statement fills the gap.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from .exceptions import InsufficientDevicesError
from .models import Device

logger = logging.getLogger(__name__)


def merge_devices(today: List[Device], yesterday: List[Device]) -> List[Device]:
    """Merge two snapshots, today's reading winning for a same device.

    Order follows yesterday's list, then devices only present today.
    """
    by_id: Dict[str, Device] = {device.device_id: device for device in today}
    merged = [by_id.pop(device.device_id, device) for device in yesterday]
    merged.extend(device for device in today if device.device_id in by_id)
    return merged


async def fetch_devices(client, local_id: str, expected_count: int, today: Optional[date] = None) -> List[Device]:
    """Get one reading per device, looking at yesterday if needed.

    Args:
        client: OceaClient (or anything with an async get_devices)
        local_id: Unit identifier
        expected_count: Number of devices the unit is known to have
        today: Reference day (default: today)

    Raises:
        InsufficientDevicesError: Still not enough devices after the merge
    """
    day = today or date.today()
    devices = await client.get_devices(local_id, day)

    if len(devices) < expected_count:
        logger.info(f"Only {len(devices)}/{expected_count} devices reported today, looking at yesterday")
        previous = await client.get_devices(local_id, day - timedelta(days=1))
        devices = merge_devices(devices, previous)

    if len(devices) != expected_count:
        raise InsufficientDevicesError(expected=expected_count, actual=len(devices))

    return devices
