"""Counter reconciliation.

Pure functions turning fresh portal data into new counter states. Inputs are
never modified: every function works on copies and either returns the new
states or raises, leaving the caller's states as they were.

Two strategies are available:

- annual: devices report rarely but the year-to-date consumption of each
  dashboard moves often. The absolute index is advanced by the year-to-date
  delta since the last observation. A decrease means the portal started a
  new year and the counters must be re-anchored on the devices.
- direct: the absolute index is the device reading itself.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List

from .exceptions import (
    CounterMismatchError,
    DashboardMissingError,
    DeviceMissingError,
    YearlyCounterResetError,
)
from .models import CounterState, Dashboard, Device

STRATEGY_ANNUAL = "annual"
STRATEGY_DIRECT = "direct"

_THOUSANDTH = Decimal("0.001")


def round3(value: float) -> float:
    """Round to 3 decimals, halves away from zero."""
    return float(Decimal(repr(value)).quantize(_THOUSANDTH, rounding=ROUND_HALF_UP))


@dataclass
class ReconcileResult:
    """New counter states and whether any of them moved."""

    states: List[CounterState]
    updated: bool


def _copy_states(states: List[CounterState]) -> List[CounterState]:
    return [state.model_copy(deep=True) for state in states]


def reconcile_annual(states: List[CounterState], dashboards: List[Dashboard]) -> ReconcileResult:
    """Advance absolute indexes by the year-to-date deltas.

    Raises:
        DashboardMissingError: A counter's fluid has no dashboard
        YearlyCounterResetError: A year-to-date value went down
    """
    by_fluid: Dict[str, Dashboard] = {d.fluid: d for d in dashboards}
    new_states = _copy_states(states)
    updated = False

    for state in new_states:
        dashboard = by_fluid.get(state.fluid)
        if dashboard is None:
            raise DashboardMissingError(state.fluid)

        current = round3(dashboard.year_to_date)
        previous = round3(state.annual_index)

        if current < previous:
            raise YearlyCounterResetError(state.fluid, previous, current)
        if current == previous:
            continue

        state.absolute_index = round3(state.absolute_index + round3(current - previous))
        state.annual_index = dashboard.year_to_date
        updated = True

    return ReconcileResult(states=new_states, updated=updated)


def reconcile_direct(states: List[CounterState], devices: List[Device]) -> ReconcileResult:
    """Take absolute indexes straight from the device readings.

    Raises:
        DeviceMissingError: A counter's fluid has no device
    """
    by_fluid: Dict[str, Device] = {d.fluid: d for d in devices}
    new_states = _copy_states(states)
    updated = False

    for state in new_states:
        device = by_fluid.get(state.fluid)
        if device is None:
            raise DeviceMissingError(state.fluid)

        if round3(device.index) == round3(state.absolute_index):
            continue

        state.absolute_index = device.index
        state.serial_number = device.serial_number
        updated = True

    return ReconcileResult(states=new_states, updated=updated)


def initialize_counters(dashboards: List[Dashboard], devices: List[Device]) -> List[CounterState]:
    """Anchor one counter per device on its reading and its fluid's dashboard.

    Raises:
        CounterMismatchError: A device's fluid has no dashboard
    """
    by_fluid: Dict[str, Dashboard] = {d.fluid: d for d in dashboards}
    states = []

    for device in devices:
        dashboard = by_fluid.get(device.fluid)
        if dashboard is None:
            raise CounterMismatchError(f"no dashboard for device {device.device_id} (fluid {device.fluid})")

        states.append(
            CounterState(
                fluid=device.fluid,
                serial_number=device.serial_number,
                absolute_index=device.index,
                annual_index=dashboard.year_to_date,
            )
        )

    return states
