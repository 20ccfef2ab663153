"""Fetch orchestrator.

Runs the poll cycle: bootstrap the account on first run, then refresh the
counters from the portal, persist them, update the gauges and notify the
sinks. Errors never corrupt the current state: a failed cycle leaves it as it
was and the next tick tries again.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, List, Optional

from .config import Settings
from .device_backfill import fetch_devices
from .exceptions import (
    AccountDataError,
    AuthenticationError,
    CounterMismatchError,
    DashboardMissingError,
    DeviceMissingError,
    InsufficientDevicesError,
    OceaAPIError,
    ReconciliationError,
    StateFileError,
    YearlyCounterResetError,
)
from .metrics import ExporterMetrics
from .models import AccountSnapshot, CounterState, Dashboard, Device, Notification, PersistedState
from .notifications import NotificationHub
from .reconciler import (
    STRATEGY_DIRECT,
    initialize_counters,
    reconcile_annual,
    reconcile_direct,
)
from .state_store import StateStore

logger = logging.getLogger(__name__)


class CycleOutcome(str, Enum):
    BOOTSTRAPPED = "bootstrapped"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    REANCHORED = "reanchored"
    DEFERRED = "deferred"
    FAILED = "failed"
    CRASHED = "crashed"


SUCCESS_OUTCOMES = (
    CycleOutcome.BOOTSTRAPPED,
    CycleOutcome.UPDATED,
    CycleOutcome.UNCHANGED,
    CycleOutcome.REANCHORED,
)


@dataclass
class CycleResult:
    """What a poll cycle did."""

    outcome: CycleOutcome
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.outcome in SUCCESS_OUTCOMES


def check_device_fluids(fluids: List[str], devices: List[Device]):
    """Require exactly one device per billed fluid.

    Raises:
        CounterMismatchError: A fluid has no device, or several
    """
    device_fluids = sorted(d.fluid for d in devices)
    if device_fluids != sorted(fluids):
        raise CounterMismatchError(
            f"devices ({', '.join(device_fluids)}) do not match fluids ({', '.join(sorted(fluids))})"
        )


class CounterFetcher:
    """Drives the poll cycle for one account."""

    def __init__(
        self,
        settings: Settings,
        client,
        store: StateStore,
        hub: NotificationHub,
        metrics: Optional[ExporterMetrics] = None,
        today: Callable[[], date] = date.today,
    ):
        """Initialize the fetcher.

        Args:
            settings: Application settings (strategy, poll interval, crash backoff)
            client: OceaClient used for every portal call
            store: Where the state is persisted
            hub: Notification fan-out to the sinks
            metrics: Prometheus gauges, if exported
            today: Provides the reference day for device statements
        """
        self.client = client
        self.store = store
        self.hub = hub
        self.metrics = metrics
        self.strategy = settings.reconcile_strategy
        self.poll_interval = settings.poll_interval
        self.crash_backoff = settings.crash_backoff
        self._today = today

        self.state = PersistedState()
        self.healthy = False
        self.ready = False
        self.running = False
        self.last_result: Optional[CycleResult] = None

    def start(self):
        """Load the persisted state.

        Raises:
            StateFileError: The state file is unreadable
        """
        self.state = self.store.load()
        if self.state.is_bootstrapped:
            logger.info(
                f"Resuming local {self.state.account_data.local_id} with "
                f"{len(self.state.counter_states)} counters ({self.strategy} strategy)"
            )
            self._update_gauges(self.state)
        self._report_status()

    def stop(self):
        self.running = False

    # =========================================================================
    # Poll cycle
    # =========================================================================

    async def run_cycle(self) -> CycleResult:
        """Run one poll cycle.

        Known failures are turned into a FAILED or DEFERRED result; anything
        else propagates to the caller.
        """
        try:
            if not self.state.is_bootstrapped:
                outcome = CycleOutcome.BOOTSTRAPPED
                new_state = await self._bootstrap()
            else:
                outcome, new_state = await self._refresh_counters()

            if outcome != CycleOutcome.UNCHANGED:
                self.store.save(new_state)

        except InsufficientDevicesError as e:
            logger.info(f"Devices not reported yet ({e}), retrying next cycle")
            return self._finish(CycleResult(CycleOutcome.DEFERRED, e))

        except AuthenticationError as e:
            logger.error("=" * 60)
            logger.error(f"OCEA: AUTHENTICATION FAILED: {e}")
            logger.error("Check OCEA_USERNAME / OCEA_PASSWORD; retrying next cycle")
            logger.error("=" * 60)
            return self._fail(e)

        except OceaAPIError as e:
            logger.warning(f"Ocea API unavailable, retrying next cycle: {e}")
            return self._fail(e)

        except (ReconciliationError, AccountDataError) as e:
            logger.error(f"Inconsistent account data: {e}")
            return self._fail(e)

        except StateFileError as e:
            logger.error(f"State not persisted: {e}")
            return self._fail(e)

        self.state = new_state
        self.healthy = True
        self.ready = True
        self._update_gauges(new_state)
        if self.metrics:
            self.metrics.mark_success()
        self.hub.publish(Notification.from_states(new_state.account_data.local_id, new_state.counter_states))

        if outcome != CycleOutcome.UNCHANGED:
            summary = ", ".join(f"{s.fluid}={s.absolute_index}" for s in new_state.counter_states)
            logger.info(f"Counters {outcome.value}: {summary}")
        else:
            logger.debug("Counters unchanged")

        return self._finish(CycleResult(outcome))

    async def run_once(self) -> CycleResult:
        """Run a cycle, turning unexpected exceptions into a CRASHED result."""
        try:
            return await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Fetch cycle crashed: {e}")
            return self._fail(e, CycleOutcome.CRASHED)

    async def run_forever(self, max_cycles: Optional[int] = None):
        """Poll until stopped.

        Waits `poll_interval` between cycles, or `crash_backoff` after a crash.
        """
        logger.info(f"Starting poll loop (every {self.poll_interval}s)")
        self.running = True
        cycles = 0

        while self.running:
            result = await self.run_once()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            delay = self.crash_backoff if result.outcome == CycleOutcome.CRASHED else self.poll_interval
            await asyncio.sleep(delay)

        logger.info("Poll loop stopped")

    # =========================================================================
    # Steps
    # =========================================================================

    async def _bootstrap(self) -> PersistedState:
        """Fetch the account reference data and anchor the counters."""
        logger.info("Bootstrapping account data...")

        resident = await self.client.get_resident()
        if not resident.occupations:
            raise AccountDataError("no unit found for this resident")
        local_id = resident.occupations[0].local_id
        if len(resident.occupations) > 1:
            logger.warning(f"{len(resident.occupations)} units found, using the first one ({local_id})")

        local = await self.client.get_local(local_id)
        fluids = [f.fluid for f in local.fluids]
        if not fluids:
            raise AccountDataError(f"no fluid billed for local {local_id}")
        logger.info(f"Local {local_id}: fluids {', '.join(fluids)}")

        dashboards = await self._fetch_dashboards(local_id, fluids)
        devices = await fetch_devices(self.client, local_id, len(fluids), today=self._today())
        check_device_fluids(fluids, devices)

        states = initialize_counters(dashboards, devices)
        account = AccountSnapshot(resident=resident, local=local, dashboards=dashboards, devices=devices)
        return PersistedState(counter_states=states, account_data=account)

    async def _refresh_counters(self):
        """Apply fresh portal data to the current counters.

        Returns:
            (outcome, new PersistedState)
        """
        if self.strategy == STRATEGY_DIRECT:
            return await self._refresh_direct()
        return await self._refresh_annual()

    async def _refresh_annual(self):
        account = self.state.account_data
        dashboards = await self._fetch_dashboards(account.local_id, account.fluids)

        try:
            result = reconcile_annual(self.state.counter_states, dashboards)
        except DashboardMissingError as e:
            logger.warning(f"{e}, rebuilding account data")
            return CycleOutcome.BOOTSTRAPPED, await self._bootstrap()
        except YearlyCounterResetError as e:
            logger.info(f"{e}, re-anchoring counters on devices")
            return CycleOutcome.REANCHORED, await self._reanchor(account, dashboards)

        if not result.updated:
            return CycleOutcome.UNCHANGED, self.state

        new_account = account.model_copy(update={"dashboards": dashboards})
        return CycleOutcome.UPDATED, PersistedState(counter_states=result.states, account_data=new_account)

    async def _refresh_direct(self):
        account = self.state.account_data
        devices = await fetch_devices(self.client, account.local_id, len(account.fluids), today=self._today())

        try:
            result = reconcile_direct(self.state.counter_states, devices)
        except DeviceMissingError as e:
            logger.warning(f"{e}, rebuilding account data")
            return CycleOutcome.BOOTSTRAPPED, await self._bootstrap()

        if not result.updated:
            return CycleOutcome.UNCHANGED, self.state

        new_account = account.model_copy(update={"devices": devices})
        return CycleOutcome.UPDATED, PersistedState(counter_states=result.states, account_data=new_account)

    async def _reanchor(self, account: AccountSnapshot, dashboards: List[Dashboard]) -> PersistedState:
        """Restart the counters from the device readings after a yearly reset."""
        devices = await fetch_devices(self.client, account.local_id, len(account.fluids), today=self._today())
        check_device_fluids(account.fluids, devices)
        states = initialize_counters(dashboards, devices)
        new_account = account.model_copy(update={"dashboards": dashboards, "devices": devices})
        return PersistedState(counter_states=states, account_data=new_account)

    async def _fetch_dashboards(self, local_id: str, fluids: List[str]) -> List[Dashboard]:
        dashboards = []
        for fluid in fluids:
            dashboards.append(await self.client.get_fluid_dashboard(local_id, fluid))
        return dashboards

    # =========================================================================
    # Status
    # =========================================================================

    def _fail(self, error: BaseException, outcome: CycleOutcome = CycleOutcome.FAILED) -> CycleResult:
        self.healthy = False
        return self._finish(CycleResult(outcome, error))

    def _finish(self, result: CycleResult) -> CycleResult:
        self.last_result = result
        self._report_status()
        return result

    def _report_status(self):
        if self.metrics:
            self.metrics.set_status(self.healthy, self.ready)

    def _update_gauges(self, state: PersistedState):
        if self.metrics and state.account_data is not None:
            self.metrics.update_counters(
                state.account_data.local_id,
                state.counter_states,
                state.account_data.devices,
            )

    @property
    def counter_states(self) -> List[CounterState]:
        return [s.model_copy(deep=True) for s in self.state.counter_states]
