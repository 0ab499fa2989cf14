"""
Station manager - owns every known base station and runs bulk operations.

Bulk operations fan out one asyncio task per station. Status checks and the
post-scan state fetch only wait up to a soft deadline: tasks still running
afterwards are left alone, finish in the background and update their station
when they do.
"""

import asyncio
import logging
import threading
from typing import Dict, List, Optional, Set

import ble_utils
from ble_device import BaseStation, PowerState, StationInfo
from ble_errors import AlreadyScanningError, BulkPowerError, StationError, StationNotFoundError
from ble_scanner import scan_for_duration
from session_registry import SessionRegistry
from settings import settings
from station_config import StationConfig

logger = logging.getLogger(__name__)


class StationManager:
    def __init__(self, config: Optional[StationConfig] = None, registry: Optional[SessionRegistry] = None,
                 scanner=None):
        self.config = config if config is not None else StationConfig()
        self.registry = registry if registry is not None else SessionRegistry()
        self._scanner = scanner or scan_for_duration
        # Guards the address map and the scanning flag, never the stations' own fields
        self._stations_lock = threading.Lock()
        self._stations: Dict[str, BaseStation] = {}
        self._is_scanning = False
        self._background: Set[asyncio.Task] = set()

    async def initialize(self):
        """Should be called once at startup."""
        await ble_utils.initialize()

    def is_scanning(self) -> bool:
        with self._stations_lock:
            return self._is_scanning

    def get_station(self, address) -> Optional[BaseStation]:
        with self._stations_lock:
            return self._stations.get(address)

    def _require_station(self, address) -> BaseStation:
        station = self.get_station(address)
        if station is None:
            raise StationNotFoundError(address)
        return station

    def _all_stations(self) -> List[BaseStation]:
        with self._stations_lock:
            return list(self._stations.values())

    def snapshot(self) -> List[StationInfo]:
        """Current state of every known station. Never waits on the radio."""
        renamed = self.config.renamed()
        return [station.info(renamed) for station in self._all_stations()]

    # ── Background task helpers ──────────────────────────────────────────────

    def _spawn(self, coro, station: BaseStation, action: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_logged(coro, station, action),
                                   name=f"{action}:{station.address}")
        # Keep a reference until done; tasks may outlive the call that started them
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _run_logged(coro, station: BaseStation, action: str):
        try:
            await coro
        except StationError as exc:
            logger.warning("Error during %s for %s: %s", action, station.name, exc)

    @staticmethod
    async def _wait_with_deadline(tasks: List[asyncio.Task], deadline: float, label: str):
        if not tasks:
            return
        logger.info("Waiting up to %.1fs for %d %s routine(s)...", deadline, len(tasks), label)
        _, pending = await asyncio.wait(tasks, timeout=deadline)
        if pending:
            logger.warning("Timed out waiting for %s routines after %.1fs, %d still running",
                           label, deadline, len(pending))
        else:
            logger.info("All %s routines completed", label)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None):
        pending = [task for task in self._background if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    # ── Scan ─────────────────────────────────────────────────────────────────

    async def scan_and_merge(self) -> List[StationInfo]:
        """
        Scan, merge results into the station map and fetch states.

        New stations and known stations that are not connected get an initial
        state fetch. Raises AlreadyScanningError (carrying the unchanged
        snapshot) when another scan is running.
        """
        with self._stations_lock:
            already_scanning = self._is_scanning
            self._is_scanning = True
        if already_scanning:
            logger.info("Scan already in progress, ignoring request")
            raise AlreadyScanningError(self.snapshot())

        try:
            logger.info("Waiting %.1fs before starting scan...", settings.pre_scan_delay)
            await asyncio.sleep(settings.pre_scan_delay)

            discovered = await self._scanner(settings.scan_window)
            to_fetch = self._merge(discovered)

            tasks = [
                self._spawn(ble_utils.fetch_initial_power_state(station), station, "initial state fetch")
                for station in to_fetch
            ]
            await self._wait_with_deadline(tasks, settings.scan_fetch_deadline, "state fetch")
            return self.snapshot()
        finally:
            with self._stations_lock:
                self._is_scanning = False
            logger.info("Scan and merge completed")

    def _merge(self, discovered) -> List[BaseStation]:
        to_fetch = []
        with self._stations_lock:
            for result in discovered:
                station = self._stations.get(result.address)
                if station is None:
                    logger.info("Adding new station %s (%s)", result.name, result.address)
                    station = BaseStation(result.address, result.name, registry=self.registry)
                    self._stations[result.address] = station
                    to_fetch.append(station)
                    continue

                if station.name != result.name:
                    logger.info("Updating name for %s from %s to %s",
                                result.address, station.name, result.name)
                    station.name = result.name
                if not station.is_connected:
                    to_fetch.append(station)
        return to_fetch

    # ── Status ───────────────────────────────────────────────────────────────

    async def check_all_statuses(self) -> List[StationInfo]:
        """Read connected stations and reconnect the others, within a deadline."""
        tasks = []
        for station in self._all_stations():
            if station.is_connected:
                tasks.append(self._spawn(ble_utils.read_power_state(station), station, "state read"))
            else:
                tasks.append(self._spawn(ble_utils.fetch_initial_power_state(station), station, "state fetch"))

        await self._wait_with_deadline(tasks, settings.status_check_deadline, "status check")
        return self.snapshot()

    # ── Power ────────────────────────────────────────────────────────────────

    async def power_on_station(self, address):
        await ble_utils.power_on(self._require_station(address))

    async def power_off_station(self, address):
        await ble_utils.power_off(self._require_station(address))

    async def power_on_all(self):
        await self._set_all(PowerState.ON)

    async def power_off_all(self):
        await self._set_all(PowerState.OFF)

    async def _set_all(self, target: PowerState):
        stations = self._all_stations()
        logger.info("Attempting to power %s %d stations...", target.name, len(stations))

        results = await asyncio.gather(
            *(ble_utils.set_power_state(station, target) for station in stations),
            return_exceptions=True,
        )
        errors = {}
        for station, result in zip(stations, results):
            if isinstance(result, BaseException):
                logger.warning("Error powering %s %s: %s", target.name, station.name, result)
                errors[station.address] = result
        logger.info("Finished power %s attempts for all stations", target.name)

        if errors:
            raise BulkPowerError(len(errors), f"power {target.name.lower()} all stations")

    # ── Names / lifecycle ────────────────────────────────────────────────────

    def rename_station(self, original_name: str, new_name: str):
        self.config.rename(original_name, new_name)
        self.config.save()

    async def shutdown(self):
        """Wait briefly for background work, then disconnect every session."""
        logger.info("Shutdown requested. Disconnecting all stations...")
        await self.wait_for_background_tasks(timeout=settings.scan_fetch_deadline)
        await ble_utils.disconnect_all_stations(self.registry)
