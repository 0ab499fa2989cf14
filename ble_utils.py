# Author: Omi Shrestha

import asyncio
import logging
import uuid

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from ble_device import BaseStation, PowerState
from ble_errors import (
    DiscoveryError,
    InitializationError,
    ReadError,
    StationConnectionError,
    StationError,
    WriteError,
)
from settings import settings

logger = logging.getLogger(__name__)

# Vendor power control service UUIDs
POWER_SERVICE_UUID = "00001523-1212-efde-1523-785feabcd124"
POWER_CHAR_UUID = "00001525-1212-efde-1523-785feabcd124"   # 1 byte: 0x00 off, 0x01 on

MAX_DISCOVERY_ATTEMPTS = 3
MAX_WRITE_ATTEMPTS = 2

POWER_COMMANDS = {
    PowerState.OFF: b"\x00",
    PowerState.ON: b"\x01",
}

# What bleak and its backends raise for a failed or lost link.
# EOFError comes from BlueZ when the D-Bus connection is already closed.
TRANSPORT_ERRORS = (BleakError, asyncio.TimeoutError, EOFError, OSError)


async def initialize():
    """Check the power control UUIDs and that a BLE adapter answers."""
    for label, value in (("service", POWER_SERVICE_UUID), ("characteristic", POWER_CHAR_UUID)):
        try:
            uuid.UUID(value)
        except ValueError as exc:
            raise InitializationError(f"could not parse power control {label} UUID {value!r}") from exc

    # bleak has no adapter enable call; a start/stop round trip fails when none is usable
    scanner = BleakScanner()
    try:
        await scanner.start()
    except TRANSPORT_ERRORS as exc:
        raise InitializationError(f"could not start Bluetooth adapter: {exc}") from exc
    try:
        await scanner.stop()
    except TRANSPORT_ERRORS as exc:
        logger.warning("Stopping adapter check scan failed: %s", exc)
    logger.info("Bluetooth layer ready (service %s)", POWER_SERVICE_UUID)


async def _reconnect(station: BaseStation, client):
    # bleak resolves services once per connection, so a fresh lookup needs a new link
    try:
        await client.disconnect()
    except TRANSPORT_ERRORS as exc:
        logger.debug("Disconnect before rediscovery failed for %s: %s", station.name, exc)
    await client.connect()


async def _discover_characteristic(station: BaseStation, client):
    """Find the power characteristic, reconnecting between attempts so services are resolved again."""
    reason = None
    for attempt in range(1, MAX_DISCOVERY_ATTEMPTS + 1):
        if attempt > 1:
            logger.warning("Retrying discovery for %s (attempt %d/%d)...",
                           station.name, attempt, MAX_DISCOVERY_ATTEMPTS)
            await asyncio.sleep(settings.retry_backoff)
            try:
                await _reconnect(station, client)
            except TRANSPORT_ERRORS as exc:
                reason = exc
                continue

        try:
            service = client.services.get_service(POWER_SERVICE_UUID)
        except TRANSPORT_ERRORS as exc:
            reason = exc
            continue
        if service is None:
            reason = "no services found"
            continue

        characteristic = service.get_characteristic(POWER_CHAR_UUID)
        if characteristic is None:
            reason = "no characteristics found"
            continue
        return characteristic

    raise DiscoveryError(
        f"discovery failed for {station.name} after {MAX_DISCOVERY_ATTEMPTS} attempts: {reason}"
    )


async def _connect_and_discover(station: BaseStation):
    # Caller holds station.lock
    client = station.client
    if client is not None and not client.is_connected:
        logger.info("Link to %s dropped, reconnecting", station.name)
        await _disconnect(station)
        client = None

    if client is not None and station.characteristic is not None:
        return

    if client is None:
        logger.info("Connecting to %s (%s)...", station.name, station.address)
        client = BleakClient(station.address, timeout=settings.connect_timeout)
        try:
            await client.connect()
        except TRANSPORT_ERRORS as exc:
            station.clear_session()
            raise StationConnectionError(f"connection to {station.name} failed: {exc}") from exc
        station.set_client(client)
        if station.registry is not None:
            station.registry.add(station)
        logger.info("Connected to %s", station.name)

    if station.characteristic is None:
        logger.debug("Discovering power characteristic on %s", station.name)
        try:
            characteristic = await _discover_characteristic(station, client)
        except DiscoveryError:
            await _disconnect(station)
            raise
        station.set_characteristic(characteristic)
        logger.info("Discovery successful for %s", station.name)


async def _read_power_state(station: BaseStation) -> PowerState:
    # Caller holds station.lock
    client = station.client
    characteristic = station.characteristic
    if client is None or characteristic is None:
        raise ReadError(f"station {station.name} is not connected")

    logger.debug("Reading power state for %s (%s)", station.name, station.address)
    try:
        data = await client.read_gatt_char(characteristic)
    except TRANSPORT_ERRORS as exc:
        station.set_power_state(PowerState.UNKNOWN)
        raise ReadError(f"failed to read power characteristic for {station.name}: {exc}") from exc

    if len(data) != 1:
        station.set_power_state(PowerState.UNKNOWN)
        raise ReadError(f"unexpected bytes read ({len(data)}) for power on {station.name}")

    # Legacy firmware reports other non-zero values while on
    value = data[0]
    new_state = PowerState.OFF if value == 0 else PowerState.ON
    if value > 1:
        logger.debug("Read state 0x%02X for %s, treating as ON", value, station.name)

    previous = station.set_power_state(new_state, determined=True)
    if previous != new_state:
        logger.info("Power state for %s changed from %s to %s",
                    station.name, previous.name, new_state.name)
    return new_state


async def _disconnect(station: BaseStation):
    # Caller holds station.lock
    if station.client is None:
        return

    client = station.clear_session()
    if station.registry is not None:
        station.registry.remove(station)

    logger.info("Disconnecting from %s", station.name)
    try:
        await client.disconnect()
    except EOFError:
        # D-Bus connection already closed, ignore
        pass
    except TRANSPORT_ERRORS as exc:
        logger.warning("Disconnect error for %s: %s", station.name, exc)


async def connect_and_discover(station: BaseStation):
    """
    Make sure a station has a live session with the power characteristic found.

    Returns immediately when already connected. Raises StationConnectionError
    if the link cannot be opened and DiscoveryError (after disconnecting) when
    the characteristic is still missing after every retry.
    """
    async with station.lock:
        await _connect_and_discover(station)


async def read_power_state(station: BaseStation) -> PowerState:
    """Read the power state of an already connected station."""
    async with station.lock:
        return await _read_power_state(station)


async def fetch_initial_power_state(station: BaseStation) -> PowerState:
    """
    Connect if needed and read the power state in one locked sequence.

    Args:
        station: BaseStation to query
    """
    async with station.lock:
        try:
            await _connect_and_discover(station)
        except StationError as exc:
            logger.warning("Failed to connect/discover %s: %s", station.name, exc)
            raise

        try:
            state = await _read_power_state(station)
        except ReadError as exc:
            logger.warning("Failed to read state of %s: %s", station.name, exc)
            raise

    logger.info("Initial power state of %s is %s", station.name, state.name)
    return state


async def set_power_state(station: BaseStation, target: PowerState):
    """
    Switch a station on or off.

    Each of the MAX_WRITE_ATTEMPTS attempts (re)connects first; a failed write
    counts as a lost link and tears the session down before retrying. The write
    is sent without response, so the state is set optimistically and then read
    back once the device had time to settle. A failed read-back is only logged.

    Args:
        station: BaseStation to switch
        target: PowerState.ON or PowerState.OFF
    """
    if target not in POWER_COMMANDS:
        raise ValueError(f"cannot set power state to {target}")
    command = POWER_COMMANDS[target]

    async with station.lock:
        error = None
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            if attempt > 1:
                await asyncio.sleep(settings.retry_backoff)

            try:
                await _connect_and_discover(station)
            except StationError as exc:
                error = exc
                logger.warning("connect/discover failed during power %s attempt %d/%d for %s: %s",
                               target.name, attempt, MAX_WRITE_ATTEMPTS, station.name, exc)
                await _disconnect(station)
                continue

            logger.info("Sending power %s command to %s", target.name, station.name)
            try:
                await station.client.write_gatt_char(station.characteristic, command, response=False)
            except TRANSPORT_ERRORS as exc:
                error = exc
                logger.warning("Write power %s failed for %s: %s", target.name, station.name, exc)
                await _disconnect(station)
                continue

            error = None
            break

        if error is not None:
            raise WriteError(
                f"failed to write power {target.name} command to {station.name} "
                f"after {MAX_WRITE_ATTEMPTS} attempts: {error}"
            ) from error

        station.set_power_state(target)
        await asyncio.sleep(settings.write_settle_delay)
        try:
            await _read_power_state(station)
        except ReadError as exc:
            logger.warning("Failed to read back state after power %s for %s: %s (state may be stale)",
                           target.name, station.name, exc)


async def power_on(station: BaseStation):
    await set_power_state(station, PowerState.ON)


async def power_off(station: BaseStation):
    await set_power_state(station, PowerState.OFF)


async def disconnect_station(station: BaseStation):
    """Safely disconnect from a base station; a no-op when not connected."""
    async with station.lock:
        await _disconnect(station)


async def disconnect_all_stations(registry):
    """Disconnect every station tracked by the registry."""
    stations = registry.stations()
    logger.info("Disconnecting all %d tracked stations...", len(stations))
    await asyncio.gather(*(disconnect_station(station) for station in stations))
    logger.info("Disconnect all stations finished")
