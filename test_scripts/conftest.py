"""
Shared fixtures: an in-memory stand-in for the BLE radio.

``radio`` replaces ``ble_utils.BleakClient`` with FakeClient instances backed
by FakePeripheral objects, one per address, whose failure counters let tests
script transient connect/discovery/read/write errors.
"""

import asyncio
from typing import Dict, List, Optional

import pytest
from bleak.exc import BleakError

import ble_utils
from settings import settings
from station_config import StationConfig


class FakeCharacteristic:
    uuid = ble_utils.POWER_CHAR_UUID


class FakeService:
    uuid = ble_utils.POWER_SERVICE_UUID

    def __init__(self, characteristic):
        self._characteristic = characteristic

    def get_characteristic(self, uuid):
        return self._characteristic if uuid == ble_utils.POWER_CHAR_UUID else None


class FakeServices:
    def __init__(self, service: Optional[FakeService]):
        self._service = service

    def get_service(self, uuid):
        return self._service if uuid == ble_utils.POWER_SERVICE_UUID else None


class FakePeripheral:
    def __init__(self, address: str, value: bytes = b"\x00"):
        self.address = address
        self.value = value
        self.connect_failures = 0
        self.discovery_failures = 0
        self.read_failures = 0
        self.write_failures = 0
        self.disconnect_error: Optional[BaseException] = None
        self.connect_gate: Optional[asyncio.Event] = None
        self.connects = 0
        self.disconnects = 0
        self.writes: List[bytes] = []
        self.in_flight = 0
        self.max_in_flight = 0


class FakeClient:
    def __init__(self, radio: "FakeRadio", address: str, **kwargs):
        self.radio = radio
        self.address = address
        self.kwargs = kwargs
        self._connected = False
        self._services = None

    @property
    def peripheral(self) -> FakePeripheral:
        peripheral = self.radio.peripherals.get(self.address)
        if peripheral is None:
            raise BleakError(f"Device with address {self.address} was not found")
        return peripheral

    @property
    def is_connected(self):
        return self._connected

    async def connect(self):
        peripheral = self.peripheral
        if peripheral.connect_gate is not None:
            await peripheral.connect_gate.wait()
        if peripheral.connect_failures:
            peripheral.connect_failures -= 1
            raise BleakError("connection failed")
        peripheral.connects += 1
        self._connected = True
        # Services are resolved once per connection, as bleak does
        if peripheral.discovery_failures:
            peripheral.discovery_failures -= 1
            self._services = FakeServices(None)
        else:
            self._services = FakeServices(FakeService(FakeCharacteristic()))

    async def disconnect(self):
        peripheral = self.peripheral
        self._connected = False
        self._services = None
        peripheral.disconnects += 1
        if peripheral.disconnect_error is not None:
            raise peripheral.disconnect_error

    @property
    def services(self):
        if self._services is None:
            raise BleakError("Service Discovery has not been performed yet")
        return self._services

    async def _enter(self, peripheral):
        peripheral.in_flight += 1
        peripheral.max_in_flight = max(peripheral.max_in_flight, peripheral.in_flight)
        await asyncio.sleep(0)
        peripheral.in_flight -= 1

    async def read_gatt_char(self, characteristic):
        peripheral = self.peripheral
        await self._enter(peripheral)
        if peripheral.read_failures:
            peripheral.read_failures -= 1
            raise BleakError("read failed")
        return bytearray(peripheral.value)

    async def write_gatt_char(self, characteristic, data, response=False):
        peripheral = self.peripheral
        await self._enter(peripheral)
        if peripheral.write_failures:
            peripheral.write_failures -= 1
            raise BleakError("write failed")
        peripheral.writes.append(bytes(data))
        peripheral.value = bytes(data)


class FakeRadio:
    def __init__(self):
        self.peripherals: Dict[str, FakePeripheral] = {}
        self.clients: List[FakeClient] = []

    def add(self, address: str, value: bytes = b"\x00") -> FakePeripheral:
        peripheral = FakePeripheral(address, value)
        self.peripherals[address] = peripheral
        return peripheral

    def client(self, address, **kwargs) -> FakeClient:
        client = FakeClient(self, address, **kwargs)
        self.clients.append(client)
        return client


@pytest.fixture(autouse=True)
def fast_timings(monkeypatch):
    """Zero every pacing delay; keep the soft deadlines short but non-zero."""
    for name in ("retry_backoff", "write_settle_delay", "pre_scan_delay", "scan_window"):
        monkeypatch.setattr(settings, name, 0.0)
    monkeypatch.setattr(settings, "scan_fetch_deadline", 1.0)
    monkeypatch.setattr(settings, "status_check_deadline", 1.0)


@pytest.fixture
def radio(monkeypatch) -> FakeRadio:
    fake = FakeRadio()
    monkeypatch.setattr(ble_utils, "BleakClient", fake.client)
    return fake


@pytest.fixture
def station_config(tmp_path) -> StationConfig:
    return StationConfig(tmp_path / "config.json")
