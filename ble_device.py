# Author: Omi Shrestha

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class PowerState(Enum):
    """Last known power state of a base station."""
    UNKNOWN = "unknown"
    OFF = "off"
    ON = "on"


@dataclass
class StationInfo:
    """Externally visible copy of a base station."""
    name: str
    original_name: str
    address: str
    power_state: PowerState

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "originalName": self.original_name,
            "address": self.address,
            "powerState": self.power_state.value,
        }


class BaseStation:
    """
    One discovered base station and its BLE session.

    Session operations (see ble_utils) hold ``lock`` for their whole duration,
    so callers targeting the same address serialize. The individual fields are
    guarded by a short thread lock that is never held across I/O, which lets
    any thread copy them without waiting on the radio.
    """

    def __init__(self, address, name, registry=None):
        self.address = address              # BLE address, primary key
        self.registry = registry            # SessionRegistry this station joins on connect
        self.lock = asyncio.Lock()          # Serializes session operations
        self._state_lock = threading.Lock()
        self._name = name                   # Advertised local name
        self._power_state = PowerState.UNKNOWN
        self._last_state_update: Optional[datetime] = None
        self._client = None                 # BleakClient while a session is live
        self._characteristic = None         # Power control characteristic

    def __repr__(self):
        return f"BaseStation({self.address!r}, {self.name!r}, {self.power_state.name})"

    @property
    def name(self) -> str:
        with self._state_lock:
            return self._name

    @name.setter
    def name(self, value: str):
        with self._state_lock:
            self._name = value

    @property
    def power_state(self) -> PowerState:
        with self._state_lock:
            return self._power_state

    @property
    def last_state_update(self) -> Optional[datetime]:
        with self._state_lock:
            return self._last_state_update

    @property
    def client(self):
        with self._state_lock:
            return self._client

    @property
    def characteristic(self):
        with self._state_lock:
            return self._characteristic

    @property
    def is_connected(self) -> bool:
        # Derived from the handles so it can never disagree with them
        with self._state_lock:
            return self._client is not None and self._characteristic is not None

    def set_power_state(self, state: PowerState, determined: bool = False) -> PowerState:
        """Store a new power state and return the previous one.

        ``determined`` marks a state read back from the device, which also
        refreshes ``last_state_update``.
        """
        with self._state_lock:
            previous = self._power_state
            self._power_state = state
            if determined:
                self._last_state_update = datetime.now(timezone.utc)
            return previous

    def set_client(self, client):
        with self._state_lock:
            self._client = client

    def set_characteristic(self, characteristic):
        with self._state_lock:
            self._characteristic = characteristic

    def clear_session(self):
        """Drop both handles and return the client that was held, if any."""
        with self._state_lock:
            client = self._client
            self._client = None
            self._characteristic = None
            self._power_state = PowerState.UNKNOWN
            return client

    def info(self, renamed: Optional[Mapping[str, str]] = None) -> StationInfo:
        """Copy the visible fields; ``renamed`` maps advertised names to display names."""
        with self._state_lock:
            display_name = renamed.get(self._name) if renamed else None
            return StationInfo(
                name=display_name or self._name,
                original_name=self._name,
                address=self.address,
                power_state=self._power_state,
            )
