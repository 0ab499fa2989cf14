# Author: Omi Shrestha

import logging
import threading
from typing import Dict, List

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Stations currently believed to hold a live BLE session, keyed by address.

    Membership is only used to find everything that needs disconnecting at
    shutdown; ``BaseStation.is_connected`` stays authoritative.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._stations: Dict[str, object] = {}

    def add(self, station):
        with self._lock:
            if station.address not in self._stations:
                logger.debug("Tracking session for %s", station.address)
            self._stations[station.address] = station

    def remove(self, station):
        with self._lock:
            if self._stations.pop(station.address, None) is not None:
                logger.debug("Stopped tracking session for %s", station.address)

    def stations(self) -> List[object]:
        """Copy of the tracked stations, safe to iterate while others connect."""
        with self._lock:
            return list(self._stations.values())

    def __contains__(self, address) -> bool:
        with self._lock:
            return address in self._stations

    def __len__(self) -> int:
        with self._lock:
            return len(self._stations)
