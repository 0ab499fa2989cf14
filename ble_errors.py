# Author: Omi Shrestha

"""Exceptions raised by the base station session and manager layers."""


class StationError(Exception):
    """Base class for all base station errors."""


class InitializationError(StationError):
    """Bluetooth layer could not be prepared."""


class StationConnectionError(StationError):
    """Opening the BLE connection failed."""


class DiscoveryError(StationError):
    """Power service or characteristic not found after all retries."""


class ReadError(StationError):
    """Reading the power characteristic failed or returned the wrong length."""


class WriteError(StationError):
    """Writing the power command failed on every attempt."""


class ScanError(StationError):
    """Scan failed without finding any station."""


class ConfigError(StationError):
    """Station configuration file could not be read."""


class AlreadyScanningError(StationError):
    """A scan is already in progress."""

    def __init__(self, stations=None):
        super().__init__("scan already in progress")
        self.stations = stations or []


class StationNotFoundError(StationError):
    """No station is known under the given address."""

    def __init__(self, address):
        super().__init__(f"station with address {address} not found")
        self.address = address


class BulkPowerError(StationError):
    """One or more stations failed during an all-stations power change."""

    def __init__(self, count, operation):
        super().__init__(f"encountered {count} error(s) during {operation}")
        self.count = count
        self.operation = operation
