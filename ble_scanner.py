# Author: Omi Shrestha

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from bleak import BleakScanner
from bleak.exc import BleakError

from ble_errors import ScanError
from settings import settings

logger = logging.getLogger(__name__)

NULL_ADDRESS = "00:00:00:00:00:00"

SCAN_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


@dataclass
class ScanResult:
    """A base station seen advertising during a scan."""
    address: str
    name: str


async def scan_for_duration(duration: float, name_prefix: Optional[str] = None) -> List[ScanResult]:
    """
    Scan for base stations for exactly ``duration`` seconds.

    Advertisements without the name prefix or with a null address are
    ignored; repeated advertisements from one address keep the latest name.
    A transport error only fails the scan when nothing was found.
    """
    prefix = settings.name_prefix if name_prefix is None else name_prefix
    found: Dict[str, ScanResult] = {}

    def detection_callback(device, adv_data):
        """Filter devices during scan"""
        name = adv_data.local_name or device.name
        if not name or not name.startswith(prefix):
            return
        if not device.address or device.address == NULL_ADDRESS:
            return
        if device.address not in found:
            logger.debug("Discovered %s (%s)", name, device.address)
        found[device.address] = ScanResult(address=device.address, name=name)

    logger.info("Scanning for base stations (%.1fs)...", duration)
    scanner = BleakScanner(detection_callback=detection_callback)
    scan_error = None
    try:
        await scanner.start()
    except SCAN_ERRORS as exc:
        scan_error = exc
    else:
        try:
            await asyncio.sleep(duration)
        finally:
            # Also runs when the scan task is cancelled
            try:
                await scanner.stop()
            except SCAN_ERRORS as exc:
                scan_error = exc

    results = list(found.values())
    if scan_error is not None:
        logger.warning("Scan finished with error: %s", scan_error)
    logger.info("Scan finished, found %d station(s)", len(results))

    if not results and scan_error is not None:
        raise ScanError(f"scan failed with no results: {scan_error}") from scan_error
    return results
