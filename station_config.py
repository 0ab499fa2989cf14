"""
Persisted display names for base stations.

Stored as ``{"renamedStations": {"LHB-1234ABCD": "Left"}}`` in config.json,
keyed by the advertised name.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from ble_errors import ConfigError
from settings import settings

logger = logging.getLogger(__name__)

APP_DIR_NAME = "lhcontrol"
CONFIG_FILE_NAME = "config.json"


def default_config_dir() -> Path:
    if settings.config_dir:
        return Path(settings.config_dir)
    base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
    return Path(base) / APP_DIR_NAME


class StationConfig:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_config_dir() / CONFIG_FILE_NAME
        self.renamed_stations: Dict[str, str] = {}
        # API requests rename and save from Flask worker threads
        self._lock = threading.Lock()

    def display_name(self, original_name: str) -> Optional[str]:
        with self._lock:
            return self.renamed_stations.get(original_name)

    def renamed(self) -> Dict[str, str]:
        """Copy of the display name map, safe to read while others rename."""
        with self._lock:
            return dict(self.renamed_stations)

    def rename(self, original_name: str, new_name: str):
        """Set a display name; an empty name resets to the advertised one."""
        with self._lock:
            if new_name:
                logger.info("Renaming %s to %s", original_name, new_name)
                self.renamed_stations[original_name] = new_name
            else:
                logger.info("Resetting custom name for %s", original_name)
                self.renamed_stations.pop(original_name, None)

    def load(self):
        logger.info("Loading config from: %s", self.path)
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ConfigError(f"error reading config file '{self.path}': {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"error parsing config file '{self.path}': {exc}") from exc

        renamed = data.get("renamedStations") if isinstance(data, dict) else None
        with self._lock:
            self.renamed_stations = dict(renamed or {})

    def save(self):
        logger.info("Saving config to: %s", self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Held across the write so concurrent saves land whole, in order
        with self._lock:
            payload = {"renamedStations": dict(self.renamed_stations)}
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
