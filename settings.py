"""
Application settings loaded from environment variables / .env file.

Every pacing delay used by the BLE layer lives here so it can be tuned per
machine (``LHCONTROL_RETRY_BACKOFF=1.0``) or zeroed in tests.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Discovery
    name_prefix: str = "LHB-"

    # BLE timing (seconds)
    connect_timeout: float = 10.0
    retry_backoff: float = 0.5
    write_settle_delay: float = 0.1
    pre_scan_delay: float = 1.0
    scan_window: float = 5.0

    # Soft deadlines for bulk operations (seconds)
    scan_fetch_deadline: float = 7.0
    status_check_deadline: float = 4.0

    # Loopback control API
    api_host: str = "127.0.0.1"
    api_port: int = 7575

    # Directory holding config.json; empty means the user config directory
    config_dir: str = ""
    debug: bool = False

    model_config = {
        "env_prefix": "LHCONTROL_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
