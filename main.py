# Author: Omi Shrestha

import argparse
import asyncio
import logging

import app as api
from ble_errors import StationError
from settings import settings
from station_config import StationConfig
from station_manager import StationManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE = "lhcontrol.log"

HELP_TEXT = """Commands:
  scan                      scan for base stations and read their state
  status                    refresh the state of every known station
  list                      show known stations
  on <address|all>          power on one or all stations
  off <address|all>         power off one or all stations
  rename <name> [new name]  set (or reset) a display name
  quit                      exit"""


def setup_logging(log_to_file: bool = False, debug: bool = False):
    handlers = [logging.StreamHandler()]
    if log_to_file:
        handlers.append(logging.FileHandler(LOG_FILE, encoding="utf-8"))
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT, handlers=handlers)
    if log_to_file:
        logger.info("File logging enabled. Log file: %s", LOG_FILE)
    # bleak is chatty at DEBUG
    logging.getLogger("bleak").setLevel(logging.INFO)


def format_stations(stations) -> str:
    if not stations:
        return "No stations known. Run 'scan' first."
    lines = []
    for info in stations:
        label = info.name if info.name == info.original_name else f"{info.name} ({info.original_name})"
        lines.append(f"  - {label}: {info.address} [{info.power_state.value}]")
    return "\n".join(lines)


async def handle_command(manager: StationManager, line: str) -> str:
    """Run one interactive command and return the text to show."""
    parts = line.split()
    if not parts:
        return ""
    command, args = parts[0].lower(), parts[1:]

    try:
        if command == "scan":
            return format_stations(await manager.scan_and_merge())
        if command == "status":
            return format_stations(await manager.check_all_statuses())
        if command == "list":
            return format_stations(manager.snapshot())
        if command in ("on", "off"):
            if len(args) != 1:
                return f"Usage: {command} <address|all>"
            target = args[0]
            if target.lower() == "all":
                await (manager.power_on_all() if command == "on" else manager.power_off_all())
            elif command == "on":
                await manager.power_on_station(target)
            else:
                await manager.power_off_station(target)
            return f"Power {command} sent to {target}"
        if command == "rename":
            if not args:
                return "Usage: rename <name> [new name]"
            manager.rename_station(args[0], " ".join(args[1:]))
            return f"Renamed {args[0]}"
        if command in ("help", "?"):
            return HELP_TEXT
    except StationError as e:
        return f"Error: {e}"

    return f"Unknown command: {command}"


async def main(use_api: bool = True):
    """Main application entry point."""
    config = StationConfig()
    try:
        config.load()
    except StationError as e:
        logger.error("Error loading config: %s", e)

    manager = StationManager(config)
    try:
        await manager.initialize()
    except StationError as e:
        logger.error("Error initializing Bluetooth: %s", e)

    if use_api:
        api.init_api(manager, asyncio.get_running_loop())
        api.serve(settings.api_host, settings.api_port)

    print(HELP_TEXT)
    print()

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "Enter command: ")
            except (EOFError, KeyboardInterrupt):
                print("\nExiting...")
                break

            if line.strip().lower() == "quit":
                break

            output = await handle_command(manager, line)
            if output:
                print(output)
    finally:
        await manager.shutdown()
        logger.info("Application exited cleanly.")


def run():
    parser = argparse.ArgumentParser(description="Control base station power over BLE")
    parser.add_argument("--log", action="store_true", help=f"also write logs to {LOG_FILE}")
    parser.add_argument("--no-api", action="store_true", help="do not start the loopback control API")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    args = parser.parse_args()

    setup_logging(log_to_file=args.log, debug=args.debug or settings.debug)
    try:
        asyncio.run(main(use_api=not args.no_api))
    except KeyboardInterrupt:
        print("\nInterrupted by user")


if __name__ == "__main__":
    run()
