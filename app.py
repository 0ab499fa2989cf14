from flask import Flask, request, jsonify
import asyncio
import logging
from threading import Thread
from typing import Optional, Tuple

from ble_errors import AlreadyScanningError, StationError, StationNotFoundError
from station_manager import StationManager

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Set by init_api(); routes submit coroutines to the loop owning the BLE work
manager: Optional[StationManager] = None
loop: Optional[asyncio.AbstractEventLoop] = None

REQUEST_TIMEOUT = 30.0


def init_api(station_manager: StationManager, event_loop: asyncio.AbstractEventLoop):
    global manager, loop
    manager = station_manager
    loop = event_loop


def start_event_loop() -> Tuple[asyncio.AbstractEventLoop, Thread]:
    """Start an asyncio event loop in a separate daemon thread"""
    event_loop = asyncio.new_event_loop()
    thread = Thread(target=event_loop.run_forever, daemon=True, name="ble-loop")
    thread.start()
    return event_loop, thread


def run_async(coro, timeout: float = REQUEST_TIMEOUT):
    """Run an async coroutine from sync context"""
    if loop is None:
        coro.close()
        raise RuntimeError("API not initialized")
    future = asyncio.run_coroutine_threadsafe(coro, loop)
    return future.result(timeout=timeout)


def fire_and_forget(coro, label: str):
    """Submit a coroutine without waiting; failures are only logged"""
    if loop is None:
        coro.close()
        raise RuntimeError("API not initialized")
    future = asyncio.run_coroutine_threadsafe(coro, loop)

    def _log_result(fut):
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("%s failed: %s", label, exc)

    future.add_done_callback(_log_result)


def serve(host: str, port: int) -> Thread:
    """Run the API in a daemon thread"""
    thread = Thread(
        target=app.run,
        kwargs={"host": host, "port": port, "debug": False, "use_reloader": False},
        daemon=True,
        name="api",
    )
    thread.start()
    logger.info("Control API listening on http://%s:%d", host, port)
    return thread


def _stations_payload(stations):
    return [info.to_dict() for info in stations]


@app.errorhandler(StationNotFoundError)
def handle_not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(AlreadyScanningError)
def handle_already_scanning(e):
    return jsonify({"error": str(e), "stations": _stations_payload(e.stations)}), 409


@app.errorhandler(StationError)
def handle_station_error(e):
    return jsonify({"error": str(e)}), 500


@app.route('/allon', methods=['POST'])
def all_on():
    """Power on every station without waiting for the result"""
    fire_and_forget(manager.power_on_all(), "Power on all")
    return "", 200


@app.route('/alloff', methods=['POST'])
def all_off():
    """Power off every station without waiting for the result"""
    fire_and_forget(manager.power_off_all(), "Power off all")
    return "", 200


@app.route('/stations', methods=['GET'])
def list_stations():
    return jsonify({
        "stations": _stations_payload(manager.snapshot()),
        "scanning": manager.is_scanning(),
    })


@app.route('/scan', methods=['POST'])
def scan():
    stations = run_async(manager.scan_and_merge())
    return jsonify({"status": "success", "stations": _stations_payload(stations), "count": len(stations)})


@app.route('/status', methods=['POST'])
def check_status():
    stations = run_async(manager.check_all_statuses())
    return jsonify({"status": "success", "stations": _stations_payload(stations)})


@app.route('/stations/<address>/on', methods=['POST'])
def station_on(address):
    run_async(manager.power_on_station(address))
    return jsonify({"status": "success", "address": address, "powerState": "on"})


@app.route('/stations/<address>/off', methods=['POST'])
def station_off(address):
    run_async(manager.power_off_station(address))
    return jsonify({"status": "success", "address": address, "powerState": "off"})


@app.route('/stations/rename', methods=['POST'])
def rename_station():
    data = request.get_json(silent=True) or {}
    original_name = data.get('originalName')
    new_name = data.get('name', '')

    if not original_name:
        return jsonify({"error": "originalName required"}), 400

    manager.rename_station(original_name, new_name)
    return jsonify({"status": "success", "originalName": original_name, "name": new_name or original_name})
