"""Command-line entry point: run the bridge until SIGINT/SIGTERM.

Usage
-----
::

    export MQTT_IP=192.168.1.10 MQTT_PORT=1883
    export MQTT_USERNAME=bridge MQTT_PASSWORD=secret
    export LIGHT_MQTT_CLIENT_ID=porch LIGHT_PIN=17 TEMPERATURE_DHT_PIN=4
    gpiobridge --verbose

Variables may also come from a ``.env`` file (``--env-file``). Use
``--simulate`` to run against in-memory hardware on a machine without
GPIO.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from dotenv import load_dotenv

from gpiobridge._redact import redact_for_log
from gpiobridge._tls import build_tls_context
from gpiobridge.config import BridgeConfig
from gpiobridge.engine import SyncEngine
from gpiobridge.exceptions import ConfigFault, HardwareFault, TransportFault
from gpiobridge.hardware import HardwarePort, RpiGpioHardware, SimulatedHardware
from gpiobridge.session import MqttSession

_logger = logging.getLogger("gpiobridge")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="gpiobridge",
        description="Bridge a GPIO light and a DHT22 temperature sensor to MQTT.",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file loaded before reading configuration (default: .env).",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use in-memory hardware instead of RPi.GPIO.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_hardware(config: BridgeConfig, simulate: bool) -> HardwarePort:
    if simulate:
        _logger.info("Using simulated hardware")
        return SimulatedHardware()
    if config.light_pin is None:
        raise ConfigFault("LIGHT_PIN not set")
    if config.dht_pin is None:
        raise ConfigFault("TEMPERATURE_DHT_PIN not set")
    return RpiGpioHardware(config.light_pin, config.dht_pin)


async def _serve(config: BridgeConfig, hardware: HardwarePort, session: MqttSession) -> None:
    engine = SyncEngine.from_config(config, session, hardware)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            continue
        installed.append(sig)
    try:
        await engine.run(stop)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    env_file = Path(args.env_file)
    if env_file.is_file():
        load_dotenv(env_file, override=False)
    _configure_logging(args.verbose)

    try:
        config = BridgeConfig.from_env()
        tls_context = build_tls_context(config)
        hardware = _build_hardware(config, args.simulate)
    except ConfigFault as exc:
        _logger.error("Configuration error: %s", exc)
        return 2
    except HardwareFault as exc:
        _logger.error("Hardware unavailable: %s", exc)
        return 1

    _logger.debug("Configuration: %s", redact_for_log(config))
    session = MqttSession(config, tls_context=tls_context)
    try:
        asyncio.run(_serve(config, hardware, session))
    except ConfigFault as exc:
        _logger.error("Configuration error: %s", exc)
        return 2
    except TransportFault as exc:
        _logger.error("Stopped: %s", exc)
        return 1
    finally:
        close = getattr(hardware, "close", None)
        if close is not None:
            with contextlib.suppress(HardwareFault):
                close()
    _logger.info("Bridge stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
