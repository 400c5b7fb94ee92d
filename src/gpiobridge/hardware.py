"""Hardware port and adapters.

The rest of the bridge only sees the capability surface defined by
:class:`HardwarePort`: set/read the light pin level and read the
temperature. Sensors that also report humidity implement
:class:`ClimatePort`. Adapters satisfy the protocols structurally:

* :class:`RpiGpioHardware` drives real pins through ``RPi.GPIO`` and reads
  a DHT22 by capturing its pulse train.
* :class:`SimulatedHardware` keeps everything in memory, with failure
  injection, for dry runs and tests.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from gpiobridge.exceptions import HardwareFault, SensorChecksumFault, SensorTimeoutFault

_logger = logging.getLogger(__name__)


@runtime_checkable
class LightPort(Protocol):
    """Output pin capability used by a device controller."""

    def set_level(self, level: bool) -> None: ...

    def read_level(self) -> bool: ...


@runtime_checkable
class TemperaturePort(Protocol):
    """Sensor capability used by the poller. May block for a sensor round-trip."""

    def read_temperature(self) -> float: ...


@runtime_checkable
class ClimatePort(Protocol):
    """Sensor that reports temperature and relative humidity in one read."""

    def read_climate(self) -> Dht22Reading: ...


@runtime_checkable
class HardwarePort(LightPort, TemperaturePort, Protocol):
    """One light output plus one temperature input."""


# ---------------------------------------------------------------------------
# DHT22 pulse decoding
# ---------------------------------------------------------------------------

DHT_PULSES = 41
MAX_COUNT = 32000


@dataclass(frozen=True)
class Dht22Reading:
    temperature: float
    humidity: float


def decode_dht22(pulses: list[int] | tuple[int, ...]) -> Dht22Reading:
    """Decode a DHT22 pulse-count train into a reading.

    *pulses* holds ``2 * DHT_PULSES`` alternating low/high durations: the
    first pair is the sensor's start signal, then 40 data bits. A bit is
    ``1`` when its high pulse is at least as long as the average low pulse.
    The fifth byte is a checksum over the first four.
    """
    if len(pulses) != DHT_PULSES * 2:
        raise HardwareFault(f"Expected {DHT_PULSES * 2} pulse counts, got {len(pulses)}", device="dht22")

    threshold = sum(pulses[i] for i in range(2, DHT_PULSES * 2, 2)) // (DHT_PULSES - 1)

    data = [0, 0, 0, 0, 0]
    for i in range(3, DHT_PULSES * 2, 2):
        index = (i - 3) // 16
        data[index] = (data[index] << 1) & 0xFF
        if pulses[i] >= threshold:
            data[index] |= 1

    if data[4] != (data[0] + data[1] + data[2] + data[3]) & 0xFF:
        raise SensorChecksumFault("DHT22 checksum mismatch", device="dht22")

    humidity = (data[0] * 256 + data[1]) / 10
    temperature = ((data[2] & 0x7F) * 256 + data[3]) / 10
    if data[2] & 0x80:
        temperature = -temperature
    return Dht22Reading(temperature=temperature, humidity=humidity)


# ---------------------------------------------------------------------------
# Raspberry Pi adapter
# ---------------------------------------------------------------------------


class RpiGpioHardware:
    """``RPi.GPIO`` backed light pin plus a DHT22 on a second pin.

    :meth:`close` leaves the light pin configured: GPIO levels outlive the
    process and the light stays at its last commanded level.
    """

    def __init__(self, light_pin: int, dht_pin: int | None = None, *, gpio: Any | None = None) -> None:
        if gpio is None:
            try:
                import RPi.GPIO as gpio  # noqa: N813
            except (ImportError, RuntimeError) as exc:
                raise HardwareFault(
                    "RPi.GPIO is unavailable on this host; install the 'gpio' extra or run with --simulate",
                    device="gpio",
                ) from exc
        self._gpio = gpio
        self._light_pin = light_pin
        self._dht_pin = dht_pin

        try:
            gpio.setmode(gpio.BCM)
            gpio.setwarnings(False)
            gpio.setup(light_pin, gpio.OUT)
        except (RuntimeError, ValueError, OSError) as exc:
            raise HardwareFault(f"Cannot configure light pin {light_pin}: {exc}", device="light") from exc
        _logger.debug("GPIO initialised light_pin=%s dht_pin=%s", light_pin, dht_pin)

    def set_level(self, level: bool) -> None:
        gpio = self._gpio
        try:
            gpio.output(self._light_pin, gpio.HIGH if level else gpio.LOW)
        except (RuntimeError, ValueError, OSError) as exc:
            raise HardwareFault(f"Cannot write light pin {self._light_pin}: {exc}", device="light") from exc

    def read_level(self) -> bool:
        try:
            return bool(self._gpio.input(self._light_pin))
        except (RuntimeError, ValueError, OSError) as exc:
            raise HardwareFault(f"Cannot read light pin {self._light_pin}: {exc}", device="light") from exc

    def read_temperature(self) -> float:
        return self.read_climate().temperature

    def read_climate(self) -> Dht22Reading:
        """Read temperature and humidity from the DHT22.

        Bit-banged reads fail regularly; callers treat a fault as a missed
        sample. The sensor does not support more than one read every two
        seconds.
        """
        if self._dht_pin is None:
            raise HardwareFault("No DHT22 pin configured", device="dht22")
        try:
            pulses = self._capture_pulses(self._dht_pin)
        except (RuntimeError, ValueError, OSError) as exc:
            raise HardwareFault(f"Cannot access DHT22 pin {self._dht_pin}: {exc}", device="dht22") from exc
        return decode_dht22(pulses)

    def _capture_pulses(self, pin: int) -> list[int]:
        gpio = self._gpio
        pulses = [0] * (DHT_PULSES * 2)

        # Start signal: hold high, pull low for 20ms, then release to input.
        gpio.setup(pin, gpio.OUT)
        gpio.output(pin, gpio.HIGH)
        time.sleep(0.5)
        gpio.output(pin, gpio.LOW)
        time.sleep(0.02)
        gpio.setup(pin, gpio.IN)

        count = 0
        while gpio.input(pin):
            count += 1
            if count > MAX_COUNT:
                raise SensorTimeoutFault("DHT22 did not answer the start signal", device="dht22")

        for c in range(DHT_PULSES):
            i = c * 2
            while not gpio.input(pin):
                pulses[i] += 1
                if pulses[i] > MAX_COUNT:
                    raise SensorTimeoutFault("DHT22 low pulse timed out", device="dht22")
            while gpio.input(pin):
                pulses[i + 1] += 1
                if pulses[i + 1] > MAX_COUNT:
                    raise SensorTimeoutFault("DHT22 high pulse timed out", device="dht22")
        return pulses

    def close(self) -> None:
        if self._dht_pin is None:
            return
        try:
            self._gpio.cleanup(self._dht_pin)
        except (RuntimeError, ValueError, OSError):
            _logger.debug("GPIO cleanup of pin %s failed", self._dht_pin, exc_info=True)


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


class SimulatedHardware:
    """In-memory hardware with failure injection.

    Set ``write_fault``, ``read_fault`` or ``sensor_fault`` to make the
    matching call raise; set ``stuck_level`` to make the pin ignore writes
    on read-back.
    """

    def __init__(
        self,
        *,
        level: bool = False,
        temperature: float = 21.0,
        humidity: float = 50.0,
    ) -> None:
        self.level = level
        self.temperature = temperature
        self.humidity = humidity
        self.write_fault: HardwareFault | None = None
        self.read_fault: HardwareFault | None = None
        self.sensor_fault: HardwareFault | None = None
        self.stuck_level: bool | None = None
        self.writes: list[bool] = []
        self.sensor_reads = 0

    def set_level(self, level: bool) -> None:
        if self.write_fault is not None:
            raise self.write_fault
        self.writes.append(level)
        self.level = level
        _logger.info("Simulated light pin set to %s", "HIGH" if level else "LOW")

    def read_level(self) -> bool:
        if self.read_fault is not None:
            raise self.read_fault
        if self.stuck_level is not None:
            return self.stuck_level
        return self.level

    def read_temperature(self) -> float:
        self.sensor_reads += 1
        if self.sensor_fault is not None:
            raise self.sensor_fault
        return self.temperature

    def read_climate(self) -> Dht22Reading:
        return Dht22Reading(temperature=self.read_temperature(), humidity=self.humidity)
