from __future__ import annotations

import sys
from collections.abc import Iterable, Sequence

import pytest

from gpiobridge import hardware
from gpiobridge.exceptions import HardwareFault, SensorChecksumFault, SensorTimeoutFault
from gpiobridge.hardware import (
    DHT_PULSES,
    ClimatePort,
    HardwarePort,
    RpiGpioHardware,
    SimulatedHardware,
    decode_dht22,
)

# Pulse trains: start pair, then 40 (low, high) bit pairs. A high of 70 is
# a one bit, 26 a zero bit, against lows of 50.
POSITIVE_TEMP = [
    80, 80,
    50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 70, 50, 26, 50, 70, 50, 26, 50, 26,
    50, 26, 50, 70, 50, 70, 50, 26, 50, 26,
    50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 70, 50, 26, 50, 70, 50, 26,
    50, 70, 50, 70, 50, 70, 50, 70, 50, 70,
    50, 70, 50, 70, 50, 70, 50, 26, 50, 70, 50, 70, 50, 70, 50, 26,
]  # fmt: skip

NEGATIVE_TEMP = [
    80, 80,
    50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 70, 50, 26, 50, 70, 50, 26, 50, 26,
    50, 26, 50, 70, 50, 70, 50, 26, 50, 26,
    50, 70, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 70, 50, 70,
    50, 26, 50, 26, 50, 70, 50, 26, 50, 70,
    50, 26, 50, 70, 50, 70, 50, 70, 50, 26, 50, 26, 50, 70, 50, 70,
]  # fmt: skip

BAD_CHECKSUM = [
    80, 80,
    50, 26, 50, 26, 50, 26, 50, 26, 50, 70, 50, 26, 50, 70, 50, 26, 50, 70, 50, 26, 50, 26,
    50, 26, 50, 70, 50, 70, 50, 26, 50, 26,
    50, 70, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 26, 50, 70, 50, 70,
    50, 26, 50, 26, 50, 70, 50, 26, 50, 70,
    50, 26, 50, 70, 50, 70, 50, 70, 50, 26, 50, 26, 50, 70, 50, 70,
]  # fmt: skip

# Captured from a real sensor.
SAMPLE = [
    458, 328,
    320, 101, 249, 153, 314, 153, 320, 154, 317, 153, 316, 153, 321, 431, 320, 147, 397,
    154, 315, 435, 316, 154, 320, 431, 320, 430, 319, 431, 320, 431, 320, 426,
    401, 148, 319, 154, 316, 154, 320, 150, 320, 154, 315, 154, 320, 149, 320, 148, 397,
    154, 319, 430, 321, 430, 321, 431, 320, 429, 318, 432, 320, 150, 320, 147,
    379, 434, 316, 434, 317, 153, 320, 431, 317, 435, 316, 435, 317, 153, 320, 425,
]  # fmt: skip

LIGHT_PIN = 17
DHT_PIN = 4


def test_decode_positive_temperature() -> None:
    reading = decode_dht22(POSITIVE_TEMP)
    assert reading.humidity == 65.2
    assert reading.temperature == 35.1


def test_decode_negative_temperature() -> None:
    reading = decode_dht22(NEGATIVE_TEMP)
    assert reading.humidity == 65.2
    assert reading.temperature == -10.1


def test_decode_checksum_mismatch() -> None:
    with pytest.raises(SensorChecksumFault):
        decode_dht22(BAD_CHECKSUM)


def test_decode_real_sample() -> None:
    reading = decode_dht22(SAMPLE)
    assert reading.humidity == 60.7
    assert reading.temperature == 12.4


def test_decode_rejects_short_train() -> None:
    with pytest.raises(HardwareFault):
        decode_dht22(SAMPLE[:-2])


def test_checksum_fault_is_a_hardware_fault() -> None:
    assert issubclass(SensorChecksumFault, HardwareFault)
    assert issubclass(SensorTimeoutFault, HardwareFault)


class _FakeGpio:
    """Minimal stand-in for the ``RPi.GPIO`` module."""

    BCM = "BCM"
    OUT = "OUT"
    IN = "IN"
    HIGH = 1
    LOW = 0

    def __init__(self, sensor_line: Iterable[int] = ()) -> None:
        self.mode: str | None = None
        self.setups: list[tuple[int, str]] = []
        self.levels: dict[int, int] = {}
        self.cleaned: list[int] = []
        self.fail_output = False
        self._sensor_line = iter(sensor_line)

    def setmode(self, mode: str) -> None:
        self.mode = mode

    def setwarnings(self, _flag: bool) -> None:
        pass

    def setup(self, pin: int, direction: str) -> None:
        self.setups.append((pin, direction))

    def output(self, pin: int, value: int) -> None:
        if self.fail_output:
            raise RuntimeError("pin busy")
        self.levels[pin] = value

    def input(self, pin: int) -> int:
        if pin == DHT_PIN:
            return next(self._sensor_line, 0)
        return self.levels.get(pin, 0)

    def cleanup(self, pin: int) -> None:
        self.cleaned.append(pin)


def _sensor_line(pulses: Sequence[int]) -> list[int]:
    """Line levels as the capture loop samples them for *pulses*."""
    # Each loop exits on (and consumes) the first sample of the opposite level.
    line = [1, 1, 1, 0]
    for i in range(0, DHT_PULSES * 2, 2):
        line += [0] * pulses[i] + [1]
        line += [1] * pulses[i + 1] + [0]
    return line


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(hardware.time, "sleep", lambda _seconds: None)


def test_rpi_adapter_configures_light_pin() -> None:
    gpio = _FakeGpio()
    adapter = RpiGpioHardware(LIGHT_PIN, DHT_PIN, gpio=gpio)

    assert gpio.mode == "BCM"
    assert (LIGHT_PIN, "OUT") in gpio.setups
    adapter.set_level(True)
    assert adapter.read_level() is True
    adapter.set_level(False)
    assert adapter.read_level() is False
    assert isinstance(adapter, HardwarePort)


def test_rpi_adapter_wraps_gpio_errors() -> None:
    gpio = _FakeGpio()
    adapter = RpiGpioHardware(LIGHT_PIN, DHT_PIN, gpio=gpio)
    gpio.fail_output = True

    with pytest.raises(HardwareFault, match="Cannot write light pin 17"):
        adapter.set_level(True)


def test_rpi_adapter_reads_dht22() -> None:
    gpio = _FakeGpio(_sensor_line(SAMPLE))
    adapter = RpiGpioHardware(LIGHT_PIN, DHT_PIN, gpio=gpio)

    climate = adapter.read_climate()
    assert climate.temperature == 12.4
    assert climate.humidity == 60.7


def test_rpi_adapter_times_out_on_stuck_line() -> None:
    gpio = _FakeGpio(iter(lambda: 1, None))
    adapter = RpiGpioHardware(LIGHT_PIN, DHT_PIN, gpio=gpio)

    with pytest.raises(SensorTimeoutFault):
        adapter.read_temperature()


def test_rpi_adapter_without_sensor_pin() -> None:
    adapter = RpiGpioHardware(LIGHT_PIN, gpio=_FakeGpio())
    with pytest.raises(HardwareFault, match="No DHT22 pin"):
        adapter.read_temperature()


def test_rpi_adapter_close_only_releases_sensor_pin() -> None:
    gpio = _FakeGpio()
    adapter = RpiGpioHardware(LIGHT_PIN, DHT_PIN, gpio=gpio)
    adapter.close()
    assert gpio.cleaned == [DHT_PIN]


def test_rpi_adapter_without_library(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "RPi", None)
    monkeypatch.setitem(sys.modules, "RPi.GPIO", None)
    with pytest.raises(HardwareFault, match="--simulate"):
        RpiGpioHardware(LIGHT_PIN)


def test_simulated_hardware_failure_injection() -> None:
    sim = SimulatedHardware(temperature=19.5)
    sim.set_level(True)
    assert sim.read_level() is True
    assert sim.writes == [True]
    assert sim.read_temperature() == 19.5
    assert sim.sensor_reads == 1

    sim.write_fault = HardwareFault("boom", device="light")
    with pytest.raises(HardwareFault):
        sim.set_level(False)
    assert sim.level is True

    sim.sensor_fault = SensorTimeoutFault("timeout", device="dht22")
    with pytest.raises(SensorTimeoutFault):
        sim.read_temperature()
    assert isinstance(sim, HardwarePort)


def test_simulated_hardware_reports_humidity() -> None:
    sim = SimulatedHardware(temperature=18.0, humidity=63.5)
    assert isinstance(sim, ClimatePort)
    reading = sim.read_climate()
    assert (reading.temperature, reading.humidity) == (18.0, 63.5)
    assert sim.sensor_reads == 1

    sim.sensor_fault = SensorChecksumFault("DHT22 checksum mismatch", device="dht22")
    with pytest.raises(SensorChecksumFault):
        sim.read_climate()
