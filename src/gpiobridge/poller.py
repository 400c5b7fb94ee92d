"""Scheduled temperature and humidity sampling."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime

from gpiobridge.exceptions import HardwareFault
from gpiobridge.hardware import ClimatePort, TemperaturePort
from gpiobridge.models import SensorReading

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LatestReadingSlot:
    """Mailbox of depth one between the poller and the engine.

    Only the latest temperature matters, so :meth:`put` replaces a reading
    the engine has not consumed yet instead of queueing behind it.
    """

    def __init__(self) -> None:
        self._reading: SensorReading | None = None
        self._ready = asyncio.Event()
        self.superseded = 0

    def put(self, reading: SensorReading) -> None:
        if self._reading is not None:
            self.superseded += 1
            _logger.debug("Unconsumed reading from %s superseded", self._reading.sampled_at.isoformat())
        self._reading = reading
        self._ready.set()

    def get_nowait(self) -> SensorReading | None:
        reading, self._reading = self._reading, None
        self._ready.clear()
        return reading

    async def get(self) -> SensorReading:
        while self._reading is None:
            self._ready.clear()
            await self._ready.wait()
        return self.get_nowait()  # type: ignore[return-value]

    def __len__(self) -> int:
        return 0 if self._reading is None else 1


class SensorPoller:
    """Samples a temperature sensor every *interval* seconds.

    Ports that implement :class:`ClimatePort` are read once per tick for
    both temperature and humidity. A failed read yields a reading with
    ``valid=False`` and the cadence carries on. An implausible humidity is
    dropped on its own; the temperature still counts.

    The poller keeps no state between ticks beyond the schedule, so
    :meth:`readings` can be restarted at any time.
    """

    def __init__(
        self,
        port: TemperaturePort,
        *,
        sensor_id: str = "temperature",
        interval: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._port = port
        self._sensor_id = sensor_id
        self._interval = interval
        self._clock = clock

    @property
    def sensor_id(self) -> str:
        return self._sensor_id

    @property
    def interval(self) -> float:
        return self._interval

    async def sample(self) -> SensorReading:
        """Take one reading. Never raises for sensor failures."""
        loop = asyncio.get_running_loop()
        try:
            # Sensor reads block for a full sensor round-trip; keep them off the loop.
            if isinstance(self._port, ClimatePort):
                climate = await loop.run_in_executor(None, self._port.read_climate)
                celsius, humidity = climate.temperature, climate.humidity
            else:
                celsius, humidity = await loop.run_in_executor(None, self._port.read_temperature), None
        except HardwareFault as exc:
            _logger.warning("Temperature read failed on %s: %s", self._sensor_id, exc)
            return SensorReading.failed(self._sensor_id, str(exc), sampled_at=self._clock())
        except Exception as exc:
            _logger.error("Unexpected error reading %s", self._sensor_id, exc_info=True)
            return SensorReading.failed(self._sensor_id, f"{type(exc).__name__}: {exc}", sampled_at=self._clock())

        value = float(celsius)
        if not math.isfinite(value):
            _logger.warning("Temperature read on %s returned %r", self._sensor_id, value)
            return SensorReading.failed(self._sensor_id, f"non-finite value {value!r}", sampled_at=self._clock())

        percent = self._check_humidity(humidity)
        _logger.debug("Temperature read on %s: %.2f (humidity %s)", self._sensor_id, value, percent)
        return SensorReading(sensor_id=self._sensor_id, celsius=value, humidity=percent, sampled_at=self._clock())

    def _check_humidity(self, humidity: float | None) -> float | None:
        if humidity is None:
            return None
        percent = float(humidity)
        if not math.isfinite(percent) or not 0.0 <= percent <= 100.0:
            _logger.warning("Humidity read on %s returned %r; dropping it", self._sensor_id, percent)
            return None
        return percent

    async def readings(self) -> AsyncIterator[SensorReading]:
        """Infinite sequence of readings, one per interval."""
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while True:
            deadline += self._interval
            delay = deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                # A read overran the interval; restart the schedule from now.
                deadline = loop.time()
            yield await self.sample()

    async def run(self, slot: LatestReadingSlot) -> None:
        """Feed readings into *slot* until cancelled."""
        _logger.info("Sensor poller started (sensor=%s interval=%ss)", self._sensor_id, self._interval)
        try:
            async for reading in self.readings():
                slot.put(reading)
        finally:
            _logger.info("Sensor poller stopped (sensor=%s)", self._sensor_id)
