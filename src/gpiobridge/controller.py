"""Device controller.

A controller is the only component allowed to change its device's
:class:`DeviceState`, and only the engine calls it, so the state needs
no locking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from gpiobridge.exceptions import HardwareFault
from gpiobridge.hardware import LightPort
from gpiobridge.models import DeviceState, OnOff

_logger = logging.getLogger(__name__)

StateListener = Callable[[DeviceState], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeviceController:
    """Owns one GPIO-backed device and its canonical state.

    :meth:`apply` is idempotent: applying the current level does not touch
    the hardware and notifies nobody. When a write fails the state is left
    as it was, and the hardware is considered out of sync so the next
    command is written even if it matches the recorded level.
    """

    def __init__(
        self,
        device_id: str,
        port: LightPort,
        *,
        default_level: OnOff = OnOff.OFF,
        verify_writes: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._port = port
        self._verify_writes = verify_writes
        self._clock = clock
        self._state = DeviceState(device_id=device_id, level=default_level, last_changed=clock())
        self._synced = False
        self._verified = False
        self._listeners: list[StateListener] = []

    @property
    def device_id(self) -> str:
        return self._state.device_id

    @property
    def state(self) -> DeviceState:
        """Current snapshot. Snapshots are immutable; a change replaces it."""
        return self._state

    @property
    def in_sync(self) -> bool:
        """Whether the last hardware write for the current state succeeded."""
        return self._synced

    @property
    def verified(self) -> bool:
        """Whether a hardware write has ever been confirmed for this device."""
        return self._verified

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener* for state changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def initialize(self) -> DeviceState:
        """Drive the pin to the recorded (default) level.

        Raises
        ------
        HardwareFault
            When the pin cannot be written; the controller stays out of
            sync and the next command retries the write.
        """
        self._write(self._state.level)
        self._synced = True
        self._verified = True
        _logger.debug("Device %s initialised at %s", self.device_id, self._state.level)
        return self._state

    def apply(self, command: OnOff) -> DeviceState:
        """Apply *command* and return the resulting state.

        Raises
        ------
        HardwareFault
            When the write (or its read-back) fails. The state is unchanged.
        """
        current = self._state
        if command is current.level and self._synced:
            _logger.debug("Device %s already %s", self.device_id, command)
            return current

        self._write(command)
        self._synced = True
        self._verified = True

        if command is current.level:
            return current

        updated = current.model_copy(update={"level": command, "last_changed": self._clock()})
        self._state = updated
        _logger.info("Device %s switched %s -> %s", self.device_id, current.level, command)
        self._notify(updated)
        return updated

    def _write(self, command: OnOff) -> None:
        try:
            self._port.set_level(command.is_on)
            if self._verify_writes:
                actual = self._port.read_level()
                if actual != command.is_on:
                    raise HardwareFault(
                        f"Read-back mismatch on {self.device_id}: wrote {command}, pin reads {OnOff.from_bool(actual)}",
                        device=self.device_id,
                    )
        except HardwareFault:
            self._synced = False
            raise

    def _notify(self, state: DeviceState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                _logger.warning("State listener for %s failed", self.device_id, exc_info=True)
