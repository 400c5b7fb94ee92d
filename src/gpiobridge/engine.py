"""Synchronization engine.

The engine is the only place where the three sides of the bridge meet:
broker commands are routed to device controllers, state changes and
sensor readings are published back, and connection changes trigger a
full re-publish. Everything happens in one sequential dispatch loop on
the asyncio loop, so controllers and the last reading need no locking.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from enum import StrEnum
from typing import Any

from gpiobridge.config import BridgeConfig, DeviceBinding, TopicBindings
from gpiobridge.controller import DeviceController
from gpiobridge.exceptions import ConfigFault, HardwareFault, PayloadError, TransportFault
from gpiobridge.hardware import HardwarePort
from gpiobridge.models import (
    ConnectionChanged,
    DeviceState,
    FaultKind,
    FaultReport,
    InboundMessage,
    OnOff,
    SensorReading,
    SessionEvent,
    SessionFailed,
    parse_command,
)
from gpiobridge.poller import LatestReadingSlot, SensorPoller
from gpiobridge.session import MessagingSession

FaultCallback = Callable[[FaultReport], None]

# Extra time for the client teardown once in-flight publishes had their grace.
_CLOSE_MARGIN = 1.0


class EngineState(StrEnum):
    STARTUP = "startup"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


async def _next_event(events: AsyncIterator[SessionEvent]) -> SessionEvent:
    return await anext(events)


class SyncEngine:
    """Keeps devices, the broker and the sensor feed consistent.

    Parameters
    ----------
    session : MessagingSession
        Pub/sub session; the engine starts and closes it.
    controllers : iterable of DeviceController
        One controller per device in *bindings*.
    bindings : TopicBindings
        Static topic layout.
    poller : SensorPoller or None
        Temperature source. ``None`` runs without readings.
    retain_readings : bool
        Publish readings retained. Applies to humidity as well, which goes
        to ``bindings.humidity_topic`` whenever that is set.
    republish_reading_on_reconnect : bool
        Re-publish the last valid reading after every (re)connect.
    restore_retained_state : bool
        Apply the first retained state-topic message once per device.
    shutdown_grace : float
        Seconds allowed for closing the session.
    on_fault : callable or None
        Receives a :class:`FaultReport` for every component-local fault.
    """

    def __init__(
        self,
        session: MessagingSession,
        controllers: Iterable[DeviceController],
        bindings: TopicBindings,
        poller: SensorPoller | None = None,
        *,
        retain_readings: bool = False,
        republish_reading_on_reconnect: bool = False,
        restore_retained_state: bool = False,
        shutdown_grace: float = 5.0,
        on_fault: FaultCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._session = session
        self._controllers = {controller.device_id: controller for controller in controllers}
        self._bindings = bindings
        self._poller = poller
        self._retain_readings = retain_readings
        self._republish_reading = republish_reading_on_reconnect
        self._restore = restore_retained_state
        self._shutdown_grace = shutdown_grace
        self._on_fault = on_fault
        self._logger = logger or logging.getLogger(__name__)

        self._state = EngineState.STARTUP
        self._slot = LatestReadingSlot()
        self._last_reading: SensorReading | None = None
        self._changed: dict[str, DeviceState] = {}
        self._awaiting_restore: set[str] = set()
        self._state_topics: dict[str, DeviceBinding] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self._poller_task: asyncio.Task[None] | None = None
        self._failure: TransportFault | None = None

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        session: MessagingSession,
        hardware: HardwarePort,
        *,
        on_fault: FaultCallback | None = None,
    ) -> SyncEngine:
        """Wire controllers and the poller for *hardware* as *config* describes."""
        bindings = config.bindings()
        controllers = [
            DeviceController(
                device.device_id,
                hardware,
                default_level=device.default_level,
                verify_writes=config.verify_writes,
            )
            for device in bindings.devices
        ]
        poller = SensorPoller(hardware, sensor_id=config.sensor_id, interval=config.sensor_interval)
        return cls(
            session,
            controllers,
            bindings,
            poller,
            retain_readings=config.retain_readings,
            republish_reading_on_reconnect=config.republish_reading_on_reconnect,
            restore_retained_state=config.restore_retained_state,
            shutdown_grace=config.shutdown_grace,
            on_fault=on_fault,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_reading(self) -> SensorReading | None:
        """Last valid reading published (or queued for publishing)."""
        return self._last_reading

    def controller(self, device_id: str) -> DeviceController:
        return self._controllers[device_id]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Run until *stop* is set or the session gives up.

        Raises
        ------
        ConfigFault
            When the bindings and controllers do not match.
        TransportFault
            When the session reached its reconnect ceiling.
        """
        if self._state is not EngineState.STARTUP:
            raise RuntimeError(f"Engine cannot run from state {self._state}")
        stop = stop or asyncio.Event()
        try:
            await self._startup()
            self._set_state(EngineState.RUNNING)
            await self._dispatch_loop(stop)
        finally:
            await self._shutdown()
        if self._failure is not None:
            raise self._failure

    async def _startup(self) -> None:
        self._bindings.validate()
        bound = {device.device_id for device in self._bindings.devices}
        if bound != set(self._controllers):
            raise ConfigFault(
                f"Bound devices {sorted(bound)} do not match controllers {sorted(self._controllers)}"
            )

        for device in self._bindings.devices:
            controller = self._controllers[device.device_id]
            self._unsubscribers.append(controller.add_listener(self._record_change))
            try:
                controller.initialize()
            except HardwareFault as exc:
                self._logger.error("Initialising %s failed: %s", device.device_id, exc)
                self._report(FaultKind.HARDWARE, device.device_id, exc)

            await self._session.subscribe(device.command_topic)
            if self._restore:
                self._state_topics[device.state_topic] = device
                self._awaiting_restore.add(device.device_id)
                await self._session.subscribe(device.state_topic)

        await self._session.start()
        if self._poller is not None:
            self._poller_task = asyncio.create_task(self._poller.run(self._slot), name="sensor_poller")
        self._logger.info(
            "Bridge started devices=%s reading_topic=%s humidity_topic=%s",
            ",".join(sorted(self._controllers)),
            self._bindings.reading_topic,
            self._bindings.humidity_topic,
        )

    async def _dispatch_loop(self, stop: asyncio.Event) -> None:
        events = self._session.events()
        stop_wait = asyncio.ensure_future(stop.wait())
        next_event: asyncio.Future[SessionEvent] | None = None
        next_reading: asyncio.Future[SensorReading] | None = None
        try:
            while not stop.is_set():
                if next_event is None:
                    next_event = asyncio.ensure_future(_next_event(events))
                if next_reading is None and self._poller is not None:
                    next_reading = asyncio.ensure_future(self._slot.get())

                waiters: set[asyncio.Future[Any]] = {stop_wait, next_event}
                if next_reading is not None:
                    waiters.add(next_reading)
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

                if stop_wait in done:
                    break
                if next_event in done:
                    future, next_event = next_event, None
                    try:
                        event = future.result()
                    except StopAsyncIteration:
                        self._logger.warning("Session event stream ended")
                        break
                    if not await self._dispatch_event(event):
                        break
                if next_reading is not None and next_reading in done:
                    future_reading, next_reading = next_reading, None
                    await self._handle_reading(future_reading.result())
        finally:
            for pending in (stop_wait, next_event, next_reading):
                if pending is not None and not pending.done():
                    pending.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await pending
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _shutdown(self) -> None:
        self._set_state(EngineState.SHUTTING_DOWN)
        task = self._poller_task
        self._poller_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        try:
            await asyncio.wait_for(self._session.close(self._shutdown_grace), self._shutdown_grace + _CLOSE_MARGIN)
        except TimeoutError:
            self._logger.warning("Session did not close within %.1fs", self._shutdown_grace)
        except TransportFault as exc:
            self._logger.warning("Closing session failed: %s", exc)
        self._set_state(EngineState.STOPPED)

    def _set_state(self, state: EngineState) -> None:
        self._logger.debug("Engine %s -> %s", self._state, state)
        self._state = state

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch_event(self, event: SessionEvent) -> bool:
        """Handle one session event; returns False when the loop must stop."""
        if isinstance(event, InboundMessage):
            await self._handle_message(event)
        elif isinstance(event, ConnectionChanged):
            await self._handle_connection(event)
        elif isinstance(event, SessionFailed):
            self._logger.error("Messaging session failed: %s", event.error)
            self._report(FaultKind.TRANSPORT, "session", event.error)
            self._failure = event.error
            return False
        return True

    async def _handle_message(self, message: InboundMessage) -> None:
        binding = self._bindings.device_for_command(message.topic)
        if binding is not None:
            await self._handle_command(binding, message)
            return
        device = self._state_topics.get(message.topic)
        if device is not None:
            await self._handle_state_message(device, message)
            return
        self._logger.debug("Ignoring message on unbound topic %s", message.topic)

    async def _handle_command(self, binding: DeviceBinding, message: InboundMessage) -> None:
        try:
            command = parse_command(message.payload)
        except PayloadError as exc:
            self._logger.warning("Rejected command topic=%s payload=%r: %s", message.topic, message.payload, exc)
            self._report(FaultKind.PAYLOAD, binding.device_id, exc, message)
            return

        # An explicit command always wins over a retained state still to come.
        self._awaiting_restore.discard(binding.device_id)
        await self._apply(binding, command, message)

    async def _handle_state_message(self, binding: DeviceBinding, message: InboundMessage) -> None:
        if binding.device_id not in self._awaiting_restore or not message.retained:
            return
        self._awaiting_restore.discard(binding.device_id)
        try:
            level = parse_command(message.payload)
        except PayloadError as exc:
            self._logger.warning("Ignoring retained state topic=%s payload=%r: %s", message.topic, message.payload, exc)
            self._report(FaultKind.PAYLOAD, binding.device_id, exc, message)
            return
        self._logger.info("Restoring %s to retained state %s", binding.device_id, level)
        await self._apply(binding, level, message)

    async def _apply(self, binding: DeviceBinding, command: OnOff, message: InboundMessage) -> None:
        """Apply *command*; publish the new state, log a no-op or report the fault."""
        controller = self._controllers[binding.device_id]
        was_verified = controller.verified
        try:
            controller.apply(command)
        except HardwareFault as exc:
            self._logger.error(
                "Applying %s to %s failed (topic=%s payload=%r): %s",
                command,
                binding.device_id,
                message.topic,
                message.payload,
                exc,
            )
            self._report(FaultKind.HARDWARE, binding.device_id, exc, message)
            return

        changed = self._changed.pop(binding.device_id, None)
        if changed is None and was_verified:
            self._logger.info(
                "%s already %s; nothing to publish (topic=%s payload=%r)",
                binding.device_id,
                command,
                message.topic,
                message.payload,
            )
            return
        # First confirmed write after a failed initialisation: publish even without a level change.
        await self._publish_state(binding, changed or controller.state)

    async def _handle_connection(self, event: ConnectionChanged) -> None:
        if not event.state.is_connected:
            self._logger.info("Messaging session %s", event.state)
            return

        republished = 0
        for device in self._bindings.devices:
            controller = self._controllers[device.device_id]
            if not controller.verified:
                self._logger.debug("Not re-publishing unverified state of %s", device.device_id)
                continue
            await self._publish_state(device, controller.state)
            republished += 1

        if self._republish_reading and self._last_reading is not None:
            await self._publish_reading(self._last_reading)

        try:
            flushed = await self._session.flush_pending()
        except TransportFault as exc:
            self._logger.error("Flushing held publishes failed: %s", exc)
            self._report(FaultKind.TRANSPORT, "session", exc)
            flushed = 0
        self._logger.info("Session connected; re-published %d state(s), flushed %d held", republished, flushed)

    async def _handle_reading(self, reading: SensorReading) -> None:
        if not reading.valid:
            self._logger.warning("Skipping invalid reading from %s: %s", reading.sensor_id, reading.error)
            self._report(FaultKind.SENSOR, reading.sensor_id, reading.error or "invalid reading")
            return
        self._last_reading = reading
        await self._publish_reading(reading)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def _publish_state(self, binding: DeviceBinding, state: DeviceState) -> None:
        await self._publish(binding.device_id, binding.state_topic, state.payload(), retain=True)

    async def _publish_reading(self, reading: SensorReading) -> None:
        await self._publish(
            reading.sensor_id,
            self._bindings.reading_topic,
            reading.payload(),
            retain=self._retain_readings,
        )
        humidity_topic = self._bindings.humidity_topic
        humidity = reading.humidity_payload()
        if humidity_topic is None or humidity is None:
            return
        await self._publish(reading.sensor_id, humidity_topic, humidity, retain=self._retain_readings)

    async def _publish(self, source: str, topic: str, payload: str, *, retain: bool) -> None:
        try:
            await self._session.publish(topic, payload, retain=retain)
        except TransportFault as exc:
            self._logger.error("Publish topic=%s payload=%r failed: %s", topic, payload, exc)
            self._report(FaultKind.TRANSPORT, source, exc, topic=topic, payload=payload)
            return
        self._logger.debug("Published topic=%s payload=%r retain=%s", topic, payload, retain)

    # ------------------------------------------------------------------
    # Faults
    # ------------------------------------------------------------------

    def _record_change(self, state: DeviceState) -> None:
        self._changed[state.device_id] = state

    def _report(
        self,
        kind: FaultKind,
        source: str,
        error: BaseException | str,
        message: InboundMessage | None = None,
        *,
        topic: str | None = None,
        payload: str | None = None,
    ) -> None:
        if message is not None:
            topic, payload = message.topic, message.payload
        report = FaultReport(kind=kind, source=source, error=str(error), topic=topic, payload=payload)
        if self._on_fault is None:
            return
        try:
            self._on_fault(report)
        except Exception:
            self._logger.warning("Fault callback failed for %s", report, exc_info=True)

