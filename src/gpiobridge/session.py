"""Reconnecting MQTT session.

paho-mqtt runs its network loop in a background thread. Every callback
from that thread is handed to the asyncio loop with
``call_soon_threadsafe``; all session state (connection phase,
subscriptions, the pending-publish map) is only touched on the loop.

Reconnects are driven here rather than by paho, so that every attempt
goes through :class:`~gpiobridge.backoff.BackoffPolicy` and is visible as
``SessionState.reconnecting(attempt)``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from gpiobridge.backoff import BackoffPolicy
from gpiobridge.config import BridgeConfig
from gpiobridge.exceptions import NotConnectedFault, TransportFault
from gpiobridge.models import (
    ConnectionChanged,
    InboundMessage,
    SessionEvent,
    SessionFailed,
    SessionPhase,
    SessionState,
)

_COMMAND_QOS = 1
_PUBLISH_QOS = 1


class MessagingSession(Protocol):
    """Structural interface the engine needs from a pub/sub session.

    Keeping this a protocol lets tests drive the engine with an in-memory
    session while production uses :class:`MqttSession`.
    """

    @property
    def state(self) -> SessionState: ...

    async def start(self) -> None: ...

    async def subscribe(self, topic: str) -> None: ...

    async def publish(self, topic: str, payload: str, *, retain: bool = False) -> None: ...

    async def flush_pending(self) -> int: ...

    def events(self) -> AsyncIterator[SessionEvent]: ...

    async def close(self, timeout: float = 5.0) -> None: ...


@dataclass(frozen=True)
class PendingPublish:
    """A publish held back while disconnected. Newer values replace it."""

    topic: str
    payload: str
    retain: bool


class MqttSession:
    """paho-mqtt backed :class:`MessagingSession`."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        tls_context: ssl.SSLContext | None = None,
        backoff: BackoffPolicy | None = None,
        client_factory: Callable[[], Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._tls_context = tls_context
        self._backoff = backoff or BackoffPolicy(
            config.reconnect_base_delay,
            config.reconnect_max_delay,
            config.reconnect_jitter,
        )
        self._client_factory = client_factory or self._create_client
        self._logger = logger or logging.getLogger(__name__)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._client: Any | None = None
        self._generation = 0
        self._connack: asyncio.Future[int] | None = None
        self._lost_generation = -1
        self._state = SessionState.disconnected()
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._subscriptions: dict[str, int] = {}
        self._pending: dict[str, PendingPublish] = {}
        self._inflight: list[Any] = []
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = asyncio.Event()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def subscriptions(self) -> tuple[str, ...]:
        return tuple(self._subscriptions)

    @property
    def pending(self) -> tuple[PendingPublish, ...]:
        """Publishes waiting for a connection, oldest first."""
        return tuple(self._pending.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, falling back to background reconnects when the broker is unreachable."""
        try:
            await self.connect()
        except TransportFault as exc:
            self._logger.warning("Initial MQTT connection failed: %s", exc)
            self._connection_lost()

    async def connect(self) -> None:
        """Open a fresh connection and re-issue every registered subscription.

        Raises
        ------
        TransportFault
            On network errors, a missing CONNACK or a rejected CONNECT
            (bad credentials, not authorised).
        """
        if self._closing.is_set():
            raise TransportFault("Session is closed")

        loop = self._bind_loop()
        await self._teardown_client()

        reconnecting = self._state.phase is SessionPhase.RECONNECTING
        if not reconnecting:
            self._set_state(SessionState.connecting())

        self._generation += 1
        generation = self._generation
        client = self._client_factory()
        self._install_callbacks(client, generation)
        connack: asyncio.Future[int] = loop.create_future()
        self._connack = connack
        self._client = client

        host, port = self._config.broker_host, self._config.broker_port
        self._logger.info("Connecting to MQTT broker %s:%s...", host, port)
        try:
            await loop.run_in_executor(None, self._open, client)
            reason = await asyncio.wait_for(connack, self._config.connect_timeout)
            if reason != 0:
                raise TransportFault(
                    f"Broker {host}:{port} rejected the connection (reason code {reason})",
                    reason_code=reason,
                )
            if self._lost_generation == generation:
                raise TransportFault(f"Broker {host}:{port} closed the connection right after CONNACK")
        except TransportFault:
            await self._abandon_connect(reconnecting)
            raise
        except TimeoutError:
            await self._abandon_connect(reconnecting)
            raise TransportFault(
                f"Broker {host}:{port} did not acknowledge within {self._config.connect_timeout}s"
            ) from None
        except (OSError, ValueError) as exc:
            await self._abandon_connect(reconnecting)
            raise TransportFault(f"Cannot reach broker {host}:{port}: {exc}") from exc

        for topic, qos in self._subscriptions.items():
            self._subscribe_now(topic, qos)
        if self._tls_context is not None:
            self._logger.info("Connected to %s:%s using TLS", host, port)
        else:
            self._logger.info("Connected to %s:%s", host, port)
        self._set_state(SessionState.connected())

    async def close(self, timeout: float = 5.0) -> None:
        """Stop reconnecting, wait up to *timeout* for in-flight publishes and disconnect."""
        self._closing.set()
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        inflight = [info for info in self._inflight if not info.is_published()]
        self._inflight.clear()
        if inflight and self._client is not None and self._loop is not None:
            await self._loop.run_in_executor(None, self._wait_published, inflight, timeout)

        await self._teardown_client()
        if self._pending:
            self._logger.info("Dropping %d unsent publish(es) on close", len(self._pending))
            self._pending.clear()
        self._set_state(SessionState.disconnected())

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    async def subscribe(self, topic: str) -> None:
        """Register *topic*; it is (re)subscribed on every successful connect."""
        self._subscriptions[topic] = _COMMAND_QOS
        if self._state.is_connected and self._client is not None:
            self._subscribe_now(topic, _COMMAND_QOS)

    async def publish(self, topic: str, payload: str, *, retain: bool = False) -> None:
        """Publish now, or hold the latest value for *topic* until reconnected.

        Raises
        ------
        NotConnectedFault
            When disconnected and ``queue_offline`` is disabled.
        TransportFault
            When the client refuses the publish.
        """
        if not self._state.is_connected or self._client is None:
            self._hold(PendingPublish(topic, payload, retain))
            return
        # A direct publish makes any held value for the topic stale.
        self._pending.pop(topic, None)
        self._send(PendingPublish(topic, payload, retain))

    async def flush_pending(self) -> int:
        """Send held publishes in order; returns how many were sent."""
        if not self._state.is_connected or not self._pending:
            return 0
        held = list(self._pending.values())
        self._pending.clear()
        for index, item in enumerate(held):
            try:
                self._send(item)
            except TransportFault:
                for rest in held[index:]:
                    self._pending.setdefault(rest.topic, rest)
                raise
        self._logger.debug("Flushed %d held publish(es)", len(held))
        return len(held)

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Connection changes and inbound messages, in arrival order."""
        while True:
            yield await self._events.get()

    # ------------------------------------------------------------------
    # Internals (loop thread)
    # ------------------------------------------------------------------

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        self._logger.debug("MQTT session %s -> %s", self._state, state)
        self._state = state
        self._events.put_nowait(ConnectionChanged(state))

    def _hold(self, item: PendingPublish) -> None:
        if self._closing.is_set():
            raise NotConnectedFault("Session is closed", topic=item.topic)
        if not self._config.queue_offline:
            raise NotConnectedFault(f"Not connected; cannot publish to {item.topic}", topic=item.topic)
        if self._pending.pop(item.topic, None) is not None:
            self._logger.debug("Held publish for %s superseded", item.topic)
        self._pending[item.topic] = item

    def _send(self, item: PendingPublish) -> None:
        client = self._client
        if client is None:
            self._hold(item)
            return
        info = client.publish(item.topic, item.payload, qos=_PUBLISH_QOS, retain=item.retain)
        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            # paho saw the socket drop before our disconnect callback ran.
            self._hold(item)
            return
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportFault(
                f"Publish to {item.topic} failed: {mqtt.error_string(info.rc)}",
                reason_code=info.rc,
                topic=item.topic,
            )
        self._inflight = [pending for pending in self._inflight if not pending.is_published()]
        self._inflight.append(info)
        self._logger.debug("Published topic=%s retain=%s payload=%s", item.topic, item.retain, item.payload)

    def _subscribe_now(self, topic: str, qos: int) -> None:
        client = self._client
        if client is None:
            return
        rc, _mid = client.subscribe(topic, qos=qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportFault(
                f"Subscribe to {topic} failed: {mqtt.error_string(rc)}",
                reason_code=rc,
                topic=topic,
            )
        self._logger.debug("MQTT subscribed topic=%s qos=%s", topic, qos)

    async def _abandon_connect(self, reconnecting: bool) -> None:
        await self._teardown_client()
        if not reconnecting:
            self._set_state(SessionState.disconnected())

    async def _teardown_client(self) -> None:
        client = self._client
        self._client = None
        self._connack = None
        # Callbacks still queued from the old client are ignored from here on.
        self._generation += 1
        if client is None or self._loop is None:
            return
        await self._loop.run_in_executor(None, self._shutdown_client, client)

    def _connection_lost(self) -> None:
        if self._closing.is_set():
            return
        self._set_state(SessionState.disconnected())
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = self._bind_loop().create_task(self._reconnect_loop(), name="mqtt_reconnect")

    async def _reconnect_loop(self) -> None:
        attempt = 0
        ceiling = self._config.max_reconnect_attempts
        while not self._closing.is_set():
            if ceiling is not None and attempt >= ceiling:
                fault = TransportFault(f"Giving up after {attempt} reconnect attempt(s)")
                self._logger.error("%s", fault)
                await self._teardown_client()
                self._set_state(SessionState.disconnected())
                self._events.put_nowait(SessionFailed(fault))
                return

            delay = self._backoff.delay(attempt)
            attempt += 1
            self._set_state(SessionState.reconnecting(attempt))
            self._logger.info("Reconnecting in %.1fs (attempt %d)", delay, attempt)
            try:
                await asyncio.wait_for(self._closing.wait(), delay)
                return
            except TimeoutError:
                pass

            try:
                await self.connect()
            except TransportFault as exc:
                self._logger.warning("Reconnect attempt %d failed: %s", attempt, exc)
                continue
            except Exception:
                self._logger.error("Reconnect attempt %d failed unexpectedly", attempt, exc_info=True)
                continue
            return

    # ------------------------------------------------------------------
    # paho thread -> loop
    # ------------------------------------------------------------------

    def _install_callbacks(self, client: Any, generation: int) -> None:
        loop = self._bind_loop()

        def on_connect(
            _c: Any,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            loop.call_soon_threadsafe(self._on_connack, generation, int(reason_code.value))

        def on_message(_c: Any, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            payload = msg.payload.decode("utf-8", errors="replace")
            event = InboundMessage(topic=msg.topic, payload=payload, retained=bool(msg.retain))
            loop.call_soon_threadsafe(self._on_message, generation, event)

        def on_disconnect(
            c: Any,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if generation == self._generation and not self._closing.is_set():
                # Keep paho's own retry loop out of the way; reconnects go through backoff.
                c.disconnect()
            loop.call_soon_threadsafe(self._on_disconnected, generation, int(reason_code.value))

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

    def _on_connack(self, generation: int, reason: int) -> None:
        connack = self._connack
        if generation != self._generation or connack is None or connack.done():
            return
        connack.set_result(reason)

    def _on_message(self, generation: int, event: InboundMessage) -> None:
        if generation != self._generation:
            return
        self._logger.debug("Received PUBLISH topic=%s retained=%s", event.topic, event.retained)
        self._events.put_nowait(event)

    def _on_disconnected(self, generation: int, reason: int) -> None:
        if generation != self._generation:
            return
        connack = self._connack
        if connack is not None and not connack.done():
            connack.set_exception(TransportFault("Connection closed before CONNACK", reason_code=reason))
            return
        if not self._state.is_connected:
            # CONNACK arrived but connect() has not resumed yet; it checks this marker.
            self._lost_generation = generation
            self._logger.debug("MQTT connection closed right after CONNACK (reason code %s)", reason)
            return
        self._logger.warning("MQTT connection lost (reason code %s)", reason)
        self._connection_lost()

    # ------------------------------------------------------------------
    # Blocking helpers (executor thread)
    # ------------------------------------------------------------------

    def _create_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._config.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if self._config.username is not None:
            client.username_pw_set(self._config.username, self._config.password)
        if self._tls_context is not None:
            client.tls_set_context(self._tls_context)
        return client

    def _open(self, client: Any) -> None:
        client.connect(
            self._config.broker_host,
            self._config.broker_port,
            keepalive=self._config.keepalive,
            clean_start=True,
        )
        client.loop_start()

    def _shutdown_client(self, client: Any) -> None:
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    @staticmethod
    def _wait_published(inflight: list[Any], timeout: float) -> None:
        deadline = time.monotonic() + timeout
        for info in inflight:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            # wait_for_publish raises for messages paho already failed to queue.
            with contextlib.suppress(RuntimeError, ValueError):
                info.wait_for_publish(timeout=remaining)
