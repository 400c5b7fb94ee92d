"""Domain models shared by the controller, poller, session and engine.

State snapshots (:class:`DeviceState`, :class:`SensorReading`,
:class:`SessionState`) are frozen pydantic models: every change produces
a new instance, so a snapshot handed to a listener can never be mutated
behind its back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gpiobridge.exceptions import PayloadError, TransportFault

_ON_WORDS = frozenset({"on", "1", "true", "high"})
_OFF_WORDS = frozenset({"off", "0", "false", "low"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OnOff(StrEnum):
    ON = "ON"
    OFF = "OFF"

    @classmethod
    def from_bool(cls, level: bool) -> OnOff:
        return cls.ON if level else cls.OFF

    @property
    def is_on(self) -> bool:
        return self is OnOff.ON


def parse_command(payload: str | bytes) -> OnOff:
    """Parse an inbound command payload into an :class:`OnOff`.

    Accepts ``ON``/``OFF`` in any case, plus ``1``/``0``, ``true``/``false``
    and ``high``/``low``. Anything else raises :class:`PayloadError`, so a
    malformed command never reaches a controller.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PayloadError("Command payload is not UTF-8", payload=repr(payload)) from exc

    word = payload.strip().lower()
    if word in _ON_WORDS:
        return OnOff.ON
    if word in _OFF_WORDS:
        return OnOff.OFF
    raise PayloadError(f"Unrecognized command payload: {payload[:64]!r}", payload=payload)


def _one_decimal(value: float) -> str:
    text = f"{value:.1f}"
    # Avoid publishing "-0.0" for values that round to zero.
    return "0.0" if text == "-0.0" else text


def format_celsius(celsius: float) -> str:
    """Render a temperature as the one-decimal reading payload (``21.37`` -> ``"21.4"``)."""
    return _one_decimal(celsius)


def format_humidity(percent: float) -> str:
    """Render relative humidity in percent with one decimal (``48.25`` -> ``"48.2"``)."""
    return _one_decimal(percent)


class DeviceState(BaseModel):
    """Canonical state of one controllable device."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    device_id: str
    level: OnOff
    last_changed: datetime = Field(default_factory=_utcnow)

    @field_validator("device_id")
    @classmethod
    def _normalize_device_id(cls, value: str) -> str:
        device_id = value.strip()
        if not device_id:
            raise ValueError("device_id must be non-empty")
        return device_id

    @field_validator("last_changed")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def payload(self) -> str:
        """Wire payload for the state topic."""
        return self.level.value


class SensorReading(BaseModel):
    """One poller tick.

    ``valid`` distinguishes a failed read from a real value; ``celsius`` is
    ``None`` whenever ``valid`` is false. ``humidity`` is optional even on a
    valid reading, since not every sensor reports it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sensor_id: str
    celsius: float | None = None
    humidity: float | None = None
    sampled_at: datetime = Field(default_factory=_utcnow)
    valid: bool = True
    error: str | None = None

    @model_validator(mode="after")
    def _check_validity(self) -> SensorReading:
        if self.valid and self.celsius is None:
            raise ValueError("a valid reading needs a celsius value")
        if not self.valid and (self.celsius is not None or self.humidity is not None):
            raise ValueError("an invalid reading must not carry a value")
        return self

    @classmethod
    def failed(cls, sensor_id: str, error: str, *, sampled_at: datetime | None = None) -> SensorReading:
        return cls(
            sensor_id=sensor_id,
            celsius=None,
            valid=False,
            error=error,
            sampled_at=sampled_at or _utcnow(),
        )

    def payload(self) -> str:
        if self.celsius is None:
            raise ValueError("invalid readings have no payload")
        return format_celsius(self.celsius)

    def humidity_payload(self) -> str | None:
        """One-decimal humidity payload, or ``None`` when there is nothing to publish."""
        if not self.valid or self.humidity is None:
            return None
        return format_humidity(self.humidity)


class SessionPhase(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SessionState(BaseModel):
    """Connection state of the messaging session.

    ``attempt`` counts failed reconnect attempts and is only non-zero in
    the ``RECONNECTING`` phase.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    phase: SessionPhase
    attempt: int = 0

    @model_validator(mode="after")
    def _check_attempt(self) -> SessionState:
        if self.attempt < 0:
            raise ValueError("attempt must be >= 0")
        if self.attempt and self.phase is not SessionPhase.RECONNECTING:
            raise ValueError("attempt is only meaningful while reconnecting")
        return self

    @classmethod
    def disconnected(cls) -> SessionState:
        return cls(phase=SessionPhase.DISCONNECTED)

    @classmethod
    def connecting(cls) -> SessionState:
        return cls(phase=SessionPhase.CONNECTING)

    @classmethod
    def connected(cls) -> SessionState:
        return cls(phase=SessionPhase.CONNECTED)

    @classmethod
    def reconnecting(cls, attempt: int) -> SessionState:
        return cls(phase=SessionPhase.RECONNECTING, attempt=attempt)

    @property
    def is_connected(self) -> bool:
        return self.phase is SessionPhase.CONNECTED

    def __str__(self) -> str:
        if self.phase is SessionPhase.RECONNECTING:
            return f"{self.phase.value}({self.attempt})"
        return self.phase.value


# ---------------------------------------------------------------------------
# Session events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionChanged:
    """The session moved to a new connection state."""

    state: SessionState


@dataclass(frozen=True)
class InboundMessage:
    """A message received on a subscribed topic."""

    topic: str
    payload: str
    retained: bool = False


@dataclass(frozen=True)
class SessionFailed:
    """The session gave up reconnecting (retry ceiling reached)."""

    error: TransportFault


SessionEvent = ConnectionChanged | InboundMessage | SessionFailed


# ---------------------------------------------------------------------------
# Fault reporting
# ---------------------------------------------------------------------------


class FaultKind(StrEnum):
    HARDWARE = "hardware"
    SENSOR = "sensor"
    PAYLOAD = "payload"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class FaultReport:
    """A component-local fault surfaced by the engine instead of raised."""

    kind: FaultKind
    source: str
    error: str
    topic: str | None = None
    payload: str | None = None
