from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from gpiobridge.exceptions import PayloadError
from gpiobridge.models import (
    DeviceState,
    OnOff,
    SensorReading,
    SessionPhase,
    SessionState,
    format_celsius,
    format_humidity,
    parse_command,
)


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ("ON", OnOff.ON),
        ("on", OnOff.ON),
        (" On\n", OnOff.ON),
        ("1", OnOff.ON),
        ("true", OnOff.ON),
        ("HIGH", OnOff.ON),
        ("OFF", OnOff.OFF),
        ("off", OnOff.OFF),
        ("0", OnOff.OFF),
        ("False", OnOff.OFF),
        (b"low", OnOff.OFF),
    ],
)
def test_parse_command_accepts_known_words(payload: str | bytes, expected: OnOff) -> None:
    assert parse_command(payload) is expected


@pytest.mark.parametrize("payload", ["", "toggle", "2", "ONN", b"\xff\xfe"])
def test_parse_command_rejects_garbage(payload: str | bytes) -> None:
    with pytest.raises(PayloadError):
        parse_command(payload)


def test_payload_error_is_a_value_error_and_keeps_payload() -> None:
    with pytest.raises(ValueError) as excinfo:
        parse_command("dim")
    assert isinstance(excinfo.value, PayloadError)
    assert excinfo.value.payload == "dim"


@pytest.mark.parametrize(
    ("celsius", "expected"),
    [(21.37, "21.4"), (21.0, "21.0"), (-10.14, "-10.1"), (-0.04, "0.0"), (35.15, "35.1")],
)
def test_format_celsius_one_decimal(celsius: float, expected: str) -> None:
    assert format_celsius(celsius) == expected


def test_onoff_helpers() -> None:
    assert OnOff.from_bool(True) is OnOff.ON
    assert OnOff.from_bool(False) is OnOff.OFF
    assert OnOff.ON.is_on
    assert not OnOff.OFF.is_on
    assert str(OnOff.ON) == "ON"


def test_device_state_is_frozen_and_normalized() -> None:
    state = DeviceState(device_id=" light ", level=OnOff.ON, last_changed=datetime(2026, 1, 1))
    assert state.device_id == "light"
    assert state.last_changed.tzinfo is UTC
    assert state.payload() == "ON"
    with pytest.raises(ValidationError):
        state.level = OnOff.OFF  # type: ignore[misc]


def test_device_state_requires_device_id() -> None:
    with pytest.raises(ValidationError):
        DeviceState(device_id="  ", level=OnOff.OFF)


def test_sensor_reading_validity_rules() -> None:
    reading = SensorReading(sensor_id="temperature", celsius=21.37)
    assert reading.valid
    assert reading.payload() == "21.4"

    with pytest.raises(ValidationError):
        SensorReading(sensor_id="temperature", celsius=None)
    with pytest.raises(ValidationError):
        SensorReading(sensor_id="temperature", celsius=20.0, valid=False)


def test_failed_reading_has_no_payload() -> None:
    reading = SensorReading.failed("temperature", "checksum mismatch")
    assert not reading.valid
    assert reading.celsius is None
    assert reading.error == "checksum mismatch"
    with pytest.raises(ValueError):
        reading.payload()


def test_session_state_attempt_only_while_reconnecting() -> None:
    assert SessionState.reconnecting(3).attempt == 3
    assert str(SessionState.reconnecting(3)) == "reconnecting(3)"
    assert str(SessionState.connected()) == "connected"
    assert SessionState.connected().is_connected
    assert not SessionState.connecting().is_connected
    with pytest.raises(ValidationError):
        SessionState(phase=SessionPhase.CONNECTED, attempt=1)
    with pytest.raises(ValidationError):
        SessionState(phase=SessionPhase.RECONNECTING, attempt=-1)


def test_reading_humidity_payload() -> None:
    reading = SensorReading(sensor_id="temperature", celsius=20.0, humidity=48.26)
    assert reading.humidity_payload() == "48.3"
    assert SensorReading(sensor_id="temperature", celsius=20.0).humidity_payload() is None
    assert format_humidity(-0.04) == "0.0"

    with pytest.raises(ValidationError):
        SensorReading(sensor_id="temperature", humidity=40.0, valid=False)
