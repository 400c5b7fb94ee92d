"""Bridge configuration for gpiobridge."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from gpiobridge.exceptions import ConfigFault
from gpiobridge.models import OnOff

_MQTT_WILDCARDS = ("+", "#")


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _not_set(name: str) -> ConfigFault:
    return ConfigFault(f"{name} not set")


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name)
    if value is None or not value.strip():
        raise _not_set(name)
    return value.strip()


def _parse_int(name: str, value: str, kind: str = "integer") -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigFault(f"{name} is not a valid {kind}") from None


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        raise ConfigFault(f"{name} is not a valid number") from None


def _check_topic(label: str, topic: str) -> None:
    if not topic or not topic.strip():
        raise ConfigFault(f"{label} topic is empty")
    if topic != topic.strip():
        raise ConfigFault(f"{label} topic {topic!r} has surrounding whitespace")
    if any(wildcard in topic for wildcard in _MQTT_WILDCARDS):
        raise ConfigFault(f"{label} topic {topic!r} must not contain MQTT wildcards")


@dataclasses.dataclass(frozen=True)
class DeviceBinding:
    """Topics and startup default for one controllable device."""

    device_id: str
    command_topic: str
    state_topic: str
    default_level: OnOff = OnOff.OFF


@dataclasses.dataclass(frozen=True)
class TopicBindings:
    """Static mapping from logical channel to topic, fixed at startup.

    Every command topic maps to exactly one device; :meth:`validate`
    rejects duplicates, wildcards and channel collisions.
    """

    devices: tuple[DeviceBinding, ...]
    reading_topic: str
    humidity_topic: str | None = None

    @classmethod
    def for_base(
        cls,
        base: str,
        *,
        device_id: str = "light",
        default_level: OnOff = OnOff.OFF,
    ) -> TopicBindings:
        """Build the standard light, temperature and humidity topics under *base*."""
        prefix = base.strip().rstrip("/")
        if not prefix:
            raise ConfigFault("MQTT base topic is empty")
        return cls(
            devices=(
                DeviceBinding(
                    device_id=device_id,
                    command_topic=f"{prefix}/{device_id}/set",
                    state_topic=f"{prefix}/{device_id}/state",
                    default_level=default_level,
                ),
            ),
            reading_topic=f"{prefix}/temperature",
            humidity_topic=f"{prefix}/humidity",
        )

    def validate(self) -> None:
        if not self.devices:
            raise ConfigFault("No devices are bound")

        _check_topic("reading", self.reading_topic)
        seen_ids: set[str] = set()
        command_topics: set[str] = set()
        output_topics: set[str] = {self.reading_topic}
        if self.humidity_topic is not None:
            _check_topic("humidity", self.humidity_topic)
            if self.humidity_topic == self.reading_topic:
                raise ConfigFault(
                    f"Humidity topic {self.humidity_topic!r} is already used by the temperature channel"
                )
            output_topics.add(self.humidity_topic)

        for device in self.devices:
            if not device.device_id.strip():
                raise ConfigFault("Device binding has an empty device_id")
            if device.device_id in seen_ids:
                raise ConfigFault(f"Device {device.device_id!r} is bound twice")
            seen_ids.add(device.device_id)

            _check_topic(f"{device.device_id} command", device.command_topic)
            _check_topic(f"{device.device_id} state", device.state_topic)

            if device.command_topic in command_topics:
                raise ConfigFault(f"Command topic {device.command_topic!r} is bound to more than one device")
            command_topics.add(device.command_topic)

            if device.state_topic in output_topics:
                raise ConfigFault(f"State topic {device.state_topic!r} is already used by another channel")
            output_topics.add(device.state_topic)

        overlap = command_topics & output_topics
        if overlap:
            raise ConfigFault(f"Topics used both as command and output: {sorted(overlap)}")

    def device_for_command(self, topic: str) -> DeviceBinding | None:
        for device in self.devices:
            if device.command_topic == topic:
                return device
        return None


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Bridge configuration.

    Parameters
    ----------
    broker_host : str
        MQTT broker hostname or IP address.
    broker_port : int
        MQTT broker port.
    username : str or None
        Broker username.
    password : str or None
        Broker password.
    client_id : str
        MQTT client identifier.
    keepalive : int
        MQTT keep-alive in seconds; a missed keep-alive counts as a
        disconnect.
    connect_timeout : float
        Seconds to wait for the broker's CONNACK.
    base_topic : str
        Prefix for the default topic layout.
    light_pin : int or None
        BCM pin driving the light. Required unless running simulated.
    dht_pin : int or None
        BCM pin the DHT22 data line is wired to.
    sensor_id : str
        Identifier attached to temperature readings.
    sensor_interval : float
        Seconds between temperature samples.
    ca_cert_path, mtls_cert_path, mtls_pkey_path : str or None
        TLS material. TLS is enabled when a CA path is set; mutual TLS
        when both the certificate and key are set too.
    reconnect_base_delay, reconnect_max_delay : float
        Exponential backoff base and cap in seconds.
    reconnect_jitter : float
        Jitter as a fraction of the delay, between 0 and 1.
    max_reconnect_attempts : int or None
        Retry ceiling. ``None`` retries forever.
    queue_offline : bool
        Queue publishes while disconnected (latest value per topic)
        instead of failing fast.
    default_level : OnOff
        Level the light is driven to at startup.
    verify_writes : bool
        Read the pin back after every write.
    restore_retained_state : bool
        Apply the broker's retained state-topic value once at startup.
    republish_reading_on_reconnect : bool
        Also re-publish the last valid reading after a reconnect.
    retain_readings : bool
        Publish temperature and humidity readings as retained messages.
    publish_humidity : bool
        Publish the DHT22 relative humidity next to the temperature.
    shutdown_grace : float
        Seconds allowed for in-flight publishes when stopping.
    light_command_topic, light_state_topic, reading_topic, humidity_topic : str or None
        Explicit topic overrides for the default layout.
    """

    broker_host: str
    broker_port: int = 1883
    username: str | None = None
    password: str | None = None
    client_id: str = "gpiobridge-py"
    keepalive: int = 60
    connect_timeout: float = 10.0
    base_topic: str = "home"
    light_pin: int | None = None
    dht_pin: int | None = None
    sensor_id: str = "temperature"
    sensor_interval: float = 60.0
    ca_cert_path: str | None = None
    mtls_cert_path: str | None = None
    mtls_pkey_path: str | None = None
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_jitter: float = 0.1
    max_reconnect_attempts: int | None = None
    queue_offline: bool = True
    default_level: OnOff = OnOff.OFF
    verify_writes: bool = True
    restore_retained_state: bool = False
    republish_reading_on_reconnect: bool = False
    retain_readings: bool = False
    publish_humidity: bool = True
    shutdown_grace: float = 5.0
    light_command_topic: str | None = None
    light_state_topic: str | None = None
    reading_topic: str | None = None
    humidity_topic: str | None = None

    @property
    def tls_enabled(self) -> bool:
        return self.ca_cert_path is not None

    def bindings(self) -> TopicBindings:
        """Topic bindings derived from ``base_topic`` and any explicit overrides."""
        defaults = TopicBindings.for_base(self.base_topic, default_level=self.default_level)
        light = defaults.devices[0]
        return TopicBindings(
            devices=(
                dataclasses.replace(
                    light,
                    command_topic=self.light_command_topic or light.command_topic,
                    state_topic=self.light_state_topic or light.state_topic,
                ),
            ),
            reading_topic=self.reading_topic or defaults.reading_topic,
            humidity_topic=(self.humidity_topic or defaults.humidity_topic) if self.publish_humidity else None,
        )

    def validate(self) -> None:
        """Raise :class:`ConfigFault` for values the bridge cannot run with."""
        if not self.broker_host.strip():
            raise ConfigFault("MQTT broker host is empty")
        if not 0 < self.broker_port < 65536:
            raise ConfigFault(f"MQTT port {self.broker_port} is out of range")
        if (self.username is None) != (self.password is None):
            raise ConfigFault("MQTT username and password must be set together")
        if not self.client_id.strip():
            raise ConfigFault("MQTT client id is empty")
        if self.keepalive <= 0:
            raise ConfigFault("keepalive must be positive")
        if self.connect_timeout <= 0:
            raise ConfigFault("connect_timeout must be positive")
        if self.sensor_interval <= 0:
            raise ConfigFault("sensor_interval must be positive")
        for name in ("light_pin", "dht_pin"):
            pin = getattr(self, name)
            if pin is not None and pin < 0:
                raise ConfigFault(f"{name} must be a non-negative BCM pin number")
        if self.light_pin is not None and self.light_pin == self.dht_pin:
            raise ConfigFault("light_pin and dht_pin must differ")
        if self.reconnect_base_delay <= 0:
            raise ConfigFault("reconnect_base_delay must be positive")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ConfigFault("reconnect_max_delay must be >= reconnect_base_delay")
        if not 0.0 <= self.reconnect_jitter <= 1.0:
            raise ConfigFault("reconnect_jitter must be between 0 and 1")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 1:
            raise ConfigFault("max_reconnect_attempts must be >= 1 when set")
        if self.shutdown_grace < 0:
            raise ConfigFault("shutdown_grace must be >= 0")
        if (self.mtls_cert_path is None) != (self.mtls_pkey_path is None):
            raise ConfigFault("MTLS_CERT_PATH and MTLS_PKEY_PATH must be set together")
        if self.mtls_cert_path is not None and self.ca_cert_path is None:
            raise ConfigFault("Mutual TLS requires CERTIFICATE_AUTHORITY_PATH")
        self.bindings().validate()

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **overrides: Any) -> BridgeConfig:
        """Create configuration from environment variables.

        Reads the deployment's ``MQTT_*``, ``LIGHT_*``, ``TEMPERATURE_*``
        and certificate variables, plus optional ``BRIDGE_*`` tuning
        variables. Explicit keyword arguments override environment values.

        Raises
        ------
        ConfigFault
            When a required variable is missing or a value does not parse.
        """
        env = os.environ if env is None else env

        config_kwargs: dict[str, Any] = {}
        if "broker_host" not in overrides:
            config_kwargs["broker_host"] = _require(env, "MQTT_IP")
        if "broker_port" not in overrides:
            config_kwargs["broker_port"] = _parse_int("MQTT_PORT", _require(env, "MQTT_PORT"), "u16")
        if "username" not in overrides:
            config_kwargs["username"] = _require(env, "MQTT_USERNAME")
        if "password" not in overrides:
            config_kwargs["password"] = _require(env, "MQTT_PASSWORD")
        if "client_id" not in overrides:
            config_kwargs["client_id"] = f"{_require(env, 'LIGHT_MQTT_CLIENT_ID')}-py"

        _ENV_STR_MAP = {
            "MQTT_BASE_TOPIC": "base_topic",
            "CERTIFICATE_AUTHORITY_PATH": "ca_cert_path",
            "MTLS_CERT_PATH": "mtls_cert_path",
            "MTLS_PKEY_PATH": "mtls_pkey_path",
            "LIGHT_COMMAND_TOPIC": "light_command_topic",
            "LIGHT_STATE_TOPIC": "light_state_topic",
            "TEMPERATURE_MQTT_TOPIC": "reading_topic",
            "HUMIDITY_MQTT_TOPIC": "humidity_topic",
            "TEMPERATURE_SENSOR_ID": "sensor_id",
        }
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and val.strip() and field_name not in overrides:
                config_kwargs[field_name] = val.strip()

        _ENV_INT_MAP = {
            "LIGHT_PIN": ("light_pin", "u8"),
            "TEMPERATURE_DHT_PIN": ("dht_pin", "u8"),
            "MQTT_KEEPALIVE": ("keepalive", "integer"),
            "BRIDGE_MAX_RECONNECT_ATTEMPTS": ("max_reconnect_attempts", "integer"),
        }
        for env_key, (field_name, kind) in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _parse_int(env_key, val, kind)

        _ENV_FLOAT_MAP = {
            "TEMPERATURE_MQTT_DELAY": "sensor_interval",
            "MQTT_CONNECT_TIMEOUT": "connect_timeout",
            "BRIDGE_RECONNECT_BASE_DELAY": "reconnect_base_delay",
            "BRIDGE_RECONNECT_MAX_DELAY": "reconnect_max_delay",
            "BRIDGE_RECONNECT_JITTER": "reconnect_jitter",
            "BRIDGE_SHUTDOWN_GRACE": "shutdown_grace",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _parse_float(env_key, val)

        _ENV_BOOL_MAP = {
            "BRIDGE_QUEUE_OFFLINE": ("queue_offline", True),
            "BRIDGE_VERIFY_WRITES": ("verify_writes", True),
            "BRIDGE_RESTORE_RETAINED_STATE": ("restore_retained_state", False),
            "BRIDGE_REPUBLISH_READING_ON_RECONNECT": ("republish_reading_on_reconnect", False),
            "BRIDGE_RETAIN_READINGS": ("retain_readings", False),
            "BRIDGE_PUBLISH_HUMIDITY": ("publish_humidity", True),
        }
        for env_key, (field_name, default) in _ENV_BOOL_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_bool(env.get(env_key), default)

        level_env = env.get("LIGHT_DEFAULT_LEVEL")
        if level_env is not None and "default_level" not in overrides:
            try:
                config_kwargs["default_level"] = OnOff(level_env.strip().upper())
            except ValueError:
                raise ConfigFault("LIGHT_DEFAULT_LEVEL must be ON or OFF") from None

        config_kwargs.update(overrides)

        config = cls(**config_kwargs)
        config.validate()
        return config
