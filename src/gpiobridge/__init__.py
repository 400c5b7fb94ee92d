"""gpiobridge - Keep a GPIO light and a DHT22 sensor in sync with an MQTT broker."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("gpiobridge")
except PackageNotFoundError:
    __version__ = "0+local"
from gpiobridge.backoff import BackoffPolicy
from gpiobridge.config import BridgeConfig, DeviceBinding, TopicBindings
from gpiobridge.controller import DeviceController
from gpiobridge.engine import EngineState, SyncEngine
from gpiobridge.exceptions import (
    BridgeError,
    ConfigFault,
    HardwareFault,
    NotConnectedFault,
    PayloadError,
    SensorChecksumFault,
    SensorTimeoutFault,
    TransportFault,
)
from gpiobridge.hardware import HardwarePort, LightPort, RpiGpioHardware, SimulatedHardware, TemperaturePort
from gpiobridge.models import (
    ConnectionChanged,
    DeviceState,
    FaultKind,
    FaultReport,
    InboundMessage,
    OnOff,
    SensorReading,
    SessionFailed,
    SessionPhase,
    SessionState,
    format_celsius,
    format_humidity,
    parse_command,
)
from gpiobridge.poller import LatestReadingSlot, SensorPoller
from gpiobridge.session import MessagingSession, MqttSession

__all__ = [
    "__version__",
    "BackoffPolicy",
    "BridgeConfig",
    "BridgeError",
    "ConfigFault",
    "ConnectionChanged",
    "DeviceBinding",
    "DeviceController",
    "DeviceState",
    "EngineState",
    "FaultKind",
    "FaultReport",
    "HardwareFault",
    "HardwarePort",
    "InboundMessage",
    "LatestReadingSlot",
    "LightPort",
    "MessagingSession",
    "MqttSession",
    "NotConnectedFault",
    "OnOff",
    "PayloadError",
    "RpiGpioHardware",
    "SensorChecksumFault",
    "SensorPoller",
    "SensorReading",
    "SensorTimeoutFault",
    "SessionFailed",
    "SessionPhase",
    "SessionState",
    "SimulatedHardware",
    "SyncEngine",
    "TemperaturePort",
    "TopicBindings",
    "format_celsius",
    "format_humidity",
    "parse_command",
]
