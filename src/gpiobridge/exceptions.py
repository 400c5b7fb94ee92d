"""Custom exception hierarchy for gpiobridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all gpiobridge errors."""


class ConfigFault(BridgeError):
    """Invalid or missing configuration.

    Only raised while the bridge is starting up; a misconfigured bridge
    has no safe degraded mode, so the host is expected to exit.
    """


class PayloadError(BridgeError, ValueError):
    """Inbound command payload could not be parsed."""

    def __init__(self, message: str, *, payload: str = "") -> None:
        self.payload = payload
        super().__init__(message)


class HardwareFault(BridgeError):
    """GPIO or sensor access failed (pin unavailable, permission, timeout)."""

    def __init__(self, message: str, *, device: str = "") -> None:
        self.device = device
        super().__init__(message)


class SensorTimeoutFault(HardwareFault):
    """Sensor line did not change level within the pulse budget."""


class SensorChecksumFault(HardwareFault):
    """Sensor frame decoded but its checksum byte did not match."""


class TransportFault(BridgeError):
    """Broker-level failure (connect refused, auth rejected, write after close)."""

    def __init__(
        self,
        message: str,
        *,
        reason_code: int | None = None,
        topic: str = "",
    ) -> None:
        self.reason_code = reason_code
        self.topic = topic
        super().__init__(message)


class NotConnectedFault(TransportFault):
    """Publish attempted while the session is not connected and queueing is off."""
