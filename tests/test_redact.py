from __future__ import annotations

import json

from gpiobridge._redact import redact_for_log
from gpiobridge.config import BridgeConfig
from gpiobridge.models import OnOff


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "broker_host": "10.0.0.2",
        "username": "bridge",
        "password": "pw",
        "nested": {"mtls_pkey_path": "/etc/keys/client.key"},
    }

    redacted = redact_for_log(payload)
    assert redacted["broker_host"] == "10.0.0.2"
    assert redacted["username"] == "<redacted>"
    assert redacted["password"] == "<redacted>"
    assert redacted["nested"]["mtls_pkey_path"] == "<redacted>"


def test_redact_for_log_keeps_unset_secrets_as_none() -> None:
    assert redact_for_log({"password": None}) == {"password": None}


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_walks_config_dataclass() -> None:
    config = BridgeConfig(broker_host="broker", username="u", password="p", default_level=OnOff.ON)

    redacted = redact_for_log(config)
    assert redacted["broker_host"] == "broker"
    assert redacted["password"] == "<redacted>"
    assert redacted["default_level"] == "ON"


def test_redacted_config_is_plain_data() -> None:
    config = BridgeConfig(broker_host="broker", connect_timeout=2.5, ca_cert_path="/etc/ca.pem")

    redacted = redact_for_log(config)
    # Every field maps to a JSON scalar; nothing falls through to repr().
    assert json.loads(json.dumps(redacted)) == redacted
    assert redacted["connect_timeout"] == 2.5
    assert not any(isinstance(v, str) and v.startswith(("<", "BridgeConfig(")) for v in redacted.values())
