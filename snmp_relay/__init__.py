"""
SNMP Relay - polls an SNMP device and relays samples to MQTT.

Buffers samples in memory and publishes them in paced chunks while the
broker connection is up.
"""
from .config import RelayConfig, RelaySettings, get_relay_settings, load_config
from .main import RelayServer

__all__ = [
    "RelayConfig",
    "RelaySettings",
    "get_relay_settings",
    "load_config",
    "RelayServer",
]
