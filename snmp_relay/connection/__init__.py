"""
Transport connection module.

Tracks the MQTT connection state and publishes messages to the broker.
"""
from .transport_state import TransportEvent, TransportState, TransportStateTracker
from .mqtt_transport import BrokerAddress, MqttTransport, parse_broker_url

__all__ = [
    "TransportEvent",
    "TransportState",
    "TransportStateTracker",
    "BrokerAddress",
    "MqttTransport",
    "parse_broker_url",
]
