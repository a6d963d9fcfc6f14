"""
Polling module.

Handles scheduled SNMP polling of the device.
"""
from .snmp_collector import SnmpCollector, convert_value
from .scheduler import PollPhase, PollScheduler

__all__ = [
    "SnmpCollector",
    "convert_value",
    "PollPhase",
    "PollScheduler",
]
