"""
Test data factories for the relay.
"""
from .record_factory import RecordFactory, build_records

__all__ = [
    "RecordFactory",
    "build_records",
]
