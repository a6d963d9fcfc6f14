"""
Delivery module.

Buffers samples and delivers them to the broker in paced chunks.
"""
from .sample_buffer import Envelope, Record, SampleBuffer, make_record
from .protocol import Complete, DeliveryProtocol, DeliveryReport, Requeue, Send, plan_step
from .dispatcher import Dispatcher

__all__ = [
    "Envelope",
    "Record",
    "SampleBuffer",
    "make_record",
    "Complete",
    "DeliveryProtocol",
    "DeliveryReport",
    "Requeue",
    "Send",
    "plan_step",
    "Dispatcher",
]
