"""
Delivery protocol: chunk, pace and retry.

A flush hands the protocol an ordered list of records. Each step is
decided by ``plan_step`` from the pending list and the transport state:

- disconnected: the pending records go back to the front of the buffer
- nothing pending: the flush is complete
- otherwise: publish the next chunk

A chunk whose publish fails is retried immediately, unchanged. After a
successful publish the protocol waits ``publish_delay`` before moving on.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Protocol, Sequence, Tuple, Union

from ..exceptions import PublishError
from .sample_buffer import Envelope, Record, SampleBuffer

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    async def publish(self, topic: str, payload: str, qos: int) -> None:
        ...


class ConnectionStateSource(Protocol):
    @property
    def is_connected(self) -> bool:
        ...


@dataclass(frozen=True)
class Requeue:
    """Return the records to the buffer front and end the flush."""
    records: Tuple[Record, ...]


@dataclass(frozen=True)
class Complete:
    """Nothing left to send."""


@dataclass(frozen=True)
class Send:
    """Publish ``chunk``; continue with ``remainder`` on success."""
    chunk: Tuple[Record, ...]
    remainder: Tuple[Record, ...]


Step = Union[Requeue, Complete, Send]


def plan_step(pending: Sequence[Record], connected: bool, max_chunk: int) -> Step:
    """
    Decide the next delivery step.

    Args:
        pending: Records not yet delivered, oldest first.
        connected: Current transport state.
        max_chunk: Maximum records per envelope.

    Returns:
        The next step to carry out.
    """
    if not connected:
        return Requeue(tuple(pending))

    chunk = tuple(pending[:max_chunk])
    if not chunk:
        return Complete()

    return Send(chunk=chunk, remainder=tuple(pending[max_chunk:]))


@dataclass
class DeliveryReport:
    """Outcome of one flush."""
    sent: int = 0
    messages: int = 0
    failures: int = 0
    requeued: int = 0


class DeliveryProtocol:
    """
    Drives ``plan_step`` against a publisher.

    The transport state is read at the start of every step, so a
    disconnect ends the flush at the next step boundary.
    """

    def __init__(
        self,
        buffer: SampleBuffer,
        publisher: Publisher,
        state: ConnectionStateSource,
        topic: str,
        qos: int = 1,
        max_chunk: int = 1,
        publish_delay: float = 0.2,
    ):
        """
        Initialize the delivery protocol.

        Args:
            buffer: Buffer that receives records back on disconnect.
            publisher: Transport used to publish envelopes.
            state: Source of the current transport state.
            topic: Destination topic.
            qos: Delivery guarantee for each publish (1 or 2).
            max_chunk: Maximum records per envelope.
            publish_delay: Pause after each successful publish (seconds).
        """
        self.buffer = buffer
        self.publisher = publisher
        self.state = state
        self.topic = topic
        self.qos = qos
        self.max_chunk = max_chunk
        self.publish_delay = publish_delay

        # Statistics
        self._total_sent = 0
        self._total_messages = 0
        self._total_failures = 0
        self._total_requeued = 0

    async def deliver(self, records: Sequence[Record]) -> DeliveryReport:
        """
        Deliver records in order until done or disconnected.

        Args:
            records: Records to deliver, oldest first.

        Returns:
            Report of what happened during this flush.
        """
        report = DeliveryReport()
        pending: Tuple[Record, ...] = tuple(records)

        try:
            while True:
                step = plan_step(pending, self.state.is_connected, self.max_chunk)

                if isinstance(step, Requeue):
                    self._requeue(step.records, report)
                    pending = ()
                    break

                if isinstance(step, Complete):
                    break

                envelope = Envelope.build(step.chunk)
                try:
                    await self.publisher.publish(
                        self.topic, envelope.to_json(), self.qos
                    )
                except PublishError as e:
                    report.failures += 1
                    self._total_failures += 1
                    logger.info("MQTT disconnected while sending data")
                    logger.debug(f"Publish failed: {e}")
                    # Let transport callbacks run before the retry
                    await asyncio.sleep(0)
                    continue

                pending = step.remainder
                report.sent += len(step.chunk)
                report.messages += 1
                self._total_sent += len(step.chunk)
                self._total_messages += 1

                await asyncio.sleep(self.publish_delay)

        except BaseException:
            # Cancelled or unexpected failure: keep what was not sent
            if pending:
                self._requeue(pending, report)
            raise

        return report

    def _requeue(self, records: Sequence[Record], report: DeliveryReport) -> None:
        if not records:
            return
        self.buffer.push_front(records)
        report.requeued += len(records)
        self._total_requeued += len(records)
        logger.debug(f"Returned {len(records)} records to the buffer")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_sent": self._total_sent,
            "total_messages": self._total_messages,
            "total_failures": self._total_failures,
            "total_requeued": self._total_requeued,
            "max_chunk": self.max_chunk,
            "publish_delay": self.publish_delay,
        }
