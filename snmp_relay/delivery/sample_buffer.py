"""
Sample buffer and delivery envelopes.

Records produced by the poller wait here until the dispatcher drains
them. Records are kept in poll order; records that could not be
delivered are put back at the front so the order survives retries.
"""
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..config import OverflowPolicy

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool]
Record = Mapping[str, Scalar]


def make_record(values: Mapping[str, Scalar]) -> Record:
    """Freeze a field mapping into a read-only record."""
    return MappingProxyType(dict(values))


def now_millis() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Envelope:
    """One publish unit: assembly timestamp plus a chunk of records."""
    timestamp: int
    data: Tuple[Record, ...]

    @classmethod
    def build(cls, records: Iterable[Record]) -> "Envelope":
        return cls(timestamp=now_millis(), data=tuple(records))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "data": [dict(record) for record in self.data],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class SampleBuffer:
    """
    FIFO of records awaiting delivery.

    Unbounded unless a capacity is given. With a capacity, ``push``
    applies the overflow policy; ``push_front`` never evicts, since the
    records it returns are older than anything buffered.
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ):
        """
        Initialize the buffer.

        Args:
            capacity: Maximum number of records, or None for unbounded.
            overflow_policy: Policy applied by push() when full.
        """
        self.capacity = capacity
        self.overflow_policy = overflow_policy
        self._records: Deque[Record] = deque()

        # Statistics
        self._total_pushed = 0
        self._total_dropped = 0
        self._total_rejected = 0
        self._total_requeued = 0

    def __len__(self) -> int:
        return len(self._records)

    def push(self, record: Record) -> bool:
        """
        Append a record to the tail.

        Returns:
            False if the record was rejected by a full buffer.
        """
        if self.capacity is not None and len(self._records) >= self.capacity:
            if self.overflow_policy == OverflowPolicy.REJECT:
                self._total_rejected += 1
                logger.warning(
                    f"Sample buffer full ({self.capacity}), rejecting new record"
                )
                return False

            while len(self._records) >= self.capacity:
                self._records.popleft()
                self._total_dropped += 1
            logger.warning(
                f"Sample buffer full ({self.capacity}), dropped oldest record"
            )

        self._records.append(record)
        self._total_pushed += 1
        return True

    def push_front(self, records: Iterable[Record]) -> None:
        """Put records back at the head, keeping their order."""
        records = list(records)
        self._records.extendleft(reversed(records))
        self._total_requeued += len(records)

    def drain(self) -> List[Record]:
        """Take every buffered record, leaving the buffer empty."""
        records, self._records = self._records, deque()
        return list(records)

    def peek(self) -> List[Record]:
        """Copy of the buffered records, oldest first."""
        return list(self._records)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._records),
            "capacity": self.capacity,
            "overflow_policy": self.overflow_policy.value,
            "total_pushed": self._total_pushed,
            "total_dropped": self._total_dropped,
            "total_rejected": self._total_rejected,
            "total_requeued": self._total_requeued,
        }
