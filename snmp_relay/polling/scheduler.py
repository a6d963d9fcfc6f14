"""
Poll scheduler.

Polls the device every ``interval`` seconds. After a successful poll
the record is buffered and polling pauses for the quiet period before
the regular cadence resumes. Failed polls change nothing; the next
regular tick simply tries again.
"""
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..delivery.sample_buffer import SampleBuffer
from .snmp_collector import SnmpCollector

logger = logging.getLogger(__name__)


class PollPhase(str, Enum):
    """What the poll loop is currently doing."""
    STOPPED = "stopped"
    POLLING = "polling"
    QUIET = "quiet"


class PollScheduler:
    """
    Drives the collector on a self-adjusting timer.

    Polls never overlap: each tick waits for the previous poll to finish.
    """

    def __init__(
        self,
        collector: SnmpCollector,
        buffer: SampleBuffer,
        interval: float,
        quiet_period: float,
        error_backoff: float = 5.0,
    ):
        """
        Initialize the poll scheduler.

        Args:
            collector: Source of samples.
            buffer: Buffer that receives each successful sample.
            interval: Seconds between regular polls.
            quiet_period: Seconds to pause polling after a successful poll.
            error_backoff: Pause after an unexpected error in the loop.
        """
        self.collector = collector
        self.buffer = buffer
        self.interval = interval
        self.quiet_period = quiet_period
        self.error_backoff = error_backoff

        self._task: Optional[asyncio.Task] = None
        self._phase = PollPhase.STOPPED
        self._shutdown_event = asyncio.Event()

        # Callbacks
        self._on_sample: Optional[Callable] = None

        # Statistics
        self._total_polls = 0
        self._total_samples = 0
        self._last_sample_at: Optional[datetime] = None

    @property
    def phase(self) -> PollPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_on_sample(self, callback: Callable) -> None:
        """Set callback invoked with each buffered record."""
        self._on_sample = callback

    async def start(self) -> None:
        """Start the poll loop."""
        if self.is_running:
            logger.warning("Poll scheduler already running")
            return

        logger.info(
            f"Starting poll scheduler (interval={self.interval}s, "
            f"quiet period={self.quiet_period}s)"
        )
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="snmp_poll")

    async def stop(self) -> None:
        """Stop the poll loop."""
        if self._task is None:
            return

        logger.info("Stopping poll scheduler")
        self._shutdown_event.set()

        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self._task = None
        self._phase = PollPhase.STOPPED

    async def _poll_loop(self) -> None:
        """Poll, buffer, pause; repeat until shutdown."""
        self._phase = PollPhase.POLLING

        try:
            while True:
                if await self._pause(self.interval):
                    break

                try:
                    self._total_polls += 1
                    success, record, error = await self.collector.collect()

                    if not success:
                        continue

                    self.buffer.push(record)
                    self._total_samples += 1
                    self._last_sample_at = datetime.now(timezone.utc)

                    if self._on_sample:
                        try:
                            self._on_sample(record)
                        except Exception as e:
                            logger.error(f"Error in sample callback: {e}")

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Unexpected error in poll loop: {e}")
                    if await self._pause(self.error_backoff):
                        break
                    continue

                self._phase = PollPhase.QUIET
                stopped = await self._pause(self.quiet_period)
                self._phase = PollPhase.POLLING
                if stopped:
                    break

        except asyncio.CancelledError:
            logger.debug("Poll loop cancelled")
            raise
        finally:
            self._phase = PollPhase.STOPPED

    async def _pause(self, seconds: float) -> bool:
        """
        Wait for ``seconds`` or until shutdown.

        Returns:
            True if shutdown was requested.
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "phase": self._phase.value,
            "total_polls": self._total_polls,
            "total_samples": self._total_samples,
            "last_sample_at": (
                self._last_sample_at.isoformat() if self._last_sample_at else None
            ),
        }
