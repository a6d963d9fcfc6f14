"""
Dispatcher: periodic, connection-gated buffer flush.

While the transport is connected a tick runs every ``flush_interval``
seconds. Each tick that finds no flush in flight takes the whole buffer
and delivers it as one flush.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from .protocol import ConnectionStateSource, DeliveryProtocol
from .sample_buffer import SampleBuffer

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Gates and runs flushes of the sample buffer.

    The ``sending`` flag allows at most one flush at a time. All state
    is touched from the event loop only.
    """

    def __init__(
        self,
        buffer: SampleBuffer,
        protocol: DeliveryProtocol,
        state: ConnectionStateSource,
        flush_interval: float = 1.0,
    ):
        """
        Initialize the dispatcher.

        Args:
            buffer: Buffer to drain.
            protocol: Delivery protocol that sends each snapshot.
            state: Source of the current transport state.
            flush_interval: Seconds between flush ticks.
        """
        self.buffer = buffer
        self.protocol = protocol
        self.state = state
        self.flush_interval = flush_interval

        self._sending = False
        self._timer_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None

        # Statistics
        self._total_flushes = 0
        self._total_ticks = 0

    @property
    def is_sending(self) -> bool:
        return self._sending

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None

    def start(self) -> None:
        """Start the flush timer. No-op if already running."""
        if self._timer_task is not None:
            return
        self._timer_task = asyncio.create_task(
            self._tick_loop(),
            name="dispatcher_tick",
        )
        logger.debug("Dispatcher timer started")

    def stop(self) -> None:
        """
        Stop the flush timer. No-op if not running.

        A flush already in flight is left alone; it ends by itself at its
        next step once the transport reports disconnected.
        """
        if self._timer_task is None:
            return
        self._timer_task.cancel()
        self._timer_task = None
        logger.debug("Dispatcher timer stopped")

    async def shutdown(self) -> None:
        """Stop the timer and cancel any flush in flight."""
        timer_task = self._timer_task
        self.stop()

        for task in (timer_task, self._flush_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def try_flush(self) -> Optional[asyncio.Task]:
        """
        Start a flush if connected and no flush is in flight.

        Returns:
            The flush task, or None if nothing was started.
        """
        self._total_ticks += 1

        if not self.state.is_connected or self._sending:
            return None

        self._sending = True
        snapshot = self.buffer.drain()

        if not snapshot:
            self._sending = False
            return None

        self._total_flushes += 1
        self._flush_task = asyncio.create_task(
            self._flush(snapshot),
            name="dispatcher_flush",
        )
        return self._flush_task

    async def _flush(self, snapshot) -> None:
        try:
            report = await self.protocol.deliver(snapshot)
            logger.debug(
                f"Flush finished: {report.sent} sent in {report.messages} messages, "
                f"{report.failures} failures, {report.requeued} requeued"
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error during flush: {e}")
        finally:
            self._sending = False

    async def _tick_loop(self) -> None:
        """Periodic flush tick."""
        while True:
            await asyncio.sleep(self.flush_interval)
            self.try_flush()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "sending": self._sending,
            "total_ticks": self._total_ticks,
            "total_flushes": self._total_flushes,
        }
