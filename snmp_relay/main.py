"""
SNMP Relay - Main Entry Point.

Starts the relay that:
1. Polls an SNMP device on a fixed interval
2. Buffers each sample in memory
3. Publishes buffered samples to an MQTT topic while connected
"""
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from .config import RelayConfig, RelaySettings, get_relay_settings, load_config
from .connection.mqtt_transport import MqttTransport
from .connection.transport_state import TransportStateTracker
from .delivery.dispatcher import Dispatcher
from .delivery.protocol import DeliveryProtocol
from .delivery.sample_buffer import Record, SampleBuffer
from .exceptions import ConfigurationError
from .log_stream import configure_logging
from .polling.scheduler import PollScheduler
from .polling.snmp_collector import SnmpCollector

logger = logging.getLogger(__name__)


class RelayServer:
    """
    Main relay orchestrator.

    Owns the sample buffer, transport state, dispatcher and poller, and
    wires them together.
    """

    def __init__(
        self,
        config: RelayConfig,
        settings: Optional[RelaySettings] = None,
        transport: Optional[MqttTransport] = None,
        collector: Optional[SnmpCollector] = None,
    ):
        """
        Initialize the relay.

        Args:
            config: Validated settings document.
            settings: Process settings.
            transport: MQTT transport; built from config if omitted.
            collector: SNMP collector; built from config if omitted.
        """
        self.config = config
        self.settings = settings or get_relay_settings()

        self.buffer = SampleBuffer(
            capacity=self.settings.buffer_capacity,
            overflow_policy=self.settings.overflow_policy,
        )
        self.tracker = TransportStateTracker()
        self.transport = transport or MqttTransport(config.mqtt, self.tracker)
        self.protocol = DeliveryProtocol(
            buffer=self.buffer,
            publisher=self.transport,
            state=self.tracker,
            topic=config.mqtt.topic,
            qos=config.mqtt.qos,
            max_chunk=self.settings.max_chunk,
            publish_delay=self.settings.publish_delay,
        )
        self.dispatcher = Dispatcher(
            buffer=self.buffer,
            protocol=self.protocol,
            state=self.tracker,
            flush_interval=self.settings.flush_interval,
        )
        self.collector = collector or SnmpCollector(config)
        self.scheduler = PollScheduler(
            collector=self.collector,
            buffer=self.buffer,
            interval=config.poll_interval_seconds,
            quiet_period=config.quiet_period_seconds,
        )

        # Transport state gates the dispatcher timer
        self.tracker.set_on_connected(self.dispatcher.start)
        self.tracker.set_on_disconnected(self.dispatcher.stop)

        # Setup polling callbacks
        self.scheduler.set_on_sample(self._on_sample)

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the relay."""
        logger.info("Starting SNMP relay...")

        await self.transport.connect()
        await self.scheduler.start()

        self._running = True
        logger.info(
            f"SNMP relay started: polling {self.config.ip} "
            f"({len(self.config.oids)} OIDs), publishing to {self.config.mqtt.topic}"
        )

    async def stop(self) -> None:
        """Stop the relay."""
        if not self._running:
            return

        logger.info("Stopping SNMP relay...")
        self._running = False
        self._shutdown_event.set()

        await self.scheduler.stop()
        await self.dispatcher.shutdown()
        await self.transport.close()
        self.collector.close()

        pending = len(self.buffer)
        if pending:
            logger.warning(f"{pending} buffered records were not delivered")

        logger.info("SNMP relay stopped")

    def _on_sample(self, record: Record) -> None:
        """Handle a buffered sample."""
        state = "sending" if self.tracker.is_connected else "waiting for MQTT"
        logger.debug(
            f"Buffered sample with {len(record)} fields "
            f"({len(self.buffer)} pending, {state})"
        )

    async def serve_forever(self) -> None:
        """Run the relay until shutdown."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Make serve_forever return."""
        self._shutdown_event.set()

    def get_stats(self) -> Dict[str, Any]:
        """Get relay statistics."""
        return {
            "running": self._running,
            "buffer": self.buffer.get_stats(),
            "transport": self.tracker.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
            "delivery": self.protocol.get_stats(),
            "polling": self.scheduler.get_stats(),
            "collector": self.collector.get_stats(),
        }


def setup_signal_handlers(server: RelayServer, loop: asyncio.AbstractEventLoop):
    """Setup signal handlers for graceful shutdown."""
    def signal_handler():
        logger.info("Received shutdown signal")
        server.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))


async def main(config: RelayConfig, settings: RelaySettings) -> None:
    """Run the relay until a shutdown signal arrives."""
    server = RelayServer(config, settings)
    setup_signal_handlers(server, asyncio.get_running_loop())

    try:
        await server.start()
        await server.serve_forever()
    finally:
        await server.stop()


def run() -> int:
    """
    Console entry point.

    Returns:
        Process exit code: 1 on configuration errors, 0 otherwise.
    """
    settings = get_relay_settings()
    configure_logging(settings.log_level)

    try:
        config = load_config(settings.settings_file)
    except ConfigurationError as e:
        logger.error(e.message)
        return 1

    try:
        asyncio.run(main(config, settings))
    except ConfigurationError as e:
        logger.error(e.message)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")

    return 0


if __name__ == "__main__":
    sys.exit(run())
