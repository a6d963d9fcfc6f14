"""
MQTT transport built on paho-mqtt.

paho runs its network loop in a background thread. Every paho callback
is handed to the asyncio loop with ``call_soon_threadsafe`` so that the
transport state, the buffer and the dispatcher are only ever touched
from the event loop.

Lifecycle mapping:
    on_connect (success)  -> connect
    on_connect (refused)  -> offline
    on_connect_fail       -> offline
    on_pre_connect        -> reconnect (every attempt after the first)
    on_disconnect         -> close
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from ..config import MqttSettings
from ..exceptions import ConfigurationError, PublishError
from .transport_state import TransportStateTracker

logger = logging.getLogger(__name__)


# scheme -> (paho transport, TLS, default port)
_SCHEMES = {
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
    "ssl": ("tcp", True, 8883),
    "tls": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


@dataclass(frozen=True)
class BrokerAddress:
    """Broker endpoint parsed from a URL."""
    host: str
    port: int
    transport: str = "tcp"
    use_tls: bool = False
    path: str = "/"
    username: Optional[str] = None
    password: Optional[str] = None


def parse_broker_url(url: str) -> BrokerAddress:
    """
    Parse a broker URL such as ``mqtt://broker:1883`` or ``wss://host/mqtt``.

    Raises:
        ConfigurationError: If the scheme is unsupported or the host is missing.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()

    if scheme not in _SCHEMES:
        raise ConfigurationError(f"Unsupported MQTT URL scheme: {parsed.scheme or url}")
    if not parsed.hostname:
        raise ConfigurationError(f"Missing host in MQTT URL: {url}")

    transport, use_tls, default_port = _SCHEMES[scheme]

    return BrokerAddress(
        host=parsed.hostname,
        port=parsed.port or default_port,
        transport=transport,
        use_tls=use_tls,
        path=parsed.path or "/",
        username=parsed.username,
        password=parsed.password,
    )


class MqttTransport:
    """
    Persistent, auto-reconnecting MQTT publisher.

    Connection state changes are reported to a TransportStateTracker.
    ``publish`` completes once the broker acknowledges the message.
    """

    def __init__(
        self,
        settings: MqttSettings,
        tracker: TransportStateTracker,
        keepalive: int = 60,
        reconnect_min_delay: int = 1,
        reconnect_max_delay: int = 60,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize the transport.

        Args:
            settings: MQTT section of the settings document.
            tracker: Receives lifecycle events.
            keepalive: Keepalive interval in seconds.
            reconnect_min_delay: Initial reconnect delay in seconds.
            reconnect_max_delay: Maximum reconnect delay in seconds.
            client_factory: Callable building the paho client; defaults to
                ``paho.mqtt.client.Client``.
        """
        self.settings = settings
        self.tracker = tracker
        self.address = parse_broker_url(settings.url)
        self.keepalive = keepalive
        self.reconnect_min_delay = reconnect_min_delay
        self.reconnect_max_delay = reconnect_max_delay
        self._client_factory = client_factory or mqtt.Client

        self.client: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Acknowledgement tracking, shared with the paho thread
        self._lock = threading.Lock()
        self._pending: Dict[int, asyncio.Future] = {}
        self._early_acks: Set[int] = set()
        self._publishing = 0

        self._attempts = 0

    # ==================== Connection Management ====================

    async def connect(self) -> None:
        """
        Start connecting in the background.

        Returns immediately; the outcome is reported through the tracker.
        paho keeps retrying until ``close`` is called.
        """
        if self.client is not None:
            logger.debug("MQTT transport already started")
            return

        self._loop = asyncio.get_running_loop()
        self.client = self._create_client()

        logger.info(
            f"Connecting to MQTT broker at {self.address.host}:{self.address.port}"
        )
        self.client.connect_async(
            self.address.host,
            self.address.port,
            keepalive=self.keepalive,
        )
        self.client.loop_start()

    async def close(self) -> None:
        """Disconnect and stop the network loop."""
        client = self.client
        if client is None:
            return

        try:
            client.disconnect()
            client.loop_stop()
            logger.info("MQTT transport closed")
        except Exception as e:
            logger.warning(f"Error during MQTT disconnect: {e}")
        finally:
            self.client = None
            self._fail_pending("MQTT transport closed")

    def _create_client(self) -> Any:
        client = self._client_factory(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.settings.client_id,
            clean_session=self.settings.clean,
            protocol=mqtt.MQTTv311,
            transport=self.address.transport,
        )

        username = self.settings.username or self.address.username
        password = self.settings.password or self.address.password
        if username:
            client.username_pw_set(username, password)

        if self.address.use_tls:
            client.tls_set()

        if self.address.transport == "websockets":
            client.ws_set_options(path=self.address.path)

        client.reconnect_delay_set(
            min_delay=self.reconnect_min_delay,
            max_delay=self.reconnect_max_delay,
        )

        client.on_pre_connect = self._on_pre_connect
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_publish = self._on_publish

        return client

    # ==================== Publishing ====================

    async def publish(self, topic: str, payload: str, qos: int = 1) -> None:
        """
        Publish one message and wait for the broker acknowledgement.

        A QoS 1/2 message published while the socket is down stays in
        paho's session queue and is sent on reconnect, so it is awaited
        like any other message instead of being reported as failed.

        Raises:
            PublishError: If the message could not be sent, or the
                connection dropped before it was acknowledged.
        """
        if self.client is None or self._loop is None:
            raise PublishError("MQTT transport not started")

        future = self._loop.create_future()

        with self._lock:
            self._publishing += 1

        # paho holds its own mutex while calling on_publish, so our lock
        # must not be held across client.publish
        try:
            info = self.client.publish(topic, payload, qos=qos)
        except BaseException:
            self._end_publish()
            raise

        queued = info.rc == mqtt.MQTT_ERR_NO_CONN and qos > 0
        if info.rc != mqtt.MQTT_ERR_SUCCESS and not queued:
            self._end_publish()
            raise PublishError(
                f"Publish failed: {mqtt.error_string(info.rc)}", rc=info.rc
            )

        if queued:
            logger.debug(f"Message {info.mid} queued until the broker is reachable")

        if self._end_publish(info.mid, future):
            return

        try:
            await future
        finally:
            with self._lock:
                self._pending.pop(info.mid, None)

    def _end_publish(
        self,
        mid: Optional[int] = None,
        future: Optional[asyncio.Future] = None,
    ) -> bool:
        """
        Finish a client.publish call and register its future.

        Returns:
            True if the acknowledgement already arrived during the call.
        """
        with self._lock:
            self._publishing -= 1
            acked = mid is not None and mid in self._early_acks
            self._early_acks.discard(mid)
            if mid is not None and not acked:
                self._pending[mid] = future
            # acks are only held for publish calls still in progress
            if self._publishing == 0:
                self._early_acks.clear()
        return acked

    # ==================== paho callbacks (network thread) ====================

    def _on_pre_connect(self, client, userdata) -> None:
        self._attempts += 1
        if self._attempts > 1:
            self._dispatch(self.tracker.handle_reconnect)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.warning(f"MQTT connection refused: {reason_code}")
            self._dispatch(self.tracker.handle_offline)
            return
        self._dispatch(self.tracker.handle_connect)

    def _on_connect_fail(self, client, userdata) -> None:
        logger.debug("MQTT connection attempt failed")
        self._dispatch(self.tracker.handle_offline)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        logger.debug(f"Disconnected from MQTT broker (reason: {reason_code})")
        self._dispatch(self.tracker.handle_close)
        self._dispatch(self._fail_pending, "MQTT connection lost before acknowledgement")

    def _on_publish(self, client, userdata, mid, reason_code, properties=None) -> None:
        with self._lock:
            future = self._pending.get(mid)
            if future is None:
                # unknown mids are resends of messages already given up on
                if self._publishing:
                    self._early_acks.add(mid)
                return

        error = None
        if reason_code.is_failure:
            error = PublishError(f"Broker rejected message: {reason_code}")
        self._dispatch(self._settle, future, error)

    # ==================== Helpers ====================

    def _dispatch(self, callback: Callable, *args) -> None:
        """Run a callback on the event loop from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    @staticmethod
    def _settle(future: asyncio.Future, error: Optional[Exception] = None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(None)

    def _fail_pending(self, message: str) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            self._early_acks.clear()

        for future in pending:
            self._settle(future, PublishError(message))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "broker": f"{self.address.host}:{self.address.port}",
            "transport": self.address.transport,
            "tls": self.address.use_tls,
            "started": self.client is not None,
            "connection_attempts": self._attempts,
            "awaiting_ack": len(self._pending),
        }
