"""
Transport state tracking.

Turns MQTT lifecycle events into a connected/disconnected state and
notifies listeners so the dispatcher timer runs only while connected.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TransportState(str, Enum):
    """Publish transport state."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class TransportEvent(str, Enum):
    """Lifecycle events reported by the transport."""
    CONNECT = "connect"
    RECONNECT = "reconnect"
    CLOSE = "close"
    OFFLINE = "offline"


class TransportStateTracker:
    """
    Holds the current transport state.

    ``connect`` moves to CONNECTED and fires the connected callback;
    ``reconnect``, ``close`` and ``offline`` move to DISCONNECTED and fire
    the disconnected callback.
    """

    def __init__(self):
        self._state = TransportState.DISCONNECTED
        self._last_event: Optional[TransportEvent] = None
        self._changed_at: Optional[datetime] = None
        self._event_counts: Dict[str, int] = {event.value: 0 for event in TransportEvent}

        # Callbacks
        self._on_connected: Optional[Callable[[], None]] = None
        self._on_disconnected: Optional[Callable[[], None]] = None

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == TransportState.CONNECTED

    def set_on_connected(self, callback: Callable[[], None]) -> None:
        """Set callback for the connect event."""
        self._on_connected = callback

    def set_on_disconnected(self, callback: Callable[[], None]) -> None:
        """Set callback for reconnect, close and offline events."""
        self._on_disconnected = callback

    def handle_event(self, event: TransportEvent) -> None:
        """
        Apply a lifecycle event.

        Args:
            event: Event reported by the transport.
        """
        self._last_event = event
        self._event_counts[event.value] += 1

        if event == TransportEvent.CONNECT:
            logger.info("Connected to MQTT")
            self._set_state(TransportState.CONNECTED)
            logger.info("Starting interval for buffer handling")
            self._notify(self._on_connected)
            return

        if event == TransportEvent.OFFLINE:
            logger.info("MQTT client went offline")
        else:
            logger.debug(f"MQTT {event.value}")

        self._set_state(TransportState.DISCONNECTED)
        self._notify(self._on_disconnected)

    def handle_connect(self) -> None:
        self.handle_event(TransportEvent.CONNECT)

    def handle_reconnect(self) -> None:
        self.handle_event(TransportEvent.RECONNECT)

    def handle_close(self) -> None:
        self.handle_event(TransportEvent.CLOSE)

    def handle_offline(self) -> None:
        self.handle_event(TransportEvent.OFFLINE)

    def _set_state(self, state: TransportState) -> None:
        if state != self._state:
            self._state = state
            self._changed_at = datetime.now(timezone.utc)

    def _notify(self, callback: Optional[Callable[[], None]]) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            logger.error(f"Error in transport state callback: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "last_event": self._last_event.value if self._last_event else None,
            "changed_at": self._changed_at.isoformat() if self._changed_at else None,
            "events": dict(self._event_counts),
        }
