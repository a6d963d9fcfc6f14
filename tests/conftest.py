"""
Shared pytest fixtures for relay tests.

Provides fixtures for:
- Settings documents and process settings
- Sample buffer and transport state
- A scriptable fake publisher
- Root logger isolation
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import pytest

from snmp_relay.config import RelayConfig, RelaySettings
from snmp_relay.connection.transport_state import TransportStateTracker
from snmp_relay.delivery.sample_buffer import SampleBuffer
from snmp_relay.exceptions import PublishError


# ============================================================================
# Fakes
# ============================================================================

class FakePublisher:
    """
    In-memory publisher.

    Records every publish attempt. ``fail_next`` makes the next N attempts
    raise PublishError; ``on_publish`` runs after each attempt is recorded.
    """

    def __init__(self):
        self.attempts: List[Dict[str, Any]] = []
        self.published: List[Dict[str, Any]] = []
        self._failures = 0
        self.on_publish = None
        self.gate: Optional[asyncio.Event] = None

    def fail_next(self, count: int = 1) -> None:
        self._failures += count

    async def publish(self, topic: str, payload: str, qos: int) -> None:
        message = {"topic": topic, "payload": payload, "qos": qos}
        self.attempts.append(message)

        if self.on_publish:
            self.on_publish(message)

        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)

        if self._failures:
            self._failures -= 1
            raise PublishError("simulated transport failure")

        self.published.append(message)

    @property
    def sent_data(self) -> List[List[Dict[str, Any]]]:
        """The ``data`` list of every acknowledged envelope."""
        return [json.loads(m["payload"])["data"] for m in self.published]


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def settings_document() -> Dict[str, Any]:
    """A complete settings document."""
    return {
        "mqtt": {
            "url": "mqtt://broker.local:1883",
            "username": "relay",
            "topic": "site/ups/telemetry",
        },
        "interval": 1000,
        "submitEvery": 1,
        "community": "public",
        "ip": "192.0.2.10",
        "oids": {
            "1.3.6.1.2.1.1.5.0": "sysName",
            "1.3.6.1.2.1.1.3.0": "sysUpTime",
            "1.3.6.1.2.1.33.1.2.4.0": "batteryCharge",
        },
    }


@pytest.fixture
def settings_file(tmp_path, settings_document):
    """The settings document written to settings.json."""
    path = tmp_path / "settings.json"
    path.write_text(json.dumps(settings_document), encoding="utf-8")
    return path


@pytest.fixture
def relay_config(settings_document) -> RelayConfig:
    return RelayConfig.model_validate(settings_document)


@pytest.fixture
def relay_settings() -> RelaySettings:
    """Process settings with fast timings for tests."""
    return RelaySettings(flush_interval=0.01, publish_delay=0.0, max_chunk=1)


# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def sample_buffer() -> SampleBuffer:
    return SampleBuffer()


@pytest.fixture
def tracker() -> TransportStateTracker:
    return TransportStateTracker()


@pytest.fixture
def connected_tracker(tracker) -> TransportStateTracker:
    tracker.handle_connect()
    return tracker


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


# ============================================================================
# Utility Fixtures
# ============================================================================

@pytest.fixture
def restore_root_logger():
    """Restore root logger handlers and level after the test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
