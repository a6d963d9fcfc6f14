"""
Unit tests for the relay orchestrator and entry point.

The MQTT transport and SNMP collector are replaced by in-memory fakes.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from snmp_relay.config import RelayConfig, get_relay_settings
from snmp_relay.main import RelayServer, main, run
from tests.factories import build_records


class FakeTransport:
    """Transport that connects immediately and acknowledges every publish."""

    def __init__(self, connect_on_start: bool = True):
        self.connect_on_start = connect_on_start
        self.tracker = None
        self.published: List[Dict[str, Any]] = []
        self.closed = False

    async def connect(self) -> None:
        if self.connect_on_start:
            self.tracker.handle_connect()

    async def close(self) -> None:
        self.closed = True

    async def publish(self, topic: str, payload: str, qos: int = 1) -> None:
        await asyncio.sleep(0)
        self.published.append({"topic": topic, "payload": payload, "qos": qos})

    @property
    def sent_data(self):
        return [json.loads(m["payload"])["data"] for m in self.published]


def make_collector(records):
    outcomes = [(True, record, None) for record in records]
    collector = MagicMock()
    collector.collect = AsyncMock(
        side_effect=lambda: outcomes.pop(0) if outcomes else (False, None, "timeout")
    )
    collector.get_stats.return_value = {}
    return collector


@pytest.fixture
def fast_config(settings_document) -> RelayConfig:
    """Poll every 10 ms with no quiet period."""
    settings_document["interval"] = 10
    settings_document["submitEvery"] = 0
    return RelayConfig.model_validate(settings_document)


def make_server(config, settings, transport, collector) -> RelayServer:
    server = RelayServer(config, settings, transport=transport, collector=collector)
    transport.tracker = server.tracker
    return server


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_wait(), timeout=timeout)


class TestRelayServer:
    """Test the assembled relay."""

    @pytest.mark.asyncio
    async def test_samples_flow_to_broker_in_order(self, fast_config, relay_settings):
        records = build_records(3)
        transport = FakeTransport()
        collector = make_collector(records)
        server = make_server(fast_config, relay_settings, transport, collector)

        await server.start()
        try:
            await wait_until(lambda: len(transport.published) == 3)
        finally:
            await server.stop()

        assert transport.sent_data == [[dict(r)] for r in records]
        assert all(m["topic"] == "site/ups/telemetry" for m in transport.published)
        assert all(m["qos"] == 1 for m in transport.published)

    @pytest.mark.asyncio
    async def test_samples_wait_in_buffer_until_connected(self, fast_config, relay_settings):
        records = build_records(2)
        transport = FakeTransport(connect_on_start=False)
        server = make_server(fast_config, relay_settings, transport, make_collector(records))

        await server.start()
        try:
            await wait_until(lambda: len(server.buffer) == 2)
            await asyncio.sleep(0.05)
            assert transport.published == []

            server.tracker.handle_connect()
            await wait_until(lambda: len(transport.published) == 2)
        finally:
            await server.stop()

        assert transport.sent_data == [[dict(r)] for r in records]

    @pytest.mark.asyncio
    async def test_stop_releases_resources(self, fast_config, relay_settings):
        transport = FakeTransport()
        collector = make_collector([])
        server = make_server(fast_config, relay_settings, transport, collector)

        await server.start()
        await server.stop()
        await server.stop()

        assert transport.closed is True
        collector.close.assert_called_once_with()
        assert server.scheduler.is_running is False
        assert server.dispatcher.is_running is False

    @pytest.mark.asyncio
    async def test_stop_warns_about_undelivered_records(
        self, fast_config, relay_settings, caplog
    ):
        transport = FakeTransport(connect_on_start=False)
        server = make_server(fast_config, relay_settings, transport, make_collector(build_records(2)))

        await server.start()
        await wait_until(lambda: len(server.buffer) == 2)
        with caplog.at_level(logging.WARNING):
            await server.stop()

        assert any("2 buffered records" in message for message in caplog.messages)

    @pytest.mark.asyncio
    async def test_buffered_samples_are_logged(self, fast_config, relay_settings, caplog):
        transport = FakeTransport(connect_on_start=False)
        server = make_server(fast_config, relay_settings, transport, make_collector(build_records(1)))

        with caplog.at_level(logging.DEBUG, logger="snmp_relay.main"):
            await server.start()
            try:
                await wait_until(lambda: len(server.buffer) == 1)
            finally:
                await server.stop()

        assert any(
            "Buffered sample with 4 fields (1 pending, waiting for MQTT)" in message
            for message in caplog.messages
        )

    @pytest.mark.asyncio
    async def test_serve_forever_returns_on_shutdown_request(self, fast_config, relay_settings):
        server = make_server(fast_config, relay_settings, FakeTransport(), make_collector([]))

        waiter = asyncio.create_task(server.serve_forever())
        server.request_shutdown()

        await asyncio.wait_for(waiter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_stats(self, fast_config, relay_settings):
        server = make_server(fast_config, relay_settings, FakeTransport(), make_collector([]))

        stats = server.get_stats()

        assert stats["running"] is False
        assert stats["transport"]["state"] == "disconnected"
        assert set(stats) == {
            "running", "buffer", "transport", "dispatcher",
            "delivery", "polling", "collector",
        }


class TestMain:
    """Test the async main."""

    @pytest.mark.asyncio
    async def test_stops_server_when_serving_ends(self, relay_config, relay_settings):
        server = MagicMock()
        server.start = AsyncMock()
        server.serve_forever = AsyncMock()
        server.stop = AsyncMock()

        with patch("snmp_relay.main.RelayServer", return_value=server), \
                patch("snmp_relay.main.setup_signal_handlers"):
            await main(relay_config, relay_settings)

        server.start.assert_awaited_once()
        server.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stops_server_when_start_fails(self, relay_config, relay_settings):
        server = MagicMock()
        server.start = AsyncMock(side_effect=RuntimeError("boom"))
        server.stop = AsyncMock()

        with patch("snmp_relay.main.RelayServer", return_value=server), \
                patch("snmp_relay.main.setup_signal_handlers"):
            with pytest.raises(RuntimeError):
                await main(relay_config, relay_settings)

        server.stop.assert_awaited_once()


class TestRun:
    """Test the console entry point."""

    @pytest.fixture(autouse=True)
    def fresh_settings(self, restore_root_logger, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        get_relay_settings.cache_clear()
        yield
        get_relay_settings.cache_clear()

    def test_missing_settings_file_exits_with_error(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setenv("SNMP_RELAY_SETTINGS_FILE", str(tmp_path / "settings.json"))

        code = run()

        assert code == 1
        err = capsys.readouterr().err
        assert "\tERROR: Unable to find file settings.json" in err

    def test_invalid_settings_file_exits_with_error(self, monkeypatch, tmp_path, capsys):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"mqtt": {}}), encoding="utf-8")
        monkeypatch.setenv("SNMP_RELAY_SETTINGS_FILE", str(path))

        code = run()

        assert code == 1
        assert "Missing" in capsys.readouterr().err

    def test_runs_relay_with_loaded_config(self, monkeypatch, settings_file):
        monkeypatch.setenv("SNMP_RELAY_SETTINGS_FILE", str(settings_file))

        with patch("snmp_relay.main.main", new_callable=AsyncMock) as relay_main:
            code = run()

        assert code == 0
        config, settings = relay_main.await_args.args
        assert config.ip == "192.0.2.10"
        assert settings.settings_file == settings_file

    def test_keyboard_interrupt_exits_cleanly(self, monkeypatch, settings_file):
        monkeypatch.setenv("SNMP_RELAY_SETTINGS_FILE", str(settings_file))

        with patch("snmp_relay.main.main", new_callable=AsyncMock) as relay_main:
            relay_main.side_effect = KeyboardInterrupt
            code = run()

        assert code == 0
