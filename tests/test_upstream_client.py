from __future__ import annotations

import asyncio

import pytest

from conftest import FakeConnector, position_message, settle
from feed.client import ConnectionState, UpstreamClient
from shiptracker.core.config import BoundingBox
from shiptracker.core.errors import ConfigError

BBOX = BoundingBox.around(45.8174, -84.7278, 0.23, 0.35)


class _Demand:
    def __init__(self, value: bool = True):
        self.value = value

    def __call__(self) -> bool:
        return self.value


def _client(connector: FakeConnector, demand: _Demand, delay: float = 0.05):
    statuses: list[tuple[str, bool]] = []
    messages: list[dict] = []
    client = UpstreamClient(
        "wss://example.invalid/stream",
        "secret",
        BBOX,
        has_demand=demand,
        reconnect_delay=delay,
        connect=connector,
        on_status=lambda message, connected: statuses.append((message, connected)),
    )
    client.on_message(messages.append)
    return client, statuses, messages


def test_missing_api_key_is_a_config_error() -> None:
    with pytest.raises(ConfigError):
        UpstreamClient("wss://x", "  ", BBOX, has_demand=lambda: True)


def test_second_message_handler_rejected() -> None:
    client, _, _ = _client(FakeConnector(), _Demand())
    with pytest.raises(RuntimeError):
        client.on_message(lambda msg: None)


@pytest.mark.asyncio
async def test_start_connects_and_sends_one_subscription() -> None:
    connector = FakeConnector()
    client, statuses, _ = _client(connector, _Demand())

    client.start(True)
    assert client.state is ConnectionState.CONNECTING
    await settle()

    assert client.state is ConnectionState.OPEN
    assert connector.calls == 1
    assert connector.sockets[0].sent == [
        {
            "APIKey": "secret",
            "BoundingBoxes": [[[BBOX.min_lon, BBOX.min_lat], [BBOX.max_lon, BBOX.max_lat]]],
        }
    ]
    assert statuses == [("Connected to AISStream", True)]

    client.stop()
    await client.wait_closed()


@pytest.mark.asyncio
async def test_start_is_idempotent_while_connecting_or_open() -> None:
    connector = FakeConnector()
    connector.gate = asyncio.Event()
    client, _, _ = _client(connector, _Demand())

    client.start(True)
    await settle()
    client.start(True)
    assert client.state is ConnectionState.CONNECTING

    connector.gate.set()
    await settle()
    client.start(True)

    assert client.state is ConnectionState.OPEN
    assert connector.calls == 1
    client.stop()
    await client.wait_closed()


@pytest.mark.asyncio
async def test_start_without_demand_does_nothing() -> None:
    connector = FakeConnector()
    client, _, _ = _client(connector, _Demand())

    client.start(False)
    await settle()

    assert client.state is ConnectionState.DISCONNECTED
    assert connector.calls == 0


@pytest.mark.asyncio
async def test_stop_closes_transport_without_reconnect() -> None:
    connector = FakeConnector()
    client, statuses, _ = _client(connector, _Demand())
    client.start(True)
    await settle()

    client.stop()
    client.stop()
    await client.wait_closed()

    assert client.state is ConnectionState.DISCONNECTED
    assert connector.sockets[0].closed
    assert not client.reconnect_pending
    assert statuses == [("Connected to AISStream", True)]


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_connect() -> None:
    connector = FakeConnector()
    connector.gate = asyncio.Event()
    client, _, _ = _client(connector, _Demand())
    client.start(True)
    await settle()

    client.stop()
    await client.wait_closed()

    assert client.state is ConnectionState.DISCONNECTED
    assert connector.sockets == []


@pytest.mark.asyncio
async def test_connect_completing_after_stop_is_torn_down() -> None:
    connector = FakeConnector()
    connector.gate = asyncio.Event()
    connector.ignore_cancel = True
    client, statuses, _ = _client(connector, _Demand())
    client.start(True)
    await settle()

    client.stop()
    connector.gate.set()
    await client.wait_closed()

    assert len(connector.sockets) == 1
    assert connector.sockets[0].closed
    assert connector.sockets[0].sent == []
    assert client.state is ConnectionState.DISCONNECTED
    assert statuses == []


@pytest.mark.asyncio
async def test_restart_waits_for_previous_transport_to_close() -> None:
    connector = FakeConnector()
    connector.close_delay = 0.2
    client, _, _ = _client(connector, _Demand())
    client.start(True)
    await settle()

    client.stop()
    client.start(True)
    await settle()

    # old socket is still closing; the new connection has not been opened
    assert connector.calls == 1
    assert len(connector.open_sockets) <= 1
    assert client.state is ConnectionState.CONNECTING

    await client.wait_closed()
    await settle()

    assert connector.calls == 2
    assert connector.sockets[0].closed
    assert connector.open_sockets == [connector.sockets[1]]
    assert client.state is ConnectionState.OPEN

    client.stop()
    await client.wait_closed()


@pytest.mark.asyncio
async def test_undecodable_message_is_dropped_and_stream_continues() -> None:
    connector = FakeConnector()
    client, _, messages = _client(connector, _Demand())
    client.start(True)
    await settle()

    ws = connector.sockets[0]
    ws.push("{not json")
    ws.push("[1, 2, 3]")
    ws.push(position_message(mmsi=1))
    ws.push(position_message(mmsi=2))
    await settle()

    assert [m["MetaData"]["MMSI"] for m in messages] == [1, 2]
    assert client.stats["decode_errors"] == 2
    assert client.state is ConnectionState.OPEN
    client.stop()
    await client.wait_closed()


@pytest.mark.asyncio
async def test_closure_with_subscribers_schedules_one_reconnect() -> None:
    connector = FakeConnector()
    client, statuses, _ = _client(connector, _Demand(True))
    client.start(True)
    await settle()

    connector.sockets[0].drop()
    await settle()

    assert client.state is ConnectionState.DISCONNECTED
    assert client.reconnect_pending
    assert statuses[-1] == ("Disconnected from AISStream", False)

    await asyncio.sleep(0.1)
    await settle()

    assert connector.calls == 2
    assert client.state is ConnectionState.OPEN
    assert client.stats["reconnects"] == 1
    assert len(connector.open_sockets) == 1
    client.stop()
    await client.wait_closed()


@pytest.mark.asyncio
async def test_reconnect_skipped_when_no_subscribers_at_fire_time() -> None:
    connector = FakeConnector()
    demand = _Demand(True)
    client, _, _ = _client(connector, demand)
    client.start(True)
    await settle()

    connector.sockets[0].drop()
    await settle()
    assert client.reconnect_pending

    demand.value = False
    await asyncio.sleep(0.1)
    await settle()

    assert connector.calls == 1
    assert not client.reconnect_pending
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_closure_without_subscribers_schedules_nothing() -> None:
    connector = FakeConnector()
    demand = _Demand(True)
    client, _, _ = _client(connector, demand)
    client.start(True)
    await settle()

    demand.value = False
    connector.sockets[0].drop()
    await settle()
    await asyncio.sleep(0.1)

    assert not client.reconnect_pending
    assert connector.calls == 1


@pytest.mark.asyncio
async def test_transport_error_reports_error_then_disconnect() -> None:
    connector = FakeConnector()
    client, statuses, _ = _client(connector, _Demand(True))
    client.start(True)
    await settle()

    connector.sockets[0].drop(OSError("connection reset"))
    await settle()

    assert statuses[1:] == [
        ("AISStream connection error", False),
        ("Disconnected from AISStream", False),
    ]
    assert connector.sockets[0].closed
    client.stop()


@pytest.mark.asyncio
async def test_connect_failure_schedules_reconnect() -> None:
    connector = FakeConnector()
    connector.fail = True
    client, statuses, _ = _client(connector, _Demand(True))

    client.start(True)
    await settle()

    assert client.state is ConnectionState.DISCONNECTED
    assert client.reconnect_pending
    assert ("AISStream connection error", False) in statuses

    connector.fail = False
    await asyncio.sleep(0.1)
    await settle()
    assert client.state is ConnectionState.OPEN
    client.stop()
    await client.wait_closed()


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect() -> None:
    connector = FakeConnector()
    client, _, _ = _client(connector, _Demand(True))
    client.start(True)
    await settle()
    connector.sockets[0].drop()
    await settle()
    assert client.reconnect_pending

    client.stop()
    await asyncio.sleep(0.1)
    await settle()

    assert not client.reconnect_pending
    assert connector.calls == 1
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_stream_error_frame_drops_connection() -> None:
    connector = FakeConnector()
    client, statuses, messages = _client(connector, _Demand(False))
    client.start(True)
    await settle()

    connector.sockets[0].push({"error": "Api Key Is Not Valid"})
    await settle()

    assert messages == []
    assert client.state is ConnectionState.DISCONNECTED
    assert ("AISStream connection error", False) in statuses
