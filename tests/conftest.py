from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest_asyncio

from shiptracker.core.config import Settings
from shiptracker.db.database import open_store

_CLOSED = object()


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, script: list[Any] | None = None, close_delay: float = 0.0):
        self.sent: list[dict] = []
        self.closed = False
        self.close_delay = close_delay
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        for item in script or []:
            self.push(item)

    def push(self, msg: Any) -> None:
        if isinstance(msg, dict):
            msg = json.dumps(msg)
        self._inbox.put_nowait(msg)

    def drop(self, exc: Exception | None = None) -> None:
        """End the stream: cleanly, or by raising exc from the read loop."""
        self._inbox.put_nowait(exc if exc is not None else _CLOSED)

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if self.close_delay:
            # closing handshake still in flight
            await asyncio.sleep(self.close_delay)
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Replacement for websockets.connect; records every connection it opens."""

    def __init__(self, script: list[Any] | None = None):
        self.script = script
        self.calls = 0
        self.sockets: list[FakeSocket] = []
        self.fail = False
        self.gate: asyncio.Event | None = None
        self.ignore_cancel = False
        self.close_delay = 0.0

    async def __call__(self, url: str, **kwargs: Any) -> FakeSocket:
        self.calls += 1
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                if not self.ignore_cancel:
                    raise
                await self.gate.wait()
        if self.fail:
            raise OSError("connection refused")
        ws = FakeSocket(self.script, close_delay=self.close_delay)
        self.sockets.append(ws)
        return ws

    @property
    def open_sockets(self) -> list[FakeSocket]:
        return [s for s in self.sockets if not s.closed]


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "AISSTREAM_API_KEY": "test-key",
        "DATABASE_URL": "",
        "RECONNECT_DELAY_SEC": 0.05,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def position_message(mmsi: int = 366123456, sog: float = 12.5, name: str = "ALGOMA SPIRIT") -> dict:
    return {
        "MessageType": "PositionReport",
        "MetaData": {
            "MMSI": mmsi,
            "ShipName": f"{name}   ",
            "latitude": 45.81,
            "longitude": -84.72,
            "time_utc": "2024-06-01 12:00:00.123456 +0000 UTC",
        },
        "Message": {
            "PositionReport": {
                "UserID": mmsi,
                "Sog": sog,
                "Latitude": 45.81,
                "Longitude": -84.72,
            }
        },
    }


@pytest_asyncio.fixture
async def store(tmp_path):
    store = await open_store(f"sqlite+aiosqlite:///{tmp_path / 'transits.db'}")
    yield store
    await store.dispose()
