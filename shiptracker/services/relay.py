"""
Relay composition root.

Wires the upstream AISStream client to the subscriber hub and the transit
tracker, and ties the upstream lifecycle to subscriber demand:
first subscriber in -> connect, last subscriber out -> disconnect.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine, Optional

from feed.client import Connector, UpstreamClient
from feed.parsing import position_from_message, static_from_message
from shiptracker.core.config import Settings
from shiptracker.db.schemas import StatusOut
from shiptracker.services.hub import BroadcastHub, SendFunc, Subscriber, SubscriberRegistry
from shiptracker.services.transit_tracker import TransitTracker

logger = logging.getLogger("ais.relay")


def status_envelope(message: str, connected: bool) -> dict[str, Any]:
    return {"type": "status", "message": message, "connected": connected}


def data_envelope(message: dict[str, Any]) -> dict[str, Any]:
    return {"type": "ship_data", "data": message}


class RelayService:
    def __init__(
        self,
        settings: Settings,
        tracker: TransitTracker,
        *,
        connect: Optional[Connector] = None,
    ):
        self.settings = settings
        self.tracker = tracker
        self.registry = SubscriberRegistry(
            on_first=self._on_first_subscriber,
            on_empty=self._on_last_subscriber_gone,
        )
        self.hub = BroadcastHub(self.registry, queue_maxsize=settings.SUBSCRIBER_QUEUE_SIZE)
        self.upstream = UpstreamClient(
            settings.AISSTREAM_WS_URL,
            settings.require_api_key(),
            settings.bounding_box(),
            has_demand=lambda: self.registry.count > 0,
            reconnect_delay=settings.RECONNECT_DELAY_SEC,
            connect=connect,
            on_status=self._on_upstream_status,
        )
        self.upstream.on_message(self._on_upstream_message)
        self._tasks: set[asyncio.Task[Any]] = set()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── demand policy ───────────────────────────────────────

    def _on_first_subscriber(self) -> None:
        self.upstream.start(True)

    def _on_last_subscriber_gone(self) -> None:
        logger.info("No clients connected. Closing AISStream connection.")
        self.upstream.stop()

    # ── subscribers ─────────────────────────────────────────

    def connect_subscriber(self, send: SendFunc) -> Subscriber:
        if self.upstream.is_open:
            greeting = status_envelope("AISStream active", True)
        else:
            greeting = status_envelope(
                "Connected to proxy server, AISStream not yet connected", False
            )
        return self.hub.attach(send, greeting)

    def disconnect_subscriber(self, subscriber: Subscriber) -> None:
        self.hub.detach(subscriber)

    async def handle_client_message(self, raw: str) -> None:
        """Subscribers may relay the crossing signal: {"type": "ship_passed", "mmsi": ...}."""
        try:
            msg = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON client message")
            return
        if not isinstance(msg, dict) or msg.get("type") != "ship_passed":
            logger.debug("Ignoring client message %r", msg)
            return
        try:
            mmsi = int(msg["mmsi"])
        except (KeyError, TypeError, ValueError):
            logger.debug("ship_passed without a valid mmsi: %r", msg)
            return
        await self.tracker.mark_passed(mmsi)

    # ── upstream callbacks ──────────────────────────────────

    def _on_upstream_status(self, message: str, connected: bool) -> None:
        self.hub.broadcast(status_envelope(message, connected))

    def _on_upstream_message(self, message: dict[str, Any]) -> None:
        if self.registry.count == 0:
            return
        self.hub.broadcast(data_envelope(message))
        if not self.tracker.available:
            return
        report = position_from_message(message)
        if report is not None:
            self._spawn(self.tracker.observe(report), f"observe-{report.mmsi}")
            return
        static = static_from_message(message)
        if static is not None:
            self._spawn(self.tracker.enrich(static), f"enrich-{static.mmsi}")

    # ── status / lifecycle ──────────────────────────────────

    async def status(self) -> StatusOut:
        database = await self.tracker.ping()
        return StatusOut(
            status="Ship Tracker Proxy Server Running",
            connections=self.registry.count,
            database="Connected" if database else "Disconnected",
            stats=await self.tracker.stats(),
            timestamp=datetime.now(timezone.utc),
            upstream=self.upstream.state.value,
        )

    async def drain(self) -> None:
        """Wait for pending store writes and subscriber queues."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.hub.drain()

    async def shutdown(self) -> None:
        self.upstream.stop()
        await self.upstream.wait_closed()
        await self.hub.close()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Relay stopped")
