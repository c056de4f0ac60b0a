"""
Demand-driven AISStream connection.

- At most one upstream transport at a time; opened by start(), closed by stop().
  A new connection waits for any stopped one to finish closing.
- Sends one subscription (API key + bounding box) per connection.
- On transport loss, schedules a single reconnect; the timer re-checks demand
  when it fires and skips the attempt if nobody is listening.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosedOK

from feed.parsing import decode_message, extract_stream_error
from shiptracker.core.config import BoundingBox
from shiptracker.core.errors import ConfigError, DecodeError, StreamSubscriptionError

logger = logging.getLogger("ais.upstream")

MessageHandler = Callable[[dict[str, Any]], None]
StatusHandler = Callable[[str, bool], None]
Connector = Callable[..., Awaitable[Any]]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


class UpstreamClient:
    def __init__(
        self,
        url: str,
        api_key: str,
        bbox: BoundingBox,
        has_demand: Callable[[], bool],
        *,
        reconnect_delay: float = 5.0,
        connect: Optional[Connector] = None,
        on_status: Optional[StatusHandler] = None,
    ):
        if not api_key or not api_key.strip():
            raise ConfigError("AISSTREAM_API_KEY is empty; cannot subscribe upstream")
        self._url = url
        self._api_key = api_key.strip()
        self._bbox = bbox
        self._has_demand = has_demand
        self._reconnect_delay = reconnect_delay
        self._connect = connect or websockets.connect
        self._on_status = on_status
        self._handler: Optional[MessageHandler] = None

        self._state = ConnectionState.DISCONNECTED
        self._task: Optional[asyncio.Task[None]] = None
        self._retired: set[asyncio.Task[None]] = set()
        self._reconnect: Optional[asyncio.TimerHandle] = None
        self.stats = {
            "received": 0,
            "decode_errors": 0,
            "connects": 0,
            "reconnects": 0,
        }

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect is not None

    def on_message(self, handler: MessageHandler) -> None:
        if self._handler is not None and self._handler is not handler:
            raise RuntimeError("upstream message handler already registered")
        self._handler = handler

    def subscription(self) -> dict[str, Any]:
        return {
            "APIKey": self._api_key,
            "BoundingBoxes": self._bbox.as_subscription(),
        }

    def start(self, demand: bool = True) -> None:
        if not demand:
            return
        if self._state is not ConnectionState.DISCONNECTED:
            logger.debug("start() ignored; upstream is %s", self._state.value)
            return
        self._cancel_reconnect()
        self._state = ConnectionState.CONNECTING
        self.stats["connects"] += 1
        self._task = asyncio.create_task(self._run(), name="ais-upstream")

    def stop(self) -> None:
        self._cancel_reconnect()
        task, self._task = self._task, None
        if task is None and self._state is ConnectionState.DISCONNECTED:
            return
        previous = self._state
        self._state = ConnectionState.DISCONNECTED
        if task is not None and not task.done():
            task.cancel()
            self._retired.add(task)
            task.add_done_callback(self._retired.discard)
        logger.info("AISStream connection stopped (was %s)", previous.value)

    async def wait_closed(self) -> None:
        """Wait for connections torn down by stop() to finish closing."""
        if self._retired:
            await asyncio.gather(*list(self._retired), return_exceptions=True)

    # ── connection task ─────────────────────────────────────

    async def _run(self) -> None:
        me = asyncio.current_task()
        if self._retired:
            # a stopped connection may still be in its closing handshake;
            # asyncio.wait leaves those tasks alone if we get cancelled here
            await asyncio.wait(list(self._retired))
            if self._task is not me:
                return
        logger.info("Connecting to AISStream...")
        try:
            ws = await self._connect(self._url, ping_interval=20, ping_timeout=30)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("AISStream connect failed: %s", exc)
            self._lost(me, error=True)
            return

        error = False
        try:
            if self._task is not me:
                # stop() ran while the handshake was in flight
                return
            await ws.send(json.dumps(self.subscription()))
            self._state = ConnectionState.OPEN
            logger.info("AISStream connected; subscribed to %s", self._bbox)
            self._emit("Connected to AISStream", True)
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosedOK:
            pass
        except StreamSubscriptionError as exc:
            error = True
            logger.error(
                "AISStream subscription/authentication failed: %s. Check AISSTREAM_API_KEY.",
                exc,
            )
        except Exception as exc:
            error = True
            logger.warning("AISStream error: %s", exc)
        finally:
            await ws.close()
        self._lost(me, error=error)

    def _dispatch(self, raw: str | bytes) -> None:
        self.stats["received"] += 1
        try:
            msg = decode_message(raw)
        except DecodeError as exc:
            self.stats["decode_errors"] += 1
            logger.warning("Dropping AIS message: %s", exc)
            return
        stream_error = extract_stream_error(msg)
        if stream_error:
            raise StreamSubscriptionError(stream_error)
        if self._handler is None:
            return
        try:
            self._handler(msg)
        except Exception:
            logger.exception("Upstream message handler failed")

    def _lost(self, task: Optional[asyncio.Task[Any]], error: bool) -> None:
        if self._task is not task:
            # stopped on purpose; stop() already reset the state
            return
        self._task = None
        self._state = ConnectionState.DISCONNECTED
        logger.info("AISStream connection closed")
        if error:
            self._emit("AISStream connection error", False)
        self._emit("Disconnected from AISStream", False)
        if self._has_demand():
            self._schedule_reconnect()
        else:
            logger.info("No subscribers; not reconnecting to AISStream")

    # ── reconnect timer ─────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        if self._reconnect is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect = loop.call_later(self._reconnect_delay, self._reconnect_fired)
        logger.info("Reconnecting to AISStream in %.1fs", self._reconnect_delay)

    def _reconnect_fired(self) -> None:
        self._reconnect = None
        if not self._has_demand():
            logger.info("Reconnect skipped; no subscribers")
            return
        self.stats["reconnects"] += 1
        logger.info("Reconnecting to AISStream...")
        self.start(True)

    def _cancel_reconnect(self) -> None:
        if self._reconnect is not None:
            self._reconnect.cancel()
            self._reconnect = None

    def _emit(self, message: str, connected: bool) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(message, connected)
        except Exception:
            logger.exception("Upstream status handler failed")
