"""
Relay routes.

- GET /: status summary (subscribers, store, transit stats)
- WS  / and /ws: live envelopes; clients may send {"type": "ship_passed", "mmsi": ...}
- GET /transits/recent, /transits/stats, /transits/{mmsi}
- POST /transits/{mmsi}/passed: crossing signal from the geometry side
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from shiptracker.db.schemas import PassedOut, StatusOut, TransitOut, TransitStats
from shiptracker.services.relay import RelayService

router = APIRouter(prefix="/transits", tags=["transits"])
root_router = APIRouter()


def relay_of(app) -> RelayService:
    relay = getattr(app.state, "relay", None)
    if relay is None:
        raise RuntimeError("Relay not initialized")
    return relay


def get_relay(request: Request) -> RelayService:
    return relay_of(request.app)


@root_router.get("/", response_model=StatusOut, summary="Relay status")
async def status(relay: RelayService = Depends(get_relay)):
    return await relay.status()


@root_router.websocket("/")
@root_router.websocket("/ws")
async def subscriber_socket(websocket: WebSocket):
    """One downstream subscriber: receives status and ship_data envelopes."""
    relay = relay_of(websocket.app)
    await websocket.accept()
    subscriber = relay.connect_subscriber(websocket.send_text)
    try:
        while True:
            raw = await websocket.receive_text()
            await relay.handle_client_message(raw)
    except WebSocketDisconnect:
        pass
    finally:
        relay.disconnect_subscriber(subscriber)


@router.get("/recent", response_model=list[TransitOut], summary="Most recent passed ships")
async def recent(
    limit: int = Query(10, ge=1),
    relay: RelayService = Depends(get_relay),
):
    limit = min(limit, relay.settings.RECENT_LIMIT_MAX)
    return await relay.tracker.recent_passed(limit)


@router.get("/stats", response_model=TransitStats)
async def stats(relay: RelayService = Depends(get_relay)):
    """Passed ships: all time and since local midnight."""
    return await relay.tracker.stats()


@router.get("/{mmsi}", response_model=TransitOut, summary="Open transit by MMSI")
async def open_transit(mmsi: int, relay: RelayService = Depends(get_relay)):
    record = await relay.tracker.get_open(mmsi)
    if record is None:
        raise HTTPException(status_code=404, detail="No open transit for this vessel")
    return record


@router.post("/{mmsi}/passed", response_model=PassedOut)
async def mark_passed(mmsi: int, relay: RelayService = Depends(get_relay)):
    if not await relay.tracker.mark_passed(mmsi):
        raise HTTPException(status_code=404, detail="No open transit for this vessel")
    return PassedOut(mmsi=mmsi, passed=True)
