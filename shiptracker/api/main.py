"""
FastAPI application for the ship tracker relay.

- WebSocket: / (and /ws) relays AISStream envelopes to subscribers
- Status: GET /
- API: /api/v1/transits/...
- Health: /health/live, /health/ready
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feed.client import Connector
from shiptracker.api.health import router as health_router
from shiptracker.api.router import router as api_router
from shiptracker.api.router import root_router
from shiptracker.core.config import Settings, settings as default_settings
from shiptracker.db.database import try_open_store
from shiptracker.services.relay import RelayService
from shiptracker.services.transit_tracker import TransitTracker

logger = logging.getLogger("ais.api")


def _setup_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    connect: Optional[Connector] = None,
) -> FastAPI:
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(cfg.LOG_LEVEL)
        # ConfigError here aborts startup before anything is relayed
        cfg.require_api_key()

        store = await try_open_store(cfg.DATABASE_URL) if cfg.DATABASE_URL else None
        if store is None:
            logger.warning("Running without database - transits will not be saved")
        tracker = TransitTracker(store.session_factory if store else None)
        relay = RelayService(cfg, tracker, connect=connect)
        app.state.relay = relay

        bbox = cfg.bounding_box()
        logger.info("Ship Tracker Proxy Server ready on port %d", cfg.PORT)
        logger.info("Monitoring %s area: %s", cfg.ZONE_NAME, bbox)

        yield

        await relay.shutdown()
        if store is not None:
            await store.dispose()

    app = FastAPI(
        title="Ship Tracker Relay",
        description="Live AISStream relay with transit tracking",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept"],
    )
    app.include_router(health_router)
    app.include_router(root_router)
    app.include_router(api_router, prefix=cfg.API_PREFIX)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=default_settings.HOST,
        port=default_settings.PORT,
        log_level=default_settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
