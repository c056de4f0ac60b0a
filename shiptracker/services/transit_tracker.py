"""
Transit tracking on top of the position stream.

- observe(): find-or-create-then-update of the vessel's open record.
- mark_passed(): closes the open record once, on the external crossing signal.
- recent_passed() / stats(): bounded reads for the status surface.

Every store failure is logged and turned into an empty result; nothing here
may raise into the live relay path.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feed.parsing import PositionReport, StaticReport
from shiptracker.core.errors import StoreError
from shiptracker.db.models import ShipTransit
from shiptracker.db.schemas import TransitOut, TransitStats

logger = logging.getLogger("ais.transits")

# asyncio.TimeoutError is not an OSError before Python 3.11
_STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError, StoreError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _open_record(mmsi: int):
    return select(ShipTransit).where(
        ShipTransit.mmsi == mmsi, ShipTransit.passed.is_(False)
    )


def _fill_unknown(row: ShipTransit, **fields: Optional[str]) -> None:
    """First write wins; only fields still unknown are filled in."""
    for key, value in fields.items():
        if value is not None and getattr(row, key) is None:
            setattr(row, key, value)


class TransitTracker:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    @property
    def available(self) -> bool:
        return self._session_factory is not None

    def _now(self) -> datetime:
        return self._clock().astimezone(timezone.utc)

    @asynccontextmanager
    async def _locked(self, mmsi: int):
        """Serialise writes per MMSI; the lock is dropped once nobody holds or waits on it."""
        lock = self._locks.get(mmsi)
        if lock is None:
            lock = self._locks[mmsi] = asyncio.Lock()
        self._lock_users[mmsi] = self._lock_users.get(mmsi, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[mmsi] -= 1
            if not self._lock_users[mmsi]:
                del self._lock_users[mmsi]
                del self._locks[mmsi]

    async def observe(self, report: PositionReport) -> Optional[TransitOut]:
        if self._session_factory is None:
            return None
        async with self._locked(report.mmsi):
            try:
                record = await self._upsert_open(report)
            except _STORE_ERRORS as exc:
                logger.warning("Error saving ship %s: %s", report.mmsi, exc)
                return None
        logger.debug("Saved ship %s (%s)", report.mmsi, report.name or "Unknown")
        return record

    async def _upsert_open(self, report: PositionReport) -> TransitOut:
        now = self._now()
        for _ in range(2):
            async with self._session_factory() as session:
                row = await session.scalar(_open_record(report.mmsi).with_for_update())
                if row is None:
                    row = ShipTransit(
                        mmsi=report.mmsi,
                        name=report.name,
                        ship_type=report.ship_type,
                        direction=report.direction,
                        first_seen=now,
                        last_seen=now,
                        max_speed=report.speed,
                        passed=False,
                    )
                    session.add(row)
                else:
                    row.last_seen = now
                    row.max_speed = max(row.max_speed or 0.0, report.speed)
                    if report.direction is not None:
                        row.direction = report.direction
                    _fill_unknown(row, name=report.name, ship_type=report.ship_type)
                try:
                    await session.commit()
                except IntegrityError:
                    # another process opened the record first; update theirs
                    await session.rollback()
                    continue
                return TransitOut.model_validate(row)
        raise StoreError(f"upsert for MMSI {report.mmsi} did not converge")

    async def enrich(self, report: StaticReport) -> bool:
        """Fill unknown static fields on the open record; never opens one."""
        if self._session_factory is None:
            return False
        async with self._locked(report.mmsi):
            try:
                async with self._session_factory() as session:
                    row = await session.scalar(_open_record(report.mmsi).with_for_update())
                    if row is None:
                        return False
                    _fill_unknown(
                        row,
                        name=report.name,
                        ship_type=report.ship_type,
                        destination=report.destination,
                        dimensions=report.dimensions,
                    )
                    await session.commit()
            except _STORE_ERRORS as exc:
                logger.warning("Error enriching ship %s: %s", report.mmsi, exc)
                return False
        return True

    async def mark_passed(self, mmsi: int) -> bool:
        """Close the open record. A second call for the same crossing is a no-op."""
        if self._session_factory is None:
            logger.warning("No store; cannot mark %s as passed", mmsi)
            return False
        now = self._now()
        async with self._locked(mmsi):
            try:
                async with self._session_factory() as session:
                    result = await session.execute(
                        update(ShipTransit)
                        .where(ShipTransit.mmsi == mmsi, ShipTransit.passed.is_(False))
                        .values(passed=True, passed_at=now)
                    )
                    await session.commit()
            except _STORE_ERRORS as exc:
                logger.warning("Error marking ship %s as passed: %s", mmsi, exc)
                return False
        if not result.rowcount:
            logger.info("No open transit for MMSI %s; mark_passed ignored", mmsi)
            return False
        logger.info("Marked ship as passed: %s", mmsi)
        return True

    async def get_open(self, mmsi: int) -> Optional[TransitOut]:
        if self._session_factory is None:
            return None
        try:
            async with self._session_factory() as session:
                row = await session.scalar(_open_record(mmsi))
        except _STORE_ERRORS as exc:
            logger.warning("Error reading ship %s: %s", mmsi, exc)
            return None
        return TransitOut.model_validate(row) if row is not None else None

    async def recent_passed(self, limit: int = 10) -> list[TransitOut]:
        if self._session_factory is None or limit <= 0:
            return []
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(ShipTransit)
                    .where(ShipTransit.passed.is_(True))
                    .order_by(ShipTransit.passed_at.desc())
                    .limit(limit)
                )
                return [TransitOut.model_validate(r) for r in rows]
        except _STORE_ERRORS as exc:
            logger.warning("Error getting recent ships: %s", exc)
            return []

    async def stats(self) -> TransitStats:
        if self._session_factory is None:
            return TransitStats()
        # local calendar day, compared in UTC like everything stored
        local_midnight = self._now().astimezone().replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        since = local_midnight.astimezone(timezone.utc)
        passed = ShipTransit.passed.is_(True)
        try:
            async with self._session_factory() as session:
                total = await session.scalar(
                    select(func.count()).select_from(ShipTransit).where(passed)
                )
                today = await session.scalar(
                    select(func.count())
                    .select_from(ShipTransit)
                    .where(passed, ShipTransit.passed_at >= since)
                )
        except _STORE_ERRORS as exc:
            logger.warning("Error getting stats: %s", exc)
            return TransitStats()
        return TransitStats(total=total or 0, today=today or 0)

    async def ping(self) -> bool:
        if self._session_factory is None:
            return False
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except _STORE_ERRORS as exc:
            logger.warning("Store ping failed: %s", exc)
            return False
        return True
