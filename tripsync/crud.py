import datetime as dt
from typing import Iterable, List, Optional

import asyncpg
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import retry, wait_exponential_jitter, stop_after_attempt, retry_if_exception_type

from tripsync.database import AsyncSessionLocal
from tripsync.geo import build_linestring
from tripsync.logging_config import get_logger
from tripsync.models import TelemetryLog, TripLog
from tripsync.schemas import TelemetrySample
from tripsync.trip_detector import Trip

logger = get_logger("store", "store.log")


def row_to_sample(row: TelemetryLog) -> TelemetrySample:
    return TelemetrySample.from_data(row.external_id, row.timestamp, row.data)


def trip_values(trip: Trip, tz=None) -> dict:
    return {
        "name": trip.name(tz),
        "start_time": trip.start_time,
        "end_time": trip.end_time,
        "max_speed": trip.max_speed_ms,
        "avg_speed": trip.avg_speed_ms,
        "distance_m": trip.total_distance_meters,
        "point_count": trip.point_count,
        "geom": build_linestring(trip.coordinates),
        "data": {"trip_id": trip.trip_id},
    }


class TripStore:
    """
    PostgreSQL/PostGIS persistence for telemetry samples and finalized trips.
    Every call opens its own session.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    # ---------- Telemetry ----------
    # Upsert by external id so a redelivered message overwrites instead of duplicating.
    @retry(
        wait=wait_exponential_jitter(initial=2, max=30),
        stop=stop_after_attempt(5),
        retry=retry_if_exception_type(
            (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError)
        ),
        reraise=True,
    )
    async def upsert_telemetry_log(self, sample: TelemetrySample) -> int:
        stmt = pg_insert(TelemetryLog).values(
            external_id=sample.external_id,
            timestamp=sample.timestamp,
            data=sample.to_data(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["external_id"],
            set_={
                "timestamp": stmt.excluded.timestamp,
                "data": stmt.excluded.data,
                "updated_at": func.now(),
            },
        ).returning(TelemetryLog.id)

        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                log_id = result.scalar_one()
                await db.commit()
        except Exception as e:
            logger.exception(f"Failed to save telemetry {sample.external_id}: {e}")
            raise

        logger.info(f"[✓] Saved: {sample.external_id} id={log_id}")
        return log_id

    async def fetch_samples(self, after: Optional[dt.datetime] = None,
                            start: Optional[dt.datetime] = None,
                            end: Optional[dt.datetime] = None) -> List[TelemetrySample]:
        q = select(TelemetryLog).order_by(TelemetryLog.timestamp.asc())
        if after is not None:
            q = q.where(TelemetryLog.timestamp > after)
        if start is not None:
            q = q.where(TelemetryLog.timestamp >= start)
        if end is not None:
            q = q.where(TelemetryLog.timestamp <= end)

        async with self._session_factory() as db:
            rows = (await db.execute(q)).scalars().all()
        return [row_to_sample(r) for r in rows]

    # ---------- Trips ----------
    async def count_trips_between(self, start: dt.datetime, end: dt.datetime) -> int:
        async with self._session_factory() as db:
            res = await db.execute(
                select(func.count(TripLog.id))
                .where(TripLog.start_time >= start, TripLog.start_time <= end)
            )
            return res.scalar_one()

    async def save_trip(self, trip: Trip, tz=None) -> bool:
        """Insert a finalized trip. Returns False when a trip with the same start time already exists."""
        stmt = (
            pg_insert(TripLog)
            .values(**trip_values(trip, tz))
            .on_conflict_do_nothing(index_elements=["start_time"])
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        inserted = result.rowcount == 1
        if inserted:
            logger.info(
                f"[trip] Saved trip start={trip.start_time} end={trip.end_time} "
                f"distance={trip.total_distance_meters:.0f}m points={trip.point_count}"
            )
        else:
            logger.info(f"[trip] Trip starting {trip.start_time} already stored")
        return inserted

    async def save_trips(self, trips: Iterable[Trip], tz=None) -> int:
        saved = 0
        for trip in trips:
            if await self.save_trip(trip, tz):
                saved += 1
        return saved
