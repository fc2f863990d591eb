import datetime as dt
from typing import Optional, Tuple

import pytz
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tripsync.config import DEFAULT_TIMEZONE
from tripsync.database import AsyncSessionLocal
from tripsync.logging_config import get_logger

logger = get_logger("timezones", "timezones.log")


async def timezone_at(db: AsyncSession, lat: float, lon: float) -> Optional[str]:
    row = await db.execute(
        text("""
            SELECT tzid
            FROM timezone_zones
            WHERE ST_Covers(
                geom,
                ST_SetSRID(ST_MakePoint(:lon, :lat), 4326)::geography
            )
            LIMIT 1
        """).bindparams(lon=lon, lat=lat)
    )

    z = row.fetchone()
    return z.tzid if z else None


class TimezoneLookup:
    """Resolve the local timezone of a GPS fix from the timezone_zones polygons."""

    def __init__(self, session_factory=AsyncSessionLocal, default: str = DEFAULT_TIMEZONE):
        self._session_factory = session_factory
        self.default = pytz.timezone(default)

    async def timezone_for(self, lat: Optional[float], lon: Optional[float]):
        if lat is None or lon is None:
            return self.default

        async with self._session_factory() as db:
            tzid = await timezone_at(db, lat, lon)

        if not tzid:
            return self.default
        try:
            return pytz.timezone(tzid)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Unknown timezone {tzid!r} at ({lat}, {lon}); using {self.default.zone}")
            return self.default


def day_bounds(now: dt.datetime, tz) -> Tuple[dt.datetime, dt.datetime]:
    """Start and end of the local day containing ``now`` in ``tz`` (a pytz zone)."""
    local_date = now.astimezone(tz).date()
    start = tz.localize(dt.datetime.combine(local_date, dt.time.min))
    end = tz.localize(dt.datetime.combine(local_date, dt.time.max))
    return start, end
